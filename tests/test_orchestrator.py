"""
Tests for TrainingOrchestrator — the progression state machine.

All runs use the deterministic mock provider and in-memory store; answers
come from ReferenceAnswerSource (always right) or WrongAnswerSource
(always wrong) so every transition is predictable.
"""
import threading

import pytest

from factories import GatedAnswerSource, WrongAnswerSource, make_service, make_specialty

from competency_training.answers import ReferenceAnswerSource
from competency_training.errors import ConcurrencyConflict, NotFoundError, ValidationFailure
from competency_training.models import Answer, CompletionReason, EventType, SessionStatus
from competency_training.orchestrator import OutcomeKind


class RecordingSink:
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e.type for e in self.events]


@pytest.fixture
def sink(service):
    recorder = RecordingSink()
    service.orchestrator.events.subscribe(recorder)
    return recorder


def _answers_for(test, correct=True):
    if correct:
        return ReferenceAnswerSource().answers_for(None, test)
    return WrongAnswerSource().answers_for(None, test)


# ─── Session start ────────────────────────────────────────────────────────────

class TestStartSession:
    def test_session_starts_at_first_rung(self, service, agent, specialty, sink):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        assert session.status == SessionStatus.IN_PROGRESS
        assert session.current_competency_level == "Beginner"
        assert session.current_iteration == 1
        assert session.progress == 0
        assert session.max_iterations == 10
        assert sink.types == [EventType.SESSION_STARTED]

    def test_unknown_agent(self, service, specialty):
        with pytest.raises(NotFoundError, match="Agent"):
            service.start_training("ghost", specialty.id, "Advanced")

    def test_unknown_specialty(self, service, agent):
        with pytest.raises(NotFoundError, match="Specialty"):
            service.start_training(agent.id, "ghost", "Advanced")

    def test_target_not_on_ladder(self, service, agent, specialty):
        with pytest.raises(ValidationFailure, match="T-05"):
            service.start_training(agent.id, specialty.id, "Wizard")
        assert service.store.list_sessions() == []

    def test_zero_iteration_budget(self, service, agent, specialty):
        with pytest.raises(ValidationFailure, match="T-06"):
            service.start_training(agent.id, specialty.id, "Advanced", max_iterations=0)


# ─── Unattended iterations ────────────────────────────────────────────────────

class TestRunIteration:
    def test_all_correct_reaches_target_in_three_iterations(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")

        kinds, levels, progress = [], [], []
        for _ in range(3):
            outcome = service.run_iteration(session.id)
            kinds.append(outcome.kind)
            levels.append(outcome.session.current_competency_level)
            progress.append(outcome.session.progress)

        assert kinds == [OutcomeKind.ADVANCED, OutcomeKind.ADVANCED, OutcomeKind.COMPLETED]
        assert levels == ["Intermediate", "Advanced", "Advanced"]
        assert progress == [33, 67, 100]

        final = service.get_session(session.id)
        assert final.status == SessionStatus.COMPLETED
        assert final.completion_reason == CompletionReason.TARGET_REACHED
        assert final.current_competency_level == "Advanced"
        assert final.current_iteration == 3
        assert final.completed_at is not None
        assert len(service.store.list_attempts(session_id=session.id)) == 3

    def test_question_counts_follow_level(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Expert")
        counts = [len(service.run_iteration(session.id).test.questions) for _ in range(4)]
        assert counts == [6, 8, 10, 12]

    def test_passing_scores_follow_level(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Expert")
        scores = [service.run_iteration(session.id).test.passing_score for _ in range(4)]
        assert scores == [60, 70, 80, 90]

    def test_all_wrong_hits_iteration_cap(self, store):
        svc = make_service(store=store, answer_source=WrongAnswerSource())
        agent = svc.register_agent("agent-orion", "Orion")
        specialty = make_specialty(svc)
        session = svc.start_training(agent.id, specialty.id, "Advanced", max_iterations=2)

        first = svc.run_iteration(session.id)
        assert first.kind == OutcomeKind.RETRY
        assert first.session.current_iteration == 2

        second = svc.run_iteration(session.id)
        assert second.kind == OutcomeKind.CAPPED

        final = svc.get_session(session.id)
        assert final.status == SessionStatus.COMPLETED
        assert final.completion_reason == CompletionReason.ITERATION_CAP
        assert final.current_iteration == 2
        assert final.current_competency_level == "Beginner"
        assert final.progress == 0
        assert len(store.list_knowledge(agent.id)) == 2
        svc.scheduler.shutdown()

    def test_study_artifact_contents(self, store):
        svc = make_service(store=store, answer_source=WrongAnswerSource())
        agent = svc.register_agent("agent-orion", "Orion")
        specialty = make_specialty(svc)
        session = svc.start_training(agent.id, specialty.id, "Advanced")
        svc.run_iteration(session.id)

        (entry,) = store.list_knowledge(agent.id)
        assert entry.content.startswith("Study notes for Systems Thinking (Beginner), iteration 1, score 0%:")
        assert len(entry.content) <= 1000
        assert entry.source == f"training_session_{session.id}"
        assert entry.confidence == 75
        assert entry.tags == ["training", "study", "beginner", "cognitive skills"]
        assert entry.specialty_id == specialty.id
        svc.scheduler.shutdown()

    def test_passing_iterations_ignore_the_cap(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced", max_iterations=2)

        first = service.run_iteration(session.id)
        second = service.run_iteration(session.id)
        assert [first.kind, second.kind] == [OutcomeKind.ADVANCED, OutcomeKind.ADVANCED]

        mid = service.get_session(session.id)
        assert mid.status == SessionStatus.IN_PROGRESS
        assert mid.completion_reason is None
        assert mid.current_competency_level == "Advanced"
        assert mid.progress == 67
        assert service.get_training_progress(session.id).next_steps[0] == "Advance to next competency level"

        third = service.run_iteration(session.id)
        assert third.kind == OutcomeKind.COMPLETED
        final = service.get_session(session.id)
        assert final.completion_reason == CompletionReason.TARGET_REACHED
        assert final.current_iteration == 3

    def test_failure_past_budget_caps_without_rewinding(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced", max_iterations=1)
        assert service.run_iteration(session.id).kind == OutcomeKind.ADVANCED

        outcome = service.orchestrator.run_iteration(session.id, WrongAnswerSource())

        assert outcome.kind == OutcomeKind.CAPPED
        assert outcome.session.current_iteration == 2
        assert outcome.session.current_competency_level == "Intermediate"
        assert outcome.session.completion_reason == CompletionReason.ITERATION_CAP

    def test_target_is_first_rung(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        outcome = service.run_iteration(session.id)
        assert outcome.kind == OutcomeKind.COMPLETED
        assert outcome.session.progress == 100

    def test_completed_session_is_a_noop(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        service.run_iteration(session.id)
        before = service.get_session(session.id)

        outcome = service.run_iteration(session.id)

        assert outcome.kind == OutcomeKind.ALREADY_COMPLETE
        assert outcome.kind.is_noop
        assert service.get_session(session.id) == before
        assert len(service.list_tests(session.id)) == 1

    def test_progress_stays_within_bounds(self, store):
        svc = make_service(store=store)
        agent = svc.register_agent("agent-sage", "Sage")
        specialty = make_specialty(svc, levels=["L1", "L2", "L3", "L4", "L5", "L6"])
        session = svc.start_training(agent.id, specialty.id, "L6")
        seen = []
        for _ in range(6):
            seen.append(svc.run_iteration(session.id).session.progress)
        assert all(0 <= p <= 100 for p in seen)
        assert seen == sorted(seen)
        assert seen[-1] == 100
        svc.scheduler.shutdown()

    def test_events_on_completion(self, service, agent, specialty, sink):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        service.run_iteration(session.id)
        assert sink.types == [
            EventType.SESSION_STARTED,
            EventType.TEST_GENERATED,
            EventType.TEST_COMPLETED,
            EventType.COMPETENCY_ACHIEVED,
            EventType.SESSION_COMPLETED,
        ]
        assert sink.events[-1].data["reason"] == "target_reached"

    def test_achievements_are_recorded_as_knowledge(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Intermediate")
        service.run_iteration(session.id)
        service.run_iteration(session.id)
        contents = [k.content for k in service.store.list_knowledge(agent.id)]
        assert contents == [
            "Achieved Beginner competency with score 100%",
            "Achieved Intermediate competency with score 100%",
        ]

    def test_unknown_session(self, service):
        with pytest.raises(NotFoundError):
            service.run_iteration("nope")


# ─── Lost compare-and-swap ────────────────────────────────────────────────────

class ConcurrentWriterAnswerSource:
    """Bumps the stored session version behind the orchestrator's back."""

    def __init__(self, store, inner):
        self.store = store
        self.inner = inner

    def answers_for(self, session, test):
        self.store.save_session(self.store.get_session(session.id))
        return self.inner.answers_for(session, test)


class TestConcurrentWriter:
    def test_passing_attempt_is_not_left_behind(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        source = ConcurrentWriterAnswerSource(service.store, ReferenceAnswerSource())

        with pytest.raises(ConcurrencyConflict):
            service.orchestrator.run_iteration(session.id, source)

        stored = service.get_session(session.id)
        assert stored.status == SessionStatus.IN_PROGRESS
        assert stored.version == 1
        assert service.store.list_attempts(session_id=session.id) == []

        retry = service.run_iteration(session.id)
        assert retry.kind == OutcomeKind.COMPLETED
        assert service.get_session(session.id).status == SessionStatus.COMPLETED

    def test_failed_attempt_leaves_no_study_notes(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        source = ConcurrentWriterAnswerSource(service.store, WrongAnswerSource())

        with pytest.raises(ConcurrencyConflict):
            service.orchestrator.run_iteration(session.id, source)

        assert service.store.list_attempts(session_id=session.id) == []
        assert service.store.list_knowledge(agent.id) == []
        assert service.get_session(session.id).current_iteration == 1


# ─── Racing callers ───────────────────────────────────────────────────────────

class TestSerialisation:
    def test_interactive_and_unattended_runs_do_not_overlap(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Expert")
        source = GatedAnswerSource()
        results = {}

        def run(name):
            results[name] = service.orchestrator.run_iteration(session.id, source)

        first = threading.Thread(target=run, args=("first",))
        first.start()
        assert source.entered.wait(5)
        second = threading.Thread(target=run, args=("second",))
        second.start()
        source.release.set()
        first.join(5)
        second.join(5)

        assert source.max_active == 1
        assert {results["first"].kind, results["second"].kind} == {OutcomeKind.ADVANCED}
        levels = [a.competency_level for a in service.store.list_attempts(session_id=session.id)]
        assert levels == ["Beginner", "Intermediate"]
        final = service.get_session(session.id)
        assert final.current_competency_level == "Advanced"
        assert final.version == 2

    def test_start_loses_to_specialty_delete(self, service, agent, specialty, monkeypatch):
        insert = service.store.insert_session

        def insert_after_delete(session):
            service.delete_specialty(specialty.id)
            insert(session)

        monkeypatch.setattr(service.store, "insert_session", insert_after_delete)
        with pytest.raises(NotFoundError, match="Specialty"):
            service.start_training(agent.id, specialty.id, "Advanced")
        assert service.store.list_sessions() == []


# ─── Interactive submissions ──────────────────────────────────────────────────

class TestSubmitAttempt:
    def test_submit_correct_answers_advances(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        test = service.generate_test(session.id)
        assert test.competency_level == "Beginner"
        assert test.difficulty == "easy"

        outcome = service.submit_test_attempt(session.id, test.id, _answers_for(test))

        assert outcome.kind == OutcomeKind.ADVANCED
        assert outcome.attempt.score == 100
        assert outcome.attempt.attempt_number == 1
        assert service.get_session(session.id).current_competency_level == "Intermediate"

    def test_submit_wrong_answers_retries(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        test = service.generate_test(session.id)
        outcome = service.submit_test_attempt(session.id, test.id, _answers_for(test, correct=False))
        assert outcome.kind == OutcomeKind.RETRY
        assert not outcome.attempt.passed

        retry = service.submit_test_attempt(session.id, test.id, _answers_for(test))
        assert retry.attempt.attempt_number == 2
        assert retry.kind == OutcomeKind.ADVANCED

    def test_partial_answers_are_graded(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        test = service.generate_test(session.id)
        outcome = service.submit_test_attempt(session.id, test.id, [Answer(test.questions[0].id, "?")])
        assert outcome.attempt.score == 0
        assert any("No answer submitted." in f for f in outcome.attempt.feedback)

    def test_stale_test_rejected(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        stale = service.generate_test(session.id)
        service.run_iteration(session.id)
        with pytest.raises(ValidationFailure, match="generated for Beginner"):
            service.submit_test_attempt(session.id, stale.id, _answers_for(stale))

    def test_test_from_other_session(self, service, agent, specialty):
        first = service.start_training(agent.id, specialty.id, "Advanced")
        second = service.start_training(agent.id, specialty.id, "Advanced")
        test = service.generate_test(first.id)
        with pytest.raises(NotFoundError):
            service.submit_test_attempt(second.id, test.id, _answers_for(test))

    def test_generate_test_on_terminal_session(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        service.run_iteration(session.id)
        with pytest.raises(ValidationFailure):
            service.generate_test(session.id)

    def test_submit_after_completion_is_noop(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        test = service.generate_test(session.id)
        service.submit_test_attempt(session.id, test.id, _answers_for(test))
        again = service.submit_test_attempt(session.id, test.id, _answers_for(test))
        assert again.kind == OutcomeKind.ALREADY_COMPLETE
        assert len(service.store.list_attempts(session_id=session.id)) == 1


# ─── Administrative transitions ───────────────────────────────────────────────

class TestAdminTransitions:
    def test_pause_blocks_iterations(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        service.pause_session(session.id)
        outcome = service.run_iteration(session.id)
        assert outcome.kind == OutcomeKind.NOT_ACTIVE
        assert service.list_tests(session.id) == []

    def test_resume_continues(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        service.pause_session(session.id)
        service.resume_session(session.id)
        assert service.run_iteration(session.id).kind == OutcomeKind.ADVANCED

    def test_pause_requires_in_progress(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        service.pause_session(session.id)
        with pytest.raises(ValidationFailure, match="Cannot pause"):
            service.pause_session(session.id)

    def test_fail_is_terminal(self, service, agent, specialty, sink):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        failed = service.fail_session(session.id)
        assert failed.status == SessionStatus.FAILED
        assert failed.is_terminal
        assert sink.events[-1].data["reason"] == "failed"
        with pytest.raises(ValidationFailure):
            service.resume_session(session.id)
        assert service.run_iteration(session.id).kind == OutcomeKind.ALREADY_COMPLETE

    def test_reset_rebaselines(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Expert")
        service.run_iteration(session.id)
        service.run_iteration(session.id)

        reset = service.reset_session(session.id)

        assert reset.status == SessionStatus.RESET
        assert reset.current_competency_level == "Beginner"
        assert reset.current_iteration == 1
        assert reset.progress == 0
        assert service.run_iteration(session.id).kind == OutcomeKind.NOT_ACTIVE

        service.resume_session(session.id)
        assert service.get_session(session.id).status == SessionStatus.IN_PROGRESS

    def test_completed_session_cannot_be_reset(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        service.run_iteration(session.id)
        with pytest.raises(ValidationFailure, match="Cannot reset"):
            service.reset_session(session.id)

    def test_each_transition_bumps_version(self, service, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Advanced")
        assert session.version == 0
        service.pause_session(session.id)
        service.resume_session(session.id)
        service.run_iteration(session.id)
        assert service.get_session(session.id).version == 3
