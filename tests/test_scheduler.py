"""
Tests for BackgroundProgressionScheduler and its phase state machine.

The scheduler runs on a LogicalClock, so every test drives it with
explicit ``tick()`` calls — nothing here sleeps.  With the default of two
ticks per phase a fresh session enters study at tick 1, practice at tick
3 and test (one orchestrator iteration) at tick 5.
"""
import threading

import pytest

from factories import GatedAnswerSource

from competency_training.errors import NotFoundError
from competency_training.models import EventType, Phase, SessionStatus
from competency_training.orchestrator import OutcomeKind
from competency_training.scheduler import LegitimacyFilter, LogicalClock


@pytest.fixture
def scheduler(service):
    return service.scheduler


@pytest.fixture
def session(service, agent, specialty):
    return service.start_training(agent.id, specialty.id, "Advanced")


@pytest.fixture
def calls(service, monkeypatch):
    """Counts orchestrator iterations triggered by the scheduler."""
    counter = []
    original = service.orchestrator.run_iteration

    def counting(session_id, answer_source=None):
        counter.append(session_id)
        return original(session_id, answer_source)

    monkeypatch.setattr(service.orchestrator, "run_iteration", counting)
    return counter


def _phases(scheduler, ticks):
    out = []
    for _ in range(ticks):
        steps = scheduler.tick().steps
        out.append(steps[0].phase if steps else None)
    return out


class TestLogicalClock:
    def test_advance(self):
        clock = LogicalClock()
        assert clock.now() == 0
        assert clock.advance() == 1
        assert clock.advance(3) == 4


class TestPhaseMachine:
    def test_phase_sequence(self, scheduler, session):
        assert _phases(scheduler, 9) == [
            Phase.STUDY, None, Phase.PRACTICE, None, Phase.TEST, None, Phase.REVIEW, None, Phase.STUDY,
        ]

    def test_orchestrator_runs_once_per_test_phase(self, service, scheduler, session, calls):
        for _ in range(4):
            scheduler.tick()
        assert calls == []

        report = scheduler.tick()
        assert calls == [session.id]
        assert len(report.iterations) == 1

        scheduler.tick()
        assert calls == [session.id]
        assert len(service.store.list_attempts(session_id=session.id)) == 1

    def test_repeated_tick_inside_window_changes_nothing(self, service, scheduler, session):
        scheduler.tick()
        before = service.get_session(session.id)
        scheduler.tick()
        assert service.get_session(session.id) == before

    def test_phase_state_persisted_on_session(self, service, scheduler, session):
        for _ in range(5):
            scheduler.tick()
        stored = service.get_session(session.id)
        assert stored.current_phase == Phase.TEST
        assert stored.last_processed_phase == Phase.TEST
        assert stored.last_processed_time == 5

    def test_session_progresses_over_cycles(self, service, scheduler, session):
        for _ in range(13):
            scheduler.tick()
        assert service.get_session(session.id).current_competency_level == "Advanced"

    def test_completed_sessions_drop_out(self, service, scheduler, agent, specialty):
        session = service.start_training(agent.id, specialty.id, "Beginner")
        for _ in range(5):
            scheduler.tick()
        assert service.get_session(session.id).status == SessionStatus.COMPLETED
        assert scheduler.tick().candidates == 0


class TestEligibility:
    def test_paused_session_not_processed(self, service, scheduler, session, calls):
        service.pause_session(session.id)
        for _ in range(6):
            report = scheduler.tick()
            assert report.candidates == 0
        assert calls == []
        assert service.get_session(session.id).last_processed_phase is None

    def test_placeholder_agents_filtered(self, service, scheduler, specialty):
        demo = service.register_agent("demo-1", "Demo Agent 1001")
        session = service.start_training(demo.id, specialty.id, "Advanced")
        report = scheduler.tick()
        assert report.filtered == [session.id]
        assert report.submitted == []

    def test_filter_can_skip_name_checks(self, service, specialty):
        demo = service.register_agent("demo-1", "Insight Catalyst")
        session = service.start_training(demo.id, specialty.id, "Advanced")
        strict = LegitimacyFilter(service.directory)
        lenient = LegitimacyFilter(service.directory, check_names=False)
        assert not strict.is_legitimate(session)
        assert lenient.is_legitimate(session)

    def test_missing_fields_always_rejected(self, service, session):
        session.target_competency_level = ""
        assert not LegitimacyFilter(service.directory, check_names=False).is_legitimate(session)

    def test_unknown_agent_rejected(self, service, session):
        session.agent_id = "ghost"
        assert not LegitimacyFilter(service.directory).is_legitimate(session)

    def test_busy_session_skipped(self, scheduler, session):
        scheduler._in_flight.add(session.id)
        report = scheduler.tick()
        assert report.busy == [session.id]
        assert report.submitted == []


class TestFailures:
    def test_worker_error_is_reported_and_released(self, service, scheduler, session, monkeypatch):
        def boom(session_id, answer_source=None):
            raise NotFoundError("specialty", "gone")

        monkeypatch.setattr(service.orchestrator, "run_iteration", boom)
        reports = [scheduler.tick() for _ in range(5)]
        assert reports[-1].errors == [session.id]

        next_report = scheduler.tick()
        assert next_report.submitted == [session.id]
        assert next_report.errors == []

    def test_one_session_error_does_not_stop_others(self, service, scheduler, agent, specialty, monkeypatch):
        good = service.start_training(agent.id, specialty.id, "Advanced")
        bad = service.start_training(agent.id, specialty.id, "Advanced")
        original = service.orchestrator.run_iteration

        def flaky(session_id, answer_source=None):
            if session_id == bad.id:
                raise RuntimeError("provider timeout")
            return original(session_id, answer_source)

        monkeypatch.setattr(service.orchestrator, "run_iteration", flaky)
        report = None
        for _ in range(5):
            report = scheduler.tick()
        assert report.errors == [bad.id]
        assert len(report.iterations) == 1
        assert service.get_session(good.id).current_competency_level == "Intermediate"


class CompletionSignal:
    """Event sink that fires once a given session's test has been graded."""

    def __init__(self, session_id):
        self.session_id = session_id
        self.done = threading.Event()

    def handle(self, event):
        if event.type == EventType.TEST_COMPLETED and event.session_id == self.session_id:
            self.done.set()


def _tick_to_test_phase(scheduler):
    for _ in range(4):
        scheduler.tick()


class TestConcurrency:
    def test_slow_session_does_not_stall_others(self, service, scheduler, agent, specialty):
        slow = service.start_training(agent.id, specialty.id, "Advanced")
        fast = service.start_training(agent.id, specialty.id, "Advanced")
        gate = GatedAnswerSource(blocked_session=slow.id)
        signal = CompletionSignal(fast.id)
        service.orchestrator.events.subscribe(signal)
        scheduler.answer_source = gate
        assert scheduler.max_workers >= 2
        _tick_to_test_phase(scheduler)

        reports = []
        worker = threading.Thread(target=lambda: reports.append(scheduler.tick()))
        worker.start()
        try:
            assert gate.entered.wait(5)
            assert signal.done.wait(5)
            assert service.get_session(fast.id).current_competency_level == "Intermediate"
            assert service.get_session(slow.id).current_competency_level == "Beginner"
        finally:
            gate.release.set()
            worker.join(5)

        (report,) = reports
        assert sorted(report.submitted) == sorted([slow.id, fast.id])
        assert report.errors == []
        assert len(report.iterations) == 2
        assert service.get_session(slow.id).current_competency_level == "Intermediate"

    def test_manual_run_and_scheduler_are_serialised(self, service, scheduler, session):
        _tick_to_test_phase(scheduler)
        gate = GatedAnswerSource()
        scheduler.answer_source = gate
        manual = []

        worker = threading.Thread(
            target=lambda: manual.append(service.orchestrator.run_iteration(session.id, gate))
        )
        worker.start()
        assert gate.entered.wait(5)
        ticker = threading.Thread(target=scheduler.tick)
        ticker.start()
        gate.release.set()
        worker.join(5)
        ticker.join(5)

        assert gate.max_active == 1
        assert manual[0].kind == OutcomeKind.ADVANCED
        levels = [a.competency_level for a in service.store.list_attempts(session_id=session.id)]
        assert levels == ["Beginner", "Intermediate"]
        final = service.get_session(session.id)
        assert final.current_competency_level == "Advanced"
        # ticks 1 and 3 save phases, then the manual run, the tick-5 phase and its iteration
        assert final.version == 5

    def test_pause_after_listing_wins(self, service, scheduler, session, calls, monkeypatch):
        list_sessions = service.store.list_sessions

        def list_then_pause(*args, **kwargs):
            sessions = list_sessions(*args, **kwargs)
            if service.get_session(session.id).status == SessionStatus.IN_PROGRESS:
                service.pause_session(session.id)
            return sessions

        monkeypatch.setattr(service.store, "list_sessions", list_then_pause)
        report = scheduler.tick()

        assert report.submitted == [session.id]
        assert report.steps[0].phase is None
        assert calls == []
        stored = service.get_session(session.id)
        assert stored.status == SessionStatus.PAUSED
        assert stored.last_processed_phase is None


class TestLifecycle:
    def test_status(self, scheduler):
        status = scheduler.status()
        assert status["is_running"] is False
        assert status["ticks_per_phase"] == 2
        assert status["clock"] == 0

    def test_run_fixed_number_of_ticks(self, scheduler, session):
        scheduler.interval_seconds = 0
        reports = scheduler.run(ticks=5)
        assert [r.tick for r in reports] == [1, 2, 3, 4, 5]
        assert len(reports[-1].iterations) == 1

    def test_start_and_stop(self, scheduler):
        scheduler.interval_seconds = 0.01
        scheduler.start()
        assert scheduler.is_running
        scheduler.start()
        scheduler.stop(timeout=2)
        assert not scheduler.is_running

    def test_invalid_ticks_per_phase(self, service):
        from competency_training.scheduler import BackgroundProgressionScheduler

        with pytest.raises(ValueError):
            BackgroundProgressionScheduler(
                service.store, service.orchestrator, LegitimacyFilter(service.directory), ticks_per_phase=0,
            )
