"""
orchestrator.py — Test-first progression for one training session
===================================================================
``TrainingOrchestrator`` is the only component that mutates a
``TrainingSession``.  Interactive callers (the service / CLI) and the
background scheduler both go through it.

One iteration
-------------
  1. If the latest attempt already passed the target level at or above
     its required score, stop: "already complete" (no mutation).
  2. required = required_score(current level)
  3. Generate a test for the current level.
  4. Obtain answers (submitted, or from an AnswerSource) and grade them.
  5. Passed and score ≥ required:
       current == target  → completed, progress 100        (terminal)
       otherwise          → next rung, iteration + 1,
                            progress = rungIndex / (rungCount − 1) × 100
  6. Failed: write a study artefact for the agent, iteration + 1.  If the
     iteration budget is already used up the session is completed instead,
     with ``completion_reason = iteration_cap`` and the iteration unchanged.

A graded iteration ends in one ``commit_transition`` call (attempt, study
artefact and versioned session row together) made while holding that
session's lock from ``SessionLocks``.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional

from .answers import AnswerSource
from .database import TrainingStore
from .directory import AgentDirectory
from .errors import NotFoundError, ValidationFailure
from .events import EventBus
from .grading import GradeResult, TestGradingEngine
from .guardrails import SessionGuardrails
from .knowledge import make_entry
from .models import (
    Answer,
    CompletionReason,
    EventType,
    KnowledgeEntry,
    Phase,
    SessionStatus,
    Specialty,
    TestAttempt,
    TrainingSession,
    TrainingTest,
    difficulty_for,
    ladder_progress,
    new_id,
    question_count_for,
    required_score,
    utcnow,
)
from .providers import TextGenerationProvider

logger = logging.getLogger(__name__)

STUDY_CONTENT_LIMIT = 1000


class OutcomeKind(str, Enum):
    ALREADY_COMPLETE = "already_complete"   # no-op
    NOT_ACTIVE       = "not_active"         # paused / reset, no-op
    ADVANCED         = "advanced"           # moved up one rung
    COMPLETED        = "completed"          # target reached
    CAPPED           = "capped"             # iteration budget exhausted
    RETRY            = "retry"              # failed, next iteration scheduled

    @property
    def is_noop(self) -> bool:
        return self in (OutcomeKind.ALREADY_COMPLETE, OutcomeKind.NOT_ACTIVE)


@dataclass
class IterationOutcome:
    kind:    OutcomeKind
    session: TrainingSession
    test:    Optional[TrainingTest] = None
    attempt: Optional[TestAttempt] = None
    message: str = ""


def rebaseline_session(session: TrainingSession, first_level: str) -> None:
    """Put a session back at the bottom of its ladder with status ``reset``."""
    session.status = SessionStatus.RESET
    session.current_competency_level = first_level
    session.current_iteration = 1
    session.progress = 0
    session.current_phase = Phase.STUDY
    session.last_processed_phase = None
    session.last_processed_time = None
    session.completed_at = None
    session.completion_reason = None


# ─── Per-session serialisation ───────────────────────────────────────────────

class SessionLocks:
    """One re-entrant lock per session id, created on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self.get(session_id):
            yield

    @contextmanager
    def hold_all(self, session_ids: Iterable[str]) -> Iterator[None]:
        """Acquire several session locks in a stable order."""
        with ExitStack() as stack:
            for sid in sorted(set(session_ids)):
                stack.enter_context(self.get(sid))
            yield

    def discard(self, session_id: str) -> None:
        with self._guard:
            self._locks.pop(session_id, None)


# ─── Orchestrator ────────────────────────────────────────────────────────────

class TrainingOrchestrator:
    def __init__(
        self,
        store: TrainingStore,
        directory: AgentDirectory,
        provider: TextGenerationProvider,
        grader: TestGradingEngine,
        events: Optional[EventBus] = None,
        answer_source: Optional[AnswerSource] = None,
        locks: Optional[SessionLocks] = None,
        knowledge_confidence: int = 75,
        default_max_iterations: int = 10,
        score_table: Optional[dict[str, int]] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.provider = provider
        self.grader = grader
        self.events = events or EventBus()
        self.answer_source = answer_source
        self.locks = locks or SessionLocks()
        self.knowledge_confidence = knowledge_confidence
        self.default_max_iterations = default_max_iterations
        self.score_table = score_table
        self._session_guard = SessionGuardrails()

    # ── lookups ───────────────────────────────────────────────────────────

    def _specialty(self, specialty_id: str) -> Specialty:
        specialty = self.store.get_specialty(specialty_id)
        if specialty is None:
            raise NotFoundError("specialty", specialty_id)
        return specialty

    def required_score(self, level: str, specialty: Specialty) -> int:
        return required_score(level, specialty.competency_levels, self.score_table)

    def _already_complete(self, session: TrainingSession, specialty: Specialty) -> bool:
        latest = self.store.latest_attempt(session.id)
        if latest is None or not latest.passed:
            return False
        target = session.target_competency_level
        return (
            latest.competency_level == target
            and latest.score >= self.required_score(target, specialty)
        )

    # ── session creation ──────────────────────────────────────────────────

    def start_session(
        self,
        agent_id: str,
        specialty_id: str,
        target_level: str,
        max_iterations: Optional[int] = None,
    ) -> TrainingSession:
        agent = self.directory.get_agent(agent_id)
        specialty = self._specialty(specialty_id)
        budget = self.default_max_iterations if max_iterations is None else max_iterations

        result = self._session_guard.check(specialty, target_level, budget)
        if result.blocked:
            raise ValidationFailure.from_result(result)

        session = TrainingSession(
            id=new_id(),
            agent_id=agent.id,
            specialty_id=specialty.id,
            target_competency_level=target_level,
            current_competency_level=specialty.competency_levels[0],
            max_iterations=budget,
        )
        with self.locks.hold(session.id):
            self.store.insert_session(session)
            if self.store.get_specialty(specialty.id) is None:
                # specialty deleted after validation
                self.store.delete_session_records(session.id)
                raise NotFoundError("specialty", specialty.id)
        logger.info(
            "Started session %s: agent %s → %s %s (max %d iterations)",
            session.id, agent.id, specialty.name, target_level, budget,
        )
        self.events.emit(EventType.SESSION_STARTED, session.id, agent.id, {
            "specialty_id":   specialty.id,
            "target_level":   target_level,
            "max_iterations": budget,
        })
        return session

    # ── tests ─────────────────────────────────────────────────────────────

    def generate_test(self, session_id: str) -> TrainingTest:
        with self.locks.hold(session_id):
            session = self.store.require_session(session_id)
            if session.is_terminal:
                raise ValidationFailure(f"Session '{session_id}' is {session.status.value}; no new tests")
            return self._generate_test(session, self._specialty(session.specialty_id))

    def _generate_test(self, session: TrainingSession, specialty: Specialty) -> TrainingTest:
        level = session.current_competency_level
        questions = self.provider.generate_questions(specialty.name, level, question_count_for(level))
        test = TrainingTest(
            id=new_id(),
            session_id=session.id,
            test_type="competency",
            questions=questions,
            passing_score=self.required_score(level, specialty),
            difficulty=difficulty_for(level),
            competency_level=level,
            iteration=session.current_iteration,
        )
        self.store.insert_test(test)
        logger.debug("Generated %d-question %s test for session %s", len(questions), level, session.id)
        self.events.emit(EventType.TEST_GENERATED, session.id, session.agent_id, {
            "test_id":        test.id,
            "level":          level,
            "question_count": len(questions),
            "specialty_id":   specialty.id,
        })
        return test

    # ── attempts & iterations ─────────────────────────────────────────────

    def submit_attempt(self, session_id: str, test_id: str, answers: list[Answer]) -> IterationOutcome:
        """Grade an interactive submission and apply the resulting transition."""
        with self.locks.hold(session_id):
            session = self.store.require_session(session_id)
            test = self.store.get_test(test_id)
            if test is None or test.session_id != session_id:
                raise NotFoundError("test", test_id)

            noop = self._noop_outcome(session)
            if noop is not None:
                return noop
            if test.competency_level != session.current_competency_level:
                raise ValidationFailure(
                    f"Test '{test_id}' was generated for {test.competency_level}; "
                    f"session is now at {session.current_competency_level}"
                )
            return self._grade_and_transition(session, self._specialty(session.specialty_id), test, answers)

    def run_iteration(
        self,
        session_id: str,
        answer_source: Optional[AnswerSource] = None,
    ) -> IterationOutcome:
        """One unattended iteration: generate, answer, grade, transition."""
        source = answer_source or self.answer_source
        if source is None:
            raise ValidationFailure("No answer source configured for unattended iterations")

        with self.locks.hold(session_id):
            session = self.store.require_session(session_id)
            noop = self._noop_outcome(session)
            if noop is not None:
                return noop
            specialty = self._specialty(session.specialty_id)
            test = self._generate_test(session, specialty)
            answers = source.answers_for(session, test)
            return self._grade_and_transition(session, specialty, test, answers)

    def _noop_outcome(self, session: TrainingSession) -> Optional[IterationOutcome]:
        if session.is_terminal:
            logger.debug("Session %s is %s; nothing to do", session.id, session.status.value)
            return IterationOutcome(OutcomeKind.ALREADY_COMPLETE, session, message="already complete")
        if session.status != SessionStatus.IN_PROGRESS:
            logger.debug("Session %s is %s; skipping", session.id, session.status.value)
            return IterationOutcome(OutcomeKind.NOT_ACTIVE, session, message=f"session is {session.status.value}")
        if self._already_complete(session, self._specialty(session.specialty_id)):
            return IterationOutcome(OutcomeKind.ALREADY_COMPLETE, session, message="already complete")
        return None

    def _grade_and_transition(
        self,
        session: TrainingSession,
        specialty: Specialty,
        test: TrainingTest,
        answers: list[Answer],
    ) -> IterationOutcome:
        grade = self.grader.grade(test, answers)
        attempt = TestAttempt(
            id=new_id(),
            test_id=test.id,
            session_id=session.id,
            attempt_number=self.store.next_attempt_number(test.id),
            answers=tuple(answers),
            score=grade.score,
            passed=grade.passed,
            feedback=tuple(grade.feedback),
            competency_level=test.competency_level,
        )

        level = session.current_competency_level
        required = self.required_score(level, specialty)
        pending: list[tuple[EventType, dict]] = [(EventType.TEST_COMPLETED, {
            "test_id":    test.id,
            "attempt_id": attempt.id,
            "score":      grade.score,
            "passed":     grade.passed,
            "level":      level,
        })]

        study = None
        if grade.passed and grade.score >= required:
            pending.append((EventType.COMPETENCY_ACHIEVED, {
                "level": level, "score": grade.score, "specialty_id": specialty.id,
            }))
            if level == session.target_competency_level:
                kind = self._complete(session, CompletionReason.TARGET_REACHED)
                session.progress = 100
            else:
                session.current_competency_level = specialty.next_level(level)
                session.progress = ladder_progress(session.current_competency_level, specialty.competency_levels)
                session.current_iteration += 1
                kind = OutcomeKind.ADVANCED
        else:
            study = self._study_artifact(session, specialty, test, grade)
            kind = self._retry_or_cap(session)

        self.store.commit_transition(session, attempt, study)
        logger.info(
            "Session %s iteration outcome %s: %s score %d%% (required %d%%), now at %s",
            session.id, kind.value, level, grade.score, required, session.current_competency_level,
        )

        if kind in (OutcomeKind.COMPLETED, OutcomeKind.CAPPED):
            pending.append((EventType.SESSION_COMPLETED, {
                "reason":      session.completion_reason.value,
                "final_level": session.current_competency_level,
                "iterations":  session.current_iteration,
            }))
        for event_type, data in pending:
            self.events.emit(event_type, session.id, session.agent_id, data)

        return IterationOutcome(kind, session, test=test, attempt=attempt, message=f"score {grade.score}%")

    # ── transition helpers ────────────────────────────────────────────────

    def _retry_or_cap(self, session: TrainingSession) -> OutcomeKind:
        # budget used up: end the session, iteration left as is
        if session.current_iteration >= session.max_iterations:
            return self._complete(session, CompletionReason.ITERATION_CAP)
        session.current_iteration += 1
        return OutcomeKind.RETRY

    @staticmethod
    def _complete(session: TrainingSession, reason: CompletionReason) -> OutcomeKind:
        session.status = SessionStatus.COMPLETED
        session.completed_at = utcnow()
        session.completion_reason = reason
        if reason == CompletionReason.TARGET_REACHED:
            return OutcomeKind.COMPLETED
        return OutcomeKind.CAPPED

    def _study_artifact(
        self,
        session: TrainingSession,
        specialty: Specialty,
        test: TrainingTest,
        grade: GradeResult,
    ) -> KnowledgeEntry:
        lines = [
            f"Study notes for {specialty.name} ({test.competency_level}), "
            f"iteration {session.current_iteration}, score {grade.score}%:",
        ]
        for qid in grade.missed:
            q = test.question_by_id(qid)
            if q is not None:
                lines.append(f"- {q.text} Answer: {q.correct_answer}. {q.explanation}")
        return make_entry(
            agent_id=session.agent_id,
            content="\n".join(lines)[:STUDY_CONTENT_LIMIT],
            source=f"training_session_{session.id}",
            confidence=self.knowledge_confidence,
            tags=["training", "study", test.competency_level.lower(), specialty.domain.lower()],
            specialty_id=specialty.id,
        )

    # ── administrative transitions ────────────────────────────────────────

    def _admin(self, session_id: str, action: str, allowed: set[SessionStatus]) -> TrainingSession:
        session = self.store.require_session(session_id)
        if session.status not in allowed:
            raise ValidationFailure(
                f"Cannot {action} session '{session_id}' while it is {session.status.value}"
            )
        return session

    def pause_session(self, session_id: str) -> TrainingSession:
        with self.locks.hold(session_id):
            session = self._admin(session_id, "pause", {SessionStatus.IN_PROGRESS})
            session.status = SessionStatus.PAUSED
            self.store.save_session(session)
        logger.info("Paused session %s", session_id)
        return session

    def resume_session(self, session_id: str) -> TrainingSession:
        with self.locks.hold(session_id):
            session = self._admin(session_id, "resume", {SessionStatus.PAUSED, SessionStatus.RESET})
            session.status = SessionStatus.IN_PROGRESS
            self.store.save_session(session)
        logger.info("Resumed session %s", session_id)
        return session

    def fail_session(self, session_id: str) -> TrainingSession:
        with self.locks.hold(session_id):
            session = self._admin(
                session_id, "fail",
                {SessionStatus.IN_PROGRESS, SessionStatus.PAUSED, SessionStatus.RESET},
            )
            session.status = SessionStatus.FAILED
            session.completed_at = utcnow()
            self.store.save_session(session)
        logger.info("Marked session %s as failed", session_id)
        self.events.emit(EventType.SESSION_COMPLETED, session.id, session.agent_id, {
            "reason": "failed", "final_level": session.current_competency_level,
            "iterations": session.current_iteration,
        })
        return session

    def reset_session(self, session_id: str) -> TrainingSession:
        with self.locks.hold(session_id):
            session = self._admin(
                session_id, "reset",
                {SessionStatus.IN_PROGRESS, SessionStatus.PAUSED, SessionStatus.RESET},
            )
            rebaseline_session(session, self._specialty(session.specialty_id).competency_levels[0])
            self.store.save_session(session)
        logger.info("Reset session %s to baseline", session_id)
        return session
