"""
service.py — Public interface of the training engine
=====================================================
``TrainingService`` is what callers (the CLI, an HTTP layer, a notebook)
talk to.  It owns no state of its own: specialty CRUD goes to the
registry, every session mutation goes to the orchestrator, and reads go
straight to the store.

Operations
----------
  specialties   create / get / list / update / delete / seed
  agents        register / get / list
  sessions      start / get / list (by agent or globally)
  tests         generate / get / list
  attempts      submit, run one unattended iteration
  progress      get_training_progress → TrainingProgress
  admin         pause / resume / fail / reset
"""

from __future__ import annotations

from typing import Optional

from .database import TrainingStore
from .directory import CachedAgentDirectory
from .errors import NotFoundError
from .models import (
    Agent,
    Answer,
    CompletionReason,
    SessionStatus,
    Specialty,
    TestAttempt,
    TrainingProgress,
    TrainingSession,
    TrainingTest,
)
from .orchestrator import IterationOutcome, TrainingOrchestrator
from .registry import SpecialtyRegistry, seed_default_specialties
from .scheduler import BackgroundProgressionScheduler


def next_steps(
    session: TrainingSession,
    latest: Optional[TestAttempt],
) -> list[str]:
    """Human-readable guidance for the session's current position."""
    level = session.current_competency_level
    if session.status == SessionStatus.FAILED:
        return [f"Training stopped at {level} level", "Start a new session to resume training"]
    if session.completion_reason == CompletionReason.ITERATION_CAP:
        return [
            f"Iteration budget exhausted at {level} level",
            "Start a new session with a larger budget to continue",
        ]
    if latest is None:
        return [
            "Generate initial competency test",
            f"Begin learning phase for {level} level",
        ]
    if not latest.passed:
        return [
            "Review failed test areas",
            "Additional study required",
            "Retake competency test",
        ]
    if not session.is_terminal and latest.competency_level != session.target_competency_level:
        return [
            "Advance to next competency level",
            f"Generate test for {level} level",
        ]
    return ["Training complete - competency achieved"]


class TrainingService:
    def __init__(
        self,
        store: TrainingStore,
        registry: SpecialtyRegistry,
        directory: CachedAgentDirectory,
        orchestrator: TrainingOrchestrator,
        scheduler: Optional[BackgroundProgressionScheduler] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.directory = directory
        self.orchestrator = orchestrator
        self.scheduler = scheduler

    # ── specialties ───────────────────────────────────────────────────────

    def create_specialty(self, name: str, domain: str, competency_levels: Optional[list[str]] = None,
                         required_knowledge: Optional[list[str]] = None, description: str = "",
                         specialty_id: Optional[str] = None) -> Specialty:
        return self.registry.create(
            name, domain, competency_levels, required_knowledge, description, specialty_id
        )

    def get_specialty(self, specialty_id: str) -> Specialty:
        return self.registry.get(specialty_id)

    def list_specialties(self, include_archived: bool = False) -> list[Specialty]:
        return self.registry.list(include_archived=include_archived)

    def update_specialty(self, specialty_id: str, **changes) -> Specialty:
        return self.registry.update(specialty_id, **changes)

    def delete_specialty(self, specialty_id: str) -> int:
        return self.registry.delete(specialty_id)

    def seed_specialties(self) -> list[Specialty]:
        return seed_default_specialties(self.registry)

    # ── agents ────────────────────────────────────────────────────────────

    def register_agent(self, agent_id: str, name: str, description: str = "") -> Agent:
        return self.directory.register(Agent(agent_id, name, description))

    def get_agent(self, agent_id: str) -> Agent:
        return self.directory.get_agent(agent_id)

    def list_agents(self) -> list[Agent]:
        return self.directory.get_all_agents()

    # ── sessions ──────────────────────────────────────────────────────────

    def start_training(
        self,
        agent_id: str,
        specialty_id: str,
        target_level: str,
        max_iterations: Optional[int] = None,
    ) -> TrainingSession:
        return self.orchestrator.start_session(agent_id, specialty_id, target_level, max_iterations)

    def get_session(self, session_id: str) -> TrainingSession:
        return self.store.require_session(session_id)

    def list_sessions(
        self,
        agent_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[TrainingSession]:
        if agent_id is not None:
            self.directory.get_agent(agent_id)
        return self.store.list_sessions(agent_id=agent_id, status=status)

    # ── tests & attempts ──────────────────────────────────────────────────

    def generate_test(self, session_id: str) -> TrainingTest:
        return self.orchestrator.generate_test(session_id)

    def get_test(self, test_id: str) -> TrainingTest:
        test = self.store.get_test(test_id)
        if test is None:
            raise NotFoundError("test", test_id)
        return test

    def list_tests(self, session_id: str) -> list[TrainingTest]:
        self.store.require_session(session_id)
        return self.store.list_tests(session_id)

    def submit_test_attempt(self, session_id: str, test_id: str, answers: list[Answer]) -> IterationOutcome:
        return self.orchestrator.submit_attempt(session_id, test_id, answers)

    def run_iteration(self, session_id: str) -> IterationOutcome:
        return self.orchestrator.run_iteration(session_id)

    # ── progress ──────────────────────────────────────────────────────────

    def get_training_progress(self, session_id: str) -> TrainingProgress:
        session = self.store.require_session(session_id)
        attempts = self.store.list_attempts(session_id=session_id)
        latest = attempts[-1] if attempts else None
        return TrainingProgress(
            session=session,
            current_test=self.store.latest_test(session_id),
            latest_attempt=latest,
            next_steps=next_steps(session, latest),
            tests_passed=sum(1 for a in attempts if a.passed),
            total_attempts=len(attempts),
        )

    # ── administrative transitions ────────────────────────────────────────

    def pause_session(self, session_id: str) -> TrainingSession:
        return self.orchestrator.pause_session(session_id)

    def resume_session(self, session_id: str) -> TrainingSession:
        return self.orchestrator.resume_session(session_id)

    def fail_session(self, session_id: str) -> TrainingSession:
        return self.orchestrator.fail_session(session_id)

    def reset_session(self, session_id: str) -> TrainingSession:
        return self.orchestrator.reset_session(session_id)
