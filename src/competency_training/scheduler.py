"""
scheduler.py — Background progression of training sessions
============================================================
``BackgroundProgressionScheduler`` advances every eligible in-progress
session without operator input.

Phase state machine
-------------------
Time is a ``LogicalClock`` that moves forward by one on every tick.  Each
session cycles study → practice → test → review → study … and moves to
its next phase once ``clock − last_processed_time ≥ ticks_per_phase`` (or
immediately, into its current phase, if it has never been processed).
The orchestrator runs exactly once per cycle, on the transition into
``test``.  ``last_processed_phase`` / ``last_processed_time`` live on the
session row, so a second tick inside the same window changes nothing.

Concurrency
-----------
Sessions are processed on a bounded ``ThreadPoolExecutor`` (one task per
session, ``max_workers`` caps concurrent provider calls).  A session whose
previous task is still running is skipped.  Each task re-reads the session
and checks its status under the session lock immediately before touching
it, so a concurrent pause always wins.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from .answers import AnswerSource
from .database import TrainingStore
from .directory import AgentDirectory
from .errors import TrainingError
from .models import Phase, SessionStatus, TrainingSession
from .orchestrator import IterationOutcome, TrainingOrchestrator

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME_PATTERNS: list[re.Pattern] = [
    re.compile(r"catalyst", re.IGNORECASE),
    re.compile(r"builder", re.IGNORECASE),
    re.compile(r"assessor", re.IGNORECASE),
    re.compile(r"\d{3,4}$"),
    re.compile(r"test agent", re.IGNORECASE),
    re.compile(r"demo agent", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
]


class LogicalClock:
    """Monotonic tick counter; starts at 0."""

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._value

    def advance(self, ticks: int = 1) -> int:
        with self._lock:
            self._value += ticks
            return self._value


class LegitimacyFilter:
    """
    Keeps demo / placeholder sessions away from the external provider.

    Sessions missing required fields are always rejected.  The agent-name
    patterns are advisory and switched off with ``check_names=False``.
    """

    def __init__(
        self,
        directory: AgentDirectory,
        check_names: bool = True,
        patterns: Optional[list[re.Pattern]] = None,
    ) -> None:
        self.directory = directory
        self.check_names = check_names
        self.patterns = PLACEHOLDER_NAME_PATTERNS if patterns is None else patterns

    def is_legitimate(self, session: TrainingSession) -> bool:
        if not (session.agent_id and session.specialty_id
                and session.target_competency_level and session.started_at):
            logger.debug("Skipping session %s: missing required fields", session.id)
            return False
        if not self.check_names:
            return True
        try:
            name = self.directory.get_agent(session.agent_id).name
        except TrainingError:
            logger.debug("Skipping session %s: agent %s unknown", session.id, session.agent_id)
            return False
        if any(p.search(name) for p in self.patterns):
            logger.debug("Skipping placeholder session %s with agent %r", session.id, name)
            return False
        return True


@dataclass
class SessionStep:
    session_id: str
    phase:      Optional[Phase]                 # None when nothing changed
    outcome:    Optional[IterationOutcome] = None


@dataclass
class TickReport:
    tick:        int
    candidates:  int = 0
    filtered:    list[str] = field(default_factory=list)
    busy:        list[str] = field(default_factory=list)
    submitted:   list[str] = field(default_factory=list)
    steps:       list[SessionStep] = field(default_factory=list)
    errors:      list[str] = field(default_factory=list)

    @property
    def iterations(self) -> list[IterationOutcome]:
        return [s.outcome for s in self.steps if s.outcome is not None]


class BackgroundProgressionScheduler:
    def __init__(
        self,
        store: TrainingStore,
        orchestrator: TrainingOrchestrator,
        legitimacy: LegitimacyFilter,
        clock: Optional[LogicalClock] = None,
        answer_source: Optional[AnswerSource] = None,
        ticks_per_phase: int = 2,
        max_workers: int = 4,
        interval_seconds: float = 30.0,
    ) -> None:
        if ticks_per_phase < 1:
            raise ValueError("ticks_per_phase must be ≥ 1")
        self.store = store
        self.orchestrator = orchestrator
        self.legitimacy = legitimacy
        self.clock = clock or LogicalClock()
        self.answer_source = answer_source
        self.ticks_per_phase = ticks_per_phase
        self.max_workers = max_workers
        self.interval_seconds = interval_seconds

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="training-worker")
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── one tick ──────────────────────────────────────────────────────────

    def tick(self, wait: bool = True) -> TickReport:
        """
        Advance the clock and dispatch every eligible session.

        With ``wait=True`` the call returns after all dispatched tasks have
        finished and the report includes their steps.
        """
        with self._tick_lock:
            now = self.clock.advance()
            report = TickReport(tick=now)
            futures: list[tuple[str, Future]] = []

            sessions = self.store.list_sessions(status=SessionStatus.IN_PROGRESS)
            report.candidates = len(sessions)
            for session in sessions:
                if not self.legitimacy.is_legitimate(session):
                    report.filtered.append(session.id)
                    continue
                with self._in_flight_lock:
                    if session.id in self._in_flight:
                        report.busy.append(session.id)
                        continue
                    self._in_flight.add(session.id)
                future = self._executor.submit(self._process, session.id, now)
                futures.append((session.id, future))
                report.submitted.append(session.id)

        logger.debug(
            "Tick %d: %d candidate(s), %d filtered, %d busy, %d dispatched",
            now, report.candidates, len(report.filtered), len(report.busy), len(report.submitted),
        )
        if wait:
            for sid, future in futures:
                try:
                    report.steps.append(future.result())
                except Exception:  # noqa: BLE001
                    report.errors.append(sid)
        return report

    def _release(self, session_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(session_id)

    def _process(self, session_id: str, now: int) -> SessionStep:
        try:
            return self._advance(session_id, now)
        except Exception:
            logger.exception("Scheduler failed while processing session %s", session_id)
            raise
        finally:
            self._release(session_id)

    def _advance(self, session_id: str, now: int) -> SessionStep:
        with self.orchestrator.locks.hold(session_id):
            session = self.store.get_session(session_id)
            if session is None or session.status != SessionStatus.IN_PROGRESS:
                return SessionStep(session_id, None)
            if (
                session.last_processed_time is not None
                and now - session.last_processed_time < self.ticks_per_phase
            ):
                return SessionStep(session_id, None)

            if session.last_processed_phase is None:
                phase = session.current_phase
            else:
                phase = session.last_processed_phase.next()
            session.current_phase = phase
            session.last_processed_phase = phase
            session.last_processed_time = now
            self.store.save_session(session)
            logger.debug("Session %s entered %s phase at tick %d", session_id, phase.value, now)

            outcome = None
            if phase == Phase.TEST:
                outcome = self.orchestrator.run_iteration(session_id, self.answer_source)
            return SessionStep(session_id, phase, outcome)

    # ── background loop ───────────────────────────────────────────────────

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick(wait=False)
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(self.interval_seconds)

    def start(self) -> None:
        if self.is_running:
            logger.info("Scheduler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="training-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Scheduler started: every %.0fs, %d tick(s) per phase, %d worker(s)",
            self.interval_seconds, self.ticks_per_phase, self.max_workers,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Scheduler stopped")

    def run(self, ticks: Optional[int] = None) -> list[TickReport]:
        """Run in the foreground for *ticks* ticks, or until ``stop()``."""
        reports: list[TickReport] = []
        self._stop_event.clear()
        while ticks is None or len(reports) < ticks:
            reports.append(self.tick(wait=True))
            if ticks is not None and len(reports) >= ticks:
                break
            if self._stop_event.wait(self.interval_seconds):
                break
        return reports

    def shutdown(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> dict:
        return {
            "is_running":       self.is_running,
            "interval_seconds": self.interval_seconds,
            "ticks_per_phase":  self.ticks_per_phase,
            "max_workers":      self.max_workers,
            "clock":            self.clock.now(),
        }
