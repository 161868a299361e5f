"""
competency_training/database.py — Persistence layer for the training engine
=============================================================================
One repository abstraction, ``TrainingStore``, with exactly two
implementations:

  SqliteTrainingStore     production backing store (standard-library sqlite3)
  InMemoryTrainingStore   dict-backed test double with identical semantics

Both are the single source of truth for agents, specialties, sessions,
tests, attempts and knowledge entries.  Nothing else in the package keeps
a second copy of session state.

Design decisions
----------------
- **Versioned session rows** — ``save_session(session, expected_version)``
  is a compare-and-swap.  It writes only when the stored version still
  equals ``expected_version`` and bumps it by one; otherwise it raises
  ``ConcurrencyConflict``.  Plain inserts start at version 0.
- **Atomic transitions** — ``commit_transition`` checks the session version
  first and writes the attempt, any knowledge entry and the session row in
  one transaction, so a lost CAS leaves no attempt behind.
- **JSON text columns** — list-valued fields (ladders, questions, answers,
  feedback, tags) are stored as JSON TEXT, as with every other blob in
  this project.
- **WAL journal mode / one connection per operation** — the scheduler's
  worker threads each open their own short-lived connection, so
  ``check_same_thread=False`` is never relied on for sharing.
- **Copies out, copies in** — the in-memory store deep-copies on every read
  and write so callers can never mutate stored state behind the CAS check.

Tables (see ``_SCHEMA`` for the full CREATE statements)
-------------------------------------------------------
  agents             id, name, description
  specialties        id, name, domain, competency_levels_json, …
  training_sessions  id, agent_id, specialty_id, …, version
  training_tests     id, session_id, questions_json, passing_score, …
  test_attempts      id, test_id, session_id, attempt_number, …
  knowledge_entries  id, agent_id, specialty_id, content, source, …
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .errors import ConcurrencyConflict, NotFoundError
from .models import (
    Agent,
    Answer,
    CompletionReason,
    KnowledgeEntry,
    Phase,
    Question,
    SessionStatus,
    Specialty,
    TestAttempt,
    TrainingSession,
    TrainingTest,
)


# ─── Repository interface ────────────────────────────────────────────────────

class TrainingStore(ABC):
    """Authoritative storage for every training-engine entity."""

    # agents
    @abstractmethod
    def save_agent(self, agent: Agent) -> None: ...
    @abstractmethod
    def get_agent(self, agent_id: str) -> Optional[Agent]: ...
    @abstractmethod
    def list_agents(self) -> list[Agent]: ...

    # specialties
    @abstractmethod
    def insert_specialty(self, specialty: Specialty) -> None: ...
    @abstractmethod
    def update_specialty(self, specialty: Specialty) -> None: ...
    @abstractmethod
    def get_specialty(self, specialty_id: str) -> Optional[Specialty]: ...
    @abstractmethod
    def list_specialties(self, include_archived: bool = False) -> list[Specialty]: ...
    @abstractmethod
    def delete_specialty(self, specialty_id: str) -> None: ...

    # sessions
    @abstractmethod
    def insert_session(self, session: TrainingSession) -> None: ...
    @abstractmethod
    def get_session(self, session_id: str) -> Optional[TrainingSession]: ...
    @abstractmethod
    def list_sessions(
        self,
        agent_id: Optional[str] = None,
        specialty_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[TrainingSession]: ...
    @abstractmethod
    def save_session(
        self, session: TrainingSession, expected_version: Optional[int] = None
    ) -> TrainingSession: ...
    @abstractmethod
    def commit_transition(
        self,
        session: TrainingSession,
        attempt: TestAttempt,
        knowledge: Optional[KnowledgeEntry] = None,
    ) -> TrainingSession:
        """
        Versioned session write plus the attempt (and study entry) it came
        from, applied together or not at all.
        """

    # tests & attempts
    @abstractmethod
    def insert_test(self, test: TrainingTest) -> None: ...
    @abstractmethod
    def get_test(self, test_id: str) -> Optional[TrainingTest]: ...
    @abstractmethod
    def list_tests(self, session_id: str) -> list[TrainingTest]: ...
    @abstractmethod
    def insert_attempt(self, attempt: TestAttempt) -> None: ...
    @abstractmethod
    def list_attempts(
        self, session_id: Optional[str] = None, test_id: Optional[str] = None
    ) -> list[TestAttempt]: ...

    # knowledge
    @abstractmethod
    def insert_knowledge(self, entry: KnowledgeEntry) -> None: ...
    @abstractmethod
    def list_knowledge(self, agent_id: str) -> list[KnowledgeEntry]: ...

    # cascades
    @abstractmethod
    def delete_session_records(self, session_id: str) -> None:
        """Remove a session together with its tests, attempts and knowledge entries."""

    # derived helpers shared by both implementations

    def latest_test(self, session_id: str) -> Optional[TrainingTest]:
        tests = self.list_tests(session_id)
        return tests[-1] if tests else None

    def latest_attempt(self, session_id: str) -> Optional[TestAttempt]:
        attempts = self.list_attempts(session_id=session_id)
        return attempts[-1] if attempts else None

    def next_attempt_number(self, test_id: str) -> int:
        return len(self.list_attempts(test_id=test_id)) + 1

    def require_session(self, session_id: str) -> TrainingSession:
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session


# ─── Serialisation helpers ───────────────────────────────────────────────────

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _questions_to_json(questions: list[Question]) -> str:
    return json.dumps([q.model_dump(mode="json") for q in questions])


def _questions_from_json(raw: str) -> list[Question]:
    return [Question.model_validate(q) for q in json.loads(raw or "[]")]


def _specialty_from_row(row: sqlite3.Row) -> Specialty:
    return Specialty(
        id                 = row["id"],
        name               = row["name"],
        domain             = row["domain"],
        competency_levels  = json.loads(row["competency_levels_json"]),
        required_knowledge = json.loads(row["required_knowledge_json"] or "[]"),
        description        = row["description"] or "",
        is_archived        = bool(row["is_archived"]),
        created_at         = _parse_ts(row["created_at"]),
    )


def _session_from_row(row: sqlite3.Row) -> TrainingSession:
    return TrainingSession(
        id                       = row["id"],
        agent_id                 = row["agent_id"],
        specialty_id             = row["specialty_id"],
        target_competency_level  = row["target_competency_level"],
        current_competency_level = row["current_competency_level"],
        max_iterations           = row["max_iterations"],
        status                   = SessionStatus(row["status"]),
        progress                 = row["progress"],
        current_iteration        = row["current_iteration"],
        current_phase            = Phase(row["current_phase"]),
        last_processed_phase     = Phase(row["last_processed_phase"]) if row["last_processed_phase"] else None,
        last_processed_time      = row["last_processed_time"],
        started_at               = _parse_ts(row["started_at"]),
        completed_at             = _parse_ts(row["completed_at"]),
        completion_reason        = CompletionReason(row["completion_reason"]) if row["completion_reason"] else None,
        version                  = row["version"],
    )


def _test_from_row(row: sqlite3.Row) -> TrainingTest:
    return TrainingTest(
        id               = row["id"],
        session_id       = row["session_id"],
        test_type        = row["test_type"],
        questions        = _questions_from_json(row["questions_json"]),
        passing_score    = row["passing_score"],
        difficulty       = row["difficulty"],
        competency_level = row["competency_level"],
        iteration        = row["iteration"],
        created_at       = _parse_ts(row["created_at"]),
    )


def _attempt_from_row(row: sqlite3.Row) -> TestAttempt:
    return TestAttempt(
        id               = row["id"],
        test_id          = row["test_id"],
        session_id       = row["session_id"],
        attempt_number   = row["attempt_number"],
        answers          = tuple(Answer(**a) for a in json.loads(row["answers_json"])),
        score            = row["score"],
        passed           = bool(row["passed"]),
        feedback         = tuple(json.loads(row["feedback_json"])),
        competency_level = row["competency_level"],
        completed_at     = _parse_ts(row["completed_at"]),
    )


def _knowledge_from_row(row: sqlite3.Row) -> KnowledgeEntry:
    return KnowledgeEntry(
        id           = row["id"],
        agent_id     = row["agent_id"],
        content      = row["content"],
        source       = row["source"],
        confidence   = row["confidence"],
        tags         = json.loads(row["tags_json"] or "[]"),
        category     = row["category"],
        specialty_id = row["specialty_id"],
        created_at   = _parse_ts(row["created_at"]),
    )


_SESSION_COLUMNS = (
    "agent_id", "specialty_id", "target_competency_level", "current_competency_level",
    "max_iterations", "status", "progress", "current_iteration", "current_phase",
    "last_processed_phase", "last_processed_time", "started_at", "completed_at",
    "completion_reason",
)


def _session_values(s: TrainingSession) -> tuple:
    return (
        s.agent_id, s.specialty_id, s.target_competency_level, s.current_competency_level,
        s.max_iterations, s.status.value, s.progress, s.current_iteration, s.current_phase.value,
        s.last_processed_phase.value if s.last_processed_phase else None,
        s.last_processed_time, _ts(s.started_at), _ts(s.completed_at),
        s.completion_reason.value if s.completion_reason else None,
    )


# ─── SQLite implementation ───────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    description TEXT DEFAULT ''
);
CREATE TABLE IF NOT EXISTS specialties (
    id                      TEXT PRIMARY KEY,
    name                    TEXT NOT NULL,
    domain                  TEXT NOT NULL,
    competency_levels_json  TEXT NOT NULL,
    required_knowledge_json TEXT,
    description             TEXT DEFAULT '',
    is_archived             INTEGER DEFAULT 0,
    created_at              TEXT
);
CREATE TABLE IF NOT EXISTS training_sessions (
    id                       TEXT PRIMARY KEY,
    agent_id                 TEXT NOT NULL,
    specialty_id             TEXT NOT NULL,
    target_competency_level  TEXT NOT NULL,
    current_competency_level TEXT NOT NULL,
    max_iterations           INTEGER NOT NULL,
    status                   TEXT NOT NULL,
    progress                 INTEGER NOT NULL DEFAULT 0,
    current_iteration        INTEGER NOT NULL DEFAULT 1,
    current_phase            TEXT NOT NULL DEFAULT 'study',
    last_processed_phase     TEXT,
    last_processed_time      INTEGER,
    started_at               TEXT,
    completed_at             TEXT,
    completion_reason        TEXT,
    version                  INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS training_tests (
    id               TEXT PRIMARY KEY,
    session_id       TEXT NOT NULL,
    test_type        TEXT NOT NULL,
    questions_json   TEXT NOT NULL,
    passing_score    INTEGER NOT NULL,
    difficulty       TEXT,
    competency_level TEXT NOT NULL,
    iteration        INTEGER NOT NULL DEFAULT 1,
    created_at       TEXT
);
CREATE TABLE IF NOT EXISTS test_attempts (
    id               TEXT PRIMARY KEY,
    test_id          TEXT NOT NULL,
    session_id       TEXT NOT NULL,
    attempt_number   INTEGER NOT NULL,
    answers_json     TEXT NOT NULL,
    score            INTEGER NOT NULL,
    passed           INTEGER NOT NULL,
    feedback_json    TEXT NOT NULL,
    competency_level TEXT NOT NULL,
    completed_at     TEXT
);
CREATE TABLE IF NOT EXISTS knowledge_entries (
    id           TEXT PRIMARY KEY,
    agent_id     TEXT NOT NULL,
    specialty_id TEXT,
    content      TEXT NOT NULL,
    source       TEXT NOT NULL,
    confidence   INTEGER NOT NULL,
    tags_json    TEXT,
    category     TEXT DEFAULT 'general',
    created_at   TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON training_sessions(status);
CREATE INDEX IF NOT EXISTS idx_tests_session   ON training_tests(session_id);
CREATE INDEX IF NOT EXISTS idx_attempts_session ON test_attempts(session_id);
CREATE INDEX IF NOT EXISTS idx_knowledge_agent ON knowledge_entries(agent_id);
"""


class SqliteTrainingStore(TrainingStore):
    """sqlite3-backed store; the database file is created on first use."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self.init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Return a connection with row_factory set."""
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """One connection, one transaction: commit on success, rollback on error."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._tx() as conn:
            conn.executescript(_SCHEMA)

    # ── agents ────────────────────────────────────────────────────────────

    def save_agent(self, agent: Agent) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO agents (id, name, description) VALUES (?, ?, ?)",
                (agent.id, agent.name, agent.description),
            )

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return Agent(row["id"], row["name"], row["description"] or "") if row else None

    def list_agents(self) -> list[Agent]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM agents ORDER BY name").fetchall()
        return [Agent(r["id"], r["name"], r["description"] or "") for r in rows]

    # ── specialties ───────────────────────────────────────────────────────

    def insert_specialty(self, specialty: Specialty) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO specialties
                    (id, name, domain, competency_levels_json, required_knowledge_json,
                     description, is_archived, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    specialty.id, specialty.name, specialty.domain,
                    json.dumps(specialty.competency_levels),
                    json.dumps(specialty.required_knowledge),
                    specialty.description, int(specialty.is_archived),
                    _ts(specialty.created_at),
                ),
            )

    def update_specialty(self, specialty: Specialty) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE specialties SET
                    name = ?, domain = ?, competency_levels_json = ?,
                    required_knowledge_json = ?, description = ?, is_archived = ?
                WHERE id = ?
                """,
                (
                    specialty.name, specialty.domain,
                    json.dumps(specialty.competency_levels),
                    json.dumps(specialty.required_knowledge),
                    specialty.description, int(specialty.is_archived),
                    specialty.id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError("specialty", specialty.id)

    def get_specialty(self, specialty_id: str) -> Optional[Specialty]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM specialties WHERE id = ?", (specialty_id,)
            ).fetchone()
        return _specialty_from_row(row) if row else None

    def list_specialties(self, include_archived: bool = False) -> list[Specialty]:
        sql = "SELECT * FROM specialties"
        if not include_archived:
            sql += " WHERE is_archived = 0"
        with self._tx() as conn:
            rows = conn.execute(sql + " ORDER BY name").fetchall()
        return [_specialty_from_row(r) for r in rows]

    def delete_specialty(self, specialty_id: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM specialties WHERE id = ?", (specialty_id,))

    # ── sessions ──────────────────────────────────────────────────────────

    def insert_session(self, session: TrainingSession) -> None:
        cols = ", ".join(("id",) + _SESSION_COLUMNS + ("version",))
        marks = ", ".join("?" * (len(_SESSION_COLUMNS) + 2))
        with self._tx() as conn:
            conn.execute(
                f"INSERT INTO training_sessions ({cols}) VALUES ({marks})",
                (session.id,) + _session_values(session) + (session.version,),
            )

    def get_session(self, session_id: str) -> Optional[TrainingSession]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM training_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def list_sessions(
        self,
        agent_id: Optional[str] = None,
        specialty_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[TrainingSession]:
        clauses, params = [], []
        if agent_id is not None:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if specialty_id is not None:
            clauses.append("specialty_id = ?")
            params.append(specialty_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(SessionStatus(status).value)
        sql = "SELECT * FROM training_sessions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._tx() as conn:
            rows = conn.execute(sql + " ORDER BY started_at, rowid", params).fetchall()
        return [_session_from_row(r) for r in rows]

    @staticmethod
    def _cas_update(conn: sqlite3.Connection, session: TrainingSession, expected: int) -> None:
        assignments = ", ".join(f"{c} = ?" for c in _SESSION_COLUMNS)
        cur = conn.execute(
            f"UPDATE training_sessions SET {assignments}, version = ? "
            "WHERE id = ? AND version = ?",
            _session_values(session) + (expected + 1, session.id, expected),
        )
        if cur.rowcount == 0:
            row = conn.execute(
                "SELECT version FROM training_sessions WHERE id = ?", (session.id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("session", session.id)
            raise ConcurrencyConflict(session.id, expected, row["version"])

    def save_session(
        self, session: TrainingSession, expected_version: Optional[int] = None
    ) -> TrainingSession:
        expected = session.version if expected_version is None else expected_version
        with self._tx() as conn:
            self._cas_update(conn, session, expected)
        session.version = expected + 1
        return session

    def commit_transition(
        self,
        session: TrainingSession,
        attempt: TestAttempt,
        knowledge: Optional[KnowledgeEntry] = None,
    ) -> TrainingSession:
        expected = session.version
        with self._tx() as conn:
            self._cas_update(conn, session, expected)
            self._insert_attempt(conn, attempt)
            if knowledge is not None:
                self._insert_knowledge(conn, knowledge)
        session.version = expected + 1
        return session

    # ── tests & attempts ──────────────────────────────────────────────────

    def insert_test(self, test: TrainingTest) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO training_tests
                    (id, session_id, test_type, questions_json, passing_score,
                     difficulty, competency_level, iteration, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    test.id, test.session_id, test.test_type,
                    _questions_to_json(test.questions), test.passing_score,
                    test.difficulty, test.competency_level, test.iteration,
                    _ts(test.created_at),
                ),
            )

    def get_test(self, test_id: str) -> Optional[TrainingTest]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM training_tests WHERE id = ?", (test_id,)).fetchone()
        return _test_from_row(row) if row else None

    def list_tests(self, session_id: str) -> list[TrainingTest]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM training_tests WHERE session_id = ? ORDER BY rowid",
                (session_id,),
            ).fetchall()
        return [_test_from_row(r) for r in rows]

    def insert_attempt(self, attempt: TestAttempt) -> None:
        with self._tx() as conn:
            self._insert_attempt(conn, attempt)

    @staticmethod
    def _insert_attempt(conn: sqlite3.Connection, attempt: TestAttempt) -> None:
        conn.execute(
            """
            INSERT INTO test_attempts
                (id, test_id, session_id, attempt_number, answers_json, score,
                 passed, feedback_json, competency_level, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attempt.id, attempt.test_id, attempt.session_id, attempt.attempt_number,
                json.dumps([{"question_id": a.question_id, "answer": a.answer}
                            for a in attempt.answers]),
                attempt.score, int(attempt.passed), json.dumps(list(attempt.feedback)),
                attempt.competency_level, _ts(attempt.completed_at),
            ),
        )

    def list_attempts(
        self, session_id: Optional[str] = None, test_id: Optional[str] = None
    ) -> list[TestAttempt]:
        clauses, params = [], []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if test_id is not None:
            clauses.append("test_id = ?")
            params.append(test_id)
        sql = "SELECT * FROM test_attempts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._tx() as conn:
            rows = conn.execute(sql + " ORDER BY rowid", params).fetchall()
        return [_attempt_from_row(r) for r in rows]

    # ── knowledge ─────────────────────────────────────────────────────────

    def insert_knowledge(self, entry: KnowledgeEntry) -> None:
        with self._tx() as conn:
            self._insert_knowledge(conn, entry)

    @staticmethod
    def _insert_knowledge(conn: sqlite3.Connection, entry: KnowledgeEntry) -> None:
        conn.execute(
            """
            INSERT INTO knowledge_entries
                (id, agent_id, specialty_id, content, source, confidence,
                 tags_json, category, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id, entry.agent_id, entry.specialty_id, entry.content,
                entry.source, entry.confidence, json.dumps(entry.tags),
                entry.category, _ts(entry.created_at),
            ),
        )

    def list_knowledge(self, agent_id: str) -> list[KnowledgeEntry]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM knowledge_entries WHERE agent_id = ? ORDER BY rowid",
                (agent_id,),
            ).fetchall()
        return [_knowledge_from_row(r) for r in rows]

    # ── cascades ──────────────────────────────────────────────────────────

    def delete_session_records(self, session_id: str) -> None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT agent_id, specialty_id FROM training_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            conn.execute("DELETE FROM test_attempts  WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM training_tests WHERE session_id = ?", (session_id,))
            if row is not None:
                conn.execute(
                    "DELETE FROM knowledge_entries WHERE agent_id = ? AND specialty_id = ?",
                    (row["agent_id"], row["specialty_id"]),
                )
            conn.execute("DELETE FROM training_sessions WHERE id = ?", (session_id,))


# ─── In-memory implementation (test double) ──────────────────────────────────

class InMemoryTrainingStore(TrainingStore):
    """Dict-backed store with the same semantics as SqliteTrainingStore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._agents:      dict[str, Agent] = {}
        self._specialties: dict[str, Specialty] = {}
        self._sessions:    dict[str, TrainingSession] = {}
        self._tests:       dict[str, TrainingTest] = {}
        self._attempts:    dict[str, TestAttempt] = {}
        self._knowledge:   dict[str, KnowledgeEntry] = {}

    # ── agents ────────────────────────────────────────────────────────────

    def save_agent(self, agent: Agent) -> None:
        with self._lock:
            self._agents[agent.id] = agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            return self._agents.get(agent_id)

    def list_agents(self) -> list[Agent]:
        with self._lock:
            return sorted(self._agents.values(), key=lambda a: a.name)

    # ── specialties ───────────────────────────────────────────────────────

    def insert_specialty(self, specialty: Specialty) -> None:
        with self._lock:
            if specialty.id in self._specialties:
                raise sqlite3.IntegrityError(f"specialty '{specialty.id}' already exists")
            self._specialties[specialty.id] = copy.deepcopy(specialty)

    def update_specialty(self, specialty: Specialty) -> None:
        with self._lock:
            if specialty.id not in self._specialties:
                raise NotFoundError("specialty", specialty.id)
            self._specialties[specialty.id] = copy.deepcopy(specialty)

    def get_specialty(self, specialty_id: str) -> Optional[Specialty]:
        with self._lock:
            return copy.deepcopy(self._specialties.get(specialty_id))

    def list_specialties(self, include_archived: bool = False) -> list[Specialty]:
        with self._lock:
            items = [s for s in self._specialties.values() if include_archived or not s.is_archived]
            return copy.deepcopy(sorted(items, key=lambda s: s.name))

    def delete_specialty(self, specialty_id: str) -> None:
        with self._lock:
            self._specialties.pop(specialty_id, None)

    # ── sessions ──────────────────────────────────────────────────────────

    def insert_session(self, session: TrainingSession) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise sqlite3.IntegrityError(f"session '{session.id}' already exists")
            self._sessions[session.id] = copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[TrainingSession]:
        with self._lock:
            return copy.deepcopy(self._sessions.get(session_id))

    def list_sessions(
        self,
        agent_id: Optional[str] = None,
        specialty_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[TrainingSession]:
        with self._lock:
            items = [
                s for s in self._sessions.values()
                if (agent_id is None or s.agent_id == agent_id)
                and (specialty_id is None or s.specialty_id == specialty_id)
                and (status is None or s.status == status)
            ]
            return copy.deepcopy(items)

    def save_session(
        self, session: TrainingSession, expected_version: Optional[int] = None
    ) -> TrainingSession:
        expected = session.version if expected_version is None else expected_version
        with self._lock:
            stored = self._sessions.get(session.id)
            if stored is None:
                raise NotFoundError("session", session.id)
            if stored.version != expected:
                raise ConcurrencyConflict(session.id, expected, stored.version)
            session.version = expected + 1
            self._sessions[session.id] = copy.deepcopy(session)
        return session

    def commit_transition(
        self,
        session: TrainingSession,
        attempt: TestAttempt,
        knowledge: Optional[KnowledgeEntry] = None,
    ) -> TrainingSession:
        expected = session.version
        with self._lock:
            stored = self._sessions.get(session.id)
            if stored is None:
                raise NotFoundError("session", session.id)
            if stored.version != expected:
                raise ConcurrencyConflict(session.id, expected, stored.version)
            self._attempts[attempt.id] = attempt
            if knowledge is not None:
                self._knowledge[knowledge.id] = copy.deepcopy(knowledge)
            session.version = expected + 1
            self._sessions[session.id] = copy.deepcopy(session)
        return session

    # ── tests & attempts ──────────────────────────────────────────────────

    def insert_test(self, test: TrainingTest) -> None:
        with self._lock:
            self._tests[test.id] = copy.deepcopy(test)

    def get_test(self, test_id: str) -> Optional[TrainingTest]:
        with self._lock:
            return copy.deepcopy(self._tests.get(test_id))

    def list_tests(self, session_id: str) -> list[TrainingTest]:
        with self._lock:
            return copy.deepcopy([t for t in self._tests.values() if t.session_id == session_id])

    def insert_attempt(self, attempt: TestAttempt) -> None:
        with self._lock:
            self._attempts[attempt.id] = attempt

    def list_attempts(
        self, session_id: Optional[str] = None, test_id: Optional[str] = None
    ) -> list[TestAttempt]:
        with self._lock:
            return [
                a for a in self._attempts.values()
                if (session_id is None or a.session_id == session_id)
                and (test_id is None or a.test_id == test_id)
            ]

    # ── knowledge ─────────────────────────────────────────────────────────

    def insert_knowledge(self, entry: KnowledgeEntry) -> None:
        with self._lock:
            self._knowledge[entry.id] = copy.deepcopy(entry)

    def list_knowledge(self, agent_id: str) -> list[KnowledgeEntry]:
        with self._lock:
            return copy.deepcopy([k for k in self._knowledge.values() if k.agent_id == agent_id])

    # ── cascades ──────────────────────────────────────────────────────────

    def delete_session_records(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            self._attempts = {k: a for k, a in self._attempts.items() if a.session_id != session_id}
            self._tests = {k: t for k, t in self._tests.items() if t.session_id != session_id}
            if session is not None:
                self._knowledge = {
                    k: e for k, e in self._knowledge.items()
                    if not (e.agent_id == session.agent_id and e.specialty_id == session.specialty_id)
                }
