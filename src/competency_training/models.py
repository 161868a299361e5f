"""
Data models for the Competency Training Engine.

Entities (Specialty, TrainingSession, TrainingTest, TestAttempt, …) are
plain dataclasses owned by the store.  Question is a Pydantic model because
it is parsed straight out of LLM JSON and must be validated on the way in.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─── Enumerations ────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    """Lifecycle of a training session."""
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"   # terminal
    FAILED      = "failed"      # terminal, administrative only
    PAUSED      = "paused"      # re-entrant via resume
    RESET       = "reset"       # re-entrant via resume, re-baselined

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class Phase(str, Enum):
    """The four sub-steps the scheduler cycles through per iteration."""
    STUDY    = "study"
    PRACTICE = "practice"
    TEST     = "test"
    REVIEW   = "review"

    def next(self) -> "Phase":
        order = list(Phase)
        return order[(order.index(self) + 1) % len(order)]


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    SCENARIO        = "scenario"
    ESSAY           = "essay"
    SHORT_ANSWER    = "short_answer"


class CompletionReason(str, Enum):
    TARGET_REACHED = "target_reached"
    ITERATION_CAP  = "iteration_cap"


class EventType(str, Enum):
    SESSION_STARTED     = "session_started"
    SESSION_COMPLETED   = "session_completed"
    TEST_GENERATED      = "test_generated"
    TEST_COMPLETED      = "test_completed"
    COMPETENCY_ACHIEVED = "competency_achieved"


# ─── Competency tables ───────────────────────────────────────────────────────

DEFAULT_COMPETENCY_LEVELS: list[str] = ["Beginner", "Intermediate", "Advanced", "Expert"]

# Questions per generated test
QUESTION_COUNT_BY_LEVEL: dict[str, int] = {
    "Beginner":     6,
    "Intermediate": 8,
    "Advanced":     10,
    "Expert":       12,
}

# Minimum score (0–100) to pass a test taken at that level.  Also the score
# the orchestrator requires before moving a session up the ladder.
REQUIRED_SCORE_BY_LEVEL: dict[str, int] = {
    "Beginner":     60,
    "Intermediate": 70,
    "Advanced":     80,
    "Expert":       90,
}

DIFFICULTY_BY_LEVEL: dict[str, str] = {
    "Beginner":     "easy",
    "Intermediate": "medium",
    "Advanced":     "hard",
    "Expert":       "hard",
}

_MIN_REQUIRED_SCORE = 60
_MAX_REQUIRED_SCORE = 90


def question_count_for(level: str) -> int:
    """Number of questions a test at *level* should contain."""
    return QUESTION_COUNT_BY_LEVEL.get(level, QUESTION_COUNT_BY_LEVEL["Beginner"])


def difficulty_for(level: str) -> str:
    return DIFFICULTY_BY_LEVEL.get(level, "medium")


def required_score(
    level: str,
    ladder: list[str],
    table: Optional[dict[str, int]] = None,
) -> int:
    """
    Passing score for *level*.

    Named levels come from the table; rungs of a custom ladder that the
    table does not know are interpolated linearly between 60 (first rung)
    and 90 (last rung).
    """
    table = REQUIRED_SCORE_BY_LEVEL if table is None else table
    if level in table:
        return table[level]
    if level not in ladder or len(ladder) < 2:
        return _MIN_REQUIRED_SCORE
    idx = ladder.index(level)
    span = _MAX_REQUIRED_SCORE - _MIN_REQUIRED_SCORE
    return round(_MIN_REQUIRED_SCORE + span * idx / (len(ladder) - 1))


def ladder_progress(level: str, ladder: list[str]) -> int:
    """round(rungIndex / (rungCount - 1) × 100), clamped to [0, 100]."""
    if len(ladder) < 2:
        return 0
    idx = ladder.index(level)
    return max(0, min(100, round(idx / (len(ladder) - 1) * 100)))


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── External-facing records ─────────────────────────────────────────────────

@dataclass(frozen=True)
class Agent:
    """An LLM persona that can be trained; owned by the AgentDirectory."""
    id:          str
    name:        str
    description: str = ""


@dataclass
class Specialty:
    """A named competency domain with an ordered ladder of mastery levels."""
    id:                 str
    name:               str
    domain:             str
    competency_levels:  list[str]                    # ordered, never empty
    required_knowledge: list[str] = field(default_factory=list)
    description:        str = ""
    is_archived:        bool = False
    created_at:         datetime = field(default_factory=utcnow)

    def next_level(self, level: str) -> Optional[str]:
        """The rung above *level*, or None at the top of the ladder."""
        idx = self.competency_levels.index(level)
        if idx + 1 < len(self.competency_levels):
            return self.competency_levels[idx + 1]
        return None


# ─── Questions (validated LLM output) ────────────────────────────────────────

class Question(BaseModel):
    """
    A single test question.

    Accepts both the snake_case field names and the camelCase keys
    that providers tend to emit (``correctAnswer``, ``skillsTested``,
    ``question`` for the text).
    """
    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    id:             str
    text:           str            = Field(alias="question", min_length=1)
    type:           QuestionType   = QuestionType.MULTIPLE_CHOICE
    options:        list[str]      = Field(default_factory=list)
    correct_answer: str            = Field(alias="correctAnswer", default="")
    explanation:    str            = ""
    difficulty:     str            = "medium"
    skills_tested:  list[str]      = Field(alias="skillsTested", default_factory=list)
    points:         int            = Field(default=10, ge=1)
    scenario:       Optional[str]  = None
    rubric:         Optional[str]  = None

    @property
    def is_multiple_choice(self) -> bool:
        return self.type == QuestionType.MULTIPLE_CHOICE


@dataclass(frozen=True)
class Answer:
    question_id: str
    answer:      str


# ─── Core state ──────────────────────────────────────────────────────────────

@dataclass
class TrainingSession:
    """
    One agent's progression through one specialty toward a target level.

    Mutated only by the orchestrator (directly or through the scheduler)
    and always written back with a compare-and-swap on ``version``.
    """
    id:                       str
    agent_id:                 str
    specialty_id:             str
    target_competency_level:  str
    current_competency_level: str
    max_iterations:           int
    status:                   SessionStatus = SessionStatus.IN_PROGRESS
    progress:                 int = 0                 # 0–100
    current_iteration:        int = 1                 # monotonic, ≥ 1
    current_phase:            Phase = Phase.STUDY
    last_processed_phase:     Optional[Phase] = None
    last_processed_time:      Optional[int] = None    # logical clock tick
    started_at:               datetime = field(default_factory=utcnow)
    completed_at:             Optional[datetime] = None
    completion_reason:        Optional[CompletionReason] = None
    version:                  int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class TrainingTest:
    id:               str
    session_id:       str
    test_type:        str
    questions:        list[Question]
    passing_score:    int
    difficulty:       str
    competency_level: str                 # level the test was generated for
    iteration:        int = 1
    created_at:       datetime = field(default_factory=utcnow)

    def question_by_id(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)


@dataclass(frozen=True)
class TestAttempt:
    """A graded submission; immutable once created."""
    __test__ = False  # not a pytest test class

    id:               str
    test_id:          str
    session_id:       str
    attempt_number:   int
    answers:          tuple[Answer, ...]
    score:            int                  # 0–100
    passed:           bool
    feedback:         tuple[str, ...]
    competency_level: str
    completed_at:     datetime = field(default_factory=utcnow)


@dataclass
class KnowledgeEntry:
    id:           str
    agent_id:     str
    content:      str
    source:       str
    confidence:   int                      # 0–100
    tags:         list[str] = field(default_factory=list)
    category:     str = "general"
    specialty_id: Optional[str] = None
    created_at:   datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RankedEntry:
    content:    str
    relevance:  float                      # 0.0–1.0
    confidence: int


@dataclass(frozen=True)
class TrainingEvent:
    type:       EventType
    session_id: str
    agent_id:   str
    data:       dict[str, Any] = field(default_factory=dict)
    timestamp:  datetime = field(default_factory=utcnow)


@dataclass
class TrainingProgress:
    """Progress summary returned to interactive callers."""
    session:        TrainingSession
    current_test:   Optional[TrainingTest]
    latest_attempt: Optional[TestAttempt]
    next_steps:     list[str]
    tests_passed:   int = 0
    total_attempts: int = 0
