"""
guardrails.py – Validation layer for the training engine
=========================================================
Every write path runs its input through one of the guards below before
touching the store.  Any BLOCK violation is turned into a
``ValidationFailure`` by the caller; WARN violations are logged and, for
generated question sets, repaired in place.

Guardrail levels
----------------
BLOCK   – Hard-stop: the operation does not proceed.
WARN    – Soft-stop: the operation proceeds, the violation is logged.
INFO    – Advisory only.

Guards implemented
------------------
Specialty guards (create / update):
  T-01  Name must not be empty
  T-02  Domain must not be empty
  T-03  Competency ladder must contain at least one level
  T-04  Competency ladder must not contain blank or duplicate levels

Session guards (start):
  T-05  Target level must be a rung of the specialty's ladder
  T-06  maxIterations must be ≥ 1

Question-set guards (after generation):
  T-07  At least one question
  T-08  No duplicate question IDs                 [repaired]
  T-09  Multiple-choice options contain the correct answer
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import Question, Specialty


# ─── Enums & data models ─────────────────────────────────────────────────────

class GuardrailLevel(str, Enum):
    BLOCK = "BLOCK"
    WARN  = "WARN"
    INFO  = "INFO"


@dataclass
class GuardrailViolation:
    code:    str
    level:   GuardrailLevel
    message: str
    field:   str = ""   # which field triggered the violation


@dataclass
class GuardrailResult:
    passed:     bool
    violations: list[GuardrailViolation] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return any(v.level == GuardrailLevel.BLOCK for v in self.violations)

    @property
    def warnings(self) -> list[GuardrailViolation]:
        return [v for v in self.violations if v.level == GuardrailLevel.WARN]

    def summary(self) -> str:
        if not self.violations:
            return "All guardrails passed."
        return "\n".join(f"{v.level.value} [{v.code}] {v.message}" for v in self.violations)


def _result(violations: list[GuardrailViolation]) -> GuardrailResult:
    return GuardrailResult(
        passed=not any(v.level == GuardrailLevel.BLOCK for v in violations),
        violations=violations,
    )


# ─── Guardrail checks ─────────────────────────────────────────────────────────

class SpecialtyGuardrails:
    """T-01 – T-04: Validates specialty fields before create / update."""

    def check(
        self,
        name: str,
        domain: str,
        competency_levels: Optional[list[str]],
    ) -> GuardrailResult:
        violations: list[GuardrailViolation] = []

        # T-01 / T-02 Non-empty required fields
        if not (name or "").strip():
            violations.append(GuardrailViolation(
                code="T-01", level=GuardrailLevel.BLOCK,
                field="name",
                message="Specialty name must not be empty.",
            ))
        if not (domain or "").strip():
            violations.append(GuardrailViolation(
                code="T-02", level=GuardrailLevel.BLOCK,
                field="domain",
                message="Specialty domain must not be empty.",
            ))

        # T-03 Ladder has at least one rung
        levels = competency_levels or []
        if not levels:
            violations.append(GuardrailViolation(
                code="T-03", level=GuardrailLevel.BLOCK,
                field="competency_levels",
                message="Competency ladder must contain at least one level.",
            ))

        # T-04 Rungs are distinct and non-blank
        if any(not (lvl or "").strip() for lvl in levels):
            violations.append(GuardrailViolation(
                code="T-04", level=GuardrailLevel.BLOCK,
                field="competency_levels",
                message="Competency levels must not be blank.",
            ))
        dupes = [lvl for lvl, n in Counter(levels).items() if n > 1]
        if dupes:
            violations.append(GuardrailViolation(
                code="T-04", level=GuardrailLevel.BLOCK,
                field="competency_levels",
                message=f"Competency levels must be unique; duplicated: {dupes}.",
            ))

        return _result(violations)

    def check_specialty(self, specialty: Specialty) -> GuardrailResult:
        return self.check(specialty.name, specialty.domain, specialty.competency_levels)


class SessionGuardrails:
    """T-05 – T-06: Validates a start-session request against its specialty."""

    def check(self, specialty: Specialty, target_level: str, max_iterations: int) -> GuardrailResult:
        violations: list[GuardrailViolation] = []

        # T-05 Target level on the ladder
        if target_level not in specialty.competency_levels:
            violations.append(GuardrailViolation(
                code="T-05", level=GuardrailLevel.BLOCK,
                field="target_competency_level",
                message=(
                    f"Unknown competency level '{target_level}' for specialty "
                    f"'{specialty.name}'; expected one of {specialty.competency_levels}."
                ),
            ))

        # T-06 Iteration budget
        if max_iterations < 1:
            violations.append(GuardrailViolation(
                code="T-06", level=GuardrailLevel.BLOCK,
                field="max_iterations",
                message=f"maxIterations must be ≥ 1 (got {max_iterations}).",
            ))

        return _result(violations)


class QuestionGuardrails:
    """T-07 – T-09: Validates (and repairs) a generated question set."""

    def check(self, questions: list[Question]) -> GuardrailResult:
        violations: list[GuardrailViolation] = []

        # T-07 Non-empty
        if not questions:
            violations.append(GuardrailViolation(
                code="T-07", level=GuardrailLevel.BLOCK,
                message="Generated test contains no questions.",
            ))

        # T-08 Duplicate IDs
        ids = [q.id for q in questions]
        dupes = [qid for qid, n in Counter(ids).items() if n > 1]
        if dupes:
            violations.append(GuardrailViolation(
                code="T-08", level=GuardrailLevel.WARN,
                field="questions[].id",
                message=f"Duplicate question IDs: {dupes}.",
            ))

        # T-09 Correct answer present among the options
        for q in questions:
            if q.is_multiple_choice and q.options and q.correct_answer not in q.options:
                violations.append(GuardrailViolation(
                    code="T-09", level=GuardrailLevel.WARN,
                    field=f"questions[{q.id}].correct_answer",
                    message=f"Correct answer for '{q.id}' is not one of its options.",
                ))

        return _result(violations)

    def repair(self, questions: list[Question]) -> list[Question]:
        """Return a copy with unique ids; later duplicates get a numeric suffix."""
        seen: set[str] = set()
        repaired: list[Question] = []
        for q in questions:
            qid = q.id
            n = 2
            while qid in seen:
                qid = f"{q.id}-{n}"
                n += 1
            seen.add(qid)
            repaired.append(q if qid == q.id else q.model_copy(update={"id": qid}))
        return repaired
