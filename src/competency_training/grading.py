"""
grading.py — Scores a submitted attempt against a TrainingTest
===============================================================
Multiple choice   exact match after trim + case-fold; full points or none.
Free response     delegated to a rubric scorer (the text-generation
                  provider).  If the delegate fails, the question earns
                  50% partial credit and is flagged for manual review
                  instead of failing the whole grading pass.

score  = round(earned_points / total_points × 100)
passed = score ≥ test.passing_score
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from .models import Answer, Question, TrainingTest

logger = logging.getLogger(__name__)

MANUAL_REVIEW_FEEDBACK = "Unable to grade automatically. Manual review recommended."


class GradingDelegate(Protocol):
    def evaluate_freeform_answer(self, question: Question, submitted: str, reference: str): ...


@dataclass
class GradeResult:
    score:         int
    feedback:      list[str]
    passed:        bool
    earned_points: int = 0
    total_points:  int = 0
    manual_review: list[str] = field(default_factory=list)   # question ids
    missed:        list[str] = field(default_factory=list)   # ids below full points


def _normalise(text: str) -> str:
    return (text or "").strip().casefold()


class TestGradingEngine:
    __test__ = False  # not a pytest test class

    def __init__(self, delegate: GradingDelegate) -> None:
        self.delegate = delegate

    def grade(self, test: TrainingTest, answers: list[Answer]) -> GradeResult:
        by_question = {a.question_id: a.answer for a in answers}
        unknown = set(by_question) - {q.id for q in test.questions}
        if unknown:
            logger.debug("Ignoring answers for unknown questions: %s", sorted(unknown))

        total = sum(q.points for q in test.questions)
        earned = 0
        feedback: list[str] = []
        manual: list[str] = []
        missed: list[str] = []

        for q in test.questions:
            submitted = by_question.get(q.id)
            if submitted is None or not submitted.strip():
                feedback.append(f"{q.id}: No answer submitted.")
                missed.append(q.id)
                continue

            if q.is_multiple_choice:
                if _normalise(submitted) == _normalise(q.correct_answer):
                    earned += q.points
                    feedback.append(f"{q.id}: Correct answer!")
                else:
                    feedback.append(f"{q.id}: Incorrect. The correct answer is: {q.correct_answer}")
                    missed.append(q.id)
                continue

            points, note, failed = self._grade_freeform(q, submitted)
            earned += points
            feedback.append(f"{q.id}: {note}")
            if failed:
                manual.append(q.id)
            if points < q.points:
                missed.append(q.id)

        score = round(earned / total * 100) if total > 0 else 0
        return GradeResult(
            score=score,
            feedback=feedback,
            passed=score >= test.passing_score,
            earned_points=earned,
            total_points=total,
            manual_review=manual,
            missed=missed,
        )

    def _grade_freeform(self, q: Question, submitted: str) -> tuple[int, str, bool]:
        try:
            evaluation = self.delegate.evaluate_freeform_answer(q, submitted, q.correct_answer)
            points = round(q.points * evaluation.score / 100)
            return max(0, min(q.points, points)), evaluation.feedback, False
        except Exception as exc:  # noqa: BLE001
            logger.warning("Rubric scoring failed for question %s: %s", q.id, exc)
            return q.points // 2, MANUAL_REVIEW_FEEDBACK, True
