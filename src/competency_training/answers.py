"""
answers.py — Answer sources for unattended training
====================================================
When the scheduler drives a session there is no human to submit answers,
so the orchestrator asks an ``AnswerSource``.  Which one is wired in is a
configuration choice (``TRAINING_ANSWER_SOURCE``):

  reference   answer every question with its reference answer
  simulated   biased random answering (default)
  llm         ask the text-generation provider; falls back to simulated
"""

from __future__ import annotations

import json
import logging
import random
from typing import Optional, Protocol

from .config import Settings
from .models import Answer, QuestionType, TrainingSession, TrainingTest

logger = logging.getLogger(__name__)

FREEFORM_SIMULATED_ANSWER = (
    "Based on the training materials, I would approach this by applying the core "
    "concepts learned in this specialty. The key considerations include following "
    "best practices and leveraging the knowledge gained during the study phase."
)


class AnswerSource(Protocol):
    def answers_for(self, session: TrainingSession, test: TrainingTest) -> list[Answer]: ...


class ReferenceAnswerSource:
    """Always right.  Useful for demos and for driving a session to completion."""

    def answers_for(self, session: TrainingSession, test: TrainingTest) -> list[Answer]:
        return [Answer(q.id, q.correct_answer) for q in test.questions]


class SimulatedAnswerSource:
    """Correct with probability ``accuracy``; otherwise a random option."""

    def __init__(self, accuracy: float = 0.7, rng: Optional[random.Random] = None) -> None:
        if not 0.0 <= accuracy <= 1.0:
            raise ValueError(f"accuracy must be within [0, 1], got {accuracy}")
        self.accuracy = accuracy
        self.rng = rng or random.Random()

    def answers_for(self, session: TrainingSession, test: TrainingTest) -> list[Answer]:
        answers = []
        for q in test.questions:
            if q.type == QuestionType.MULTIPLE_CHOICE:
                if q.options and self.rng.random() >= self.accuracy:
                    text = self.rng.choice(q.options)
                else:
                    text = q.correct_answer
            elif q.type == QuestionType.SHORT_ANSWER and self.rng.random() < self.accuracy:
                text = q.correct_answer
            else:
                text = FREEFORM_SIMULATED_ANSWER
            answers.append(Answer(q.id, text))
        return answers


class LLMAnswerSource:
    """Lets the provider answer the test as the agent would."""

    def __init__(self, provider, fallback: Optional[AnswerSource] = None) -> None:
        self.provider = provider
        self.fallback = fallback or SimulatedAnswerSource()

    def _prompt(self, session: TrainingSession, test: TrainingTest) -> str:
        lines = [
            f"You are being tested at {session.current_competency_level} level.",
            'Answer every question. Respond with ONLY a JSON object: '
            '{"answers": [{"question_id": "...", "answer": "..."}]}.',
            "For multiple choice questions answer with the exact option text.",
            "",
        ]
        for q in test.questions:
            lines.append(f"[{q.id}] ({q.type.value}) {q.text}")
            if q.scenario:
                lines.append(f"  Context: {q.scenario}")
            for opt in q.options:
                lines.append(f"  - {opt}")
        return "\n".join(lines)

    def answers_for(self, session: TrainingSession, test: TrainingTest) -> list[Answer]:
        fallback = {a.question_id: a for a in self.fallback.answers_for(session, test)}
        try:
            raw = self.provider.generate_text(self._prompt(session, test), json_mode=True)
            data = json.loads(raw)
            given = {
                str(item["question_id"]): str(item["answer"])
                for item in data.get("answers", [])
                if isinstance(item, dict) and "question_id" in item and "answer" in item
            }
        except Exception as exc:  # noqa: BLE001
            logger.warning("LLM answering failed for session %s (%s); using simulated answers", session.id, exc)
            return list(fallback.values())

        missing = [q.id for q in test.questions if q.id not in given]
        if missing:
            logger.debug("LLM left %d question(s) unanswered; filling from fallback", len(missing))
        return [
            Answer(q.id, given[q.id]) if q.id in given else fallback[q.id]
            for q in test.questions
        ]


def build_answer_source(settings: Settings, provider, rng: Optional[random.Random] = None) -> AnswerSource:
    kind = settings.training.answer_source
    simulated = SimulatedAnswerSource(settings.training.simulated_accuracy, rng)
    if kind == "reference":
        return ReferenceAnswerSource()
    if kind == "llm":
        return LLMAnswerSource(provider, fallback=simulated)
    return simulated
