"""
providers.py — Text-generation provider adapters
=================================================
The training engine consumes LLM text generation through one narrow
contract:

  generate_questions(topic, level, count)            → list[Question]
  evaluate_freeform_answer(question, submitted, ref) → FreeformEvaluation
  generate_text(prompt, json_mode=False)             → str

Two implementations (chosen by ``build_provider`` from the settings):

  1. OpenAIGenerationProvider  — Azure OpenAI JSON-mode chat completions
  2. MockGenerationProvider    — deterministic, offline; used whenever live
                                 mode is off (tests, demos, CI)

``generate_questions`` never raises: malformed JSON, schema errors or API
failures are logged and replaced by a small deterministic placeholder set
so the training state machine keeps moving.  The other two methods raise
``UpstreamGenerationFailure`` and leave recovery to their caller.
"""

from __future__ import annotations

import json
import logging
import math
import textwrap
from typing import Any, Optional, Protocol

from openai import AzureOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import OpenAIConfig, Settings
from .errors import UpstreamGenerationFailure
from .guardrails import QuestionGuardrails
from .models import Question, QuestionType, difficulty_for

logger = logging.getLogger(__name__)


# ─── Prompt material ─────────────────────────────────────────────────────────

LEARNING_OBJECTIVES: dict[str, dict[str, str]] = {
    "Analytical Thinking": {
        "Beginner":     "Understand basic data analysis concepts, identify patterns in simple datasets, apply fundamental statistical measures",
        "Intermediate": "Perform complex data analysis, create meaningful visualizations, interpret statistical results with confidence",
        "Advanced":     "Design comprehensive analytical frameworks, lead data-driven decision making, mentor others in analytical approaches",
        "Expert":       "Innovate analytical methodologies, establish organizational analytical standards, transform complex problems into actionable insights",
    },
    "Creative Problem Solving": {
        "Beginner":     "Generate multiple solution alternatives, apply basic brainstorming techniques, think outside conventional approaches",
        "Intermediate": "Combine diverse ideas innovatively, facilitate creative sessions, implement creative solutions effectively",
        "Advanced":     "Lead innovation initiatives, develop creative problem-solving frameworks, inspire creative thinking in teams",
        "Expert":       "Pioneer new creative methodologies, transform organizational culture toward innovation, mentor creative leaders",
    },
    "Systems Thinking": {
        "Beginner":     "Identify system components and relationships, understand cause-and-effect relationships, recognize feedback loops",
        "Intermediate": "Analyze complex systems interactions, design system improvements, predict system behavior changes",
        "Advanced":     "Architect comprehensive system solutions, lead systems integration projects, optimize organizational systems",
        "Expert":       "Design transformational system architectures, establish systems thinking as organizational capability, influence industry system standards",
    },
}


def learning_objectives(topic: str, level: str) -> str:
    return LEARNING_OBJECTIVES.get(topic, {}).get(
        level, f"Develop competency in {topic} at {level} level"
    )


_QUESTION_SYSTEM_PROMPT = textwrap.dedent("""
    You are an assessment designer writing competency tests for AI agents.
    Respond with ONLY a valid JSON object of the form {"questions": [...]}.
    Each question has: id, question, type ("multiple_choice" or "scenario"),
    options (4 strings, multiple choice only), correctAnswer, explanation,
    difficulty, skillsTested (list of strings), scenario (optional context).
    Do NOT include any explanation, markdown, or extra text outside the JSON.
""").strip()

_EVALUATION_SYSTEM_PROMPT = textwrap.dedent("""
    You grade free-text answers against a reference answer and rubric.
    Respond with ONLY a JSON object: {"score": 0-100, "feedback": "...", "isCorrect": true/false}.
""").strip()


def build_question_prompt(topic: str, level: str, count: int) -> str:
    difficulty = difficulty_for(level)
    n_choice   = math.ceil(count * 0.8)
    n_scenario = count - n_choice
    return textwrap.dedent(f"""
        Generate {count} rigorous test questions for {topic} competency at {level} level.

        Learning objectives for the {level.upper()} level:
        {learning_objectives(topic, level)}

        Requirements:
        - Each question assesses one of the learning objectives above
        - Each question tests a distinct skill within {topic}
        - Include both knowledge and practical application
        - {n_choice} multiple choice questions with 4 options each
        - {n_scenario} scenario-based questions
        - Difficulty: {difficulty}
    """).strip()


# ─── Result types ────────────────────────────────────────────────────────────

class FreeformEvaluation(BaseModel):
    """Rubric score for one free-response answer (0–100)."""
    score:      int  = Field(ge=0, le=100)
    feedback:   str  = "Answer reviewed."
    is_correct: bool = Field(alias="isCorrect", default=False)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("score", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> int:
        return max(0, min(100, int(round(float(v)))))


class TextGenerationProvider(Protocol):
    name: str

    def generate_questions(self, topic: str, level: str, count: int) -> list[Question]: ...
    def evaluate_freeform_answer(
        self, question: Question, submitted: str, reference: str
    ) -> FreeformEvaluation: ...
    def generate_text(self, prompt: str, json_mode: bool = False) -> str: ...


# ─── Fallback content ────────────────────────────────────────────────────────

def fallback_questions(topic: str, level: str) -> list[Question]:
    """Deterministic placeholder test used whenever generation fails."""
    return [
        Question(
            id="fallback1",
            text=f"What is a key principle of {topic}?",
            type=QuestionType.MULTIPLE_CHOICE,
            options=["Option A", "Option B", "Option C", "Option D"],
            correct_answer="Option A",
            explanation=f"This tests fundamental understanding of {topic}",
            difficulty="medium",
            skills_tested=[topic],
            points=10,
            rubric="Standard grading criteria",
        ),
        Question(
            id="fallback2",
            text=f"Describe how you would apply {topic} principles in a real-world scenario.",
            type=QuestionType.SCENARIO,
            correct_answer="Open-ended response demonstrating understanding",
            explanation=f"This tests practical application of {topic}",
            difficulty=difficulty_for(level),
            skills_tested=[topic],
            points=15,
            rubric="Evaluate based on understanding and practical application",
        ),
    ]


def parse_questions(payload: Any, topic: str, level: str) -> list[Question]:
    """
    Validate a raw provider payload into Question models.

    Accepts either a bare list or ``{"questions": [...]}``.  Missing ids,
    explanations, difficulty and skills are filled in; anything else that
    does not fit the schema raises ``UpstreamGenerationFailure``.
    """
    if isinstance(payload, dict):
        payload = payload.get("questions")
    if not isinstance(payload, list):
        raise UpstreamGenerationFailure("Provider payload is not a list of questions")

    questions: list[Question] = []
    for i, item in enumerate(payload):
        if not isinstance(item, dict):
            raise UpstreamGenerationFailure(f"Question #{i + 1} is not an object")
        data = dict(item)
        data["id"] = str(data.get("id") or f"q{i + 1}")
        data.setdefault("explanation", f"This tests {topic} competency at {level} level.")
        data.setdefault("difficulty", difficulty_for(level))
        if not data.get("skillsTested") and not data.get("skills_tested"):
            data["skillsTested"] = [topic]
        if data.get("type") not in {t.value for t in QuestionType}:
            data["type"] = QuestionType.MULTIPLE_CHOICE.value if data.get("options") else QuestionType.SCENARIO.value
        if data["type"] != QuestionType.MULTIPLE_CHOICE.value:
            data.setdefault("points", 15)
        try:
            questions.append(Question.model_validate(data))
        except ValidationError as exc:
            raise UpstreamGenerationFailure(f"Question #{i + 1} failed validation: {exc}") from exc
    return questions


# ─── Shared behaviour ────────────────────────────────────────────────────────

class BaseGenerationProvider:
    """Fallback and validation logic shared by every provider tier."""

    name = "base"

    def __init__(self) -> None:
        self._guard = QuestionGuardrails()

    def _request_questions(self, topic: str, level: str, count: int) -> Any:
        raise NotImplementedError

    def generate_questions(self, topic: str, level: str, count: int) -> list[Question]:
        try:
            questions = parse_questions(self._request_questions(topic, level, count), topic, level)
            result = self._guard.check(questions)
            if result.blocked:
                raise UpstreamGenerationFailure(result.summary())
            if result.warnings:
                logger.warning("Repairing generated questions: %s", result.summary())
                questions = self._guard.repair(questions)
            return questions
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "%s question generation failed for %s/%s (%s); using fallback questions",
                self.name, topic, level, exc,
            )
            return fallback_questions(topic, level)


# ─── Tier 1 — Azure OpenAI ───────────────────────────────────────────────────

class OpenAIGenerationProvider(BaseGenerationProvider):
    """Azure OpenAI chat completions in JSON mode."""

    name = "azure-openai"

    def __init__(self, config: OpenAIConfig, client: Optional[AzureOpenAI] = None) -> None:
        super().__init__()
        if client is None and not config.is_configured:
            raise EnvironmentError(
                "Azure OpenAI is not configured. "
                "Set AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_API_KEY."
            )
        self._cfg = config
        self._client = client or AzureOpenAI(
            azure_endpoint=config.endpoint,
            api_key=config.api_key,
            api_version=config.api_version,
        )

    def _complete(
        self,
        system: str,
        user: str,
        json_mode: bool = True,
        temperature: float = 0.2,
        max_tokens: int = 3000,
    ) -> str:
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self._client.chat.completions.create(
                model=self._cfg.deployment,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user",   "content": user},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            )
        except Exception as exc:  # noqa: BLE001
            raise UpstreamGenerationFailure(f"Azure OpenAI call failed: {exc}") from exc
        content = response.choices[0].message.content
        if not content:
            raise UpstreamGenerationFailure("Azure OpenAI returned an empty completion")
        return content

    def _complete_json(self, system: str, user: str, **kwargs: Any) -> Any:
        raw = self._complete(system, user, json_mode=True, **kwargs)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise UpstreamGenerationFailure(f"Malformed JSON from provider: {exc}") from exc

    def _request_questions(self, topic: str, level: str, count: int) -> Any:
        return self._complete_json(_QUESTION_SYSTEM_PROMPT, build_question_prompt(topic, level, count))

    def evaluate_freeform_answer(
        self, question: Question, submitted: str, reference: str
    ) -> FreeformEvaluation:
        user = textwrap.dedent(f"""
            Question: {question.text}
            Rubric: {question.rubric or question.explanation}
            Reference answer: {reference}
            Submitted answer: {submitted}
        """).strip()
        data = self._complete_json(_EVALUATION_SYSTEM_PROMPT, user, max_tokens=500)
        try:
            return FreeformEvaluation.model_validate(data)
        except (ValidationError, TypeError, ValueError) as exc:
            raise UpstreamGenerationFailure(f"Malformed evaluation payload: {exc}") from exc

    def generate_text(self, prompt: str, json_mode: bool = False) -> str:
        system = "You are a diligent AI agent completing a competency training exercise."
        return self._complete(system, prompt, json_mode=json_mode, temperature=0.7)


# ─── Tier 2 — Deterministic mock ─────────────────────────────────────────────

class MockGenerationProvider(BaseGenerationProvider):
    """
    Offline provider with reproducible output.

    Multiple-choice questions rotate their correct option so a naive
    "always pick the first option" strategy does not pass; free-text
    answers are scored by keyword overlap with the reference answer.
    """

    name = "mock"

    def _request_questions(self, topic: str, level: str, count: int) -> Any:
        difficulty = difficulty_for(level)
        n_choice = math.ceil(count * 0.8)
        slug = topic.lower().replace(" ", "-")
        questions: list[dict[str, Any]] = []
        for i in range(count):
            qid = f"{slug}-{level.lower()}-{i + 1}"
            if i < n_choice:
                options = [f"{topic} {level} principle {k + 1}" for k in range(4)]
                questions.append({
                    "id":            qid,
                    "question":      f"Which principle best applies to {topic} task #{i + 1} at {level} level?",
                    "type":          "multiple_choice",
                    "options":       options,
                    "correctAnswer": options[i % 4],
                    "explanation":   f"Principle {i % 4 + 1} is the one that applies at {level} level.",
                    "difficulty":    difficulty,
                    "skillsTested":  [topic],
                })
            else:
                questions.append({
                    "id":            qid,
                    "question":      f"Describe how you would apply {topic} in scenario #{i + 1}.",
                    "type":          "scenario",
                    "correctAnswer": f"Apply {topic} systematically, state assumptions and evaluate outcomes",
                    "explanation":   "A strong answer is systematic and evaluates outcomes.",
                    "difficulty":    difficulty,
                    "skillsTested":  [topic, "application"],
                    "scenario":      f"A team needs {topic.lower()} support at {level} level.",
                })
        return {"questions": questions}

    def evaluate_freeform_answer(
        self, question: Question, submitted: str, reference: str
    ) -> FreeformEvaluation:
        expected = {w for w in reference.lower().split() if len(w) > 3}
        given    = {w for w in submitted.lower().split() if len(w) > 3}
        if submitted.strip().casefold() == reference.strip().casefold():
            score = 100
        elif expected:
            score = round(len(expected & given) / len(expected) * 100)
        else:
            score = 0
        return FreeformEvaluation(
            score=score,
            feedback=f"Covered {score}% of the reference answer's key points.",
            is_correct=score >= 70,
        )

    def generate_text(self, prompt: str, json_mode: bool = False) -> str:
        if json_mode:
            return "{}"
        return f"[mock] {prompt[:200]}"


def build_provider(settings: Settings) -> BaseGenerationProvider:
    """OpenAI in live mode, the deterministic mock otherwise."""
    if settings.live_mode:
        return OpenAIGenerationProvider(settings.openai)
    return MockGenerationProvider()
