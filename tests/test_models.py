"""
Tests for data models: enums, the level tables, Question parsing and the
small helpers on Specialty / TrainingTest.
"""
import pytest
from pydantic import ValidationError

from factories import make_question, make_test

from competency_training.models import (
    DEFAULT_COMPETENCY_LEVELS,
    Phase,
    Question,
    QuestionType,
    SessionStatus,
    Specialty,
    difficulty_for,
    ladder_progress,
    question_count_for,
    required_score,
)


# ─── Enums ────────────────────────────────────────────────────────────────────

class TestSessionStatus:
    def test_terminal_statuses(self):
        assert SessionStatus.COMPLETED.is_terminal
        assert SessionStatus.FAILED.is_terminal

    def test_non_terminal_statuses(self):
        for status in (SessionStatus.IN_PROGRESS, SessionStatus.PAUSED, SessionStatus.RESET):
            assert not status.is_terminal

    def test_value_round_trip(self):
        assert SessionStatus("in_progress") is SessionStatus.IN_PROGRESS


class TestPhase:
    def test_cycle_order(self):
        assert Phase.STUDY.next() == Phase.PRACTICE
        assert Phase.PRACTICE.next() == Phase.TEST
        assert Phase.TEST.next() == Phase.REVIEW

    def test_review_wraps_to_study(self):
        assert Phase.REVIEW.next() == Phase.STUDY


# ─── Level tables ─────────────────────────────────────────────────────────────

class TestLevelTables:
    def test_question_counts(self):
        assert [question_count_for(l) for l in DEFAULT_COMPETENCY_LEVELS] == [6, 8, 10, 12]

    def test_unknown_level_uses_beginner_count(self):
        assert question_count_for("Grandmaster") == 6

    def test_required_scores(self):
        ladder = DEFAULT_COMPETENCY_LEVELS
        assert [required_score(l, ladder) for l in ladder] == [60, 70, 80, 90]

    def test_custom_ladder_is_interpolated(self):
        ladder = ["Novice", "Journeyman", "Master"]
        assert required_score("Novice", ladder) == 60
        assert required_score("Journeyman", ladder) == 75
        assert required_score("Master", ladder) == 90

    def test_single_rung_ladder(self):
        assert required_score("Only", ["Only"]) == 60

    def test_override_table(self):
        assert required_score("Beginner", DEFAULT_COMPETENCY_LEVELS, {"Beginner": 90}) == 90

    def test_difficulty(self):
        assert difficulty_for("Beginner") == "easy"
        assert difficulty_for("Expert") == "hard"
        assert difficulty_for("Unknown") == "medium"

    @pytest.mark.parametrize("level,expected", [
        ("Beginner", 0), ("Intermediate", 33), ("Advanced", 67), ("Expert", 100),
    ])
    def test_ladder_progress(self, level, expected):
        assert ladder_progress(level, DEFAULT_COMPETENCY_LEVELS) == expected

    def test_ladder_progress_single_rung(self):
        assert ladder_progress("Only", ["Only"]) == 0


# ─── Question ─────────────────────────────────────────────────────────────────

class TestQuestion:
    def test_accepts_camel_case_keys(self):
        q = Question.model_validate({
            "id": "q1",
            "question": "What is a feedback loop?",
            "options": ["A", "B"],
            "correctAnswer": "A",
            "skillsTested": ["loops"],
        })
        assert q.text == "What is a feedback loop?"
        assert q.correct_answer == "A"
        assert q.skills_tested == ["loops"]
        assert q.type == QuestionType.MULTIPLE_CHOICE
        assert q.points == 10

    def test_accepts_field_names(self):
        q = make_question(qtype=QuestionType.SCENARIO, correct="Map the loops")
        assert not q.is_multiple_choice
        assert q.correct_answer == "Map the loops"

    def test_empty_text_rejected(self):
        with pytest.raises(ValidationError):
            Question.model_validate({"id": "q1", "question": ""})

    def test_non_positive_points_rejected(self):
        with pytest.raises(ValidationError):
            Question.model_validate({"id": "q1", "question": "Why?", "points": 0})


# ─── Specialty / TrainingTest helpers ─────────────────────────────────────────

class TestHelpers:
    def test_next_level(self):
        s = Specialty(id="s", name="n", domain="d", competency_levels=list(DEFAULT_COMPETENCY_LEVELS))
        assert s.next_level("Beginner") == "Intermediate"
        assert s.next_level("Expert") is None

    def test_question_by_id(self):
        test = make_test([make_question("q1"), make_question("q2")])
        assert test.question_by_id("q2").id == "q2"
        assert test.question_by_id("missing") is None
