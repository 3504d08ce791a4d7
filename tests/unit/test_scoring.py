"""XP scoring chain tests."""

import pytest
from pydantic import ValidationError

from quizrank.exceptions import InputValidationError
from quizrank.progression.schemas import AttemptData
from quizrank.progression.scoring import compute_xp, xp_breakdown


def _attempt(**overrides) -> AttemptData:
    data = {
        "total_questions": 10,
        "correct_answers": 10,
        "difficulty": "medium",
        "time_taken": 50.0,
        "score": 1000,
    }
    data.update(overrides)
    return AttemptData(**data)


class TestComputeXP:
    def test_perfect_medium_fast_with_streak(self):
        """10/10 medium, 1000 points, 5s per question, active streak -> 397."""
        assert compute_xp(_attempt(), current_streak=3) == 397

    def test_without_streak(self):
        # 10 * 10 * 1.5 * 1.5 * 1.2 = 270, + 100
        assert compute_xp(_attempt(), current_streak=0) == 370

    def test_slow_attempt_has_no_speed_bonus(self):
        # average exactly 10s is not "under 10"
        assert compute_xp(_attempt(time_taken=100.0)) == 325

    def test_not_perfect(self):
        # 7 * 10 * 2.0 = 140, no perfect bonus, slow, + 20
        attempt = _attempt(correct_answers=7, difficulty="hard", time_taken=200.0, score=200)
        assert compute_xp(attempt) == 160

    def test_easy_zero_correct_zero_score(self):
        assert compute_xp(_attempt(correct_answers=0, difficulty="easy", score=0)) == 0

    def test_rounds_half_up(self):
        # 1 * 10 * 1.0 + 0.5 -> 10.5 -> 11
        attempt = _attempt(total_questions=2, correct_answers=1, difficulty="easy", time_taken=60.0, score=5)
        assert compute_xp(attempt) == 11

    def test_breakdown_factors(self):
        result = xp_breakdown(_attempt(), current_streak=1)
        assert result["base"] == 100
        assert result["difficulty_multiplier"] == 1.5
        assert result["perfect_multiplier"] == 1.5
        assert result["speed_multiplier"] == 1.2
        assert result["streak_multiplier"] == 1.1
        assert result["score_bonus"] == 100
        assert result["xp"] == 397

    def test_xp_never_negative(self):
        for correct in range(0, 11):
            assert compute_xp(_attempt(correct_answers=correct, score=0)) >= 0


class TestAttemptValidation:
    def test_zero_questions_rejected_by_schema(self):
        with pytest.raises(ValidationError):
            _attempt(total_questions=0, correct_answers=0)

    def test_zero_questions_rejected_by_scoring(self):
        attempt = _attempt().model_copy(update={"total_questions": 0, "correct_answers": 0})
        with pytest.raises(InputValidationError):
            xp_breakdown(attempt)

    def test_more_correct_than_total(self):
        with pytest.raises(ValidationError):
            _attempt(correct_answers=11)

    def test_unknown_difficulty(self):
        with pytest.raises(ValidationError):
            _attempt(difficulty="legendary")

    def test_negative_question_time(self):
        with pytest.raises(ValidationError):
            _attempt(question_times=[1.0, -2.0])
