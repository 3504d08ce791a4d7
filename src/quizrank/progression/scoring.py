"""XP earned from a completed attempt.

The multipliers are applied in a fixed order; changing the order changes
the rounding of the result.
"""

from __future__ import annotations

import math

from quizrank.exceptions import InputValidationError
from quizrank.progression.schemas import AttemptData

XP_PER_CORRECT_ANSWER = 10
DIFFICULTY_MULTIPLIERS: dict[str, float] = {"easy": 1.0, "medium": 1.5, "hard": 2.0}
PERFECT_GAME_MULTIPLIER = 1.5
FAST_ANSWER_SECONDS = 10
SPEED_MULTIPLIER = 1.2
STREAK_MULTIPLIER = 1.1
SCORE_BONUS_RATE = 0.1


def xp_breakdown(attempt: AttemptData, current_streak: int = 0) -> dict:
    """Return every factor of the XP chain plus the rounded total."""
    if attempt.total_questions <= 0:
        raise InputValidationError("total_questions must be positive")
    if attempt.difficulty not in DIFFICULTY_MULTIPLIERS:
        raise InputValidationError(f"Unknown difficulty: {attempt.difficulty}")

    base = float(attempt.correct_answers * XP_PER_CORRECT_ANSWER)
    difficulty = DIFFICULTY_MULTIPLIERS[attempt.difficulty]
    perfect = PERFECT_GAME_MULTIPLIER if attempt.is_perfect else 1.0
    speed = SPEED_MULTIPLIER if attempt.average_time < FAST_ANSWER_SECONDS else 1.0
    streak = STREAK_MULTIPLIER if current_streak > 0 else 1.0
    bonus = attempt.score * SCORE_BONUS_RATE

    raw = base * difficulty * perfect * speed * streak + bonus
    # round half away from zero, never negative
    xp = max(0, math.floor(raw + 0.5))

    return {
        "xp": xp,
        "base": base,
        "difficulty_multiplier": difficulty,
        "perfect_multiplier": perfect,
        "speed_multiplier": speed,
        "streak_multiplier": streak,
        "score_bonus": bonus,
    }


def compute_xp(attempt: AttemptData, current_streak: int = 0) -> int:
    """Pure XP computation for one attempt."""
    return xp_breakdown(attempt, current_streak)["xp"]
