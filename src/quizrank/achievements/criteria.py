"""Typed achievement criteria and their evaluation.

Each achievement category carries its own criteria model with a closed
set of kinds. Evaluation is pure: it takes a snapshot of the user's facts
and returns how far along the user is.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, assert_never

from pydantic import BaseModel, ConfigDict, Field


class AchievementCategory(str, Enum):
    GAMEPLAY = "gameplay"
    PROGRESSION = "progression"
    STREAK = "streak"
    SOCIAL = "social"
    SPECIAL = "special"


class GameplayKind(str, Enum):
    GAMES_PLAYED = "games_played"
    GAMES_WON = "games_won"
    PERFECT_GAMES = "perfect_games"
    QUESTIONS_ANSWERED = "questions_answered"
    CORRECT_ANSWERS = "correct_answers"
    ACCURACY = "accuracy"
    CATEGORY_MASTER = "category_master"
    SPEED_DEMON = "speed_demon"
    SINGLE_GAME_SCORE = "single_game_score"


class ProgressionKind(str, Enum):
    LEVEL = "level"
    TOTAL_XP = "total_xp"
    ACHIEVEMENTS_EARNED = "achievements_earned"


class StreakKind(str, Enum):
    CURRENT_STREAK = "current_streak"
    LONGEST_STREAK = "longest_streak"


class SocialKind(str, Enum):
    MULTIPLAYER_WINS = "multiplayer_wins"
    LEADERBOARD_RANK = "leaderboard_rank"


class SpecialKind(str, Enum):
    EVENT = "event"
    DATE = "date"
    TIME_PLAYED = "time_played"
    TIME_OF_DAY = "time_of_day"


class _Criteria(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    value: float = Field(default=1, ge=0)
    track_progress: bool = False


class GameplayCriteria(_Criteria):
    kind: GameplayKind
    min_questions: int = 0
    category_id: int | None = None
    min_games: int = 1


class ProgressionCriteria(_Criteria):
    kind: ProgressionKind


class StreakCriteria(_Criteria):
    kind: StreakKind


class SocialCriteria(_Criteria):
    kind: SocialKind
    period: str | None = None


class SpecialCriteria(_Criteria):
    kind: SpecialKind
    event_code: str | None = None
    month_day: str | None = Field(default=None, pattern=r"^\d{2}-\d{2}$")
    hour_before: int | None = Field(default=None, ge=0, le=24)


Criteria = GameplayCriteria | ProgressionCriteria | StreakCriteria | SocialCriteria | SpecialCriteria

_MODELS: dict[AchievementCategory, type[_Criteria]] = {
    AchievementCategory.GAMEPLAY: GameplayCriteria,
    AchievementCategory.PROGRESSION: ProgressionCriteria,
    AchievementCategory.STREAK: StreakCriteria,
    AchievementCategory.SOCIAL: SocialCriteria,
    AchievementCategory.SPECIAL: SpecialCriteria,
}


def parse_criteria(category: str, data: dict[str, Any]) -> Criteria:
    """Validate a stored criteria document against its category's model.

    Raises ValueError for an unknown category and pydantic.ValidationError
    for a malformed document.
    """
    model = _MODELS[AchievementCategory(category)]
    return model.model_validate(data)  # type: ignore[return-value]


@dataclass
class AchievementFacts:
    """Everything the evaluator may look at for one user."""

    level: int
    total_xp: int
    achievements_earned: int
    stats: dict[str, Any]
    best_rank: int | None = None
    now: datetime | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def today(self) -> date | None:
        return self.now.date() if self.now else None


@dataclass(frozen=True)
class Measurement:
    current: float | None
    target: float
    met: bool
    lower_is_better: bool = False

    @property
    def percent(self) -> float:
        """Progress in [0, 100]."""
        if self.met:
            return 100.0
        if self.current is None:
            return 0.0
        if self.lower_is_better:
            return 0.0 if self.current <= 0 else min(self.target / self.current, 1.0) * 100
        if self.target <= 0:
            return 100.0
        return min(self.current / self.target, 1.0) * 100


def _at_least(current: float | None, target: float) -> Measurement:
    return Measurement(current, target, current is not None and current >= target)


def _at_most(current: float | None, target: float) -> Measurement:
    return Measurement(current, target, current is not None and current <= target, lower_is_better=True)


def _gameplay(c: GameplayCriteria, facts: AchievementFacts) -> Measurement:
    stats = facts.stats
    match c.kind:
        case GameplayKind.GAMES_PLAYED:
            return _at_least(stats["games_played"], c.value)
        case GameplayKind.GAMES_WON:
            return _at_least(stats["games_won"], c.value)
        case GameplayKind.PERFECT_GAMES:
            return _at_least(stats["perfect_games"], c.value)
        case GameplayKind.QUESTIONS_ANSWERED:
            return _at_least(stats["questions_answered"], c.value)
        case GameplayKind.CORRECT_ANSWERS:
            return _at_least(stats["correct_answers"], c.value)
        case GameplayKind.ACCURACY:
            if stats["questions_answered"] < c.min_questions:
                return Measurement(0.0, c.value, False)
            return _at_least(stats["accuracy"], c.value)
        case GameplayKind.CATEGORY_MASTER:
            entry = (stats.get("category_stats") or {}).get(str(c.category_id))
            if not entry or entry.get("played", 0) < c.min_games or not entry.get("questions"):
                return Measurement(0.0, c.value, False)
            return _at_least(entry["correct"] / entry["questions"] * 100, c.value)
        case GameplayKind.SPEED_DEMON:
            return _at_most(stats.get("fastest_answer_time"), c.value)
        case GameplayKind.SINGLE_GAME_SCORE:
            best = max(stats.get("best_game_score", 0), facts.context.get("score", 0))
            return _at_least(best, c.value)
        case _ as unreachable:
            assert_never(unreachable)


def _progression(c: ProgressionCriteria, facts: AchievementFacts) -> Measurement:
    match c.kind:
        case ProgressionKind.LEVEL:
            return _at_least(facts.level, c.value)
        case ProgressionKind.TOTAL_XP:
            return _at_least(facts.total_xp, c.value)
        case ProgressionKind.ACHIEVEMENTS_EARNED:
            return _at_least(facts.achievements_earned, c.value)
        case _ as unreachable:
            assert_never(unreachable)


def _streak(c: StreakCriteria, facts: AchievementFacts) -> Measurement:
    match c.kind:
        case StreakKind.CURRENT_STREAK:
            return _at_least(facts.stats["current_streak"], c.value)
        case StreakKind.LONGEST_STREAK:
            return _at_least(facts.stats["longest_streak"], c.value)
        case _ as unreachable:
            assert_never(unreachable)


def _social(c: SocialCriteria, facts: AchievementFacts) -> Measurement:
    match c.kind:
        case SocialKind.MULTIPLAYER_WINS:
            return _at_least(facts.stats.get("multiplayer_wins", 0), c.value)
        case SocialKind.LEADERBOARD_RANK:
            rank = facts.context.get("leaderboard_rank", facts.best_rank)
            return _at_most(rank, c.value)
        case _ as unreachable:
            assert_never(unreachable)


def _special(c: SpecialCriteria, facts: AchievementFacts) -> Measurement:
    match c.kind:
        case SpecialKind.EVENT:
            hit = c.event_code is not None and facts.context.get("event") == c.event_code
            return Measurement(1.0 if hit else 0.0, 1.0, hit)
        case SpecialKind.DATE:
            today = facts.today
            hit = today is not None and today.strftime("%m-%d") == c.month_day
            return Measurement(1.0 if hit else 0.0, 1.0, hit)
        case SpecialKind.TIME_PLAYED:
            return _at_least(facts.stats["total_time_played"], c.value)
        case SpecialKind.TIME_OF_DAY:
            hit = facts.now is not None and c.hour_before is not None and facts.now.hour < c.hour_before
            return Measurement(1.0 if hit else 0.0, 1.0, hit)
        case _ as unreachable:
            assert_never(unreachable)


def measure(criteria: Criteria, facts: AchievementFacts) -> Measurement:
    """Evaluate one criteria model against the user's facts."""
    match criteria:
        case GameplayCriteria():
            return _gameplay(criteria, facts)
        case ProgressionCriteria():
            return _progression(criteria, facts)
        case StreakCriteria():
            return _streak(criteria, facts)
        case SocialCriteria():
            return _social(criteria, facts)
        case SpecialCriteria():
            return _special(criteria, facts)
        case _ as unreachable:
            assert_never(unreachable)
