"""XP application, level derivation and per-user statistics."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.db.models import (
    Achievement,
    GameSession,
    User,
    UserAchievement,
    UserStatistics,
    XPLedger,
    XPLevel,
)
from quizrank.exceptions import InputValidationError, NotFoundError
from quizrank.notifications import LEVEL_UP, PROGRESSION_UPDATE, Publisher
from quizrank.progression.level_table import compute_level
from quizrank.progression.schemas import AttemptData
from quizrank.progression.streaks import activity_day, advance_streak

if TYPE_CHECKING:
    from quizrank.cache.service import CacheService

logger = logging.getLogger(__name__)


async def publish(notifier: Publisher | None, event: str, user_id: int | None, payload: dict) -> None:
    """Forward an event to the notifier when one is configured."""
    if notifier is not None:
        await notifier.publish(event, user_id, payload)


async def load_level_bands(db: AsyncSession) -> list[dict]:
    """Load the level table ordered by level."""
    result = await db.execute(select(XPLevel).order_by(XPLevel.level))
    return [
        {"level": row.level, "title": row.title, "min_xp": row.min_xp, "max_xp": row.max_xp}
        for row in result.scalars()
    ]


async def get_user(db: AsyncSession, user_id: int) -> User:
    """Fetch a user or raise NotFoundError."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def get_or_create_user(db: AsyncSession, username: str) -> tuple[User, bool]:
    """Get or create a player profile by username. Returns (user, created)."""
    result = await db.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if user is not None:
        return user, False

    now = datetime.now(timezone.utc)
    info = compute_level(0, await load_level_bands(db))
    user = User(
        username=username,
        total_xp=0,
        level=info["level"],
        title=info["title"],
        current_level_xp=info["current_level_xp"],
        xp_to_next_level=info["xp_to_next_level"],
        level_progress=info["level_progress"],
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    await db.flush()
    return user, True


async def get_or_create_statistics(db: AsyncSession, user_id: int) -> UserStatistics:
    """Get or create the statistics row for a user."""
    stats = await db.get(UserStatistics, user_id)
    if stats is None:
        stats = UserStatistics(
            user_id=user_id,
            category_stats={},
            difficulty_stats={},
            updated_at=datetime.now(timezone.utc),
        )
        db.add(stats)
        await db.flush()
    return stats


def _snapshot(user: User, earned: int, previous_level: int, applied: bool = True) -> dict:
    return {
        "earned_xp": earned,
        "total_xp": user.total_xp,
        "level": user.level,
        "current_level_xp": user.current_level_xp,
        "xp_to_next_level": user.xp_to_next_level,
        "level_progress": user.level_progress,
        "title": user.title,
        "leveled_up": user.level > previous_level,
        "previous_level": previous_level,
        "applied": applied,
        "unlocked_achievements": [],
    }


async def _record_ledger(
    db: AsyncSession,
    user_id: int,
    amount: int,
    source: str,
    source_id: str | None,
    idempotency_key: str | None,
    now: datetime,
) -> bool:
    """Insert the ledger row. Returns False if the idempotency key was already used."""
    if idempotency_key is not None:
        existing = await db.execute(
            select(XPLedger.id).where(XPLedger.idempotency_key == idempotency_key)
        )
        if existing.scalar_one_or_none() is not None:
            return False

    entry = XPLedger(
        user_id=user_id,
        amount=amount,
        source=source,
        source_id=source_id,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        # Lost a race with a concurrent grant using the same key
        logger.info("Duplicate XP idempotency key %s", idempotency_key)
        return False
    return True


async def apply_xp(
    db: AsyncSession,
    notifier: Publisher | None,
    user_id: int,
    earned_xp: int,
    *,
    source: str = "game",
    source_id: str | None = None,
    idempotency_key: str | None = None,
    evaluate_achievements: bool = True,
) -> dict:
    """Add XP to a user's total and re-derive level, title and progress.

    1. Insert into xp_ledger (a reused idempotency key makes this a no-op)
    2. Update users.total_xp and the level fields
    3. On level-up, emit level_up and grant progression achievements now satisfied
    4. Emit progression_update

    Does not commit.
    """
    if earned_xp < 0:
        raise InputValidationError("earned_xp must be non-negative")

    user = await get_user(db, user_id)
    previous_level = user.level
    now = datetime.now(timezone.utc)

    if not await _record_ledger(db, user_id, earned_xp, source, source_id, idempotency_key, now):
        return _snapshot(user, 0, previous_level, applied=False)

    user.total_xp += earned_xp
    info = compute_level(user.total_xp, await load_level_bands(db))
    # The level never drops, even if the level table was reseeded with higher bands.
    if info["level"] >= user.level:
        user.level = info["level"]
        user.title = info["title"]
    user.current_level_xp = info["current_level_xp"]
    user.xp_to_next_level = info["xp_to_next_level"]
    user.level_progress = info["level_progress"]
    user.updated_at = now

    stats = await get_or_create_statistics(db, user_id)
    stats.total_xp = user.total_xp
    await db.flush()

    snapshot = _snapshot(user, earned_xp, previous_level)

    if snapshot["leveled_up"]:
        logger.info("User %s leveled up %s -> %s", user_id, previous_level, user.level)
        await publish(notifier, LEVEL_UP, user_id, {
            "old_level": previous_level,
            "new_level": user.level,
            "title": user.title,
        })
        if evaluate_achievements:
            from quizrank.achievements.criteria import AchievementCategory
            from quizrank.achievements.service import check_and_grant

            unlocked = await check_and_grant(
                db, notifier, user_id, {}, categories={AchievementCategory.PROGRESSION},
            )
            snapshot["unlocked_achievements"] = [a.code for a in unlocked]
            # Rewards may have moved the user further
            snapshot.update({
                "total_xp": user.total_xp,
                "level": user.level,
                "current_level_xp": user.current_level_xp,
                "xp_to_next_level": user.xp_to_next_level,
                "level_progress": user.level_progress,
                "title": user.title,
            })

    await publish(notifier, PROGRESSION_UPDATE, user_id, {
        key: snapshot[key]
        for key in ("earned_xp", "total_xp", "level", "level_progress", "title", "leveled_up", "previous_level")
    })
    return snapshot


def determine_win(attempt: AttemptData, win_threshold: float) -> bool:
    """Multiplayer results carry an explicit outcome; solo wins are by accuracy."""
    if attempt.won is not None:
        return attempt.won
    return attempt.correct_answers / attempt.total_questions >= win_threshold


def _fastest_candidate(attempt: AttemptData) -> float | None:
    times = list(attempt.question_times or [])
    if not times and attempt.question_results:
        times = [r.time_taken for r in attempt.question_results if r.time_taken is not None]
    times = [t for t in times if t > 0]
    if times:
        return min(times)
    if attempt.time_taken > 0:
        return attempt.average_time
    return None


async def record_attempt(
    db: AsyncSession,
    user_id: int,
    attempt: AttemptData,
    *,
    now: datetime | None = None,
    tz_name: str = "UTC",
    win_threshold: float = 0.5,
) -> UserStatistics:
    """Fold one completed attempt into the user's rolling statistics. Does not commit."""
    user = await get_user(db, user_id)
    stats = await get_or_create_statistics(db, user_id)
    now = now or datetime.now(timezone.utc)
    won = determine_win(attempt, win_threshold)

    stats.questions_answered += attempt.total_questions
    stats.correct_answers += attempt.correct_answers
    stats.games_played += 1
    stats.total_time_played += attempt.time_taken
    stats.best_game_score = max(stats.best_game_score, attempt.score)
    if won:
        stats.games_won += 1
        if attempt.mode == "multiplayer":
            stats.multiplayer_wins += 1
    if attempt.is_perfect:
        stats.perfect_games += 1

    fastest = _fastest_candidate(attempt)
    if fastest is not None and (stats.fastest_answer_time is None or fastest < stats.fastest_answer_time):
        stats.fastest_answer_time = fastest

    # JSON columns are reassigned so the change is detected
    if attempt.category_id is not None:
        categories = dict(stats.category_stats or {})
        key = str(attempt.category_id)
        entry = dict(categories.get(key) or {"played": 0, "correct": 0, "questions": 0, "totalTime": 0.0})
        entry["played"] += 1
        entry["correct"] += attempt.correct_answers
        entry["questions"] += attempt.total_questions
        entry["totalTime"] += attempt.time_taken
        categories[key] = entry
        stats.category_stats = categories

    difficulties = dict(stats.difficulty_stats or {})
    entry = dict(difficulties.get(attempt.difficulty) or {"played": 0, "correct": 0, "questions": 0})
    entry["played"] += 1
    entry["correct"] += attempt.correct_answers
    entry["questions"] += attempt.total_questions
    difficulties[attempt.difficulty] = entry
    stats.difficulty_stats = difficulties

    today = activity_day(now, tz_name)
    streak = advance_streak(stats.current_streak, stats.longest_streak, stats.last_activity_date, today)
    stats.current_streak = streak.current
    stats.longest_streak = streak.longest
    if stats.last_activity_date is None or today > stats.last_activity_date:
        stats.last_activity_date = today
    stats.updated_at = now

    user.games_played += 1
    user.total_score += attempt.score
    if won:
        user.games_won += 1
    user.updated_at = now

    await db.flush()
    return stats


def statistics_to_dict(stats: UserStatistics) -> dict:
    """Serialize a statistics row, deriving accuracy."""
    accuracy = (
        round(stats.correct_answers / stats.questions_answered * 100, 2)
        if stats.questions_answered
        else 0.0
    )
    return {
        "user_id": stats.user_id,
        "total_xp": stats.total_xp,
        "questions_answered": stats.questions_answered,
        "correct_answers": stats.correct_answers,
        "accuracy": accuracy,
        "games_played": stats.games_played,
        "games_won": stats.games_won,
        "perfect_games": stats.perfect_games,
        "multiplayer_wins": stats.multiplayer_wins,
        "best_game_score": stats.best_game_score,
        "current_streak": stats.current_streak,
        "longest_streak": stats.longest_streak,
        "last_activity_date": stats.last_activity_date,
        "total_time_played": stats.total_time_played,
        "fastest_answer_time": stats.fastest_answer_time,
        "category_stats": stats.category_stats or {},
        "difficulty_stats": stats.difficulty_stats or {},
        "achievements_earned": stats.achievements_earned,
    }


async def get_progression(db: AsyncSession, user_id: int, recent_limit: int = 5) -> dict:
    """Return the user's progression, statistics and most recent achievements."""
    user = await get_user(db, user_id)
    stats = await get_or_create_statistics(db, user_id)

    result = await db.execute(
        select(Achievement, UserAchievement.earned_at)
        .join(UserAchievement, UserAchievement.achievement_id == Achievement.id)
        .where(
            UserAchievement.user_id == user_id,
            UserAchievement.earned_at.is_not(None),
        )
        .order_by(UserAchievement.earned_at.desc(), UserAchievement.id.desc())
        .limit(recent_limit)
    )
    recent = [
        {
            "code": ach.code,
            "name": ach.name,
            "category": ach.category,
            "xp_reward": ach.xp_reward,
            "earned_at": earned_at,
        }
        for ach, earned_at in result.all()
    ]

    return {
        "user": {
            "id": user.id,
            "username": user.username,
            "total_xp": user.total_xp,
            "level": user.level,
            "title": user.title,
            "current_level_xp": user.current_level_xp,
            "xp_to_next_level": user.xp_to_next_level,
            "level_progress": user.level_progress,
        },
        "statistics": statistics_to_dict(stats),
        "recent_achievements": recent,
    }


# ---------------------------------------------------------------------------
# Stats summary view (cached, validated by the reconciler)
# ---------------------------------------------------------------------------


async def compute_stats_summary(db: AsyncSession, user_id: int) -> dict:
    """Recompute the summary view directly from completed attempt history."""
    result = await db.execute(
        select(
            func.count(GameSession.id),
            func.coalesce(func.sum(GameSession.score), 0),
            func.coalesce(func.sum(GameSession.total_questions), 0),
            func.coalesce(func.sum(GameSession.correct_answers), 0),
            func.coalesce(func.sum(GameSession.xp_earned), 0),
        ).where(
            GameSession.user_id == user_id,
            GameSession.status == "completed",
        )
    )
    games, score, questions, correct, xp = result.one()
    won_result = await db.execute(
        select(func.count(GameSession.id)).where(
            GameSession.user_id == user_id,
            GameSession.status == "completed",
            GameSession.won.is_(True),
        )
    )
    return {
        "user_id": user_id,
        "games_played": int(games),
        "games_won": int(won_result.scalar_one()),
        "total_score": int(score),
        "questions_answered": int(questions),
        "correct_answers": int(correct),
        "accuracy": round(int(correct) / int(questions) * 100, 2) if questions else 0.0,
        "xp_earned": int(xp),
    }


async def get_stats_summary(db: AsyncSession, cache: CacheService, user_id: int, ttl: int) -> dict:
    """Cache-backed summary view for a user."""
    from quizrank.cache.keys import user_stats_key
    from quizrank.exceptions import TransientIOError

    await get_user(db, user_id)
    summary = await cache.get_with_refresh(
        user_stats_key(user_id, "all"),
        lambda: compute_stats_summary(db, user_id),
        ttl,
    )
    if summary is None:
        raise TransientIOError("Statistics temporarily unavailable")
    return summary
