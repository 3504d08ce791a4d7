"""Achievement evaluation with at-most-once grants and progress tracking."""

from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.achievements.criteria import (
    AchievementCategory,
    AchievementFacts,
    Measurement,
    measure,
    parse_criteria,
)
from quizrank.db.models import Achievement, LeaderboardEntry, UserAchievement, UserStatistics
from quizrank.notifications import ACHIEVEMENT_UNLOCKED, Publisher
from quizrank.progression.service import (
    apply_xp,
    get_or_create_statistics,
    get_user,
    publish,
    statistics_to_dict,
)

logger = logging.getLogger(__name__)


async def build_facts(
    db: AsyncSession,
    user_id: int,
    context: dict | None = None,
    tz_name: str = "UTC",
) -> AchievementFacts:
    """Snapshot everything criteria may inspect for one user."""
    user = await get_user(db, user_id)
    stats = await get_or_create_statistics(db, user_id)
    rank_result = await db.execute(
        select(func.min(LeaderboardEntry.rank)).where(
            LeaderboardEntry.user_id == user_id,
            LeaderboardEntry.rank.is_not(None),
        )
    )
    return AchievementFacts(
        level=user.level,
        total_xp=user.total_xp,
        achievements_earned=stats.achievements_earned,
        stats=statistics_to_dict(stats),
        best_rank=rank_result.scalar_one_or_none(),
        now=datetime.now(ZoneInfo(tz_name)),
        context=dict(context or {}),
    )


async def _earned_ids(db: AsyncSession, user_id: int) -> set[int]:
    result = await db.execute(
        select(UserAchievement.achievement_id).where(
            UserAchievement.user_id == user_id,
            UserAchievement.earned_at.is_not(None),
        )
    )
    return set(result.scalars())


async def _get_or_create_record(db: AsyncSession, user_id: int, achievement_id: int) -> UserAchievement:
    """Lazily create the per-user achievement row, tolerating a concurrent insert."""
    stmt = select(UserAchievement).where(
        UserAchievement.user_id == user_id,
        UserAchievement.achievement_id == achievement_id,
    )
    record = (await db.execute(stmt)).scalar_one_or_none()
    if record is not None:
        return record

    record = UserAchievement(
        user_id=user_id,
        achievement_id=achievement_id,
        progress=0.0,
        updated_at=datetime.now(timezone.utc),
    )
    try:
        async with db.begin_nested():
            db.add(record)
    except IntegrityError:
        record = (await db.execute(stmt)).scalar_one()
    return record


async def grant_achievement(
    db: AsyncSession,
    notifier: Publisher | None,
    user_id: int,
    achievement: Achievement,
) -> bool:
    """Grant an achievement at most once.

    Returns True if this call performed the grant, False if it was already
    earned. Handles:
    1. Lazily create the user_achievements row (UNIQUE constraint)
    2. Set earned_at with a conditional UPDATE so only one writer wins
    3. Grant the XP reward (idempotent via idempotency_key)
    4. Increment user_statistics.achievements_earned
    5. Emit achievement_unlocked
    """
    record = await _get_or_create_record(db, user_id, achievement.id)
    if record.earned_at is not None:
        return False

    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(UserAchievement)
        .where(
            UserAchievement.id == record.id,
            UserAchievement.earned_at.is_(None),
        )
        .values(earned_at=now, progress=100.0, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.refresh(record)
        return False
    await db.refresh(record)

    await get_or_create_statistics(db, user_id)
    await db.execute(
        update(UserStatistics)
        .where(UserStatistics.user_id == user_id)
        .values(achievements_earned=UserStatistics.achievements_earned + 1)
        .execution_options(synchronize_session=False)
    )
    stats = await db.get(UserStatistics, user_id)
    await db.refresh(stats)

    if achievement.xp_reward > 0:
        await apply_xp(
            db, notifier, user_id, achievement.xp_reward,
            source="achievement",
            source_id=achievement.code,
            idempotency_key=f"achievement:{achievement.code}:{user_id}",
            evaluate_achievements=False,
        )

    logger.info("Granted achievement %s to user %s", achievement.code, user_id)
    await publish(notifier, ACHIEVEMENT_UNLOCKED, user_id, {
        "code": achievement.code,
        "name": achievement.name,
        "description": achievement.description,
        "category": achievement.category,
        "rarity": achievement.rarity,
        "xp_reward": achievement.xp_reward,
        "earned_at": now.isoformat(),
    })
    return True


async def update_progress(
    db: AsyncSession,
    user_id: int,
    achievement: Achievement,
    measurement: Measurement,
) -> bool:
    """Record partial progress. Progress only moves forward."""
    percent = round(measurement.percent, 2)
    record = await _get_or_create_record(db, user_id, achievement.id)
    if record.earned_at is not None or percent <= record.progress:
        return False
    now = datetime.now(timezone.utc)
    record.progress = percent
    record.progress_data = {
        "current": measurement.current,
        "target": measurement.target,
        "updated_at": now.isoformat(),
    }
    record.updated_at = now
    await db.flush()
    return True


async def _pending_achievements(
    db: AsyncSession,
    earned: set[int],
    categories: Collection[AchievementCategory] | None,
) -> list[Achievement]:
    stmt = (
        select(Achievement)
        .where(Achievement.is_active.is_(True))
        .order_by(Achievement.display_order, Achievement.id)
    )
    if categories:
        stmt = stmt.where(Achievement.category.in_([c.value for c in categories]))
    result = await db.execute(stmt)
    return [a for a in result.scalars() if a.id not in earned]


async def check_and_grant(
    db: AsyncSession,
    notifier: Publisher | None,
    user_id: int,
    context: dict | None = None,
    *,
    categories: Collection[AchievementCategory] | None = None,
    tz_name: str = "UTC",
) -> list[Achievement]:
    """Grant every active achievement whose criteria are now met.

    Grants can unlock further achievements (XP rewards raise the level,
    earned counts grow), so evaluation repeats until a pass grants
    nothing. The catalog is finite and grants are at-most-once, so the
    loop terminates. Already earned achievements never reappear in the
    result. Does not commit.
    """
    earned = await _earned_ids(db, user_id)
    newly: list[Achievement] = []

    while True:
        pending = await _pending_achievements(db, earned, categories)
        if not pending:
            break
        facts = await build_facts(db, user_id, context, tz_name)
        granted_any = False

        for achievement in pending:
            try:
                criteria = parse_criteria(achievement.category, achievement.criteria)
            except (ValueError, ValidationError):
                logger.warning("Skipping achievement %s with invalid criteria", achievement.code, exc_info=True)
                continue

            measurement = measure(criteria, facts)
            if measurement.met:
                if await grant_achievement(db, notifier, user_id, achievement):
                    newly.append(achievement)
                    granted_any = True
                earned.add(achievement.id)
            elif criteria.track_progress:
                await update_progress(db, user_id, achievement, measurement)

        if not granted_any:
            break

    return newly


async def list_achievements(db: AsyncSession, user_id: int) -> dict:
    """Merge the active catalog with the user's earned and progress state."""
    await get_user(db, user_id)

    result = await db.execute(
        select(Achievement)
        .where(Achievement.is_active.is_(True))
        .order_by(Achievement.display_order, Achievement.id)
    )
    achievements = result.scalars().all()

    rec_result = await db.execute(
        select(UserAchievement).where(UserAchievement.user_id == user_id)
    )
    records = {r.achievement_id: r for r in rec_result.scalars()}

    by_category: dict[str, list[dict]] = {}
    earned_count = 0
    for a in achievements:
        rec = records.get(a.id)
        is_earned = rec is not None and rec.earned_at is not None
        earned_count += is_earned
        by_category.setdefault(a.category, []).append({
            "code": a.code,
            "name": a.name,
            "description": a.description,
            "category": a.category,
            "rarity": a.rarity,
            "xp_reward": a.xp_reward,
            "earned": is_earned,
            "earned_at": rec.earned_at if is_earned else None,
            "progress": 100.0 if is_earned else (rec.progress if rec else 0.0),
        })

    total = len(achievements)
    return {
        "summary": {
            "total": total,
            "earned": earned_count,
            "percent": round(earned_count / total * 100) if total else 0,
        },
        "achievements_by_category": by_category,
    }
