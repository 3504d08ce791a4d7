"""Progression API endpoints: users, XP, statistics and levels."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.cache.keys import LEVELS_KEY, user_stats_pattern
from quizrank.container import ServiceContainer
from quizrank.db.models import UserStatistics
from quizrank.dependencies import get_container, get_db
from quizrank.exceptions import TransientIOError
from quizrank.progression.level_table import DEFAULT_LEVEL_BANDS
from quizrank.progression.schemas import (
    AllLevelsResponse,
    ApplyXPRequest,
    AttemptData,
    LevelEntry,
    ProgressionResponse,
    ProgressionSnapshot,
    StatisticsResponse,
    UserProgressionInfo,
    XPCalculationRequest,
    XPCalculationResponse,
)
from quizrank.progression.scoring import xp_breakdown
from quizrank.progression.service import (
    apply_xp,
    get_or_create_user,
    get_progression,
    get_stats_summary,
    get_user,
    load_level_bands,
    record_attempt,
    statistics_to_dict,
)

router = APIRouter(prefix="/api/v1", tags=["Progression"])


class CreateUserRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)


@router.post("/users", response_model=UserProgressionInfo)
async def create_user(body: CreateUserRequest, db: AsyncSession = Depends(get_db)):
    """Register a player (returns the existing profile for a known username)."""
    user, _created = await get_or_create_user(db, body.username)
    await db.commit()
    return UserProgressionInfo(
        id=user.id,
        username=user.username,
        total_xp=user.total_xp,
        level=user.level,
        title=user.title,
        current_level_xp=user.current_level_xp,
        xp_to_next_level=user.xp_to_next_level,
        level_progress=user.level_progress,
    )


@router.post("/users/{user_id}/xp/calculate", response_model=XPCalculationResponse)
async def calculate_xp(user_id: int, body: XPCalculationRequest, db: AsyncSession = Depends(get_db)):
    """Preview the XP an attempt would earn. Nothing is stored."""
    await get_user(db, user_id)
    streak = body.current_streak
    if streak is None:
        stats = await db.get(UserStatistics, user_id)
        streak = stats.current_streak if stats is not None else 0
    return XPCalculationResponse(**xp_breakdown(body.attempt, streak))


@router.post("/users/{user_id}/xp", response_model=ProgressionSnapshot)
async def grant_xp(
    user_id: int,
    body: ApplyXPRequest,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Apply XP to a user. Replays with the same idempotency key are no-ops."""
    events = container.notifier.deferred()
    try:
        snapshot = await apply_xp(
            db, events, user_id, body.xp,
            source=body.source,
            idempotency_key=body.idempotency_key,
        )
        await db.commit()
    except Exception:
        events.discard()
        raise
    await events.flush()
    return ProgressionSnapshot(**snapshot)


@router.get("/users/{user_id}/progression", response_model=ProgressionResponse)
async def read_progression(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Level, statistics and most recent achievements."""
    return await get_progression(db, user_id, container.settings.recent_achievements_limit)


@router.post("/users/{user_id}/statistics", response_model=StatisticsResponse)
async def record_statistics(
    user_id: int,
    attempt: AttemptData,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Fold an attempt into the user's statistics without awarding XP."""
    settings = container.settings
    stats = await record_attempt(
        db, user_id, attempt,
        tz_name=settings.timezone, win_threshold=settings.win_threshold,
    )
    await db.commit()
    await container.cache.delete_pattern(user_stats_pattern(user_id))
    return StatisticsResponse(**statistics_to_dict(stats))


@router.get("/users/{user_id}/statistics/summary")
async def read_stats_summary(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Cached totals over completed attempts."""
    return await get_stats_summary(
        db, container.cache, user_id, container.settings.user_stats_cache_ttl_seconds,
    )


@router.get("/levels", response_model=AllLevelsResponse)
async def list_levels(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """All level bands, served from cache."""

    async def _load() -> list[dict]:
        return await load_level_bands(db) or DEFAULT_LEVEL_BANDS

    levels = await container.cache.get_with_refresh(
        LEVELS_KEY, _load, container.settings.levels_cache_ttl_seconds,
    )
    if levels is None:
        raise TransientIOError("Level table temporarily unavailable")
    return AllLevelsResponse(levels=[LevelEntry(**band) for band in levels])
