"""Leaderboard API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.dependencies import get_db, get_leaderboards
from quizrank.leaderboard.periods import ALL_TIME, PERIOD_TYPES
from quizrank.leaderboard.service import LeaderboardService
from quizrank.progression.service import get_user

router = APIRouter(prefix="/api/v1", tags=["Leaderboards"])


def _check_period(period_type: str) -> None:
    if period_type not in PERIOD_TYPES:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown period '{period_type}', expected one of {', '.join(PERIOD_TYPES)}",
        )


@router.get("/leaderboards/{period_type}")
async def read_leaderboard(
    period_type: str,
    category_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: int | None = Query(default=None, description="Include this user's own rank"),
    db: AsyncSession = Depends(get_db),
    leaderboards: LeaderboardService = Depends(get_leaderboards),
) -> dict:
    _check_period(period_type)
    return await leaderboards.get_leaderboard(
        db, period_type, category_id, limit, offset, caller_id=user_id,
    )


@router.get("/users/{user_id}/rank")
async def read_user_rank(
    user_id: int,
    period_type: str = Query(default=ALL_TIME),
    category_id: int | None = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    leaderboards: LeaderboardService = Depends(get_leaderboards),
) -> dict:
    """Rank, score and percentile in the current window (rank is null when unranked)."""
    _check_period(period_type)
    await get_user(db, user_id)
    return await leaderboards.get_user_rank(db, user_id, period_type, category_id)
