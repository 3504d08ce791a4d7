"""Quiz session endpoints: start a session, submit a completed attempt."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.container import ServiceContainer
from quizrank.dependencies import get_container, get_db
from quizrank.games.attempt_service import complete_attempt, start_session
from quizrank.progression.schemas import AttemptData

router = APIRouter(prefix="/api/v1", tags=["Games"])


class StartSessionRequest(BaseModel):
    category_id: int | None = Field(default=None, ge=1)
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    mode: Literal["solo", "multiplayer"] = "solo"


@router.post("/users/{user_id}/sessions")
async def create_session(
    user_id: int,
    body: StartSessionRequest,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    session = await start_session(
        db, container.cache, user_id,
        category_id=body.category_id,
        difficulty=body.difficulty,
        mode=body.mode,
    )
    return {
        "session_id": session.id,
        "status": session.status,
        "started_at": session.started_at.isoformat(),
    }


@router.post("/users/{user_id}/attempts")
async def submit_attempt(
    user_id: int,
    attempt: AttemptData,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Score the attempt and update statistics, XP, achievements and leaderboards."""
    return await complete_attempt(
        db,
        container.notifier,
        container.cache,
        container.leaderboards,
        container.settings,
        user_id,
        attempt,
    )
