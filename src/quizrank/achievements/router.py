"""Achievement API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.achievements.service import check_and_grant, list_achievements
from quizrank.container import ServiceContainer
from quizrank.dependencies import get_container, get_db
from quizrank.progression.service import get_user

router = APIRouter(prefix="/api/v1", tags=["Achievements"])


class CheckAchievementsRequest(BaseModel):
    context: dict = {}


@router.get("/users/{user_id}/achievements")
async def get_user_achievements(user_id: int, db: AsyncSession = Depends(get_db)) -> dict:
    """Catalog merged with the user's earned state and progress."""
    return await list_achievements(db, user_id)


@router.post("/users/{user_id}/achievements/check")
async def check_achievements(
    user_id: int,
    body: CheckAchievementsRequest,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Evaluate the catalog now and grant whatever is newly met."""
    await get_user(db, user_id)
    events = container.notifier.deferred()
    try:
        unlocked = await check_and_grant(
            db, events, user_id, body.context, tz_name=container.settings.timezone,
        )
        await db.commit()
    except Exception:
        events.discard()
        raise
    await events.flush()
    return {
        "new_achievements": [
            {
                "code": a.code,
                "name": a.name,
                "description": a.description,
                "category": a.category,
                "rarity": a.rarity,
                "xp_reward": a.xp_reward,
            }
            for a in unlocked
        ],
    }
