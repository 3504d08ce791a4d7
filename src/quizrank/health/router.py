"""Liveness, readiness and version endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.config import get_settings
from quizrank.database import get_session
from quizrank.redis_client import get_redis

router = APIRouter()


async def _check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


async def _check_redis() -> str:
    client = get_redis()
    if client is None:
        return "disabled"
    try:
        await client.ping()
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    request: Request,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Ready when the database answers. Redis may be disabled: the cache then runs in memory."""
    checks = {"database": await _check_database(db), "redis": await _check_redis()}
    ready = all(v in ("ok", "disabled") for v in checks.values())

    jobs: dict[str, bool] = {}
    container = getattr(request.app.state, "container", None)
    if container is not None:
        jobs = {
            "reconciler": container.reconciler.job.running,
            "cache_warmer": container.warmer.job.running,
            "storage_monitor": container.storage.job.running,
        }
    return {"status": "ready" if ready else "degraded", "checks": checks, "jobs": jobs}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {"version": settings.app_version, "environment": settings.environment}
