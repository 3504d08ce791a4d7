"""Operator endpoints for the cache, the reconciler and the storage monitor.

Every route requires the X-Admin-Token header.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from quizrank.container import ServiceContainer
from quizrank.dependencies import get_container, require_admin

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


class IntervalRequest(BaseModel):
    seconds: float = Field(gt=0)


class StorageLimitRequest(BaseModel):
    limit_mb: float = Field(gt=0)


# ── Cache ──


@router.get("/cache/stats")
async def cache_stats(container: ServiceContainer = Depends(get_container)) -> dict:
    return {"cache": container.cache.get_stats(), "warming": container.warmer.get_status()}


@router.post("/cache/clear")
async def cache_clear(container: ServiceContainer = Depends(get_container)) -> dict:
    await container.cache.clear()
    container.cache.reset_stats()
    return {"cleared": True}


@router.post("/cache/warm")
async def cache_warm(container: ServiceContainer = Depends(get_container)) -> dict:
    result = await container.warmer.force_warm()
    return {"result": result}


@router.post("/cache/invalidate")
async def cache_invalidate(
    category_id: int | None = Query(default=None, ge=1),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Drop cached leaderboard pages (all of them, or the global board plus one category)."""
    removed = await container.warmer.invalidate_category(category_id)
    return {"removed": removed}


# ── Reconciler ──


@router.get("/sync/status")
async def sync_status(container: ServiceContainer = Depends(get_container)) -> dict:
    return container.reconciler.get_status()


@router.post("/sync/force")
async def sync_force(container: ServiceContainer = Depends(get_container)) -> dict:
    report = await container.reconciler.force_run()
    return {"report": report}


@router.put("/sync/interval")
async def sync_interval(body: IntervalRequest, container: ServiceContainer = Depends(get_container)) -> dict:
    await container.reconciler.set_interval(body.seconds)
    return {"interval_seconds": container.reconciler.job.interval}


@router.post("/sync/clear-conflicts")
async def sync_clear_conflicts(container: ServiceContainer = Depends(get_container)) -> dict:
    return {"cleared": container.reconciler.clear_conflict_history()}


# ── Storage ──


@router.get("/storage/status")
async def storage_status(container: ServiceContainer = Depends(get_container)) -> dict:
    return await container.storage.get_status()


@router.put("/storage/limit")
async def storage_limit(body: StorageLimitRequest, container: ServiceContainer = Depends(get_container)) -> dict:
    return {"limit_mb": container.storage.set_limit(body.limit_mb)}


@router.get("/storage/report")
async def storage_report(container: ServiceContainer = Depends(get_container)) -> dict:
    return await container.storage.generate_report()


@router.post("/storage/cleanup")
async def storage_cleanup(container: ServiceContainer = Depends(get_container)) -> dict:
    return await container.storage.perform_cleanup()
