"""Periodic cache warming for leaderboard pages and the level table."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quizrank.cache.keys import LEVELS_KEY, leaderboard_key
from quizrank.cache.service import CacheService, WarmTask
from quizrank.config import Settings
from quizrank.leaderboard.periods import PERIOD_TYPES
from quizrank.leaderboard.service import LeaderboardService
from quizrank.progression.level_table import DEFAULT_LEVEL_BANDS
from quizrank.progression.service import load_level_bands
from quizrank.sync.scheduler import PeriodicJob, SingleFlight

logger = logging.getLogger(__name__)


class CacheWarmer:
    """Primes the hottest read paths so the first request after a flush is cheap."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheService,
        leaderboards: LeaderboardService,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.leaderboards = leaderboards
        self.settings = settings
        self.flight = SingleFlight("cache-warm")
        self.job = PeriodicJob(
            "cache-warm",
            self.warm,
            settings.cache_warm_interval_seconds,
            initial_delay=settings.cache_warm_initial_delay_seconds,
        )
        self.last_warm_at: datetime | None = None
        self.last_result: dict | None = None

    def _leaderboard_tasks(self, db: AsyncSession, category_id: int | None) -> list[WarmTask]:
        tasks = []
        for period_type in PERIOD_TYPES:
            window = self.leaderboards.window(period_type)
            for limit in self.settings.cache_warm_leaderboard_limits:
                tasks.append(WarmTask(
                    leaderboard_key(period_type, category_id, window.start, limit, 0),
                    # bind loop variables now
                    lambda p=period_type, n=limit, w=window: self.leaderboards.build_page(
                        db, p, category_id, n, 0, w.start,
                    ),
                    self.leaderboards.ttl_for(period_type),
                ))
        return tasks

    async def _levels(self, db: AsyncSession) -> list[dict]:
        return await load_level_bands(db) or DEFAULT_LEVEL_BANDS

    async def warm(self) -> dict | None:
        """Warm every configured key. Skipped (returns None) while a warm is in progress."""
        return await self.flight.run(self._warm)

    async def force_warm(self) -> dict | None:
        self.flight.reset()
        return await self.warm()

    async def _warm(self) -> dict:
        async with self.session_factory() as db:
            categories = await self.leaderboards.active_categories(db)
            tasks = [WarmTask(LEVELS_KEY, lambda: self._levels(db), self.settings.levels_cache_ttl_seconds)]
            tasks += self._leaderboard_tasks(db, None)
            for category_id in categories:
                tasks += self._leaderboard_tasks(db, category_id)
            # An AsyncSession cannot run statements concurrently
            result = {"warmed": 0, "failed": 0}
            for task in tasks:
                outcome = await self.cache.warm([task])
                result["warmed"] += outcome["warmed"]
                result["failed"] += outcome["failed"]

        self.last_warm_at = datetime.now(timezone.utc)
        self.last_result = {**result, "categories": len(categories)}
        logger.info("Cache warm complete: %s", self.last_result)
        return self.last_result

    async def warm_category(self, category_id: int) -> dict:
        """Warm leaderboard pages for a single category."""
        async with self.session_factory() as db:
            result = {"warmed": 0, "failed": 0}
            for task in self._leaderboard_tasks(db, category_id):
                outcome = await self.cache.warm([task])
                result["warmed"] += outcome["warmed"]
                result["failed"] += outcome["failed"]
        return result

    async def invalidate_category(self, category_id: int | None = None) -> int:
        return await self.leaderboards.invalidate(category_id)

    def get_status(self) -> dict:
        return {
            "in_progress": self.flight.in_flight,
            "running": self.job.running,
            "interval_seconds": self.job.interval,
            "last_warm_at": self.last_warm_at.isoformat() if self.last_warm_at else None,
            "next_run_at": self.job.next_run_at.isoformat() if self.job.next_run_at else None,
            "last_result": self.last_result,
        }
