"""Long-lived services shared by the request path and the background jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quizrank.cache.memory import MemoryStore
from quizrank.cache.service import CacheService
from quizrank.cache.warming import CacheWarmer
from quizrank.config import Settings
from quizrank.leaderboard.service import LeaderboardService
from quizrank.notifications import Notifier
from quizrank.sync.reconciler import Reconciler
from quizrank.sync.storage import StorageMonitor

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    cache: CacheService
    notifier: Notifier
    leaderboards: LeaderboardService
    warmer: CacheWarmer
    reconciler: Reconciler
    storage: StorageMonitor

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis: object | None = None,
    ) -> ServiceContainer:
        cache = CacheService(
            redis,
            MemoryStore(settings.cache_memory_capacity),
            prefix=settings.cache_key_prefix,
            default_ttl=settings.cache_default_ttl_seconds,
        )
        leaderboards = LeaderboardService(cache, settings)
        return cls(
            settings=settings,
            cache=cache,
            notifier=Notifier(redis),
            leaderboards=leaderboards,
            warmer=CacheWarmer(session_factory, cache, leaderboards, settings),
            reconciler=Reconciler(session_factory, cache, settings, leaderboards),
            storage=StorageMonitor(session_factory, cache, settings),
        )

    def start_jobs(self) -> None:
        """Start the periodic reconciler, cache warmer and storage monitor."""
        self.reconciler.start()
        self.warmer.job.start()
        self.storage.job.start()
        logger.info("Background jobs started")

    async def stop_jobs(self) -> None:
        """Cancel pending timers and wait for in-flight passes. Safe to call twice."""
        await self.reconciler.stop()
        await self.warmer.job.stop()
        await self.storage.job.stop()
        for job in (self.reconciler.job, self.warmer.job, self.storage.job):
            await job.wait_idle()
        logger.info("Background jobs stopped")
