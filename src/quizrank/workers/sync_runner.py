"""Standalone runner for the background jobs.

Runs the reconciler, the cache warmer and the storage monitor outside the
API process (set QUIZRANK_START_BACKGROUND_JOBS=false on the API then).

Usage: python -m quizrank.workers.sync_runner
"""

from __future__ import annotations

import asyncio
import logging
import signal

from quizrank.config import get_settings
from quizrank.container import ServiceContainer
from quizrank.database import close_db, get_session_factory, init_db
from quizrank.middleware.logging import setup_logging
from quizrank.redis_client import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)


async def main() -> None:
    """Start the periodic jobs and run until SIGINT/SIGTERM."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    if settings.redis_enabled:
        await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)

    container = ServiceContainer.build(settings, get_session_factory(), get_redis())
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(
        "Starting background jobs (sync every %ss, warm every %ss)",
        settings.sync_interval_seconds, settings.cache_warm_interval_seconds,
    )
    container.start_jobs()

    try:
        await stop_event.wait()
    finally:
        await container.stop_jobs()
        await close_redis()
        await close_db()
        logger.info("Background jobs runner stopped")


if __name__ == "__main__":
    asyncio.run(main())
