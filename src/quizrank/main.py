"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from quizrank.achievements.router import router as achievements_router
from quizrank.achievements.seed import seed_achievements
from quizrank.admin.router import router as admin_router
from quizrank.config import get_settings
from quizrank.container import ServiceContainer
from quizrank.database import close_db, get_engine, get_session_factory, init_db
from quizrank.db.base import Base
from quizrank.games.router import router as games_router
from quizrank.health.router import router as health_router
from quizrank.leaderboard.router import router as leaderboard_router
from quizrank.middleware import setup_middleware
from quizrank.progression.router import router as progression_router
from quizrank.progression.seed import seed_levels
from quizrank.redis_client import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    if settings.redis_enabled:
        await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)

    # Schema and seed data (idempotent)
    try:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with get_session_factory()() as db:
            await seed_levels(db)
            await seed_achievements(db)
    except Exception:
        logger.warning("Schema setup or seeding failed", exc_info=True)

    container = ServiceContainer.build(settings, get_session_factory(), get_redis())
    app.state.container = container
    if settings.start_background_jobs:
        container.start_jobs()

    yield

    await container.stop_jobs()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="QuizRank API",
        description="Progression, achievements and leaderboards for a trivia quiz backend",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(progression_router)
    app.include_router(achievements_router)
    app.include_router(leaderboard_router)
    app.include_router(games_router)
    app.include_router(admin_router)

    return app


app = create_app()
