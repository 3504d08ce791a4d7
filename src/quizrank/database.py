"""Async SQLAlchemy engine and session factory.

The request path and the background jobs share one session factory: routes
get a session per request through ``get_session``, jobs open their own with
``get_session_factory()()``.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str, pool_size: int, max_overflow: int) -> dict[str, object]:
    options: dict[str, object] = {"pool_pre_ping": True}
    # SQLite (local runs, tests) has no server-side pool or statement cache
    if url.startswith("postgresql"):
        options.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            connect_args={"statement_cache_size": 0},
        )
    return options


async def init_db(url: str, *, pool_size: int = 20, max_overflow: int = 10) -> None:
    """Create the engine and the shared session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = create_async_engine(url, **_engine_options(url, pool_size, max_overflow))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized; call init_db() during startup")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized; call init_db() during startup")
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request."""
    async with get_session_factory()() as session:
        yield session
