"""Shared test fixtures.

Tests run against an in-memory SQLite database (aiosqlite, one shared
connection) and the in-memory cache tier only. Commit the ``db`` session
before calling code that opens its own sessions from ``session_factory``:
both use the same connection.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from quizrank.cache.memory import MemoryStore
from quizrank.cache.service import CacheService
from quizrank.config import Settings
from quizrank.container import ServiceContainer
from quizrank.database import get_session
from quizrank.db.base import Base
from quizrank.db.models import Achievement, User
from quizrank.leaderboard.service import LeaderboardService
from quizrank.progression.seed import seed_levels

ADMIN_TOKEN = "test-admin-token"


class RecordingNotifier:
    """Collects published events instead of sending them to Redis."""

    def __init__(self) -> None:
        self.events: list[tuple[str, int | None, dict]] = []

    async def publish(self, event: str, user_id: int | None, payload: dict) -> None:
        self.events.append((event, user_id, payload))

    def deferred(self):
        from quizrank.notifications import DeferredNotifier

        return DeferredNotifier(self)

    def of(self, event: str) -> list[tuple[str, int | None, dict]]:
        return [e for e in self.events if e[0] == event]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        redis_enabled=False,
        admin_api_token=ADMIN_TOKEN,
        start_background_jobs=False,
        log_format="console",
        _env_file=None,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as db:
        await seed_levels(db)
    return factory


@pytest_asyncio.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Sessions on separate connections to one SQLite file, for concurrency tests.

    Every transaction starts with BEGIN IMMEDIATE, so concurrent writers queue
    on the database lock instead of failing their lock upgrade.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'quizrank.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as db:
        await seed_levels(db)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def cache(settings: Settings) -> CacheService:
    return CacheService(None, MemoryStore(settings.cache_memory_capacity), prefix=settings.cache_key_prefix)


@pytest.fixture
def leaderboards(cache: CacheService, settings: Settings) -> LeaderboardService:
    return LeaderboardService(cache, settings)


@pytest_asyncio.fixture
async def make_user(db: AsyncSession):
    """Factory creating committed users."""
    from quizrank.progression.service import get_or_create_user

    async def _make(username: str = "alice") -> User:
        user, _ = await get_or_create_user(db, username)
        await db.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def add_achievements(db: AsyncSession):
    """Factory inserting a small custom catalog."""

    async def _add(*definitions: dict) -> list[Achievement]:
        rows = []
        for order, data in enumerate(definitions, start=1):
            row = Achievement(
                code=data["code"],
                name=data.get("name", data["code"].replace("_", " ").title()),
                description=data.get("description", ""),
                category=data["category"],
                criteria=data["criteria"],
                xp_reward=data.get("xp_reward", 0),
                rarity=data.get("rarity", "common"),
                display_order=order,
                is_active=data.get("is_active", True),
            )
            db.add(row)
            rows.append(row)
        await db.commit()
        return rows

    return _add


@pytest_asyncio.fixture
async def container(settings, session_factory, notifier) -> ServiceContainer:
    built = ServiceContainer.build(settings, session_factory, None)
    built.notifier = notifier  # type: ignore[assignment]
    return built


@pytest_asyncio.fixture
async def client(container, session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and container."""
    from quizrank.main import create_app

    app = create_app()
    app.state.container = container

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await container.stop_jobs()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
