"""Storage budget monitor.

Usage is an estimate: a fixed per-row size for each table plus the size of
its JSON documents, plus a flat size per in-memory cache entry. The budget
and thresholds are policy settings, not derived limits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import Text, cast, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quizrank.cache.service import CacheService
from quizrank.config import Settings
from quizrank.db.models import (
    GameSession,
    LeaderboardEntry,
    QuestionAnswer,
    SyncConflict,
    User,
    UserAchievement,
    UserStatistics,
    XPLedger,
)
from quizrank.exceptions import InputValidationError
from quizrank.sync.scheduler import PeriodicJob, SingleFlight

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# (table, model, estimated bytes per row, JSON column or None)
TABLES = [
    ("users", User, 256, None),
    ("user_statistics", UserStatistics, 192, "category_stats"),
    ("game_sessions", GameSession, 160, "session_data"),
    ("question_answers", QuestionAnswer, 64, None),
    ("leaderboard_entries", LeaderboardEntry, 96, None),
    ("user_achievements", UserAchievement, 80, "progress_data"),
    ("xp_ledger", XPLedger, 128, None),
    ("sync_conflicts", SyncConflict, 96, None),
]

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"


class StorageMonitor:
    """Tracks estimated storage against a configurable budget and reclaims space."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheService,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.settings = settings
        self.limit_mb = settings.storage_limit_mb
        self.flight = SingleFlight("storage-monitor")
        self.job = PeriodicJob(
            "storage-monitor",
            self.run_check,
            settings.storage_check_interval_seconds,
            initial_delay=settings.storage_check_interval_seconds,
        )
        self.last_check_at: datetime | None = None
        self.last_cleanup: dict | None = None

    @property
    def limit_bytes(self) -> int:
        return int(self.limit_mb * MB)

    async def calculate_usage(self, db: AsyncSession) -> dict:
        breakdown: dict[str, int] = {}
        for name, model, row_bytes, json_column in TABLES:
            columns = [func.count()]
            if json_column is not None:
                columns.append(func.coalesce(func.sum(func.length(cast(getattr(model, json_column), Text))), 0))
            row = (await db.execute(select(*columns).select_from(model))).one()
            breakdown[name] = int(row[0]) * row_bytes + (int(row[1]) if json_column is not None else 0)
        breakdown["cache"] = len(self.cache.memory) * self.settings.storage_cache_item_bytes

        total = sum(breakdown.values())
        return {
            "total_bytes": total,
            "total_mb": round(total / MB, 3),
            "limit_mb": self.limit_mb,
            "usage_ratio": round(total / self.limit_bytes, 4) if self.limit_bytes else 0.0,
            "breakdown": breakdown,
        }

    def classify(self, usage_ratio: float) -> str:
        if usage_ratio >= self.settings.storage_cleanup_ratio:
            return CRITICAL
        if usage_ratio >= self.settings.storage_warning_ratio:
            return WARNING
        return HEALTHY

    async def check_thresholds(self) -> dict:
        """Current usage plus the action it calls for: none, warning or cleanup."""
        async with self.session_factory() as db:
            usage = await self.calculate_usage(db)
        status = self.classify(usage["usage_ratio"])
        usage["status"] = status
        usage["action"] = {HEALTHY: "none", WARNING: "warning", CRITICAL: "cleanup"}[status]
        return usage

    async def run_check(self) -> dict | None:
        return await self.flight.run(self._check)

    async def _check(self) -> dict:
        usage = await self.check_thresholds()
        self.last_check_at = datetime.now(timezone.utc)
        status = usage["status"]
        if status == CRITICAL:
            logger.warning("Storage at %.0f%% of budget, cleaning up", usage["usage_ratio"] * 100)
            usage["cleanup"] = await self.perform_cleanup()
        elif status == WARNING:
            logger.warning("Storage at %.0f%% of budget", usage["usage_ratio"] * 100)
        return usage

    async def perform_cleanup(self, now: datetime | None = None) -> dict:
        """Delete finished sessions past retention and clear the cache."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.settings.storage_session_retention_days)

        async with self.session_factory() as db:
            before = (await self.calculate_usage(db))["total_bytes"]
            old_sessions = (
                select(GameSession.id)
                .where(
                    GameSession.status.in_(["completed", "abandoned"]),
                    func.coalesce(GameSession.completed_at, GameSession.started_at) < cutoff,
                )
                .scalar_subquery()
            )
            answers = await db.execute(
                delete(QuestionAnswer)
                .where(QuestionAnswer.session_id.in_(old_sessions))
                .execution_options(synchronize_session=False)
            )
            sessions = await db.execute(
                delete(GameSession)
                .where(GameSession.id.in_(old_sessions))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            await self.cache.clear()
            after = (await self.calculate_usage(db))["total_bytes"]

        self.last_cleanup = {
            "at": now.isoformat(),
            "sessions_deleted": sessions.rowcount or 0,
            "answers_deleted": answers.rowcount or 0,
            "bytes_freed": max(before - after, 0),
        }
        logger.info("Storage cleanup: %s", self.last_cleanup)
        return self.last_cleanup

    async def get_status(self) -> dict:
        async with self.session_factory() as db:
            usage = await self.calculate_usage(db)
        status = self.classify(usage["usage_ratio"])

        recommendations: list[str] = []
        if status == CRITICAL:
            recommendations.append("Run a storage cleanup now or raise the storage limit")
        elif status == WARNING:
            recommendations.append("Storage is approaching its limit; schedule a cleanup")
        if usage["breakdown"]["cache"] > 0.2 * usage["total_bytes"]:
            recommendations.append("The in-memory cache holds a large share of storage; consider clearing it")

        largest = sorted(usage["breakdown"].items(), key=lambda kv: kv[1], reverse=True)[:3]
        return {
            "status": status,
            "usage": usage,
            "thresholds": {
                "warning": self.settings.storage_warning_ratio,
                "cleanup": self.settings.storage_cleanup_ratio,
            },
            "largest_consumers": [{"name": n, "bytes": b} for n, b in largest],
            "recommendations": recommendations,
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "last_cleanup": self.last_cleanup,
        }

    def set_limit(self, limit_mb: float) -> float:
        if limit_mb < self.settings.storage_min_limit_mb:
            raise InputValidationError(
                f"Storage limit must be at least {self.settings.storage_min_limit_mb} MB"
            )
        self.limit_mb = limit_mb
        logger.info("Storage limit set to %s MB", limit_mb)
        return self.limit_mb

    async def generate_report(self, now: datetime | None = None) -> dict:
        """Usage, status and a 30-day growth projection from last week's sessions."""
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            usage = await self.calculate_usage(db)
            total_sessions = (await db.execute(select(func.count(GameSession.id)))).scalar_one()
            recent_sessions = (
                await db.execute(
                    select(func.count(GameSession.id)).where(GameSession.started_at >= now - timedelta(days=7))
                )
            ).scalar_one()

        bytes_per_session = usage["total_bytes"] / total_sessions if total_sessions else 0.0
        daily_growth = recent_sessions / 7 * bytes_per_session
        remaining = self.limit_bytes - usage["total_bytes"]
        return {
            "generated_at": now.isoformat(),
            "status": self.classify(usage["usage_ratio"]),
            "usage": usage,
            "sessions": {"total": total_sessions, "last_7_days": recent_sessions},
            "projection": {
                "daily_growth_bytes": round(daily_growth),
                "projected_mb_30_days": round((usage["total_bytes"] + daily_growth * 30) / MB, 3),
                "days_until_limit": (
                    max(int(remaining / daily_growth), 0) if daily_growth > 0 else None
                ),
            },
        }
