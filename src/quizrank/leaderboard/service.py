"""Leaderboard service: per-window score aggregates in the database.

PostgreSQL is the source of truth for every period window. Reads of
leaderboard pages go through the cache layer with a TTL that grows with
the period length; every write invalidates the affected pages.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.cache.keys import leaderboard_key, leaderboard_pattern
from quizrank.cache.service import CacheService
from quizrank.config import Settings
from quizrank.db.models import LeaderboardEntry, User
from quizrank.exceptions import TransientIOError
from quizrank.leaderboard.periods import (
    ALL_TIME,
    DAILY,
    MONTHLY,
    PERIOD_TYPES,
    WEEKLY,
    PeriodWindow,
    period_window,
    validate_period,
)
from quizrank.leaderboard.ranking import assign_ranks, percentile
from quizrank.notifications import LEADERBOARD_UPDATE, RANK_CHANGED, Publisher

logger = logging.getLogger(__name__)

GLOBAL_BOARD = 0


class LeaderboardService:
    """Upserts per-window aggregates and recomputes ranks one window at a time."""

    def __init__(self, cache: CacheService, settings: Settings) -> None:
        self.cache = cache
        self.settings = settings
        # Entries vanish once no coroutine holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, int, datetime], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _window_lock(self, period_type: str, category_id: int, window: PeriodWindow) -> asyncio.Lock:
        key = (period_type, category_id, window.start)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def ttl_for(self, period_type: str) -> int:
        return {
            DAILY: self.settings.leaderboard_ttl_daily_seconds,
            WEEKLY: self.settings.leaderboard_ttl_weekly_seconds,
            MONTHLY: self.settings.leaderboard_ttl_monthly_seconds,
            ALL_TIME: self.settings.leaderboard_ttl_all_time_seconds,
        }[period_type]

    def retention_for(self, period_type: str) -> timedelta | None:
        days = {
            DAILY: self.settings.leaderboard_retention_daily_days,
            WEEKLY: self.settings.leaderboard_retention_weekly_days,
            MONTHLY: self.settings.leaderboard_retention_monthly_days,
        }.get(period_type)
        return None if days is None else timedelta(days=days)

    def window(self, period_type: str, now: datetime | None = None) -> PeriodWindow:
        return period_window(period_type, now, self.settings.timezone)

    @staticmethod
    def _window_filter(period_type: str, category_id: int, window: PeriodWindow) -> tuple:
        return (
            LeaderboardEntry.period_type == period_type,
            LeaderboardEntry.category_id == category_id,
            LeaderboardEntry.period_start == window.start,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _upsert_entry(
        self,
        db: AsyncSession,
        user_id: int,
        period_type: str,
        category_id: int,
        window: PeriodWindow,
        score: int,
        xp_earned: int,
        now: datetime,
    ) -> LeaderboardEntry:
        stmt = select(LeaderboardEntry).where(
            LeaderboardEntry.user_id == user_id,
            *self._window_filter(period_type, category_id, window),
        )
        entry = (await db.execute(stmt)).scalar_one_or_none()

        if entry is None:
            entry = LeaderboardEntry(
                user_id=user_id,
                period_type=period_type,
                category_id=category_id,
                period_start=window.start,
                period_end=window.end,
                score=score,
                xp_earned=xp_earned,
                games_played=1,
                updated_at=now,
            )
            try:
                async with db.begin_nested():
                    db.add(entry)
                return entry
            except IntegrityError:
                entry = (await db.execute(stmt)).scalar_one()

        # Increment in SQL so concurrent results for the same user add up
        await db.execute(
            update(LeaderboardEntry)
            .where(LeaderboardEntry.id == entry.id)
            .values(
                score=LeaderboardEntry.score + score,
                xp_earned=LeaderboardEntry.xp_earned + xp_earned,
                games_played=LeaderboardEntry.games_played + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.refresh(entry)
        return entry

    async def _rerank(
        self,
        db: AsyncSession,
        period_type: str,
        category_id: int,
        window: PeriodWindow,
    ) -> dict[int, int]:
        result = await db.execute(
            select(LeaderboardEntry)
            .where(*self._window_filter(period_type, category_id, window))
            .with_for_update()
        )
        ranks: dict[int, int] = {}
        for entry, rank in assign_ranks(result.scalars().all()):
            if entry.rank != rank:
                entry.rank = rank
            ranks[entry.user_id] = rank
        await db.flush()
        return ranks

    async def recompute_ranks(
        self,
        db: AsyncSession,
        period_type: str,
        category_id: int,
        window: PeriodWindow,
    ) -> dict[int, int]:
        """Re-rank one window. Returns ``{user_id: rank}``.

        Recomputations of the same window never interleave; different
        windows proceed independently.
        """
        async with self._window_lock(period_type, category_id, window):
            return await self._rerank(db, period_type, category_id, window)

    async def record_result(
        self,
        db: AsyncSession,
        notifier: Publisher | None,
        user_id: int,
        score: int,
        xp_earned: int,
        category_id: int | None = None,
        now: datetime | None = None,
    ) -> list[LeaderboardEntry]:
        """Add one result to every period window of the global board and the category board.

        Does not commit. Each window's row is written and re-ranked under that
        window's lock, and windows are visited in a fixed order: periods first,
        the global board before the category board.
        """
        now = now or datetime.now(timezone.utc)
        boards = [GLOBAL_BOARD] + ([category_id] if category_id else [])
        updated: list[LeaderboardEntry] = []

        for period_type in PERIOD_TYPES:
            window = self.window(period_type, now)
            for board in boards:
                async with self._window_lock(period_type, board, window):
                    entry = await self._upsert_entry(
                        db, user_id, period_type, board, window, score, xp_earned, now,
                    )
                    previous_rank = entry.rank
                    ranks = await self._rerank(db, period_type, board, window)
                updated.append(entry)

                new_rank = ranks.get(user_id)
                if notifier is None:
                    continue
                if new_rank != previous_rank:
                    await notifier.publish(RANK_CHANGED, user_id, {
                        "period_type": period_type,
                        "category_id": board or None,
                        "previous_rank": previous_rank,
                        "rank": new_rank,
                    })
                await notifier.publish(LEADERBOARD_UPDATE, None, {
                    "period_type": period_type,
                    "category_id": board or None,
                    "window": window.to_dict(),
                    "entries": len(ranks),
                })

        return updated

    async def cleanup_old_entries(self, db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
        """Delete rows whose window ended before the retention horizon. Commits."""
        now = now or datetime.now(timezone.utc)
        removed: dict[str, int] = {}
        for period_type in PERIOD_TYPES:
            retention = self.retention_for(period_type)
            if retention is None:
                continue
            result = await db.execute(
                delete(LeaderboardEntry).where(
                    LeaderboardEntry.period_type == period_type,
                    LeaderboardEntry.period_end < now - retention,
                )
                .execution_options(synchronize_session=False)
            )
            removed[period_type] = result.rowcount or 0
        await db.commit()
        if any(removed.values()):
            logger.info("Leaderboard cleanup removed %s", removed)
        return removed

    async def invalidate(self, category_id: int | None = None) -> int:
        """Drop cached pages for the global board and, if given, one category."""
        if category_id is None:
            return await self.cache.delete_pattern(leaderboard_pattern())
        removed = await self.cache.delete_pattern(leaderboard_pattern(None, GLOBAL_BOARD))
        if category_id:
            removed += await self.cache.delete_pattern(leaderboard_pattern(None, category_id))
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def build_page(
        self,
        db: AsyncSession,
        period_type: str,
        category_id: int | None,
        limit: int,
        offset: int,
        now: datetime | None = None,
    ) -> dict:
        """Load one leaderboard page straight from the database."""
        board = category_id or GLOBAL_BOARD
        window = self.window(period_type, now)
        filters = self._window_filter(period_type, board, window)

        total = (
            await db.execute(select(func.count(LeaderboardEntry.id)).where(*filters))
        ).scalar_one()
        result = await db.execute(
            select(LeaderboardEntry, User.username)
            .join(User, User.id == LeaderboardEntry.user_id)
            .where(*filters)
            .order_by(
                LeaderboardEntry.score.desc(),
                LeaderboardEntry.xp_earned.desc(),
                LeaderboardEntry.user_id.asc(),
            )
            .limit(limit)
            .offset(offset)
        )
        entries = [
            {
                "rank": entry.rank,
                "user_id": entry.user_id,
                "username": username,
                "score": entry.score,
                "xp_earned": entry.xp_earned,
                "games_played": entry.games_played,
            }
            for entry, username in result.all()
        ]
        return {
            "period_type": period_type,
            "category_id": category_id or None,
            "window": window.to_dict(),
            "entries": entries,
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def get_leaderboard(
        self,
        db: AsyncSession,
        period_type: str,
        category_id: int | None = None,
        limit: int = 10,
        offset: int = 0,
        caller_id: int | None = None,
        now: datetime | None = None,
    ) -> dict:
        """Cache-backed leaderboard page, plus the caller's own rank when asked."""
        validate_period(period_type)
        limit = max(1, min(limit, self.settings.leaderboard_max_limit))
        offset = max(offset, 0)

        window = self.window(period_type, now)
        page = await self.cache.get_with_refresh(
            leaderboard_key(period_type, category_id, window.start, limit, offset),
            lambda: self.build_page(db, period_type, category_id, limit, offset, window.start),
            self.ttl_for(period_type),
        )
        if page is None:
            raise TransientIOError("Leaderboard temporarily unavailable")

        result = dict(page)
        result["caller_rank"] = (
            await self.get_user_rank(db, caller_id, period_type, category_id, now)
            if caller_id is not None
            else None
        )
        return result

    async def get_user_rank(
        self,
        db: AsyncSession,
        user_id: int,
        period_type: str,
        category_id: int | None = None,
        now: datetime | None = None,
    ) -> dict:
        """Rank, score and percentile of one user in the current window."""
        validate_period(period_type)
        board = category_id or GLOBAL_BOARD
        window = self.window(period_type, now)
        filters = self._window_filter(period_type, board, window)

        total = (
            await db.execute(select(func.count(LeaderboardEntry.id)).where(*filters))
        ).scalar_one()
        entry = (
            await db.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id == user_id, *filters))
        ).scalar_one_or_none()

        if entry is None or entry.rank is None:
            return {
                "period_type": period_type,
                "category_id": category_id or None,
                "rank": None,
                "score": 0,
                "xp_earned": 0,
                "games_played": 0,
                "total_entries": total,
                "percentile": 0,
            }
        return {
            "period_type": period_type,
            "category_id": category_id or None,
            "rank": entry.rank,
            "score": entry.score,
            "xp_earned": entry.xp_earned,
            "games_played": entry.games_played,
            "total_entries": total,
            "percentile": percentile(entry.rank, total),
        }

    async def active_categories(self, db: AsyncSession) -> list[int]:
        """Categories that have an all-time board."""
        result = await db.execute(
            select(LeaderboardEntry.category_id)
            .where(
                LeaderboardEntry.period_type == ALL_TIME,
                LeaderboardEntry.category_id != GLOBAL_BOARD,
            )
            .distinct()
            .order_by(LeaderboardEntry.category_id)
        )
        return list(result.scalars())
