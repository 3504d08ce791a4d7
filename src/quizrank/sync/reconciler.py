"""Background reconciliation between the cache and the database.

The database always wins. Each pass:

1. recomputes the cached per-user stats views from completed sessions and
   overwrites any field that drifted beyond tolerance, logging a conflict
2. recomputes per-question usage and success rate and writes only the
   questions that changed beyond a threshold
3. marks sessions stuck in progress as abandoned and evicts their cache
4. trims expired leaderboard windows and expired in-memory cache entries

Sub-tasks are isolated: one failing does not stop the others.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quizrank.cache.keys import session_key, user_stats_key
from quizrank.cache.service import CacheService
from quizrank.config import Settings
from quizrank.db.models import GameSession, Question, QuestionAnswer, SyncConflict
from quizrank.exceptions import StatsConflict
from quizrank.leaderboard.service import LeaderboardService
from quizrank.progression.service import compute_stats_summary
from quizrank.sync.scheduler import PeriodicJob, SingleFlight

logger = logging.getLogger(__name__)

RESOLUTION = "source_of_truth_wins"


def stats_tolerances(settings: Settings) -> dict[str, tuple[float, float]]:
    """Per-field ``(absolute floor, relative fraction)`` tolerances. Counters must match exactly."""
    score = (settings.sync_score_abs_tolerance, settings.sync_score_rel_tolerance)
    return {
        "games_played": (0.0, 0.0),
        "games_won": (0.0, 0.0),
        "questions_answered": (0.0, 0.0),
        "correct_answers": (0.0, 0.0),
        "total_score": score,
        "xp_earned": score,
        "accuracy": (settings.sync_accuracy_abs_tolerance, 0.0),
    }


def exceeds_tolerance(cached: object, fresh: float, floor: float, rel: float) -> bool:
    """True when ``|cached - fresh| > max(floor, rel * |fresh|)``. Non-numeric cached values always conflict."""
    if isinstance(cached, bool) or not isinstance(cached, (int, float)):
        return True
    return abs(cached - fresh) > max(floor, rel * abs(fresh))


def diff_stats(
    user_id: int,
    cached: dict,
    fresh: dict,
    tolerances: dict[str, tuple[float, float]],
) -> list[StatsConflict]:
    conflicts = []
    for field, (floor, rel) in tolerances.items():
        if field not in fresh:
            continue
        value = cached.get(field)
        if exceeds_tolerance(value, fresh[field], floor, rel):
            numeric = value if isinstance(value, (int, float)) and not isinstance(value, bool) else None
            conflicts.append(StatsConflict(user_id, field, numeric, fresh[field], RESOLUTION))
    return conflicts


class Reconciler:
    """Single-flight periodic reconciliation job."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheService,
        settings: Settings,
        leaderboards: LeaderboardService | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.settings = settings
        self.leaderboards = leaderboards
        self.flight = SingleFlight("reconciler")
        self.job = PeriodicJob(
            "reconciler",
            self.run_pass,
            settings.sync_interval_seconds,
            initial_delay=settings.sync_initial_delay_seconds,
            min_interval=settings.sync_min_interval_seconds,
        )
        self.conflicts: deque[StatsConflict] = deque(maxlen=settings.sync_conflict_history_size)
        self.total_conflicts = 0
        self.last_run_at: datetime | None = None
        self.last_report: dict | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.job.start()

    async def stop(self) -> None:
        await self.job.stop()

    async def set_interval(self, seconds: float) -> None:
        await self.job.set_interval(seconds)

    async def run_pass(self) -> dict | None:
        """Run one pass unless one is already in flight (then returns None)."""
        return await self.flight.run(self._run)

    async def force_run(self) -> dict | None:
        """Reset the in-flight guard and run a pass now."""
        self.flight.reset()
        return await self.run_pass()

    async def _run(self) -> dict:
        started = datetime.now(timezone.utc)
        steps: list[tuple[str, Callable[[], Awaitable[dict]]]] = [
            ("user_stats", self.sync_user_stats),
            ("question_stats", self.sync_question_stats),
            ("stale_sessions", self.cleanup_stale_sessions),
            ("housekeeping", self.housekeeping),
        ]
        report: dict = {"started_at": started.isoformat()}
        for name, step in steps:
            try:
                report[name] = await step()
            except Exception as exc:
                logger.exception("Reconciler step %s failed", name)
                report[name] = {"error": str(exc)}

        finished = datetime.now(timezone.utc)
        report["duration_ms"] = int((finished - started).total_seconds() * 1000)
        self.last_run_at = finished
        self.last_report = report
        logger.info("Reconciler pass finished in %sms", report["duration_ms"])
        return report

    # ------------------------------------------------------------------
    # Sub-tasks
    # ------------------------------------------------------------------

    async def sync_user_stats(self, now: datetime | None = None) -> dict:
        """Heal cached stats views of recently active users."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=self.settings.sync_active_window_hours)
        tolerances = stats_tolerances(self.settings)
        checked = healed = 0
        found: list[StatsConflict] = []

        async with self.session_factory() as db:
            result = await db.execute(
                select(GameSession.user_id)
                .where(
                    GameSession.status == "completed",
                    GameSession.completed_at >= cutoff,
                )
                .distinct()
            )
            for user_id in result.scalars().all():
                key = user_stats_key(user_id)
                cached = await self.cache.get(key)
                if not isinstance(cached, dict):
                    continue
                checked += 1
                fresh = await compute_stats_summary(db, user_id)
                conflicts = diff_stats(user_id, cached, fresh, tolerances)
                if not conflicts:
                    continue

                healed += 1
                await self.cache.set(key, fresh, self.settings.user_stats_cache_ttl_seconds)
                for conflict in conflicts:
                    db.add(SyncConflict(
                        user_id=conflict.user_id,
                        field=conflict.field,
                        cached_value=conflict.cached_value,
                        fresh_value=conflict.fresh_value,
                        resolution=conflict.resolution,
                        detected_at=conflict.detected_at,
                    ))
                    logger.warning(
                        "Stats conflict for user %s field %s: cached=%s fresh=%s",
                        user_id, conflict.field, conflict.cached_value, conflict.fresh_value,
                    )
                found.extend(conflicts)
            await db.commit()

        self.conflicts.extend(found)
        self.total_conflicts += len(found)
        return {"checked": checked, "healed": healed, "conflicts": len(found)}

    async def sync_question_stats(self, now: datetime | None = None) -> dict:
        """Recompute usage and success rate for recently answered questions."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=2 * self.job.interval)
        usage_threshold = self.settings.sync_question_usage_threshold
        rate_threshold = self.settings.sync_question_rate_threshold
        batch_size = self.settings.sync_question_batch_size

        async with self.session_factory() as db:
            recent = (
                select(QuestionAnswer.question_id)
                .where(QuestionAnswer.answered_at >= cutoff)
                .distinct()
                .scalar_subquery()
            )
            result = await db.execute(
                select(
                    QuestionAnswer.question_id,
                    func.count(QuestionAnswer.id),
                    func.sum(case((QuestionAnswer.is_correct.is_(True), 1), else_=0)),
                )
                .where(QuestionAnswer.question_id.in_(recent))
                .group_by(QuestionAnswer.question_id)
            )
            fresh = {qid: (int(usage), int(correct or 0)) for qid, usage, correct in result.all()}
            if not fresh:
                return {"checked": 0, "updated": 0}

            q_result = await db.execute(select(Question).where(Question.id.in_(list(fresh))))
            changed: list[tuple[Question, int, float]] = []
            for question in q_result.scalars():
                usage, correct = fresh[question.id]
                rate = round(correct / usage * 100, 2) if usage else 0.0
                if (
                    abs(question.usage_count - usage) >= usage_threshold
                    or abs(question.success_rate - rate) >= rate_threshold
                ):
                    changed.append((question, usage, rate))

            for start in range(0, len(changed), batch_size):
                for question, usage, rate in changed[start:start + batch_size]:
                    question.usage_count = usage
                    question.success_rate = rate
                    question.updated_at = now
                await db.flush()
            await db.commit()

        if changed:
            logger.info("Updated statistics for %d questions", len(changed))
        return {"checked": len(fresh), "updated": len(changed)}

    async def cleanup_stale_sessions(self, now: datetime | None = None) -> dict:
        """Abandon sessions stuck in progress past the staleness horizon."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=self.settings.sync_stale_session_hours)

        async with self.session_factory() as db:
            result = await db.execute(
                select(GameSession)
                .where(
                    GameSession.status == "in_progress",
                    GameSession.started_at < cutoff,
                )
                .order_by(GameSession.started_at)
                .limit(self.settings.sync_stale_session_limit)
            )
            stale = result.scalars().all()
            for session in stale:
                session.status = "abandoned"
                session.session_data = {**(session.session_data or {}), "abandoned_at": now.isoformat()}
            await db.commit()
            ids = [s.id for s in stale]

        for session_id in ids:
            await self.cache.delete(session_key(session_id))
        if ids:
            logger.info("Abandoned %d stale sessions", len(ids))
        return {"abandoned": len(ids)}

    async def housekeeping(self) -> dict:
        """Drop expired leaderboard windows and expired memory cache entries."""
        removed: dict[str, int] = {}
        if self.leaderboards is not None:
            async with self.session_factory() as db:
                removed = await self.leaderboards.cleanup_old_entries(db)
        return {"leaderboard_rows_removed": removed, "cache_entries_purged": self.cache.purge_expired()}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "in_flight": self.flight.in_flight,
            "running": self.job.running,
            "interval_seconds": self.job.interval,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.job.next_run_at.isoformat() if self.job.next_run_at else None,
            "last_report": self.last_report,
            "recent_conflicts": [c.to_dict() for c in list(self.conflicts)[-10:]],
            "total_conflicts": self.total_conflicts,
        }

    def clear_conflict_history(self) -> int:
        count = len(self.conflicts)
        self.conflicts.clear()
        return count
