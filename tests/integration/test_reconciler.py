"""Reconciler tests: cache healing, question stats, stale sessions and status."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from quizrank.cache.keys import session_key, user_stats_key
from quizrank.db.models import GameSession, Question, QuestionAnswer, SyncConflict
from quizrank.progression.service import compute_stats_summary
from quizrank.sync.reconciler import Reconciler, diff_stats, exceeds_tolerance, stats_tolerances


@pytest.fixture
def reconciler(session_factory, cache, settings, leaderboards) -> Reconciler:
    return Reconciler(session_factory, cache, settings, leaderboards)


async def _completed_sessions(db, user_id: int, count: int = 2) -> None:
    now = datetime.now(timezone.utc)
    for i in range(count):
        db.add(GameSession(
            user_id=user_id, status="completed", score=100 + i, total_questions=10,
            correct_answers=7, won=True, xp_earned=40, started_at=now, completed_at=now,
        ))
    await db.commit()


async def _fresh_summary(db, user_id: int) -> dict:
    summary = await compute_stats_summary(db, user_id)
    await db.commit()
    return summary


class TestTolerance:
    def test_counters_must_match(self, settings):
        tolerances = stats_tolerances(settings)
        fresh = {"games_played": 3, "total_score": 100}
        conflicts = diff_stats(1, {"games_played": 2, "total_score": 100}, fresh, tolerances)
        assert [c.field for c in conflicts] == ["games_played"]

    def test_relative_tolerance_scales(self):
        assert not exceeds_tolerance(1040, 1000, 10.0, 0.05)
        assert exceeds_tolerance(1060, 1000, 10.0, 0.05)

    def test_absolute_floor_for_small_values(self):
        assert not exceeds_tolerance(15, 10, 10.0, 0.05)
        assert exceeds_tolerance(25, 10, 10.0, 0.05)

    def test_non_numeric_conflicts(self):
        assert exceeds_tolerance("12", 12, 10.0, 0.0)
        assert exceeds_tolerance(None, 0, 10.0, 0.0)
        assert exceeds_tolerance(True, 1, 10.0, 0.0)


class TestUserStats:
    @pytest.mark.asyncio
    async def test_conflict_heals_cache_and_logs_once(self, db, make_user, cache, reconciler):
        user = await make_user()
        await _completed_sessions(db, user.id)
        fresh = await _fresh_summary(db, user.id)
        await cache.set(user_stats_key(user.id), {**fresh, "games_played": 5})

        report = await reconciler.sync_user_stats()
        assert report == {"checked": 1, "healed": 1, "conflicts": 1}
        assert await cache.get(user_stats_key(user.id)) == fresh

        rows = (await db.execute(select(SyncConflict))).scalars().all()
        assert len(rows) == 1
        assert rows[0].field == "games_played"
        assert rows[0].cached_value == 5
        assert rows[0].fresh_value == 2
        assert reconciler.total_conflicts == 1

    @pytest.mark.asyncio
    async def test_within_tolerance_left_alone(self, db, make_user, cache, reconciler):
        user = await make_user()
        await _completed_sessions(db, user.id)
        fresh = await _fresh_summary(db, user.id)
        drifted = {**fresh, "total_score": fresh["total_score"] + 5}
        await cache.set(user_stats_key(user.id), drifted)

        report = await reconciler.sync_user_stats()
        assert report["conflicts"] == 0
        assert await cache.get(user_stats_key(user.id)) == drifted
        count = await db.execute(select(func.count(SyncConflict.id)))
        assert count.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_uncached_users_skipped(self, db, make_user, reconciler):
        user = await make_user()
        await _completed_sessions(db, user.id)
        assert await reconciler.sync_user_stats() == {"checked": 0, "healed": 0, "conflicts": 0}


class TestQuestionStats:
    @pytest.mark.asyncio
    async def test_drifted_question_rewritten(self, db, make_user, reconciler):
        user = await make_user()
        now = datetime.now(timezone.utc)
        session = GameSession(user_id=user.id, status="completed", started_at=now, completed_at=now)
        db.add_all([session, Question(id=11, usage_count=0, success_rate=0.0)])
        await db.flush()
        for i in range(6):
            db.add(QuestionAnswer(
                session_id=session.id, question_id=11, user_id=user.id,
                is_correct=i % 2 == 0, answered_at=now,
            ))
        await db.commit()

        assert await reconciler.sync_question_stats() == {"checked": 1, "updated": 1}
        row = (await db.execute(select(Question.usage_count, Question.success_rate).where(Question.id == 11))).one()
        assert tuple(row) == (6, 50.0)

    @pytest.mark.asyncio
    async def test_small_drift_ignored(self, db, make_user, reconciler):
        user = await make_user()
        now = datetime.now(timezone.utc)
        session = GameSession(user_id=user.id, status="completed", started_at=now, completed_at=now)
        db.add_all([session, Question(id=12, usage_count=2, success_rate=50.0)])
        await db.flush()
        for correct in (True, False):
            db.add(QuestionAnswer(
                session_id=session.id, question_id=12, user_id=user.id,
                is_correct=correct, answered_at=now,
            ))
        await db.commit()

        assert await reconciler.sync_question_stats() == {"checked": 1, "updated": 0}

    @pytest.mark.asyncio
    async def test_nothing_recent(self, reconciler):
        assert await reconciler.sync_question_stats() == {"checked": 0, "updated": 0}


class TestStaleSessions:
    @pytest.mark.asyncio
    async def test_old_sessions_abandoned(self, db, make_user, cache, reconciler):
        user = await make_user()
        now = datetime.now(timezone.utc)
        stale = GameSession(user_id=user.id, status="in_progress", started_at=now - timedelta(hours=3))
        fresh = GameSession(user_id=user.id, status="in_progress", started_at=now)
        db.add_all([stale, fresh])
        await db.commit()
        await cache.set(session_key(stale.id), {"session_id": stale.id})

        assert await reconciler.cleanup_stale_sessions() == {"abandoned": 1}
        statuses = dict((await db.execute(select(GameSession.id, GameSession.status))).all())
        assert statuses == {stale.id: "abandoned", fresh.id: "in_progress"}
        assert await cache.get(session_key(stale.id)) is None


class TestPass:
    @pytest.mark.asyncio
    async def test_force_run_reports_every_step(self, reconciler):
        report = await reconciler.force_run()
        assert {"user_stats", "question_stats", "stale_sessions", "housekeeping"} <= set(report)
        assert "error" not in report["user_stats"]

        status = reconciler.get_status()
        assert status["last_run_at"] is not None
        assert status["last_report"] == report
        assert not status["in_flight"]

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(self, reconciler, monkeypatch):
        async def boom(now=None):
            raise RuntimeError("question table locked")

        monkeypatch.setattr(reconciler, "sync_question_stats", boom)
        report = await reconciler.run_pass()
        assert report["question_stats"] == {"error": "question table locked"}
        assert report["stale_sessions"] == {"abandoned": 0}

    @pytest.mark.asyncio
    async def test_clear_conflict_history(self, db, make_user, cache, reconciler):
        user = await make_user()
        await _completed_sessions(db, user.id)
        fresh = await _fresh_summary(db, user.id)
        await cache.set(user_stats_key(user.id), {**fresh, "games_won": 0, "games_played": 0})
        await reconciler.sync_user_stats()

        assert len(reconciler.get_status()["recent_conflicts"]) == 2
        assert reconciler.clear_conflict_history() == 2
        assert reconciler.get_status()["recent_conflicts"] == []
