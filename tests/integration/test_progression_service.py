"""Progression service tests: XP application, statistics and the cached summary."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from quizrank.cache.keys import user_stats_key
from quizrank.db.models import GameSession, UserStatistics, XPLedger
from quizrank.exceptions import InputValidationError, NotFoundError
from quizrank.notifications import LEVEL_UP, PROGRESSION_UPDATE
from quizrank.progression.schemas import AttemptData, QuestionResult
from quizrank.progression.service import (
    apply_xp,
    compute_stats_summary,
    get_or_create_user,
    get_progression,
    get_stats_summary,
    record_attempt,
)


def _attempt(**overrides) -> AttemptData:
    data = {"total_questions": 10, "correct_answers": 6, "difficulty": "medium", "time_taken": 80.0, "score": 300}
    data.update(overrides)
    return AttemptData(**data)


class TestGetOrCreateUser:
    @pytest.mark.asyncio
    async def test_new_user_starts_at_level_1(self, db):
        user, created = await get_or_create_user(db, "alice")
        assert created
        assert user.level == 1
        assert user.title == "Novice"
        assert user.xp_to_next_level == 100

    @pytest.mark.asyncio
    async def test_existing_user_returned(self, db, make_user):
        first = await make_user("bob")
        again, created = await get_or_create_user(db, "bob")
        assert not created
        assert again.id == first.id


class TestApplyXP:
    @pytest.mark.asyncio
    async def test_level_up_at_boundary(self, db, make_user, notifier):
        """99 XP then 1 more crosses into level 2."""
        user = await make_user()
        first = await apply_xp(db, notifier, user.id, 99)
        assert first["level"] == 1
        assert not first["leveled_up"]

        second = await apply_xp(db, notifier, user.id, 1)
        assert second["total_xp"] == 100
        assert second["level"] == 2
        assert second["leveled_up"]
        assert second["previous_level"] == 1
        assert second["title"] == "Beginner"

        level_ups = notifier.of(LEVEL_UP)
        assert len(level_ups) == 1
        assert level_ups[0][2]["new_level"] == 2
        assert len(notifier.of(PROGRESSION_UPDATE)) == 2

    @pytest.mark.asyncio
    async def test_idempotency_key_applies_once(self, db, make_user, notifier):
        user = await make_user()
        first = await apply_xp(db, notifier, user.id, 50, idempotency_key="bonus:1")
        replay = await apply_xp(db, notifier, user.id, 50, idempotency_key="bonus:1")
        await db.commit()

        assert first["applied"]
        assert not replay["applied"]
        assert replay["total_xp"] == 50
        count = await db.execute(select(func.count(XPLedger.id)).where(XPLedger.user_id == user.id))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_mirrors_total_into_statistics(self, db, make_user):
        user = await make_user()
        await apply_xp(db, None, user.id, 120)
        stats = await db.get(UserStatistics, user.id)
        assert stats.total_xp == 120

    @pytest.mark.asyncio
    async def test_multi_level_jump(self, db, make_user):
        user = await make_user()
        snapshot = await apply_xp(db, None, user.id, 900)
        assert snapshot["level"] == 5
        assert snapshot["previous_level"] == 1
        assert snapshot["leveled_up"]

    @pytest.mark.asyncio
    async def test_negative_rejected(self, db, make_user):
        user = await make_user()
        with pytest.raises(InputValidationError):
            await apply_xp(db, None, user.id, -5)

    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        with pytest.raises(NotFoundError):
            await apply_xp(db, None, 9999, 5)


class TestRecordAttempt:
    @pytest.mark.asyncio
    async def test_counters_and_maps(self, db, make_user):
        user = await make_user()
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        attempt = _attempt(category_id=4, question_times=[5.0, 2.5, 8.0])
        stats = await record_attempt(db, user.id, attempt, now=now)

        assert stats.games_played == 1
        assert stats.games_won == 1  # 60% beats the 50% threshold
        assert stats.questions_answered == 10
        assert stats.correct_answers == 6
        assert stats.fastest_answer_time == 2.5
        assert stats.category_stats["4"]["played"] == 1
        assert stats.difficulty_stats["medium"]["correct"] == 6
        assert stats.current_streak == 1

    @pytest.mark.asyncio
    async def test_fastest_only_when_strictly_faster(self, db, make_user):
        user = await make_user()
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        await record_attempt(db, user.id, _attempt(question_times=[3.0]), now=now)
        stats = await record_attempt(db, user.id, _attempt(question_times=[4.0]), now=now)
        assert stats.fastest_answer_time == 3.0

    @pytest.mark.asyncio
    async def test_fastest_from_question_results(self, db, make_user):
        user = await make_user()
        results = [QuestionResult(question_id=1, is_correct=True, time_taken=1.5)]
        stats = await record_attempt(db, user.id, _attempt(question_results=results), now=datetime.now(timezone.utc))
        assert stats.fastest_answer_time == 1.5

    @pytest.mark.asyncio
    async def test_streak_across_days(self, db, make_user):
        user = await make_user()
        day = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        streaks = []
        for offset in (0, 0, 1, 2, 4):
            stats = await record_attempt(db, user.id, _attempt(), now=day + timedelta(days=offset))
            streaks.append(stats.current_streak)
        assert streaks == [1, 1, 2, 3, 1]
        assert stats.longest_streak == 3

    @pytest.mark.asyncio
    async def test_loss_and_multiplayer_win(self, db, make_user):
        user = await make_user()
        now = datetime.now(timezone.utc)
        await record_attempt(db, user.id, _attempt(correct_answers=2), now=now)
        stats = await record_attempt(db, user.id, _attempt(correct_answers=2, mode="multiplayer", won=True), now=now)
        assert stats.games_played == 2
        assert stats.games_won == 1
        assert stats.multiplayer_wins == 1


class TestProgressionView:
    @pytest.mark.asyncio
    async def test_get_progression(self, db, make_user):
        user = await make_user()
        await apply_xp(db, None, user.id, 260)
        view = await get_progression(db, user.id)
        assert view["user"]["level"] == 3
        assert view["statistics"]["total_xp"] == 260
        assert view["recent_achievements"] == []


class TestStatsSummary:
    @pytest.mark.asyncio
    async def test_summary_from_completed_sessions(self, db, make_user, cache):
        user = await make_user()
        now = datetime.now(timezone.utc)
        for score, won in ((100, True), (40, False)):
            db.add(GameSession(
                user_id=user.id, status="completed", score=score, total_questions=10,
                correct_answers=5, won=won, xp_earned=30, started_at=now, completed_at=now,
            ))
        db.add(GameSession(user_id=user.id, status="in_progress", started_at=now))
        await db.commit()

        summary = await compute_stats_summary(db, user.id)
        assert summary["games_played"] == 2
        assert summary["games_won"] == 1
        assert summary["total_score"] == 140
        assert summary["accuracy"] == 50.0
        assert summary["xp_earned"] == 60

        cached = await get_stats_summary(db, cache, user.id, ttl=60)
        assert cached == summary
        assert await cache.get(user_stats_key(user.id)) == summary
