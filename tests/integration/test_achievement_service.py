"""Achievement evaluation tests: at-most-once grants, rewards and progress."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from quizrank.achievements.seed import ACHIEVEMENT_SEED_DATA, seed_achievements
from quizrank.achievements.service import check_and_grant, grant_achievement, list_achievements
from quizrank.db.models import Achievement, UserAchievement, UserStatistics, XPLedger
from quizrank.notifications import ACHIEVEMENT_UNLOCKED
from quizrank.progression.schemas import AttemptData
from quizrank.progression.service import apply_xp, get_or_create_user, get_progression, record_attempt


async def _play(db, user_id: int, **overrides) -> None:
    data = {"total_questions": 10, "correct_answers": 8, "difficulty": "easy", "time_taken": 120.0, "score": 100}
    data.update(overrides)
    await record_attempt(db, user_id, AttemptData(**data), now=datetime.now(timezone.utc))


class TestCheckAndGrant:
    @pytest.mark.asyncio
    async def test_grants_once(self, db, make_user, add_achievements, notifier):
        await add_achievements(
            {"code": "first_win", "category": "gameplay", "criteria": {"kind": "games_won", "value": 1}, "xp_reward": 25},
        )
        user = await make_user()
        await _play(db, user.id)

        first = await check_and_grant(db, notifier, user.id)
        second = await check_and_grant(db, notifier, user.id)
        await db.commit()

        assert [a.code for a in first] == ["first_win"]
        assert second == []
        records = await db.execute(select(func.count(UserAchievement.id)).where(UserAchievement.user_id == user.id))
        assert records.scalar_one() == 1
        rewards = await db.execute(select(func.count(XPLedger.id)).where(XPLedger.source == "achievement"))
        assert rewards.scalar_one() == 1
        assert len(notifier.of(ACHIEVEMENT_UNLOCKED)) == 1

    @pytest.mark.asyncio
    async def test_reward_applies_xp_and_counts(self, db, make_user, add_achievements):
        await add_achievements(
            {"code": "first_win", "category": "gameplay", "criteria": {"kind": "games_won", "value": 1}, "xp_reward": 25},
        )
        user = await make_user()
        await _play(db, user.id)
        await check_and_grant(db, None, user.id)

        stats = await db.get(UserStatistics, user.id)
        assert stats.achievements_earned == 1
        assert stats.total_xp == 25

    @pytest.mark.asyncio
    async def test_unmet_criteria_not_granted(self, db, make_user, add_achievements):
        await add_achievements(
            {"code": "veteran", "category": "gameplay", "criteria": {"kind": "games_played", "value": 5}},
        )
        user = await make_user()
        await _play(db, user.id)
        assert await check_and_grant(db, None, user.id) == []

    @pytest.mark.asyncio
    async def test_progress_tracked_before_unlock(self, db, make_user, add_achievements):
        (veteran,) = await add_achievements(
            {
                "code": "veteran",
                "category": "gameplay",
                "criteria": {"kind": "games_played", "value": 4, "track_progress": True},
            },
        )
        user = await make_user()
        await _play(db, user.id)
        await check_and_grant(db, None, user.id)

        record = (
            await db.execute(
                select(UserAchievement).where(
                    UserAchievement.user_id == user.id,
                    UserAchievement.achievement_id == veteran.id,
                )
            )
        ).scalar_one()
        assert record.earned_at is None
        assert record.progress == 25.0

    @pytest.mark.asyncio
    async def test_chained_unlocks(self, db, make_user, add_achievements):
        """A reward that levels the user up unlocks the level achievement in the same check."""
        await add_achievements(
            {"code": "first_win", "category": "gameplay", "criteria": {"kind": "games_won", "value": 1}, "xp_reward": 150},
            {"code": "level_2", "category": "progression", "criteria": {"kind": "level", "value": 2}},
            {"code": "collector", "category": "progression", "criteria": {"kind": "achievements_earned", "value": 2}},
        )
        user = await make_user()
        await _play(db, user.id)
        unlocked = await check_and_grant(db, None, user.id)
        assert sorted(a.code for a in unlocked) == ["collector", "first_win", "level_2"]

    @pytest.mark.asyncio
    async def test_level_up_triggers_progression_achievements(self, db, make_user, add_achievements):
        await add_achievements(
            {"code": "level_3", "category": "progression", "criteria": {"kind": "level", "value": 3}, "xp_reward": 10},
        )
        user = await make_user()
        snapshot = await apply_xp(db, None, user.id, 300)
        assert snapshot["unlocked_achievements"] == ["level_3"]
        assert snapshot["total_xp"] == 310

    @pytest.mark.asyncio
    async def test_inactive_and_invalid_are_skipped(self, db, make_user, add_achievements):
        await add_achievements(
            {"code": "retired", "category": "gameplay", "criteria": {"kind": "games_won", "value": 1}, "is_active": False},
            {"code": "broken", "category": "gameplay", "criteria": {"kind": "no_such_kind"}},
            {"code": "ok", "category": "gameplay", "criteria": {"kind": "games_played", "value": 1}},
        )
        user = await make_user()
        await _play(db, user.id)
        unlocked = await check_and_grant(db, None, user.id)
        assert [a.code for a in unlocked] == ["ok"]

    @pytest.mark.asyncio
    async def test_single_game_score_from_context(self, db, make_user, add_achievements):
        await add_achievements(
            {"code": "high_scorer", "category": "gameplay", "criteria": {"kind": "single_game_score", "value": 1000}},
        )
        user = await make_user()
        assert await check_and_grant(db, None, user.id, {"score": 500}) == []
        unlocked = await check_and_grant(db, None, user.id, {"score": 1500})
        assert [a.code for a in unlocked] == ["high_scorer"]


class TestGrantAchievement:
    @pytest.mark.asyncio
    async def test_second_grant_is_noop(self, db, make_user, add_achievements):
        (achievement,) = await add_achievements(
            {"code": "manual", "category": "special", "criteria": {"kind": "event", "event_code": "x"}, "xp_reward": 5},
        )
        user = await make_user()
        assert await grant_achievement(db, None, user.id, achievement)
        assert not await grant_achievement(db, None, user.id, achievement)
        stats = await db.get(UserStatistics, user.id)
        assert stats.achievements_earned == 1
        assert stats.total_xp == 5

    @pytest.mark.asyncio
    async def test_concurrent_grants_on_separate_sessions(self, file_session_factory):
        async with file_session_factory() as db:
            user, _ = await get_or_create_user(db, "alice")
            achievement = Achievement(
                code="manual", name="Manual", description="", category="special",
                criteria={"kind": "event", "event_code": "x"}, xp_reward=5, rarity="common",
                display_order=1, is_active=True,
            )
            db.add(achievement)
            await db.commit()

        async def grant() -> bool:
            async with file_session_factory() as db:
                row = await db.get(Achievement, achievement.id)
                granted = await grant_achievement(db, None, user.id, row)
                await db.commit()
                return granted

        results = await asyncio.wait_for(asyncio.gather(grant(), grant()), timeout=30)
        assert sorted(results) == [False, True]

        async with file_session_factory() as db:
            stats = await db.get(UserStatistics, user.id)
            assert stats.achievements_earned == 1
            assert stats.total_xp == 5
            rewards = await db.execute(select(func.count(XPLedger.id)).where(XPLedger.source == "achievement"))
            assert rewards.scalar_one() == 1


class TestListing:
    @pytest.mark.asyncio
    async def test_list_achievements_summary(self, db, make_user, add_achievements):
        await add_achievements(
            {"code": "first_win", "category": "gameplay", "criteria": {"kind": "games_won", "value": 1}},
            {"code": "streak_7", "category": "streak", "criteria": {"kind": "current_streak", "value": 7}},
        )
        user = await make_user()
        await _play(db, user.id)
        await check_and_grant(db, None, user.id)

        listing = await list_achievements(db, user.id)
        assert listing["summary"] == {"total": 2, "earned": 1, "percent": 50}
        assert listing["achievements_by_category"]["gameplay"][0]["earned"]
        assert not listing["achievements_by_category"]["streak"][0]["earned"]

        view = await get_progression(db, user.id)
        assert [a["code"] for a in view["recent_achievements"]] == ["first_win"]


class TestSeed:
    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, db):
        await seed_achievements(db)
        await seed_achievements(db)
        count = await db.execute(select(func.count(Achievement.id)))
        assert count.scalar_one() == len(ACHIEVEMENT_SEED_DATA)
