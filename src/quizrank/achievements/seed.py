"""Achievement catalog seed data."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.db.models import Achievement

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Gameplay
    {
        "code": "first_win",
        "name": "First Victory",
        "description": "Win your first quiz",
        "category": "gameplay",
        "rarity": "common",
        "xp_reward": 25,
        "criteria": {"kind": "games_won", "value": 1},
    },
    {
        "code": "perfect_score",
        "name": "Perfectionist",
        "description": "Answer every question of a quiz correctly",
        "category": "gameplay",
        "rarity": "common",
        "xp_reward": 50,
        "criteria": {"kind": "perfect_games", "value": 1},
    },
    {
        "code": "speed_demon",
        "name": "Speed Demon",
        "description": "Answer a question correctly in under 3 seconds",
        "category": "gameplay",
        "rarity": "rare",
        "xp_reward": 75,
        "criteria": {"kind": "speed_demon", "value": 3},
    },
    {
        "code": "high_scorer",
        "name": "High Scorer",
        "description": "Score 1,000 points in a single quiz",
        "category": "gameplay",
        "rarity": "rare",
        "xp_reward": 100,
        "criteria": {"kind": "single_game_score", "value": 1000},
    },
    {
        "code": "accuracy_master",
        "name": "Accuracy Master",
        "description": "Keep 90% accuracy over at least 100 questions",
        "category": "gameplay",
        "rarity": "epic",
        "xp_reward": 200,
        "criteria": {"kind": "accuracy", "value": 90, "min_questions": 100},
    },
    {
        "code": "quiz_marathon",
        "name": "Quiz Marathon",
        "description": "Answer 1,000 questions",
        "category": "gameplay",
        "rarity": "epic",
        "xp_reward": 500,
        "criteria": {"kind": "questions_answered", "value": 1000, "track_progress": True},
    },
    # Progression
    {
        "code": "level_5",
        "name": "Scholar",
        "description": "Reach level 5",
        "category": "progression",
        "rarity": "common",
        "xp_reward": 100,
        "criteria": {"kind": "level", "value": 5, "track_progress": True},
    },
    {
        "code": "level_10",
        "name": "Master",
        "description": "Reach level 10",
        "category": "progression",
        "rarity": "rare",
        "xp_reward": 250,
        "criteria": {"kind": "level", "value": 10, "track_progress": True},
    },
    {
        "code": "level_25",
        "name": "Quiz Legend",
        "description": "Reach the top level",
        "category": "progression",
        "rarity": "legendary",
        "xp_reward": 1000,
        "criteria": {"kind": "level", "value": 25},
    },
    {
        "code": "xp_milestone_5000",
        "name": "Experience Collector",
        "description": "Earn 5,000 XP",
        "category": "progression",
        "rarity": "rare",
        "xp_reward": 300,
        "criteria": {"kind": "total_xp", "value": 5000, "track_progress": True},
    },
    {
        "code": "collector_10",
        "name": "Trophy Cabinet",
        "description": "Earn 10 achievements",
        "category": "progression",
        "rarity": "epic",
        "xp_reward": 250,
        "criteria": {"kind": "achievements_earned", "value": 10, "track_progress": True},
    },
    # Streaks
    {
        "code": "week_streak",
        "name": "Dedicated Player",
        "description": "Play seven days in a row",
        "category": "streak",
        "rarity": "common",
        "xp_reward": 150,
        "criteria": {"kind": "current_streak", "value": 7, "track_progress": True},
    },
    {
        "code": "month_streak",
        "name": "Quiz Addict",
        "description": "Play thirty days in a row",
        "category": "streak",
        "rarity": "epic",
        "xp_reward": 1000,
        "criteria": {"kind": "longest_streak", "value": 30, "track_progress": True},
    },
    # Social
    {
        "code": "social_butterfly",
        "name": "Social Butterfly",
        "description": "Win 10 multiplayer games",
        "category": "social",
        "rarity": "common",
        "xp_reward": 100,
        "criteria": {"kind": "multiplayer_wins", "value": 10, "track_progress": True},
    },
    {
        "code": "leaderboard_top_10",
        "name": "Elite Player",
        "description": "Reach the top 10 of any leaderboard",
        "category": "social",
        "rarity": "epic",
        "xp_reward": 500,
        "criteria": {"kind": "leaderboard_rank", "value": 10},
    },
    # Special
    {
        "code": "early_bird",
        "name": "Early Bird",
        "description": "Finish a quiz before 6 AM",
        "category": "special",
        "rarity": "rare",
        "xp_reward": 100,
        "criteria": {"kind": "time_of_day", "hour_before": 6},
    },
    {
        "code": "marathon_hours",
        "name": "Time Well Spent",
        "description": "Spend ten hours answering questions",
        "category": "special",
        "rarity": "rare",
        "xp_reward": 200,
        "criteria": {"kind": "time_played", "value": 36000, "track_progress": True},
    },
]


async def seed_achievements(db: AsyncSession) -> int:
    """Insert or update the achievement catalog. Idempotent."""
    result = await db.execute(select(Achievement))
    existing = {a.code: a for a in result.scalars()}

    for order, data in enumerate(ACHIEVEMENT_SEED_DATA, start=1):
        row = existing.get(data["code"])
        if row is None:
            db.add(Achievement(display_order=order, is_active=True, **data))
        else:
            for key, value in data.items():
                setattr(row, key, value)
            row.display_order = order

    await db.commit()
    logger.info("Seeded %d achievement definitions", len(ACHIEVEMENT_SEED_DATA))
    return len(ACHIEVEMENT_SEED_DATA)
