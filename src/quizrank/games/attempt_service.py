"""Quiz session lifecycle and the attempt-completion pipeline.

Completing an attempt runs strictly in order: score, statistics and XP,
achievements, leaderboards. Everything up to the leaderboards commits as
one transaction. Cache invalidation and notifications run only after the
commit and never fail the request.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.achievements.service import check_and_grant
from quizrank.cache.keys import session_key, user_stats_pattern
from quizrank.cache.service import CacheService
from quizrank.config import Settings
from quizrank.db.models import Achievement, GameSession, Question, QuestionAnswer
from quizrank.exceptions import InputValidationError, NotFoundError, TransientIOError
from quizrank.leaderboard.periods import PERIOD_TYPES
from quizrank.leaderboard.service import GLOBAL_BOARD, LeaderboardService
from quizrank.notifications import STREAK_MILESTONE, Notifier
from quizrank.progression.schemas import AttemptData
from quizrank.progression.scoring import xp_breakdown
from quizrank.progression.service import (
    apply_xp,
    determine_win,
    get_or_create_statistics,
    get_user,
    record_attempt,
    statistics_to_dict,
)
from quizrank.progression.streaks import StreakUpdate, is_milestone

logger = logging.getLogger(__name__)


async def start_session(
    db: AsyncSession,
    cache: CacheService,
    user_id: int,
    *,
    category_id: int | None = None,
    difficulty: str = "medium",
    mode: str = "solo",
    now: datetime | None = None,
) -> GameSession:
    """Open an in-progress session and cache its live state."""
    await get_user(db, user_id)
    now = now or datetime.now(timezone.utc)
    session = GameSession(
        user_id=user_id,
        status="in_progress",
        mode=mode,
        category_id=category_id,
        difficulty=difficulty,
        started_at=now,
        session_data={},
    )
    db.add(session)
    await db.commit()

    await cache.set(
        session_key(session.id),
        {"session_id": session.id, "user_id": user_id, "status": "in_progress", "started_at": now.isoformat()},
        ttl=3 * 3600,
    )
    return session


async def _load_open_session(db: AsyncSession, user_id: int, session_id: int) -> GameSession:
    session = await db.get(GameSession, session_id)
    if session is None or session.user_id != user_id:
        raise NotFoundError(f"Session {session_id} not found")
    if session.status != "in_progress":
        raise InputValidationError(f"Session {session_id} is already {session.status}")
    return session


async def _record_answers(
    db: AsyncSession,
    session: GameSession,
    attempt: AttemptData,
    now: datetime,
) -> None:
    """Store per-question outcomes and bump live question statistics.

    The reconciler recomputes the statistics from question_answers and
    corrects any drift.
    """
    results = attempt.question_results or []
    if not results:
        return

    ids = [r.question_id for r in results]
    existing = await db.execute(select(Question).where(Question.id.in_(ids)))
    questions = {q.id: q for q in existing.scalars()}

    for r in results:
        db.add(QuestionAnswer(
            session_id=session.id,
            question_id=r.question_id,
            user_id=session.user_id,
            is_correct=r.is_correct,
            time_taken=r.time_taken,
            answered_at=now,
        ))
        question = questions.get(r.question_id)
        if question is None:
            question = Question(
                id=r.question_id,
                category_id=attempt.category_id,
                difficulty=attempt.difficulty,
                usage_count=0,
                success_rate=0.0,
            )
            db.add(question)
            questions[r.question_id] = question
        correct_before = question.success_rate / 100 * question.usage_count
        question.usage_count += 1
        question.success_rate = round((correct_before + r.is_correct) / question.usage_count * 100, 2)
        question.updated_at = now
    await db.flush()


async def complete_attempt(
    db: AsyncSession,
    notifier: Notifier | None,
    cache: CacheService,
    leaderboards: LeaderboardService,
    settings: Settings,
    user_id: int,
    attempt: AttemptData,
    *,
    now: datetime | None = None,
) -> dict:
    """Run the full completion pipeline for one attempt and commit it."""
    now = now or datetime.now(timezone.utc)
    events = notifier.deferred() if notifier is not None else None

    try:
        await get_user(db, user_id)
        stats = await get_or_create_statistics(db, user_id)
        streak_before = stats.current_streak
        breakdown = xp_breakdown(attempt, streak_before)
        xp = breakdown["xp"]
        won = determine_win(attempt, settings.win_threshold)

        if attempt.session_id is not None:
            session = await _load_open_session(db, user_id, attempt.session_id)
        else:
            session = GameSession(
                user_id=user_id,
                mode=attempt.mode,
                started_at=now - timedelta(seconds=attempt.time_taken),
            )
            db.add(session)
        session.status = "completed"
        session.mode = attempt.mode
        session.category_id = attempt.category_id
        session.difficulty = attempt.difficulty
        session.score = attempt.score
        session.total_questions = attempt.total_questions
        session.correct_answers = attempt.correct_answers
        session.time_taken = attempt.time_taken
        session.won = won
        session.xp_earned = xp
        session.completed_at = now
        session.session_data = {**(session.session_data or {}), "xp_breakdown": breakdown}
        await db.flush()

        await _record_answers(db, session, attempt, now)

        stats = await record_attempt(
            db, user_id, attempt,
            now=now, tz_name=settings.timezone, win_threshold=settings.win_threshold,
        )
        streak = StreakUpdate(stats.current_streak, stats.longest_streak, stats.current_streak > streak_before)

        progression = await apply_xp(
            db, events, user_id, xp,
            source="game",
            source_id=str(session.id),
            idempotency_key=f"session:{session.id}",
        )

        unlocked = await check_and_grant(
            db, events, user_id,
            {"score": attempt.score, "accuracy": attempt.accuracy, "session_id": session.id},
            tz_name=settings.timezone,
        )
        level_codes = progression["unlocked_achievements"]
        if level_codes:
            result = await db.execute(select(Achievement).where(Achievement.code.in_(level_codes)))
            unlocked = list(result.scalars()) + unlocked

        await leaderboards.record_result(
            db, events, user_id, attempt.score, xp, attempt.category_id, now,
        )

        await db.commit()
    except (OperationalError, InterfaceError) as exc:
        await db.rollback()
        if events is not None:
            events.discard()
        logger.error("Attempt completion failed for user %s: %s", user_id, exc)
        raise TransientIOError("Storage temporarily unavailable, attempt not recorded") from exc
    except Exception:
        await db.rollback()
        if events is not None:
            events.discard()
        raise

    # Post-commit side effects are best effort
    try:
        await leaderboards.invalidate(attempt.category_id or GLOBAL_BOARD)
        await cache.delete_pattern(user_stats_pattern(user_id))
        await cache.delete(session_key(session.id))
    except Exception:
        logger.warning("Cache invalidation failed after attempt %s", session.id, exc_info=True)

    milestone = is_milestone(streak, settings.streak_milestone_days)
    if events is not None:
        if milestone:
            await events.publish(STREAK_MILESTONE, user_id, {
                "streak": streak.current,
                "longest_streak": streak.longest,
            })
        await events.flush()

    ranks = {}
    for period_type in PERIOD_TYPES:
        rank = await leaderboards.get_user_rank(db, user_id, period_type, None, now)
        ranks[period_type] = rank["rank"]

    user = await get_user(db, user_id)
    progression = {
        **progression,
        "total_xp": user.total_xp,
        "level": user.level,
        "title": user.title,
        "current_level_xp": user.current_level_xp,
        "xp_to_next_level": user.xp_to_next_level,
        "level_progress": user.level_progress,
        "unlocked_achievements": [a.code for a in unlocked],
    }
    return {
        "session_id": session.id,
        "won": won,
        "xp": breakdown,
        "progression": progression,
        "statistics": statistics_to_dict(stats),
        "new_achievements": [
            {"code": a.code, "name": a.name, "category": a.category, "xp_reward": a.xp_reward}
            for a in unlocked
        ],
        "leaderboard_ranks": ranks,
        "streak": {"current": streak.current, "longest": streak.longest, "milestone": milestone},
    }
