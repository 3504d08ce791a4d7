"""Deterministic cache keys.

Two logically identical queries must map to the same key and two
different queries must never collide, so every filter is always present
in the key (``all`` / ``none`` stand in for missing values) and
unordered inputs are sorted.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

LEVELS_KEY = "levels:all"


def _part(value: object) -> str:
    if value is None:
        return "all"
    return str(value).lower()


def question_key(
    category_id: int | None = None,
    difficulty: str | None = None,
    limit: int = 10,
    exclude_ids: Iterable[int] | None = None,
    question_type: str | None = None,
    order: str = "random",
) -> str:
    """Key for a question selection query."""
    excluded = ",".join(str(i) for i in sorted(set(exclude_ids or ()))) or "none"
    return (
        f"questions:cat:{_part(category_id)}:diff:{_part(difficulty)}:limit:{limit}"
        f":excl:{excluded}:type:{_part(question_type)}:order:{order}"
    )


def user_stats_key(user_id: int, period: str = "all") -> str:
    return f"user:{user_id}:stats:{period}"


def session_key(session_id: int) -> str:
    return f"game:session:{session_id}"


def leaderboard_key(
    period_type: str,
    category_id: int | None,
    window_start: datetime,
    limit: int,
    offset: int,
) -> str:
    """Key for one page of one period window."""
    category = "all" if not category_id else str(category_id)
    return f"leaderboard:{period_type}:{category}:{window_start:%Y%m%dT%H%M}:{limit}:{offset}"


def leaderboard_pattern(period_type: str | None = None, category_id: int | None = None) -> str:
    """Glob matching cached leaderboard pages, optionally narrowed."""
    period = period_type or "*"
    if category_id is None:
        category = "*"
    else:
        category = "all" if category_id == 0 else str(category_id)
    return f"leaderboard:{period}:{category}:*"


def user_stats_pattern(user_id: int) -> str:
    return f"user:{user_id}:stats:*"
