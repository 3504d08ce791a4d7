"""Daily activity streak rule.

Streaks compare calendar days in the configured timezone, never raw
timestamps. A gap resets the streak to 1 because the attempt that
discovers the gap counts as the first day of the new streak.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import NamedTuple
from zoneinfo import ZoneInfo


class StreakUpdate(NamedTuple):
    current: int
    longest: int
    increased: bool


def activity_day(moment: datetime, tz_name: str = "UTC") -> date:
    """Calendar day of ``moment`` in ``tz_name``. Naive datetimes are treated as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name)).date()


def advance_streak(current: int, longest: int, last_day: date | None, today: date) -> StreakUpdate:
    """Apply one completed attempt on ``today`` to the streak counters."""
    if last_day is None:
        return StreakUpdate(1, max(longest, 1), True)

    gap = (today - last_day).days
    if gap <= 0:
        # Same day, or a late-arriving attempt for an earlier day.
        return StreakUpdate(current, max(longest, current), False)
    if gap == 1:
        streak = current + 1
        return StreakUpdate(streak, max(longest, streak), True)
    return StreakUpdate(1, max(longest, 1), False)


def is_milestone(update: StreakUpdate, every: int) -> bool:
    """True when the streak just grew onto a multiple of ``every`` days."""
    return every > 0 and update.increased and update.current % every == 0
