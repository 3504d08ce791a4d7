"""Leaderboard period windows.

A window is the half-open range ``[start, end)``. Boundaries are computed
in the configured timezone and returned in UTC, which is how they are
stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
ALL_TIME = "all_time"
PERIOD_TYPES = (DAILY, WEEKLY, MONTHLY, ALL_TIME)

ALL_TIME_START = datetime(2000, 1, 1, tzinfo=timezone.utc)
ALL_TIME_END = datetime(2100, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class PeriodWindow:
    period_type: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def to_dict(self) -> dict[str, str]:
        return {
            "period_type": self.period_type,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


def validate_period(period_type: str) -> str:
    if period_type not in PERIOD_TYPES:
        raise ValueError(f"Unknown period: {period_type}")
    return period_type


def _midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def period_window(period_type: str, now: datetime | None = None, tz_name: str = "UTC") -> PeriodWindow:
    """Return the window of ``period_type`` that contains ``now``."""
    validate_period(period_type)
    if period_type == ALL_TIME:
        return PeriodWindow(ALL_TIME, ALL_TIME_START, ALL_TIME_END)

    tz = ZoneInfo(tz_name)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(tz).date()

    if period_type == DAILY:
        first, last = today, today + timedelta(days=1)
    elif period_type == WEEKLY:
        # Weeks run Sunday to Sunday
        first = today - timedelta(days=(today.weekday() + 1) % 7)
        last = first + timedelta(days=7)
    else:
        first = today.replace(day=1)
        last = (first + timedelta(days=32)).replace(day=1)

    return PeriodWindow(period_type, _midnight(first, tz), _midnight(last, tz))


def current_windows(now: datetime | None = None, tz_name: str = "UTC") -> list[PeriodWindow]:
    return [period_window(p, now, tz_name) for p in PERIOD_TYPES]
