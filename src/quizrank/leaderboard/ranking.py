"""Deterministic competition ranking ("1224").

Entries are ordered by (score DESC, xp DESC, user_id ASC). Entries with
equal score and equal xp share a rank; the next distinct entry's rank is
its 1-based position, so a tie group of size k consumes k rank slots.
The user_id only fixes the listing order inside a tie group.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Protocol, TypeVar


class Rankable(Protocol):
    user_id: int
    score: int
    xp_earned: int


T = TypeVar("T", bound=Rankable)


def sort_key(entry: Rankable) -> tuple[int, int, int]:
    return (-entry.score, -entry.xp_earned, entry.user_id)


def assign_ranks(entries: Iterable[T]) -> list[tuple[T, int]]:
    """Return ``(entry, rank)`` pairs in leaderboard order."""
    ordered = sorted(entries, key=sort_key)
    ranked: list[tuple[T, int]] = []
    prev: tuple[int, int] | None = None
    rank = 0
    for position, entry in enumerate(ordered, start=1):
        value = (entry.score, entry.xp_earned)
        if value != prev:
            rank = position
            prev = value
        ranked.append((entry, rank))
    return ranked


def percentile(rank: int, total: int) -> int:
    """Share of the board at or below ``rank``, rounded half up. 100 means first place."""
    if total <= 0 or rank <= 0:
        return 0
    return math.floor((total - rank + 1) / total * 100 + 0.5)
