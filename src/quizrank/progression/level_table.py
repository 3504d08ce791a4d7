"""Level bands and level computation.

Bands are inclusive ``[min_xp, max_xp]`` ranges ordered by level. The
seeded ``xp_levels`` table mirrors DEFAULT_LEVEL_BANDS; services load the
table from the database and fall back to these defaults only when the
table is missing.
"""

from __future__ import annotations

from collections.abc import Sequence

FALLBACK_TITLE = "Novice"
FALLBACK_LEVEL_XP = 100

DEFAULT_LEVEL_BANDS: list[dict] = [
    {"level": 1, "title": "Novice", "min_xp": 0, "max_xp": 99},
    {"level": 2, "title": "Beginner", "min_xp": 100, "max_xp": 249},
    {"level": 3, "title": "Learner", "min_xp": 250, "max_xp": 499},
    {"level": 4, "title": "Student", "min_xp": 500, "max_xp": 849},
    {"level": 5, "title": "Scholar", "min_xp": 850, "max_xp": 1299},
    {"level": 6, "title": "Adept", "min_xp": 1300, "max_xp": 1899},
    {"level": 7, "title": "Proficient", "min_xp": 1900, "max_xp": 2649},
    {"level": 8, "title": "Advanced", "min_xp": 2650, "max_xp": 3549},
    {"level": 9, "title": "Expert", "min_xp": 3550, "max_xp": 4649},
    {"level": 10, "title": "Master", "min_xp": 4650, "max_xp": 5999},
    {"level": 11, "title": "Grandmaster", "min_xp": 6000, "max_xp": 7599},
    {"level": 12, "title": "Champion", "min_xp": 7600, "max_xp": 9499},
    {"level": 13, "title": "Virtuoso", "min_xp": 9500, "max_xp": 11699},
    {"level": 14, "title": "Elite", "min_xp": 11700, "max_xp": 14299},
    {"level": 15, "title": "Sage", "min_xp": 14300, "max_xp": 17299},
    {"level": 16, "title": "Oracle", "min_xp": 17300, "max_xp": 20799},
    {"level": 17, "title": "Savant", "min_xp": 20800, "max_xp": 24799},
    {"level": 18, "title": "Luminary", "min_xp": 24800, "max_xp": 29399},
    {"level": 19, "title": "Transcendent", "min_xp": 29400, "max_xp": 34599},
    {"level": 20, "title": "Immortal", "min_xp": 34600, "max_xp": 40499},
    {"level": 21, "title": "Mythic", "min_xp": 40500, "max_xp": 47199},
    {"level": 22, "title": "Legendary", "min_xp": 47200, "max_xp": 54699},
    {"level": 23, "title": "Eternal", "min_xp": 54700, "max_xp": 63099},
    {"level": 24, "title": "Cosmic", "min_xp": 63100, "max_xp": 72499},
    {"level": 25, "title": "Quiz God", "min_xp": 72500, "max_xp": 999_999},
]


def _result(level: int, title: str, into: int, to_next: int, span: int, band: dict | None) -> dict:
    return {
        "level": level,
        "title": title,
        "current_level_xp": into,
        "xp_to_next_level": to_next,
        "level_progress": max(0.0, min(1.0, into / span)) if span > 0 else 1.0,
        "min_xp": band["min_xp"] if band else 0,
        "max_xp": band["max_xp"] if band else FALLBACK_LEVEL_XP - 1,
    }


def compute_level(total_xp: int, bands: Sequence[dict] | None = None) -> dict:
    """Compute level info from total XP.

    The first band containing ``total_xp`` wins. XP beyond the top band
    clamps to the top band with full progress. An empty table never fails:
    every user is level 1 "Novice" with a 100 XP first level.
    """
    table = DEFAULT_LEVEL_BANDS if bands is None else sorted(bands, key=lambda b: b["level"])

    if not table:
        into = max(total_xp, 0)
        return _result(
            1, FALLBACK_TITLE, into, max(FALLBACK_LEVEL_XP - into, 0), FALLBACK_LEVEL_XP, None,
        )

    top = table[-1]
    if total_xp > top["max_xp"]:
        span = top["max_xp"] + 1 - top["min_xp"]
        return _result(top["level"], top["title"], total_xp - top["min_xp"], 0, span, top)

    current = table[0]
    for band in table:
        if band["min_xp"] <= total_xp <= band["max_xp"]:
            current = band
            break

    span = current["max_xp"] + 1 - current["min_xp"]
    into = max(total_xp - current["min_xp"], 0)
    to_next = max(current["max_xp"] + 1 - total_xp, 0)
    return _result(current["level"], current["title"], into, to_next, span, current)
