"""Level table seed."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quizrank.db.models import XPLevel
from quizrank.progression.level_table import DEFAULT_LEVEL_BANDS

logger = logging.getLogger(__name__)


async def seed_levels(db: AsyncSession, bands: list[dict] | None = None) -> int:
    """Insert or update the xp_levels table. Idempotent."""
    bands = DEFAULT_LEVEL_BANDS if bands is None else bands
    result = await db.execute(select(XPLevel))
    existing = {row.level: row for row in result.scalars()}

    for band in bands:
        row = existing.get(band["level"])
        if row is None:
            db.add(XPLevel(**band))
        else:
            row.title = band["title"]
            row.min_xp = band["min_xp"]
            row.max_xp = band["max_xp"]

    await db.commit()
    logger.info("Seeded %d level bands", len(bands))
    return len(bands)
