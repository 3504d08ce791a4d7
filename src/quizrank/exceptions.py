"""Domain exceptions shared by the services and the HTTP error handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


class QuizRankError(Exception):
    """Base class for domain errors."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InputValidationError(QuizRankError):
    """Malformed or contradictory attempt data, rejected before scoring."""

    status_code = 422


class NotFoundError(QuizRankError):
    """Unknown user, session or achievement."""

    status_code = 404


class TransientIOError(QuizRankError):
    """The store of record or a required cache read is temporarily unavailable."""

    status_code = 503


@dataclass
class StatsConflict:
    """A cached statistic that diverged from the value recomputed from storage.

    Conflicts are never raised: the reconciler resolves them in favour of the
    stored value and keeps them for diagnostics.
    """

    user_id: int
    field: str
    cached_value: float | None
    fresh_value: float | None
    resolution: str = "source_of_truth_wins"
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "field": self.field,
            "cached_value": self.cached_value,
            "fresh_value": self.fresh_value,
            "resolution": self.resolution,
            "detected_at": self.detected_at.isoformat(),
        }
