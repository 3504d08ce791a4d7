"""Best-effort real-time events published over Redis pub/sub.

Every event goes to ``pubsub:<event>`` for feeds and overlays, and to
``ws:user:<user_id>`` for the user's own WebSocket connections. The
transport that subscribes to those channels lives outside this service.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)

PROGRESSION_UPDATE = "progression_update"
LEVEL_UP = "level_up"
ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
LEADERBOARD_UPDATE = "leaderboard_update"
RANK_CHANGED = "rank_changed"
STREAK_MILESTONE = "streak_milestone"


class Publisher(Protocol):
    async def publish(self, event: str, user_id: int | None, payload: dict) -> None: ...


class Notifier:
    """Publish events to Redis. A ``None`` client turns publishing into a no-op."""

    def __init__(self, redis: object | None) -> None:
        self.redis = redis

    async def publish(self, event: str, user_id: int | None, payload: dict) -> None:
        if self.redis is None:
            return

        message = json.dumps(
            {
                "event": event,
                "user_id": user_id,
                "data": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            await self.redis.publish(f"pubsub:{event}", message)  # type: ignore[union-attr]
            if user_id is not None:
                await self.redis.publish(f"ws:user:{user_id}", message)  # type: ignore[union-attr]
        except Exception:
            logger.warning("Failed to publish %s for user %s", event, user_id, exc_info=True)

    def deferred(self) -> DeferredNotifier:
        """Collect events now and publish them after the caller commits."""
        return DeferredNotifier(self)


class DeferredNotifier:
    """Buffers events until ``flush`` so a rolled-back write never announces anything."""

    def __init__(self, target: Publisher) -> None:
        self.target = target
        self.pending: list[tuple[str, int | None, dict]] = []

    async def publish(self, event: str, user_id: int | None, payload: dict) -> None:
        self.pending.append((event, user_id, payload))

    async def flush(self) -> int:
        pending, self.pending = self.pending, []
        for event, user_id, payload in pending:
            await self.target.publish(event, user_id, payload)
        return len(pending)

    def discard(self) -> None:
        self.pending.clear()
