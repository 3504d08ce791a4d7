"""Two-tier cache: Redis first, bounded in-process store as fallback.

Cache failures never fail a request. A Redis read error is treated as a
miss in Redis and the memory tier is consulted; a Redis write error is
logged and the value lands in the memory tier instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from quizrank.cache.memory import MemoryStore

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[Any]]


@dataclass
class WarmTask:
    key: str
    producer: Producer
    ttl: int | None = None


class CacheService:
    """Get/set/invalidate JSON-serializable values with a TTL."""

    def __init__(
        self,
        redis: Redis | None = None,
        memory: MemoryStore | None = None,
        *,
        prefix: str = "quizrank:",
        default_ttl: int = 3600,
    ) -> None:
        self.redis = redis
        self.memory = memory if memory is not None else MemoryStore()
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0
        self.redis_errors = 0
        self._redis_ok = redis is not None
        # Bumped on every invalidation; see get_with_refresh
        self._generations: dict[str, int] = {}
        self._epoch = 0

    def _rkey(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _namespace(key: str) -> str:
        return key.split(":", 1)[0]

    def _generation(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(self._namespace(key), 0)

    def _bump(self, key_or_pattern: str) -> None:
        namespace = self._namespace(key_or_pattern)
        if any(c in namespace for c in "*?[") or not namespace:
            self._epoch += 1
        else:
            self._generations[namespace] = self._generations.get(namespace, 0) + 1

    def _redis_failed(self, op: str, key: str) -> None:
        self.redis_errors += 1
        self._redis_ok = False
        logger.warning("Redis %s failed for %s, using memory cache", op, key, exc_info=True)

    @staticmethod
    def _unwrap(raw: str | None) -> Any:
        if raw is None:
            return None
        return json.loads(raw).get("data")

    async def get(self, key: str) -> Any:
        """Return the cached value, or None on a miss."""
        if self.redis is not None:
            try:
                raw = await self.redis.get(self._rkey(key))
                self._redis_ok = True
                value = self._unwrap(raw)
                if value is not None:
                    self.hits += 1
                    return value
            except Exception:
                self._redis_failed("get", key)

        value = self.memory.get(key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store a value. Returns True if it reached Redis, False if only memory."""
        if value is None:
            return False
        ttl = ttl or self.default_ttl
        if self.redis is not None:
            envelope = json.dumps({"data": value, "timestamp": time.time(), "ttl": ttl}, default=str)
            try:
                await self.redis.set(self._rkey(key), envelope, ex=ttl)
                self._redis_ok = True
                # Drop any stale fallback copy
                self.memory.delete(key)
                return True
            except Exception:
                self._redis_failed("set", key)
        self.memory.set(key, value, ttl)
        return False

    async def delete(self, key: str) -> None:
        self._bump(key)
        self.memory.delete(key)
        if self.redis is not None:
            try:
                await self.redis.delete(self._rkey(key))
            except Exception:
                self._redis_failed("delete", key)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern from both tiers."""
        self._bump(pattern)
        removed = self.memory.delete_pattern(pattern)
        if self.redis is not None:
            try:
                doomed = [k async for k in self.redis.scan_iter(match=self._rkey(pattern), count=500)]
                if doomed:
                    removed += await self.redis.delete(*doomed)
            except Exception:
                self._redis_failed("delete_pattern", pattern)
        return removed

    async def clear(self) -> None:
        self.memory.clear()
        await self.delete_pattern("*")
        logger.info("Cache cleared")

    async def get_with_refresh(self, key: str, producer: Producer, ttl: int | None = None) -> Any:
        """Return the cached value or produce, cache and return a fresh one.

        A failing producer is logged and surfaces as None. If the key is
        invalidated while the producer runs, the value is returned but not
        cached: it may predate the write that caused the invalidation.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        generation = self._generation(key)
        try:
            value = await producer()
        except Exception:
            logger.warning("Cache producer failed for %s", key, exc_info=True)
            return None
        if self._generation(key) != generation:
            logger.debug("Not caching %s: invalidated while loading", key)
            return value
        await self.set(key, value, ttl)
        return value

    async def warm(self, tasks: Iterable[WarmTask]) -> dict[str, int]:
        """Prime several keys concurrently. Failing tasks are logged and skipped."""
        tasks = list(tasks)

        async def _one(task: WarmTask) -> None:
            generation = self._generation(task.key)
            value = await task.producer()
            if self._generation(task.key) == generation:
                await self.set(task.key, value, task.ttl)

        results = await asyncio.gather(*(_one(t) for t in tasks), return_exceptions=True)
        failed = 0
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.warning("Cache warm failed for %s: %s", task.key, result)
        logger.info("Cache warm finished: %d ok, %d failed", len(tasks) - failed, failed)
        return {"warmed": len(tasks) - failed, "failed": failed}

    async def mget(self, keys: Iterable[str]) -> dict[str, Any]:
        """Fetch several keys at once. Missing or expired keys are omitted."""
        keys = list(dict.fromkeys(keys))
        found: dict[str, Any] = {}
        if self.redis is not None and keys:
            try:
                raws = await self.redis.mget([self._rkey(k) for k in keys])
                for key, raw in zip(keys, raws):
                    value = self._unwrap(raw)
                    if value is not None:
                        found[key] = value
            except Exception:
                self._redis_failed("mget", ",".join(keys[:3]))
        for key in keys:
            if key not in found:
                value = self.memory.get(key)
                if value is not None:
                    found[key] = value
        self.hits += len(found)
        self.misses += len(keys) - len(found)
        return found

    def purge_expired(self) -> int:
        return self.memory.purge_expired()

    def get_stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total * 100, 2) if total else 0.0,
            "memory_size": len(self.memory),
            "memory_capacity": self.memory.capacity,
            "evictions": self.memory.evictions,
            "redis_connected": self.redis is not None and self._redis_ok,
            "redis_errors": self.redis_errors,
        }

    def reset_stats(self) -> None:
        self.hits = 0
        self.misses = 0
        self.redis_errors = 0
