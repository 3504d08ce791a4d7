"""Bounded in-process TTL store.

Eviction is insertion-order FIFO: when a new key would exceed the
capacity the single oldest-inserted entry is dropped. Reads never move an
entry. Overwriting a key counts as a fresh insertion.
"""

from __future__ import annotations

import fnmatch
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class MemoryStore:
    """Thread-safe FIFO cache with per-entry TTL."""

    def __init__(self, capacity: int = 1000, clock: Callable[[], float] = time.monotonic) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self.evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def get_entry(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                del self._entries[key]
                return None
            return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any, ttl: float) -> str | None:
        """Store ``value``. Returns the evicted key, if any."""
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        evicted = None
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[key] = CacheEntry(value, self._clock(), ttl)
        return evicted

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            doomed = [k for k, e in self._entries.items() if e.expired(now)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)
