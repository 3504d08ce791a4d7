"""Single-flight guard and periodic timer for background jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from quizrank.exceptions import InputValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """At most one execution in progress. Overlapping calls are skipped, not queued."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = asyncio.Lock()
        self.skipped = 0

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T | None:
        """Run ``fn`` unless another run is in progress; returns None when skipped."""
        lock = self._lock
        if lock.locked():
            self.skipped += 1
            logger.info("%s already in progress, skipping", self.name)
            return None
        async with lock:
            return await fn()

    def reset(self) -> None:
        """Forget any in-progress run so the next call proceeds immediately."""
        if self._lock.locked():
            logger.warning("%s guard reset while a run is in progress", self.name)
        self._lock = asyncio.Lock()


class PeriodicJob:
    """Runs a coroutine function on a fixed interval after an initial delay.

    Each pass runs as its own task, so ``stop`` cancels the timer and any
    future passes without interrupting one that already started.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        interval: float,
        *,
        initial_delay: float = 0.0,
        min_interval: float = 0.0,
    ) -> None:
        if interval < min_interval:
            raise InputValidationError(f"{name} interval must be at least {min_interval} seconds")
        self.name = name
        self.fn = fn
        self.interval = interval
        self.initial_delay = initial_delay
        self.min_interval = min_interval
        self.next_run_at: datetime | None = None
        self.runs = 0
        self._timer: asyncio.Task | None = None
        self._passes: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self, initial_delay: float | None = None) -> None:
        if self.running:
            return
        delay = self.initial_delay if initial_delay is None else initial_delay
        self._timer = asyncio.create_task(self._tick(delay), name=f"{self.name}-timer")
        logger.info("Started %s (every %ss, first run in %ss)", self.name, self.interval, delay)

    async def stop(self) -> None:
        """Cancel the timer. Safe to call repeatedly."""
        timer, self._timer = self._timer, None
        self.next_run_at = None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass
        logger.info("Stopped %s", self.name)

    async def wait_idle(self) -> None:
        """Wait for passes that already started."""
        if self._passes:
            await asyncio.gather(*self._passes, return_exceptions=True)

    async def set_interval(self, seconds: float) -> None:
        if seconds < self.min_interval:
            raise InputValidationError(
                f"{self.name} interval must be at least {self.min_interval} seconds"
            )
        self.interval = seconds
        if self.running:
            await self.stop()
            self.start(initial_delay=seconds)

    def trigger(self) -> asyncio.Task:
        """Start a pass now, outside the schedule."""
        task = asyncio.create_task(self._run_pass(), name=f"{self.name}-pass")
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)
        return task

    async def _run_pass(self) -> None:
        self.runs += 1
        try:
            await self.fn()
        except Exception:
            logger.exception("%s pass failed", self.name)

    async def _tick(self, delay: float) -> None:
        self.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        await asyncio.sleep(delay)
        while True:
            self.trigger()
            self.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=self.interval)
            await asyncio.sleep(self.interval)
