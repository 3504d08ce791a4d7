"""Single-flight guard and periodic job tests."""

from __future__ import annotations

import asyncio

import pytest

from quizrank.exceptions import InputValidationError
from quizrank.sync.scheduler import PeriodicJob, SingleFlight


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_overlapping_call_is_skipped(self):
        flight = SingleFlight("test")
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "done"

        first = asyncio.create_task(flight.run(slow))
        await asyncio.sleep(0)
        assert flight.in_flight
        assert await flight.run(slow) is None
        assert flight.skipped == 1

        release.set()
        assert await first == "done"
        assert not flight.in_flight

    @pytest.mark.asyncio
    async def test_reset_lets_next_call_through(self):
        flight = SingleFlight("test")
        release = asyncio.Event()

        async def slow():
            await release.wait()

        async def quick():
            return 42

        stuck = asyncio.create_task(flight.run(slow))
        await asyncio.sleep(0)
        flight.reset()
        assert await flight.run(quick) == 42

        release.set()
        await stuck

    @pytest.mark.asyncio
    async def test_exception_releases_guard(self):
        flight = SingleFlight("test")

        async def boom():
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            await flight.run(boom)
        assert not flight.in_flight


class TestPeriodicJob:
    @pytest.mark.asyncio
    async def test_runs_repeatedly(self):
        calls = []

        async def tick():
            calls.append(1)

        job = PeriodicJob("tick", tick, 0.01, initial_delay=0)
        job.start()
        await asyncio.sleep(0.08)
        await job.stop()
        await job.wait_idle()
        assert len(calls) >= 2
        assert job.runs == len(calls)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        async def tick():
            pass

        job = PeriodicJob("tick", tick, 60, initial_delay=60)
        await job.stop()
        job.start()
        await asyncio.sleep(0)
        assert job.running
        assert job.next_run_at is not None
        await job.stop()
        await job.stop()
        assert not job.running
        assert job.next_run_at is None

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_run(self):
        calls = []

        async def tick():
            calls.append(1)

        job = PeriodicJob("tick", tick, 60, initial_delay=0.05)
        job.start()
        await job.stop()
        await asyncio.sleep(0.1)
        assert calls == []

    @pytest.mark.asyncio
    async def test_set_interval_enforces_minimum(self):
        async def tick():
            pass

        job = PeriodicJob("tick", tick, 300, min_interval=60)
        with pytest.raises(InputValidationError):
            await job.set_interval(30)
        await job.set_interval(120)
        assert job.interval == 120

    @pytest.mark.asyncio
    async def test_failing_pass_keeps_schedule(self):
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        job = PeriodicJob("flaky", flaky, 0.01, initial_delay=0)
        job.start()
        await asyncio.sleep(0.06)
        assert job.running
        await job.stop()
        await job.wait_idle()
        assert len(calls) >= 2

    def test_interval_below_minimum_rejected(self):
        async def tick():
            pass

        with pytest.raises(InputValidationError):
            PeriodicJob("tick", tick, 10, min_interval=60)
