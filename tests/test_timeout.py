import asyncio

import pytest

from device_harness.timeout import (
    LAUNCH_TIMEOUT,
    RUN_TIMEOUT,
    ExecutionCancelled,
    RunWatchdog,
    clamp_to_deadline,
    has_deadline,
    remaining_time,
    start_deadline,
)


@pytest.mark.asyncio
async def test_deadline_basic_remaining_and_flags():
    assert has_deadline() is False
    # Without deadline, remaining_time returns default
    assert remaining_time(default=1.23) >= 1.23

    async with start_deadline(0.2):
        assert has_deadline() is True
        rem = remaining_time()
        assert rem > 0
        assert rem <= 0.2

    assert has_deadline() is False


@pytest.mark.asyncio
async def test_remaining_time_floor_after_deadline_passes():
    async with start_deadline(0.05):
        await asyncio.sleep(0.07)
        assert remaining_time() >= 0.05


@pytest.mark.asyncio
async def test_clamp_to_deadline():
    assert clamp_to_deadline(120) == 120.0
    async with start_deadline(1.0):
        assert clamp_to_deadline(120) <= 1.0


class TestRunWatchdog:
    """Launch and run timers feeding one cancellation event."""

    @pytest.mark.asyncio
    async def test_launch_timeout_fires_before_execution_starts(self):
        watchdog = RunWatchdog(launch_timeout=0.05, run_timeout=10)
        watchdog.start()
        try:
            await asyncio.wait_for(watchdog.cancelled.wait(), timeout=2)
        finally:
            watchdog.close()

        assert watchdog.reason == LAUNCH_TIMEOUT
        assert watchdog.timed_out

    @pytest.mark.asyncio
    async def test_launch_timeout_ignored_once_started(self):
        """Once execution has started only the run timeout can fire."""
        watchdog = RunWatchdog(launch_timeout=0.05, run_timeout=0.2)
        watchdog.start()
        watchdog.mark_execution_started()
        try:
            await asyncio.sleep(0.1)
            assert not watchdog.cancelled.is_set()
            await asyncio.wait_for(watchdog.cancelled.wait(), timeout=2)
        finally:
            watchdog.close()

        assert watchdog.reason == RUN_TIMEOUT

    @pytest.mark.asyncio
    async def test_caller_cancel_is_not_a_timeout(self):
        watchdog = RunWatchdog(launch_timeout=None, run_timeout=10)
        watchdog.cancel()
        watchdog.cancel(RUN_TIMEOUT)

        assert watchdog.cancelled.is_set()
        assert watchdog.reason == "caller"
        assert not watchdog.timed_out

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        watchdog = RunWatchdog(launch_timeout=None, run_timeout=10)

        async def work():
            return "connected"

        assert await watchdog.guard(work()) == "connected"

    @pytest.mark.asyncio
    async def test_guard_raises_when_watchdog_fires(self):
        watchdog = RunWatchdog(launch_timeout=0.05, run_timeout=10)
        watchdog.start()
        try:
            with pytest.raises(ExecutionCancelled) as exc_info:
                await watchdog.guard(asyncio.sleep(30))
        finally:
            watchdog.close()

        assert exc_info.value.reason == LAUNCH_TIMEOUT
