"""Deadline helpers and the per-run launch/run watchdog.

The deadline context lets a tool start a budget once and sub-operations
query it to size their own timeouts. `RunWatchdog` composes the two timers
of an orchestration run: a launch timeout that only fires while execution
has not started, and an overall run timeout.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

LAUNCH_TIMEOUT = "launch_timeout"
RUN_TIMEOUT = "run_timeout"
CALLER = "caller"


_deadline_ts: contextvars.ContextVar[Optional[float]] = contextvars.ContextVar(
    "device_harness_deadline_ts", default=None
)


def has_deadline() -> bool:
    """Return True if a deadline is active in the current context."""
    return _deadline_ts.get() is not None


def remaining_time(min_floor: float = 0.05, default: float = 60.0) -> float:
    """Compute remaining seconds until the active deadline.

    If no deadline is set, return `default`. Always returns at least `min_floor`.
    """
    dl = _deadline_ts.get()
    if dl is None:
        return max(min_floor, float(default))
    return max(min_floor, float(dl - time.monotonic()))


@asynccontextmanager
async def start_deadline(total_seconds: float):
    """Start a deadline window for the current task.

    Use together with `asyncio.timeout(total_seconds)` to enforce the limit
    while allowing sub-operations to budget using `remaining_time()`.
    """
    budget = max(0.05, float(total_seconds))
    token = _deadline_ts.set(time.monotonic() + budget)
    try:
        yield
    finally:
        _deadline_ts.reset(token)


def clamp_to_deadline(timeout: float) -> float:
    """Shrink `timeout` to the active deadline, if one is set."""
    if has_deadline():
        return max(0.1, min(float(timeout), remaining_time()))
    return float(timeout)


class ExecutionCancelled(Exception):
    """Raised by `RunWatchdog.guard` when the watchdog fired first."""

    def __init__(self, reason: str):
        super().__init__(f"Execution cancelled ({reason})")
        self.reason = reason


class RunWatchdog:
    """Combined cancellation signal for one orchestration run."""

    def __init__(self, launch_timeout: Optional[float], run_timeout: float):
        self.launch_timeout = launch_timeout
        self.run_timeout = run_timeout
        self.cancelled = asyncio.Event()
        self.reason: Optional[str] = None
        self.execution_started = False
        self._handles: list[asyncio.TimerHandle] = []

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self.launch_timeout:
            self._handles.append(
                loop.call_later(self.launch_timeout, self._on_launch_timeout)
            )
        self._handles.append(loop.call_later(self.run_timeout, self._on_run_timeout))

    def mark_execution_started(self) -> None:
        if not self.execution_started:
            logger.debug("Execution started, launch timeout no longer applies")
        self.execution_started = True

    def cancel(self, reason: str = CALLER) -> None:
        if self.cancelled.is_set():
            return
        self.reason = reason
        self.cancelled.set()

    @property
    def timed_out(self) -> bool:
        return self.reason in (LAUNCH_TIMEOUT, RUN_TIMEOUT)

    def _on_launch_timeout(self) -> None:
        if self.execution_started:
            return
        logger.warning(
            f"Execution did not start within the launch timeout of {self.launch_timeout}s"
        )
        self.cancel(LAUNCH_TIMEOUT)

    def _on_run_timeout(self) -> None:
        logger.warning(f"Run did not finish within {self.run_timeout}s")
        self.cancel(RUN_TIMEOUT)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the watchdog fires first."""
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancelled.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise ExecutionCancelled(self.reason or CALLER)

    def close(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
