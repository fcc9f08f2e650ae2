"""Pattern-matched recovery and retry for device tool invocations."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .command_runner import CommandRunner
from .models import CommandInvocation, CommandResult, OperationResult

logger = logging.getLogger(__name__)

ResultMatcher = Callable[[CommandResult], bool]
RecoveryAction = Callable[[], Awaitable[None]]


def output_contains(*markers: str) -> ResultMatcher:
    """Matcher firing when any marker occurs in stdout or stderr (case-insensitive)."""
    lowered = [m.lower() for m in markers]

    def _matches(result: CommandResult) -> bool:
        output = result.output.lower()
        return any(marker in output for marker in lowered)

    return _matches


def timed_out_or_contains(*markers: str) -> ResultMatcher:
    contains = output_contains(*markers)

    def _matches(result: CommandResult) -> bool:
        return result.timed_out or contains(result)

    return _matches


@dataclass(frozen=True)
class RecoveryRule:
    """One recovery class: when `matches` fires, run `recover` and retry once."""

    name: str
    matches: ResultMatcher
    recover: RecoveryAction
    timeout_multiplier: float = 1.0


class BridgeLocks:
    """Named locks for operations that affect the whole device bridge."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock


class RetryPolicy:
    """Runs an invocation and retries only for recognised failure classes.

    Rules are consulted in order; each rule can trigger at most one retry per
    call, so an operation makes at most ``1 + len(rules)`` attempts.
    """

    def __init__(
        self,
        runner: CommandRunner,
        rules: Sequence[RecoveryRule] = (),
        success_exit_codes: Iterable[int] = (0,),
        success_markers: Iterable[str] = (),
        ready_check: Optional[RecoveryAction] = None,
    ) -> None:
        self.runner = runner
        self.rules: Tuple[RecoveryRule, ...] = tuple(rules)
        self.success_exit_codes = frozenset(success_exit_codes)
        self.success_markers = tuple(m.lower() for m in success_markers)
        self.ready_check = ready_check

    def is_success(self, result: CommandResult) -> bool:
        if result.timed_out:
            return False
        if result.exit_code in self.success_exit_codes:
            return True
        output = result.output.lower()
        return any(marker in output for marker in self.success_markers)

    async def execute(
        self,
        invocation: CommandInvocation,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OperationResult:
        result = await self.runner.run(invocation, cancel_event=cancel_event)
        attempts = 1
        used: List[str] = []

        while not self.is_success(result):
            if cancel_event is not None and cancel_event.is_set():
                break
            rule = self._next_rule(result, used)
            if rule is None:
                break

            used.append(rule.name)
            logger.warning(
                f"'{invocation.command_line}' failed ({rule.name}), "
                f"recovering and retrying (attempt {attempts + 1})"
            )
            await rule.recover()
            if self.ready_check is not None:
                await self.ready_check()

            if rule.timeout_multiplier != 1.0:
                invocation = invocation.with_timeout(
                    invocation.timeout * rule.timeout_multiplier
                )
            result = await self.runner.run(invocation, cancel_event=cancel_event)
            attempts += 1

        if self.is_success(result):
            return OperationResult(
                succeeded=True, result=result, attempts=attempts, recoveries=tuple(used)
            )

        logger.error(
            f"'{invocation.command_line}' failed after {attempts} attempt(s):\n"
            f"{result.describe()}"
        )
        return OperationResult(
            succeeded=False,
            result=result,
            attempts=attempts,
            recoveries=tuple(used),
            message=f"Command failed after {attempts} attempt(s)",
        )

    def _next_rule(self, result: CommandResult, used: List[str]) -> Optional[RecoveryRule]:
        for rule in self.rules:
            if rule.name in used:
                continue
            if rule.matches(result):
                return rule
        return None

    async def poll(
        self,
        invocation: CommandInvocation,
        until: Callable[[CommandResult], bool],
        attempts: int = 30,
        interval: float = 10.0,
    ) -> OperationResult:
        """Re-run `invocation` with fixed backoff until `until(result)` holds."""
        result = await self.runner.run(invocation)
        tries = 1
        while not until(result) and tries < attempts:
            logger.info(
                f"'{invocation.command_line}' not ready yet, "
                f"retrying in {interval}s ({tries}/{attempts})"
            )
            await asyncio.sleep(interval)
            result = await self.runner.run(invocation)
            tries += 1

        if until(result):
            return OperationResult(succeeded=True, result=result, attempts=tries)
        return OperationResult(
            succeeded=False,
            result=result,
            attempts=tries,
            message=f"Gave up after {tries} attempt(s)",
        )
