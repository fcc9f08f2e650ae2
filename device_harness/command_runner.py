"""Execution of external tools (device bridge, launch tool, simctl)."""

import asyncio
import logging
import os
import shutil
import time
from typing import Optional

from .error_handler import ToolNotFoundError
from .models import CommandInvocation, CommandResult
from .timeout import clamp_to_deadline

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def resolve_tool(tool: str) -> str:
    """Return an executable path for `tool` or raise ToolNotFoundError."""
    if os.path.sep in tool or (os.path.altsep and os.path.altsep in tool):
        if os.path.isfile(tool) and os.access(tool, os.X_OK):
            return tool
        raise ToolNotFoundError(tool, "path does not exist or is not executable")

    located = shutil.which(tool)
    if not located:
        raise ToolNotFoundError(tool, "not found on PATH")
    return located


async def _drain(stream: Optional[asyncio.StreamReader], sink: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        sink.extend(chunk)


async def terminate_process(
    process: asyncio.subprocess.Process, grace_period: float = 1.0
) -> None:
    """Terminate a child, escalating to kill after the grace period."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        async with asyncio.timeout(grace_period):
            await process.wait()
        return
    except (asyncio.TimeoutError, TimeoutError):
        logger.warning(f"Process {process.pid} ignored SIGTERM, killing it")
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


class CommandRunner:
    """Runs one tool invocation to completion, timeout or cancellation.

    A non-zero exit code is data, not an error: the only exception raised
    for a finished invocation is ToolNotFoundError when the binary cannot be
    located or spawned.
    """

    def __init__(self, grace_period: float = 1.0) -> None:
        self.grace_period = grace_period

    async def run(
        self,
        invocation: CommandInvocation,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        executable = resolve_tool(invocation.tool)
        env = None
        if invocation.env:
            env = {**os.environ, **invocation.env}

        logger.debug(f"Executing command: '{invocation.command_line}'")
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *invocation.args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolNotFoundError(invocation.tool, str(e)) from e

        stdout_buf = bytearray()
        stderr_buf = bytearray()
        readers = asyncio.gather(
            _drain(process.stdout, stdout_buf), _drain(process.stderr, stderr_buf)
        )
        waiter = asyncio.ensure_future(process.wait())
        watched = {waiter}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            watched.add(cancel_waiter)

        effective_timeout = clamp_to_deadline(invocation.timeout)
        timed_out = False
        try:
            done, _ = await asyncio.wait(
                watched, timeout=effective_timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if waiter not in done:
                timed_out = True
                reason = "cancelled" if cancel_waiter in done else "timed out"
                logger.warning(
                    f"Command {reason} after {time.monotonic() - started:.1f}s: "
                    f"'{invocation.command_line}'"
                )
                await terminate_process(process, self.grace_period)
        except asyncio.CancelledError:
            await terminate_process(process, self.grace_period)
            readers.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not waiter.done():
                waiter.cancel()

        # Grandchildren may keep the pipes open after the child is gone.
        try:
            async with asyncio.timeout(self.grace_period):
                await readers
        except (asyncio.TimeoutError, TimeoutError):
            readers.cancel()

        result = CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout_buf.decode("utf-8", errors="replace"),
            stderr=stderr_buf.decode("utf-8", errors="replace"),
            elapsed=time.monotonic() - started,
            timed_out=timed_out,
            command=invocation.command_line,
        )
        if not timed_out:
            logger.debug(
                f"Command exited with {result.exit_code} in {result.elapsed:.1f}s: "
                f"'{invocation.command_line}'"
            )
        return result
