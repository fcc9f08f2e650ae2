"""Device-independent orchestration of install, run and test commands.

`Orchestrator.run` walks one run through

    IDLE -> DEVICE_FOUND -> INSTALLED -> EXECUTING -> RESULT_COLLECTED
         -> CLEANED_UP -> DONE

with FAILED reachable from every state. Which steps do real work is
decided by an `OrchestrationSteps` value (see `variants.py`); what the
steps mean on a concrete target is decided by a `TargetPlatform`.

Every terminal outcome carries exactly one `ExitCode`. Expected failures
are returned, never raised, and teardown never overrides the primary
exit code.
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from .artifacts import RunLogs
from .config import HarnessConfig
from .error_handler import DEFAULT_FAILURE_MESSAGE, AdbFailureError, ExitCode, HarnessError
from .knowledge_base import ErrorKnowledgeBase, LogStage
from .listener import ResultListener, RunnerResult, runner_environment
from .models import CommandResult, KnownFailure, OperationResult
from .platforms import ExecutionReport, RunContext, TargetPlatform
from .timeout import LAUNCH_TIMEOUT, ExecutionCancelled, RunWatchdog
from .tool_models import OrchestrationRun

logger = logging.getLogger(__name__)

# Time allowed for the app to finish sending results after it exited
RESULT_GRACE_PERIOD = 5.0
CONNECT_GRACE_PERIOD = 1.0


class OrchestrationState(Enum):
    IDLE = "idle"
    DEVICE_FOUND = "device_found"
    INSTALLED = "installed"
    EXECUTING = "executing"
    RESULT_COLLECTED = "result_collected"
    CLEANED_UP = "cleaned_up"
    DONE = "done"
    FAILED = "failed"


class ListenerEvent(Enum):
    CONNECTED = "connected"
    LAUNCH_TIMED_OUT = "launch_timed_out"
    TIMED_OUT = "timed_out"
    NOT_CONNECTED = "not_connected"


@dataclass
class Outcome:
    """Terminal result of an orchestration run."""

    exit_code: ExitCode
    message: Optional[str] = None
    issue_link: Optional[str] = None
    state: OrchestrationState = OrchestrationState.DONE
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.succeeded,
            "exit_code": int(self.exit_code),
            "exit_code_name": self.exit_code.name,
            "message": self.message,
            "issue_link": self.issue_link,
            "state": self.state.value,
            "details": self.details,
        }


def failure(
    exit_code: ExitCode,
    message: Optional[str] = None,
    known: Optional[KnownFailure] = None,
    **details: Any,
) -> Outcome:
    """Build a failed outcome, preferring the knowledge-base message when known."""
    if known is not None:
        message = f"{message}\n{known.human_message}" if message else known.human_message
    return Outcome(
        exit_code=exit_code,
        message=message or DEFAULT_FAILURE_MESSAGE,
        issue_link=known.issue_link if known else None,
        state=OrchestrationState.FAILED,
        details=details,
    )


@contextmanager
def lldb_flag(path: Path, enabled: bool):
    """Create the launch tool's lldb flag file for the duration of a run."""
    path = Path(path)
    created = False
    if enabled and not path.exists():
        logger.info(f"Creating {path} to launch the app under lldb")
        path.touch()
        created = True
    elif not enabled and path.exists():
        logger.warning(
            f"{path} exists, the launch tool will run the app under lldb. "
            f"Delete it to launch normally"
        )
    try:
        yield
    finally:
        if created:
            logger.info(f"Removing {path}")
            path.unlink(missing_ok=True)


Step = Callable[["Orchestrator", RunContext], Awaitable[Optional[Outcome]]]


@dataclass(frozen=True)
class OrchestrationSteps:
    """Which step implementations a command variant uses.

    `reset`, `prepare` and `install` return None to continue or an Outcome
    to stop. `execute` always returns the run's Outcome. `uninstall` and
    `cleanup` run during teardown; their results are only logged.
    """

    name: str
    reset: Step
    prepare: Step
    install: Step
    execute: Step
    uninstall: Step
    cleanup: Step
    requires_app: bool = True


@dataclass
class Execution:
    launch_result: CommandResult
    report: ExecutionReport
    watchdog_reason: Optional[str] = None
    listener_event: Optional[ListenerEvent] = None

    @property
    def timed_out(self) -> bool:
        return self.watchdog_reason is not None or self.launch_result.timed_out


class Orchestrator:
    """Runs one command variant against one platform."""

    def __init__(
        self,
        platform: TargetPlatform,
        steps: OrchestrationSteps,
        config: Optional[HarnessConfig] = None,
        knowledge_base: Optional[ErrorKnowledgeBase] = None,
    ) -> None:
        self.platform = platform
        self.steps = steps
        self.config = config or HarnessConfig()
        self.knowledge_base = knowledge_base or ErrorKnowledgeBase()
        self.state = OrchestrationState.IDLE

    def transition(self, state: OrchestrationState) -> None:
        logger.debug(f"Orchestration state {self.state.value} -> {state.value}")
        self.state = state

    async def run(self, run: OrchestrationRun) -> Outcome:
        root = Path(run.output_directory) if run.output_directory else self.config.log_directory
        logs = RunLogs(root, self.steps.name)
        logs.attach()
        ctx = RunContext(run=run, config=self.config, logs=logs)
        self.state = OrchestrationState.IDLE

        try:
            with lldb_flag(
                self.config.lldb_flag_file, run.enable_lldb and self.platform.supports_lldb
            ):
                outcome = await self._orchestrate(ctx)

            if outcome.succeeded:
                self.transition(OrchestrationState.DONE)
                logger.info(f"'{self.steps.name}' finished successfully")
            else:
                self.transition(OrchestrationState.FAILED)
                logger.error(
                    f"'{self.steps.name}' failed with {outcome.exit_code.name} "
                    f"({int(outcome.exit_code)}): {outcome.message}"
                )
            outcome.state = self.state
            outcome.details.setdefault("log_directory", str(logs.directory))
            if ctx.device is not None:
                outcome.details.setdefault("device", ctx.device.to_dict())
            return outcome
        finally:
            logs.detach()

    async def _orchestrate(self, ctx: RunContext) -> Outcome:
        run = ctx.run
        logger.info(f"Starting '{self.steps.name}' of {run.app_id} on {run.target}")
        if self.steps.requires_app and not run.app_id:
            return failure(
                ExitCode.INVALID_ARGUMENTS, f"'{self.steps.name}' needs an app identifier"
            )

        try:
            selection = await self.platform.find_device(ctx)
        except AdbFailureError as e:
            return failure(ExitCode.ADB_DEVICE_ENUMERATION_FAILURE, e.message)
        except HarnessError as e:
            return failure(e.exit_code, e.message)
        if not selection.found:
            return failure(ExitCode.DEVICE_NOT_FOUND, selection.error)

        ctx.device = selection.device
        ctx.companion = selection.companion
        self.transition(OrchestrationState.DEVICE_FOUND)

        reset = run.reset_simulator and ctx.device.is_virtual
        outcome: Optional[Outcome] = None
        try:
            if reset:
                outcome = await self.steps.reset(self, ctx)
            else:
                outcome = await self.steps.prepare(self, ctx)
            if outcome is None:
                outcome = await self.steps.install(self, ctx)
            if outcome is None:
                outcome = await self._execute(ctx)
        except HarnessError as e:
            outcome = failure(e.exit_code, e.message)
        finally:
            await self._teardown(ctx, reset)
        return outcome

    async def _execute(self, ctx: RunContext) -> Outcome:
        try:
            outcome = await self.steps.execute(self, ctx)
            # Variants without an execution step (install) succeed here
            return outcome if outcome is not None else Outcome(ExitCode.SUCCESS)
        except (HarnessError, asyncio.TimeoutError, OSError, ValueError, RuntimeError) as e:
            logger.error(f"Execution failed: {e}")
            known = self.knowledge_base.is_known_test_issue(ctx.logs.execution_log)
            if known is not None and known.suggested_exit_code is not None:
                return failure(ExitCode(known.suggested_exit_code), known=known)
            return failure(ExitCode.GENERAL_FAILURE, known=known, error=str(e))

    async def _teardown(self, ctx: RunContext, reset: bool) -> None:
        try:
            await ctx.resources.aclose()
        except Exception as e:
            logger.error(f"Failed to release run resources: {e}")

        step = self.steps.cleanup if reset else self.steps.uninstall
        try:
            await step(self, ctx)
        except Exception as e:
            # The run's outcome is already decided
            logger.error(f"Cleanup failed: {e}")
        self.transition(OrchestrationState.CLEANED_UP)

    # ------------------------------------------------------------------
    # Execution

    async def launch_and_collect(self, ctx: RunContext, test_mode: bool) -> Execution:
        """Launch the app with log capture and timers, then collect its results."""
        run = ctx.run
        platform = self.platform
        listener = platform.open_listener(ctx) if test_mode else None

        # The launch timeout needs a signal that execution started, only
        # the listener connection gives one.
        watchdog = RunWatchdog(run.launch_timeout if listener else None, run.timeout)
        ctx.resources.callback(watchdog.close)

        env = dict(run.env)
        if listener is not None:
            port = await listener.start()
            ctx.resources.push_async_callback(listener.close)
            env.update(
                runner_environment(
                    port, run.xml_version, run.skipped_methods, run.skipped_classes
                )
            )

        capturer = platform.device_log_capturer(ctx)
        if capturer is not None:
            await capturer.start()
            ctx.resources.push_async_callback(capturer.stop)

        capture = platform.system_log_capture(ctx)
        if capture is not None:
            capture.start()

        events: asyncio.Queue = asyncio.Queue(maxsize=1)
        watcher: Optional[asyncio.Task] = None
        watchdog.start()
        if listener is not None:
            watcher = asyncio.create_task(self._watch_listener(listener, watchdog, events))
        else:
            watchdog.mark_execution_started()

        self.transition(OrchestrationState.EXECUTING)
        try:
            launch_result = await platform.launch(ctx, env, watchdog.cancelled)
        finally:
            if capture is not None:
                capture.stop()

        event = None
        if listener is not None:
            event = await self._listener_outcome(listener, watchdog, watcher, events)

        report = await platform.collect(ctx, launch_result, listener)
        self.transition(OrchestrationState.RESULT_COLLECTED)
        return Execution(
            launch_result=launch_result,
            report=report,
            watchdog_reason=watchdog.reason if watchdog.timed_out else None,
            listener_event=event,
        )

    async def _watch_listener(
        self, listener: ResultListener, watchdog: RunWatchdog, events: asyncio.Queue
    ) -> None:
        try:
            await watchdog.guard(listener.wait_connected())
        except ExecutionCancelled as e:
            if e.reason == LAUNCH_TIMEOUT:
                events.put_nowait(ListenerEvent.LAUNCH_TIMED_OUT)
            else:
                events.put_nowait(ListenerEvent.TIMED_OUT)
            return
        watchdog.mark_execution_started()
        events.put_nowait(ListenerEvent.CONNECTED)

    async def _listener_outcome(
        self,
        listener: ResultListener,
        watchdog: RunWatchdog,
        watcher: asyncio.Task,
        events: asyncio.Queue,
    ) -> ListenerEvent:
        if not watcher.done():
            # Results sent just before the app exited may still be in flight
            await asyncio.wait({watcher}, timeout=CONNECT_GRACE_PERIOD)

        if listener.is_connected and not watchdog.cancelled.is_set():
            try:
                await asyncio.wait_for(listener.wait_finished(), RESULT_GRACE_PERIOD)
            except asyncio.TimeoutError:
                logger.warning("Test application did not close the result connection")

        if events.empty():
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            return ListenerEvent.NOT_CONNECTED
        return events.get_nowait()

    def known_issue(self, ctx: RunContext, output: str, stage: LogStage) -> Optional[KnownFailure]:
        return self.knowledge_base.classify_text(output, stage) or self.knowledge_base.classify(
            ctx.logs.execution_log, stage
        )

    async def classify_run(self, ctx: RunContext, execution: Execution) -> Outcome:
        run = ctx.run
        report = execution.report

        if execution.timed_out:
            return failure(
                ExitCode.TIMED_OUT, f"Application run timed out after {run.timeout:g}s"
            )

        if report.crashed:
            await self.platform.dump_diagnostics(ctx)
            return failure(
                ExitCode.APP_CRASH,
                report.message or "Application crashed",
                known=self.known_issue(ctx, execution.launch_result.output, LogStage.RUN),
            )

        if report.infrastructure_failure is not None:
            return failure(report.infrastructure_failure, report.message)

        if report.launch_failed:
            return failure(
                ExitCode.APP_LAUNCH_FAILURE,
                f"Failed to launch the application (exit code {execution.launch_result.exit_code})",
                known=self.known_issue(ctx, execution.launch_result.output, LogStage.RUN),
            )

        exit_code = report.exit_code
        if exit_code is None:
            if run.expected_exit_code == 0:
                logger.info("No exit code detected, treating it as 0")
                return Outcome(ExitCode.SUCCESS)
            return failure(
                ExitCode.RETURN_CODE_NOT_SET,
                f"Could not detect the application's exit code "
                f"(expected {run.expected_exit_code})",
            )

        if exit_code != run.expected_exit_code:
            return failure(
                ExitCode.GENERAL_FAILURE,
                f"Application exited with code {exit_code}, expected {run.expected_exit_code}",
                known=self.known_issue(ctx, execution.launch_result.output, LogStage.RUN),
                app_exit_code=exit_code,
            )

        logger.info(f"Application exited with the expected code {exit_code}")
        return Outcome(ExitCode.SUCCESS, details={"app_exit_code": exit_code})

    async def classify_test(self, ctx: RunContext, execution: Execution) -> Outcome:
        report = execution.report
        output = execution.launch_result.output
        details: Dict[str, Any] = {}
        if report.summary is not None:
            details = {
                "total": report.summary.total,
                "passed": report.summary.passed,
                "failed": report.summary.failed,
            }

        if (
            execution.listener_event == ListenerEvent.LAUNCH_TIMED_OUT
            or execution.watchdog_reason == LAUNCH_TIMEOUT
        ):
            return failure(
                ExitCode.APP_LAUNCH_TIMEOUT,
                f"Test application did not connect within {ctx.run.launch_timeout:g}s",
                known=self.known_issue(ctx, output, LogStage.TEST),
            )
        if execution.timed_out:
            return failure(ExitCode.TIMED_OUT, f"Test run timed out after {ctx.run.timeout:g}s")

        if report.crashed:
            await self.platform.dump_diagnostics(ctx)
        if report.infrastructure_failure is not None:
            return failure(report.infrastructure_failure, report.message)

        result = report.test_result
        if result is None and execution.listener_event == ListenerEvent.NOT_CONNECTED:
            return failure(
                ExitCode.APP_LAUNCH_FAILURE,
                "Test application never connected to the result listener",
                known=self.known_issue(ctx, output, LogStage.TEST),
            )

        if result == RunnerResult.SUCCEEDED:
            return Outcome(ExitCode.SUCCESS, details=details)
        if result == RunnerResult.FAILED:
            return failure(ExitCode.TESTS_FAILED, "Tests failed", **details)
        if result == RunnerResult.LAUNCH_FAILURE:
            return failure(
                ExitCode.APP_LAUNCH_FAILURE,
                "Failed to launch the test application",
                known=self.known_issue(ctx, output, LogStage.TEST),
            )
        if result == RunnerResult.CRASHED:
            return failure(
                ExitCode.APP_CRASH,
                "Test application crashed",
                known=self.known_issue(ctx, output, LogStage.TEST),
            )

        known = self.known_issue(ctx, output, LogStage.TEST)
        return failure(self.platform.missing_result_code, known=known)


# ----------------------------------------------------------------------
# Steps


async def skip(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    return None


async def reset_device(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    logger.info(f"Resetting '{ctx.device.name}' before the run")
    if not await orchestrator.platform.reset_device(ctx):
        return failure(ExitCode.SIMULATOR_FAILURE, f"Failed to reset '{ctx.device.name}'")
    return None


async def uninstall_first(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    """Remove a previous installation; an absent app is not an error."""
    platform = orchestrator.platform
    outcome = await platform.uninstall(ctx)
    exit_code = platform.classify_uninstall(outcome)
    if exit_code == ExitCode.SIMULATOR_FAILURE:
        return failure(
            exit_code,
            f"Failed to uninstall {ctx.run.app_id}, '{ctx.device.name}' is in a bad state",
        )
    if exit_code != ExitCode.SUCCESS:
        logger.warning(f"Could not uninstall a previous {ctx.run.app_id}, continuing")
    return None


async def install_app(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    platform = orchestrator.platform
    try:
        outcome = await platform.install(ctx)
    except FileNotFoundError as e:
        return failure(ExitCode.PACKAGE_NOT_FOUND, str(e))
    except ValueError as e:
        return failure(ExitCode.INVALID_ARGUMENTS, str(e))
    except AdbFailureError as e:
        outcome = OperationResult(succeeded=False, result=e.result, message=e.message)

    if outcome.succeeded:
        orchestrator.transition(OrchestrationState.INSTALLED)
        return None

    if outcome.timed_out:
        result = failure(
            ExitCode.PACKAGE_INSTALLATION_TIMEOUT, "Timed out installing the application"
        )
    else:
        output = outcome.result.output if outcome.result is not None else outcome.message or ""
        known = orchestrator.known_issue(ctx, output, LogStage.INSTALL)
        details = {}
        if known is not None and known.suggested_exit_code is not None:
            details["suggested_exit_code"] = known.suggested_exit_code
        result = failure(
            ExitCode.PACKAGE_INSTALLATION_FAILURE,
            "Failed to install the application",
            known=known,
            **details,
        )

    # A failed install can leave a partial package behind
    try:
        removal = await platform.uninstall(ctx)
        ctx.app_removed = removal.succeeded
    except HarnessError as e:
        logger.warning(f"Failed to remove the partial installation: {e}")
    return result


async def uninstall_app(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    if ctx.app_removed:
        return None
    outcome = await orchestrator.platform.uninstall(ctx)
    if not outcome.succeeded:
        logger.warning(f"Failed to uninstall {ctx.run.app_id} after the run")
    return None


async def cleanup_devices(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    await orchestrator.platform.cleanup(ctx)
    return None


async def run_app(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    execution = await orchestrator.launch_and_collect(ctx, test_mode=False)
    return await orchestrator.classify_run(ctx, execution)


async def run_test_app(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    execution = await orchestrator.launch_and_collect(ctx, test_mode=True)
    return await orchestrator.classify_test(ctx, execution)


async def uninstall_only(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    platform = orchestrator.platform
    outcome = await platform.uninstall(ctx)
    exit_code = platform.classify_uninstall(outcome)
    if exit_code == ExitCode.SUCCESS:
        return Outcome(ExitCode.SUCCESS)
    output = outcome.result.output if outcome.result is not None else ""
    return failure(
        exit_code,
        f"Failed to uninstall {ctx.run.app_id}",
        known=orchestrator.known_issue(ctx, output, LogStage.INSTALL),
    )


async def reset_only(orchestrator: Orchestrator, ctx: RunContext) -> Optional[Outcome]:
    if not ctx.device.is_virtual:
        return failure(
            ExitCode.INVALID_ARGUMENTS,
            f"'{ctx.device.name}' is not a simulator or emulator and cannot be reset",
        )
    if not await orchestrator.platform.reset_device(ctx):
        return failure(ExitCode.SIMULATOR_FAILURE, f"Failed to reset '{ctx.device.name}'")
    return Outcome(ExitCode.SUCCESS)
