"""Per-platform device, install and launch steps used by the orchestrator.

An orchestrator is platform-agnostic: it drives a `TargetPlatform` through
find -> install -> launch -> collect -> uninstall. `AndroidPlatform` talks to
devices and emulators through adb; `ApplePlatform` drives simulators through
simctl and the mlaunch launch tool.
"""

import logging
import re
import shutil
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Dict, List, Optional

from .adb import AdbExitCode, AdbRunner
from .artifacts import RunLogs
from .command_runner import CommandRunner
from .config import HarnessConfig
from .device_selector import (
    AdbDeviceSource,
    DeviceFilter,
    DeviceSelection,
    DeviceSelector,
    SimulatorDeviceSource,
    TieBreak,
    parse_version,
)
from .error_handler import AdbFailureError, ExitCode
from .exit_code_detector import detector_for
from .listener import ResultListener, ResultSummary, RunnerResult, parse_results
from .log_capture import DeviceLogCapturer, WindowedLogCapture
from .models import CommandInvocation, CommandResult, Device, DeviceKind, OperationResult
from .simulators import SIMCTL_BAD_STATE, SimulatorManager, runtime_version
from .tool_models import OrchestrationRun

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Mutable state of one orchestration run."""

    run: OrchestrationRun
    config: HarnessConfig
    logs: RunLogs
    device: Optional[Device] = None
    companion: Optional[Device] = None
    # Set when a failed install already removed the partial package
    app_removed: bool = False
    # Closed by the orchestrator before uninstall/cleanup
    resources: AsyncExitStack = field(default_factory=AsyncExitStack)


@dataclass
class ExecutionReport:
    """What a platform learned about a finished launch."""

    exit_code: Optional[int] = None
    crashed: bool = False
    launch_failed: bool = False
    test_result: Optional[RunnerResult] = None
    summary: Optional[ResultSummary] = None
    message: Optional[str] = None
    infrastructure_failure: Optional[ExitCode] = None


class TargetPlatform:
    """Base class for platform step implementations."""

    name: ClassVar[str] = "generic"
    supports_lldb: ClassVar[bool] = False
    # Exit code when a test run produced neither results nor a return code
    missing_result_code: ClassVar[ExitCode] = ExitCode.GENERAL_FAILURE

    async def find_device(self, ctx: RunContext) -> DeviceSelection:
        raise NotImplementedError

    async def reset_device(self, ctx: RunContext) -> bool:
        return True

    async def install(self, ctx: RunContext) -> OperationResult:
        raise NotImplementedError

    async def uninstall(self, ctx: RunContext) -> OperationResult:
        raise NotImplementedError

    def classify_uninstall(self, outcome: OperationResult) -> ExitCode:
        return ExitCode.SUCCESS if outcome.succeeded else ExitCode.GENERAL_FAILURE

    def open_listener(self, ctx: RunContext) -> Optional[ResultListener]:
        return None

    def system_log_capture(self, ctx: RunContext) -> Optional[WindowedLogCapture]:
        return None

    def device_log_capturer(self, ctx: RunContext) -> Optional[DeviceLogCapturer]:
        return None

    async def launch(self, ctx: RunContext, env: Dict[str, str], cancel_event) -> CommandResult:
        raise NotImplementedError

    async def collect(
        self,
        ctx: RunContext,
        launch_result: CommandResult,
        listener: Optional[ResultListener],
    ) -> ExecutionReport:
        raise NotImplementedError

    async def cleanup(self, ctx: RunContext) -> None:
        return None

    async def dump_diagnostics(self, ctx: RunContext) -> None:
        return None


# ----------------------------------------------------------------------
# Android


_INSTRUMENTATION_RESULT = re.compile(r"^INSTRUMENTATION_RESULT:\s*([^=]+)=(.*)$")
RESULTS_PATH_KEYS = ("test-results-path", "nunit2-results-path")
RETURN_CODE_KEY = "return-code"
SHORT_MESSAGE_KEY = "shortMsg"
EXECUTION_SUMMARY_KEY = "test-execution-summary"
PROCESS_CRASHED = "Process crashed"


def parse_instrumentation_output(stdout: str) -> Dict[str, str]:
    """Collect `INSTRUMENTATION_RESULT: key=value` pairs; later lines win."""
    values: Dict[str, str] = {}
    for line in stdout.splitlines():
        match = _INSTRUMENTATION_RESULT.match(line.strip())
        if match:
            values[match.group(1).strip()] = match.group(2).strip()
    return values


class AndroidPlatform(TargetPlatform):
    """Devices and emulators reached through the adb bridge."""

    name = "android"
    missing_result_code = ExitCode.RETURN_CODE_NOT_SET

    def __init__(self, adb: AdbRunner, config: Optional[HarnessConfig] = None) -> None:
        self.adb = adb
        self.config = config or adb.config

    async def find_device(self, ctx: RunContext) -> DeviceSelection:
        run = ctx.run
        api_level = str(run.api_level) if run.api_level else run.os_version
        selector = DeviceSelector(AdbDeviceSource(self.adb))
        candidates = await selector.enumerate(
            DeviceFilter(
                architecture=run.device_arch,
                os_version=api_level,
                name_or_udid=run.device_name,
            )
        )

        # Emulators come up in a fixed order; hardware prefers the oldest API
        if candidates and all(d.is_virtual for d in candidates):
            tie_break = TieBreak.FIRST_LISTED
        else:
            tie_break = TieBreak.LOWEST_OS_VERSION
        selection = selector.select_one(candidates, tie_break)

        if selection.found:
            self.adb.set_device(selection.device.udid)
            logger.info(f"Using device '{selection.device.udid}' (API {selection.device.os_version})")
        return selection

    async def reset_device(self, ctx: RunContext) -> bool:
        return await self.adb.reboot_and_wait()

    async def install(self, ctx: RunContext) -> OperationResult:
        await self.adb.start_server()
        await self.adb.wait_for_device()
        outcome = await self.adb.install(ctx.run.app_path)
        if outcome.succeeded:
            # Make sure a stale process does not answer the instrumentation
            await self.adb.kill_app(ctx.run.app_id)
        return outcome

    async def uninstall(self, ctx: RunContext) -> OperationResult:
        return await self.adb.uninstall(ctx.run.app_id)

    def device_log_capturer(self, ctx: RunContext) -> Optional[DeviceLogCapturer]:
        if ctx.device is None:
            return None
        return DeviceLogCapturer(
            [self.config.adb_path, "-s", ctx.device.udid, "logcat", "-T", "1"],
            ctx.logs.device_log,
        )

    async def launch(self, ctx: RunContext, env: Dict[str, str], cancel_event) -> CommandResult:
        run = ctx.run
        args = dict(run.instrumentation_args)
        args.update(env)
        # The logcat dumped after the run should only hold this run
        await self.adb.clear_logcat()
        return await self.adb.instrument(
            run.app_id,
            run.instrumentation,
            args,
            timeout=run.timeout,
            cancel_event=cancel_event,
        )

    async def collect(
        self,
        ctx: RunContext,
        launch_result: CommandResult,
        listener: Optional[ResultListener],
    ) -> ExecutionReport:
        run = ctx.run
        report = ExecutionReport()
        values = parse_instrumentation_output(launch_result.stdout)

        if values.get(SHORT_MESSAGE_KEY, "").startswith(PROCESS_CRASHED):
            report.crashed = True
        if RETURN_CODE_KEY in values:
            try:
                report.exit_code = int(values[RETURN_CODE_KEY])
            except ValueError:
                logger.error(f"Unparseable instrumentation return code '{values[RETURN_CODE_KEY]}'")
        if EXECUTION_SUMMARY_KEY in values:
            logger.info(f"Test execution summary: {values[EXECUTION_SUMMARY_KEY]}")

        report.launch_failed = (
            not launch_result.timed_out
            and not values
            and launch_result.exit_code
            not in (AdbExitCode.SUCCESS, AdbExitCode.INSTRUMENTATION_SUCCESS)
        )

        for key in RESULTS_PATH_KEYS:
            device_path = values.get(key)
            if not device_path:
                continue
            try:
                pulled = await self.adb.pull(device_path, ctx.logs.results_dir)
            except AdbFailureError as e:
                logger.error(f"Failed to pull test results: {e}")
                report.infrastructure_failure = ExitCode.DEVICE_FILE_COPY_FAILURE
                continue
            for path in pulled:
                summary = parse_results(path)
                if summary is not None and report.summary is None:
                    report.summary = summary

        logcat = ctx.logs.directory / f"adb-logcat-{run.app_id}.log"
        if not await self.adb.dump_logcat(logcat):
            report.infrastructure_failure = (
                report.infrastructure_failure or ExitCode.SIMULATOR_FAILURE
            )

        if report.crashed:
            report.test_result = RunnerResult.CRASHED
        elif report.summary is not None:
            report.test_result = report.summary.result
        elif report.exit_code is not None:
            report.test_result = (
                RunnerResult.SUCCEEDED
                if report.exit_code == run.expected_exit_code
                else RunnerResult.FAILED
            )
        elif report.launch_failed:
            report.test_result = RunnerResult.LAUNCH_FAILURE
        return report

    async def cleanup(self, ctx: RunContext) -> None:
        if not ctx.app_removed:
            await self.uninstall(ctx)

    async def dump_diagnostics(self, ctx: RunContext) -> None:
        state = await self.adb.get_state()
        logger.info(f"Device state before bug report: {state or 'unknown'}")
        await self.adb.bugreport(ctx.logs.bugreport)


# ----------------------------------------------------------------------
# Apple simulators


SIMULATOR_OS = {
    "ios-simulator": "iOS",
    "tvos-simulator": "tvOS",
    "watchos-simulator": "watchOS",
}
CONTAINER_RESULTS = Path("Documents") / "test-results.xml"


class ApplePlatform(TargetPlatform):
    """iOS, tvOS and watchOS simulators."""

    name = "apple"
    supports_lldb = True

    def __init__(
        self,
        simulators: SimulatorManager,
        runner: CommandRunner,
        target: str = "ios-simulator",
        config: Optional[HarnessConfig] = None,
    ) -> None:
        if target not in SIMULATOR_OS:
            raise ValueError(f"Unsupported simulator target '{target}'")
        self.simulators = simulators
        self.runner = runner
        self.target = target
        self.os_name = SIMULATOR_OS[target]
        self.config = config or simulators.config

    @property
    def needs_companion(self) -> bool:
        return self.os_name == "watchOS"

    def runtime_prefix(self, os_name: Optional[str] = None) -> str:
        return f"SimRuntime.{os_name or self.os_name}-"

    async def latest_runtime(self, os_name: str) -> Optional[str]:
        prefix = self.runtime_prefix(os_name)
        runtimes = {d.runtime for d in await self.simulators.list_devices() if prefix in d.runtime}
        if not runtimes:
            return None
        return max(runtimes, key=lambda r: parse_version(runtime_version(r)))

    async def find_device(self, ctx: RunContext) -> DeviceSelection:
        run = ctx.run
        selector = DeviceSelector(SimulatorDeviceSource(self.simulators, self.runtime_prefix()))
        selection = await selector.find(
            DeviceFilter(
                kinds=(DeviceKind.SIMULATOR,),
                os_version=run.os_version,
                name_or_udid=run.device_name,
            ),
            TieBreak.FIRST_LISTED,
        )
        if not selection.found or not self.needs_companion:
            return selection

        companion_runtime = await self.latest_runtime("iOS")
        if companion_runtime is None:
            return DeviceSelection(error="No iOS runtime available for the companion simulator")
        return await selector.find_or_pair_companion(
            selection.device, self.simulators, companion_runtime
        )

    async def reset_device(self, ctx: RunContext) -> bool:
        for device in (ctx.device, ctx.companion):
            if device is not None and not await self.simulators.reset(device):
                return False
        return True

    async def install(self, ctx: RunContext) -> OperationResult:
        app_path = ctx.run.app_path
        if not app_path:
            raise ValueError("No value supplied for app_path")
        if not Path(app_path).exists():
            raise FileNotFoundError(f"Could not find {app_path}")

        logger.info(f"Installing {app_path} on '{ctx.device.name}'")
        result = await self.simulators.install(
            ctx.device.udid, app_path, timeout=self.config.install_timeout
        )
        if not result.succeeded:
            logger.error(f"Failed to install {app_path}:\n{result.describe()}")
        return OperationResult(
            succeeded=result.succeeded,
            result=result,
            message=None if result.succeeded else result.output.strip(),
        )

    async def uninstall(self, ctx: RunContext) -> OperationResult:
        logger.info(f"Uninstalling {ctx.run.app_id} from '{ctx.device.name}'")
        result = await self.simulators.uninstall(ctx.device.udid, ctx.run.app_id)
        return OperationResult(succeeded=result.succeeded, result=result)

    def classify_uninstall(self, outcome: OperationResult) -> ExitCode:
        if outcome.succeeded:
            return ExitCode.SUCCESS
        if outcome.result is not None and outcome.result.exit_code == SIMCTL_BAD_STATE:
            return ExitCode.SIMULATOR_FAILURE
        return ExitCode.GENERAL_FAILURE

    def open_listener(self, ctx: RunContext) -> Optional[ResultListener]:
        return ResultListener(ctx.logs.listener_results)

    def system_log_capture(self, ctx: RunContext) -> Optional[WindowedLogCapture]:
        if ctx.device is None:
            return None
        return WindowedLogCapture(
            self.simulators.system_log_path(ctx.device.udid), ctx.logs.system_log
        )

    def launch_arguments(self, ctx: RunContext, env: Dict[str, str]) -> List[str]:
        run = ctx.run
        if not run.app_path:
            raise ValueError("No value supplied for app_path")

        args = ["--launchsim", run.app_path, "--device", f":v2:udid={ctx.device.udid}"]
        for key, value in env.items():
            args.append(f"--set-env={key}={value}")
        for argument in run.app_arguments:
            args.append(f"--argument={argument}")
        args.append("--wait-for-exit")
        # watchOS apps only report their exit through the debugger
        if run.enable_lldb or self.needs_companion:
            args.append("--attach-native-debugger")
        return args

    async def launch(self, ctx: RunContext, env: Dict[str, str], cancel_event) -> CommandResult:
        invocation = CommandInvocation(
            tool=self.config.mlaunch_path,
            args=tuple(self.launch_arguments(ctx, env)),
            timeout=ctx.run.timeout,
        )
        logger.info(f"Launching {ctx.run.app_id} on '{ctx.device.name}'")
        return await self.runner.run(invocation, cancel_event=cancel_event)

    def copies_results_from_container(self, device: Device) -> bool:
        threshold = self.config.result_copy_min_os_version
        if threshold is None:
            return False
        return parse_version(device.os_version) >= parse_version(threshold)

    async def copy_results_from_container(self, ctx: RunContext) -> bool:
        container = await self.simulators.app_data_container(ctx.device.udid, ctx.run.app_id)
        if container is None:
            logger.warning(f"No data container found for {ctx.run.app_id}")
            return False
        source = container / CONTAINER_RESULTS
        if not source.is_file():
            logger.warning(f"No test results at {source}")
            return False
        ctx.logs.listener_results.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, ctx.logs.listener_results)
        logger.info(f"Copied test results from {source}")
        return True

    async def collect(
        self,
        ctx: RunContext,
        launch_result: CommandResult,
        listener: Optional[ResultListener],
    ) -> ExecutionReport:
        report = ExecutionReport()
        report.exit_code = detector_for(self.os_name).detect(ctx.run.app_id, ctx.logs.system_log)
        # A failing launch tool overrides whatever the app logged
        report.launch_failed = not launch_result.timed_out and launch_result.exit_code != 0

        if listener is None:
            return report

        results = ctx.logs.listener_results
        received = results.is_file() and results.stat().st_size > 0
        if not received and self.copies_results_from_container(ctx.device):
            await self.copy_results_from_container(ctx)

        report.summary = parse_results(results)
        if report.summary is not None:
            report.test_result = report.summary.result
        elif listener.is_connected:
            # Connected but never delivered a document
            report.test_result = RunnerResult.CRASHED
        elif report.launch_failed:
            report.test_result = RunnerResult.LAUNCH_FAILURE
        return report

    async def cleanup(self, ctx: RunContext) -> None:
        await self.simulators.cleanup([ctx.device, ctx.companion])
