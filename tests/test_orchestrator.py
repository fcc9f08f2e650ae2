"""Tests for the orchestration state machine over a scripted platform."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from pydantic import ValidationError

from device_harness.device_selector import DeviceSelection
from device_harness.error_handler import ExitCode
from device_harness.listener import ResultListener, RunnerEnvironment, parse_results
from device_harness.models import (
    CommandResult,
    Device,
    DeviceKind,
    DeviceState,
    KnownFailure,
    OperationResult,
)
from device_harness.orchestrator import OrchestrationState, failure, lldb_flag
from device_harness.platforms import ExecutionReport, TargetPlatform
from device_harness.tool_models import OrchestrationRun
from device_harness.variants import create_orchestrator

PASSING_XML = b'<assemblies><assembly total="3" failed="0" errors="0" /></assemblies>'
FAILING_XML = b'<assemblies><assembly total="3" failed="1" errors="0" /></assemblies>'


class FakePlatform(TargetPlatform):
    """Records every step and replays scripted results."""

    name = "fake"
    supports_lldb = True

    def __init__(
        self,
        device: Optional[Device],
        install_outcome: Optional[OperationResult] = None,
        report: Optional[ExecutionReport] = None,
        listener: bool = False,
        send: Optional[bytes] = None,
        hang: bool = False,
        launch_error: Optional[Exception] = None,
        teardown_error: Optional[Exception] = None,
    ) -> None:
        self.device = device
        self.install_outcome = install_outcome or OperationResult(succeeded=True)
        self.report = report or ExecutionReport(exit_code=0)
        self.use_listener = listener
        self.send = send
        self.hang = hang
        self.launch_error = launch_error
        self.teardown_error = teardown_error
        self.calls: List[str] = []
        self.launch_env: Dict[str, str] = {}
        self.lldb_flag_seen = False

    async def find_device(self, ctx):
        if self.device is None:
            return DeviceSelection(error="No device found matching the requested criteria")
        return DeviceSelection(device=self.device)

    async def reset_device(self, ctx):
        self.calls.append("reset")
        return True

    async def install(self, ctx):
        self.calls.append("install")
        return self.install_outcome

    async def uninstall(self, ctx):
        self.calls.append("uninstall")
        if self.teardown_error is not None and "collect" in self.calls:
            raise self.teardown_error
        return OperationResult(succeeded=True)

    def open_listener(self, ctx):
        if not self.use_listener:
            return None
        return ResultListener(ctx.logs.listener_results)

    async def launch(self, ctx, env, cancel_event):
        self.calls.append("launch")
        self.launch_env = dict(env)
        self.lldb_flag_seen = ctx.config.lldb_flag_file.exists()
        if self.launch_error is not None:
            raise self.launch_error
        if self.send is not None:
            port = int(env[RunnerEnvironment.HOST_PORT])
            _, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(self.send)
            await writer.drain()
            writer.close()
            await writer.wait_closed()
        if self.hang:
            await cancel_event.wait()
            return CommandResult(exit_code=-1, timed_out=True)
        return CommandResult(exit_code=0)

    async def collect(self, ctx, launch_result, listener):
        self.calls.append("collect")
        if listener is None:
            return self.report
        report = ExecutionReport()
        report.summary = parse_results(ctx.logs.listener_results)
        if report.summary is not None:
            report.test_result = report.summary.result
        return report

    async def cleanup(self, ctx):
        self.calls.append("cleanup")

    async def dump_diagnostics(self, ctx):
        self.calls.append("diagnostics")


def make_run(temp_dir, **overrides) -> OrchestrationRun:
    values = {
        "target": "ios-simulator",
        "app_path": str(temp_dir / "MyTests.app"),
        "app_id": "net.example.MyTests",
        "output_directory": str(temp_dir / "out"),
        "timeout": 10,
        "launch_timeout": 5,
    }
    values.update(overrides)
    return OrchestrationRun(**values)


async def orchestrate(variant, platform, config, run):
    orchestrator = create_orchestrator(variant, platform, config)
    outcome = await orchestrator.run(run)
    return orchestrator, outcome


class TestRunVariants:
    """Install, launch and exit code classification."""

    @pytest.mark.asyncio
    async def test_run_succeeds(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device)

        orchestrator, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir)
        )

        assert outcome.exit_code == ExitCode.SUCCESS
        assert outcome.state == OrchestrationState.DONE
        assert orchestrator.state == OrchestrationState.DONE
        assert platform.calls == ["uninstall", "install", "launch", "collect", "uninstall"]

    @pytest.mark.asyncio
    async def test_execution_log_is_written(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device)

        _, outcome = await orchestrate("run", platform, harness_config, make_run(temp_dir))

        log_directory = Path(outcome.details["log_directory"])
        assert log_directory.parent == temp_dir / "out"
        assert log_directory.name.startswith("run-")
        assert "finished successfully" in (log_directory / "execution.log").read_text()
        assert outcome.details["device"]["udid"] == simulator_device.udid

    @pytest.mark.asyncio
    async def test_unexpected_exit_code(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device, report=ExecutionReport(exit_code=3))

        _, outcome = await orchestrate("run", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.GENERAL_FAILURE
        assert outcome.details["app_exit_code"] == 3
        assert "expected 0" in outcome.message

    @pytest.mark.asyncio
    async def test_expected_nonzero_exit_code(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device, report=ExecutionReport(exit_code=3))

        _, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir, expected_exit_code=3)
        )

        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_missing_exit_code_with_nonzero_expectation(
        self, simulator_device, harness_config, temp_dir
    ):
        platform = FakePlatform(simulator_device, report=ExecutionReport(exit_code=None))

        _, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir, expected_exit_code=3)
        )

        assert outcome.exit_code == ExitCode.RETURN_CODE_NOT_SET

    @pytest.mark.asyncio
    async def test_failed_launch_tool_ignores_logged_exit_code(
        self, simulator_device, harness_config, temp_dir
    ):
        """An exit line in the log does not rescue a launch tool that failed."""
        platform = FakePlatform(
            simulator_device, report=ExecutionReport(exit_code=3, launch_failed=True)
        )

        _, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir, expected_exit_code=3)
        )

        assert outcome.exit_code == ExitCode.APP_LAUNCH_FAILURE

    @pytest.mark.asyncio
    async def test_cleanup_error_keeps_run_outcome(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(
            simulator_device, teardown_error=ValueError("No value supplied for package")
        )

        orchestrator, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir)
        )

        assert outcome.succeeded
        assert platform.calls[-1] == "uninstall"
        assert orchestrator.state == OrchestrationState.DONE

    @pytest.mark.asyncio
    async def test_missing_app_id_is_invalid(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device)

        _, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir, app_id=None)
        )

        assert outcome.exit_code == ExitCode.INVALID_ARGUMENTS
        assert platform.calls == []

    def test_empty_app_id_is_rejected(self, temp_dir):
        with pytest.raises(ValidationError):
            make_run(temp_dir, app_id="")

    @pytest.mark.asyncio
    async def test_run_timeout(self, simulator_device, harness_config, temp_dir):
        """A hung app is cancelled by the run timeout and uninstall still happens."""
        platform = FakePlatform(simulator_device, hang=True)

        _, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir, timeout=0.2)
        )

        assert outcome.exit_code == ExitCode.TIMED_OUT
        assert outcome.state == OrchestrationState.FAILED
        assert platform.calls[-1] == "uninstall"

    @pytest.mark.asyncio
    async def test_crash_dumps_diagnostics(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device, report=ExecutionReport(crashed=True))

        _, outcome = await orchestrate("run", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.APP_CRASH
        assert "diagnostics" in platform.calls

    @pytest.mark.asyncio
    async def test_launch_error_is_reported(self, simulator_device, harness_config, temp_dir):
        """Unexpected launch errors become a failure and teardown still runs."""
        platform = FakePlatform(simulator_device, launch_error=RuntimeError("mlaunch exploded"))

        _, outcome = await orchestrate("run", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.GENERAL_FAILURE
        assert outcome.details["error"] == "mlaunch exploded"
        assert platform.calls[-1] == "uninstall"

    @pytest.mark.asyncio
    async def test_just_run_skips_install_and_uninstall(
        self, simulator_device, harness_config, temp_dir
    ):
        platform = FakePlatform(simulator_device)

        _, outcome = await orchestrate("just-run", platform, harness_config, make_run(temp_dir))

        assert outcome.succeeded
        assert platform.calls == ["launch", "collect"]

    @pytest.mark.asyncio
    async def test_install_variant_leaves_app_installed(
        self, simulator_device, harness_config, temp_dir
    ):
        platform = FakePlatform(simulator_device)

        _, outcome = await orchestrate("install", platform, harness_config, make_run(temp_dir))

        assert outcome.succeeded
        assert platform.calls == ["uninstall", "install"]

    @pytest.mark.asyncio
    async def test_device_not_found(self, harness_config, temp_dir):
        platform = FakePlatform(None)

        _, outcome = await orchestrate("run", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.DEVICE_NOT_FOUND
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_reset_replaces_uninstall_with_cleanup(
        self, simulator_device, harness_config, temp_dir
    ):
        platform = FakePlatform(simulator_device)

        _, outcome = await orchestrate(
            "run", platform, harness_config, make_run(temp_dir, reset_simulator=True)
        )

        assert outcome.succeeded
        assert platform.calls == ["reset", "install", "launch", "collect", "cleanup"]

    @pytest.mark.asyncio
    async def test_reset_is_ignored_on_hardware(self, harness_config, temp_dir):
        device = Device(
            udid="R58M12ABCDE",
            name="Pixel 7",
            os_version="33",
            kind=DeviceKind.HARDWARE,
            state=DeviceState.READY,
        )
        platform = FakePlatform(device)

        await orchestrate("run", platform, harness_config, make_run(temp_dir, reset_simulator=True))

        assert "reset" not in platform.calls
        assert "cleanup" not in platform.calls


class TestInstallFailures:
    @pytest.mark.asyncio
    async def test_provisioning_failure(self, simulator_device, harness_config, temp_dir):
        """A known install failure carries the human message and removes the partial install."""
        result = CommandResult(
            exit_code=1,
            stderr="error MT1006: Could not install the application: 0xe8008015",
        )
        platform = FakePlatform(
            simulator_device, install_outcome=OperationResult(succeeded=False, result=result)
        )

        _, outcome = await orchestrate("run", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.PACKAGE_INSTALLATION_FAILURE
        assert "No valid provisioning profile found" in outcome.message
        assert outcome.details["suggested_exit_code"] == int(ExitCode.APP_NOT_SIGNED)
        assert "launch" not in platform.calls
        # The partial package is removed once, teardown does not repeat it
        assert platform.calls == ["uninstall", "install", "uninstall"]

    @pytest.mark.asyncio
    async def test_install_timeout(self, simulator_device, harness_config, temp_dir):
        result = CommandResult(exit_code=-1, timed_out=True)
        platform = FakePlatform(
            simulator_device, install_outcome=OperationResult(succeeded=False, result=result)
        )

        _, outcome = await orchestrate("install", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.PACKAGE_INSTALLATION_TIMEOUT


class TestTestVariants:
    """Test runs report through the TCP result listener."""

    @pytest.mark.asyncio
    async def test_passing_results(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device, listener=True, send=PASSING_XML)

        _, outcome = await orchestrate(
            "test", platform, harness_config, make_run(temp_dir, skipped_classes=["Slow"])
        )

        assert outcome.exit_code == ExitCode.SUCCESS
        assert outcome.details["total"] == 3
        assert outcome.details["passed"] == 3
        assert platform.launch_env[RunnerEnvironment.AUTO_EXIT] == "true"
        assert platform.launch_env[RunnerEnvironment.SKIPPED_CLASSES] == "Slow"

    @pytest.mark.asyncio
    async def test_failing_results(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device, listener=True, send=FAILING_XML)

        _, outcome = await orchestrate("just-test", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.TESTS_FAILED
        assert outcome.details["failed"] == 1

    @pytest.mark.asyncio
    async def test_launch_timeout(self, simulator_device, harness_config, temp_dir):
        """No connection within the launch timeout is a launch timeout, not a run timeout."""
        platform = FakePlatform(simulator_device, listener=True, hang=True)

        _, outcome = await orchestrate(
            "just-test", platform, harness_config, make_run(temp_dir, launch_timeout=0.2)
        )

        assert outcome.exit_code == ExitCode.APP_LAUNCH_TIMEOUT

    @pytest.mark.asyncio
    async def test_app_exits_without_connecting(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device, listener=True)

        _, outcome = await orchestrate("just-test", platform, harness_config, make_run(temp_dir))

        assert outcome.exit_code == ExitCode.APP_LAUNCH_FAILURE


class TestResetSimulator:
    @pytest.mark.asyncio
    async def test_reset_only(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device)

        _, outcome = await orchestrate(
            "reset-simulator", platform, harness_config, make_run(temp_dir, app_id=None)
        )

        assert outcome.succeeded
        assert platform.calls == ["reset"]

    @pytest.mark.asyncio
    async def test_reset_hardware_is_invalid(self, harness_config, temp_dir):
        device = Device(udid="R58M12ABCDE", name="Pixel 7", kind=DeviceKind.HARDWARE)
        platform = FakePlatform(device)

        _, outcome = await orchestrate(
            "reset-simulator", platform, harness_config, make_run(temp_dir)
        )

        assert outcome.exit_code == ExitCode.INVALID_ARGUMENTS


class TestLldbFlag:
    @pytest.mark.asyncio
    async def test_flag_exists_only_during_run(self, simulator_device, harness_config, temp_dir):
        platform = FakePlatform(simulator_device)

        await orchestrate("just-run", platform, harness_config, make_run(temp_dir, enable_lldb=True))

        assert platform.lldb_flag_seen is True
        assert not harness_config.lldb_flag_file.exists()

    def test_existing_flag_is_left_alone(self, temp_dir):
        flag = temp_dir / ".mtouch-launch-with-lldb"
        flag.touch()

        with lldb_flag(flag, enabled=True):
            pass

        assert flag.exists()


def test_failure_appends_known_message():
    known = KnownFailure(pattern="x", human_message="App is not signed", issue_link="https://example.net/1")

    outcome = failure(ExitCode.PACKAGE_INSTALLATION_FAILURE, "Failed to install", known=known)

    assert outcome.message == "Failed to install\nApp is not signed"
    assert outcome.issue_link == "https://example.net/1"
    assert outcome.to_dict()["exit_code_name"] == "PACKAGE_INSTALLATION_FAILURE"
