"""Tests for the adb command layer."""

from unittest.mock import AsyncMock, patch

import pytest

from device_harness.adb import AdbExitCode, AdbRunner, parse_devices_output
from device_harness.error_handler import AdbFailureError
from device_harness.models import DeviceKind, DeviceState
from tests.mocks import AdbOutputs, fail, ok


class TestParseDevicesOutput:
    def test_skips_header_and_daemon_lines(self):
        entries = parse_devices_output(AdbOutputs.MIXED)

        assert [e["serial"] for e in entries] == ["R58M12ABCDE", "0A121FDD4003BQ", "emulator-5554"]
        assert entries[0]["status"] == "device"
        assert entries[0]["model"] == "SM_G973U"
        assert entries[1]["status"] == "unauthorized"

    def test_no_devices(self):
        assert parse_devices_output(AdbOutputs.NO_DEVICES) == []


class TestAdbRunner:
    """Device bridge operations over a scripted runner."""

    def test_invocation_carries_serial(self, adb):
        adb.set_device("emulator-5556")

        invocation = adb.invocation("shell", "getprop", "ro.product.cpu.abi")

        assert invocation.args == ("-s", "emulator-5556", "shell", "getprop", "ro.product.cpu.abi")
        assert adb.invocation("devices", serial=False).args == ("devices",)

    @pytest.mark.asyncio
    async def test_list_devices_reads_abi_and_api_level(self, adb, mock_runner):
        mock_runner.respond("devices -l", ok(AdbOutputs.MIXED))
        mock_runner.respond("shell getprop ro.product.cpu.abi", ok("arm64-v8a\n"), serial="R58M12ABCDE")
        mock_runner.respond("shell getprop ro.build.version.sdk", ok("33\n"), serial="R58M12ABCDE")

        devices = await adb.list_devices()

        assert [d.udid for d in devices] == ["R58M12ABCDE", "0A121FDD4003BQ", "emulator-5554"]
        hardware = devices[0]
        assert hardware.kind == DeviceKind.HARDWARE
        assert hardware.state == DeviceState.READY
        assert hardware.architecture == "arm64-v8a"
        assert hardware.os_version == "33"
        assert devices[1].state == DeviceState.LOCKED
        assert devices[2].kind == DeviceKind.EMULATOR
        assert devices[2].state == DeviceState.OFFLINE
        # Only the ready device is queried
        assert mock_runner.count("shell getprop") == 2
        assert adb.serial is None

    @pytest.mark.asyncio
    async def test_list_devices_gives_up(self, adb, mock_runner):
        mock_runner.respond("devices -l", fail(1, stderr="cannot connect to daemon"))

        with pytest.raises(AdbFailureError):
            await adb.list_devices()
        assert mock_runner.count("devices -l") == adb.config.enumeration_attempts

    @pytest.mark.asyncio
    async def test_uninstall_absent_app_by_exit_code(self, adb, mock_runner):
        """Exit code 255 means the package was not installed: success."""
        mock_runner.respond("uninstall", fail(AdbExitCode.UNINSTALL_APP_NOT_ON_DEVICE))

        outcome = await adb.uninstall("net.example.mytests")

        assert outcome.succeeded
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_uninstall_absent_app_by_marker(self, adb, mock_runner):
        """DELETE_FAILED_INTERNAL_ERROR also means there was nothing to remove."""
        mock_runner.respond("uninstall", fail(1, stdout=AdbOutputs.UNINSTALL_NOT_PRESENT))

        outcome = await adb.uninstall("net.example.mytests")

        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_install_missing_file(self, adb):
        with pytest.raises(FileNotFoundError):
            await adb.install("/nonexistent/app.apk")

    @pytest.mark.asyncio
    async def test_install_requires_path(self, adb):
        with pytest.raises(ValueError):
            await adb.install("")

    @pytest.mark.asyncio
    async def test_start_server_failure_raises(self, adb, mock_runner):
        mock_runner.respond("start-server", fail(1, stderr="boom"))

        with pytest.raises(AdbFailureError) as exc_info:
            await adb.start_server()
        assert exc_info.value.details["stderr"] == "boom"

    @pytest.mark.asyncio
    async def test_restart_server_kills_then_starts(self, adb, mock_runner):
        await adb.restart_server()

        assert mock_runner.commands() == ["kill-server", "start-server"]

    @pytest.mark.asyncio
    async def test_instrument_builds_arguments(self, adb, mock_runner):
        adb.set_device("emulator-5554")
        mock_runner.respond("shell am instrument", ok(AdbOutputs.INSTRUMENTATION_SUCCESS))

        result = await adb.instrument(
            "net.example.mytests",
            "net.example.tests.Runner",
            {"NUNIT_HOSTPORT": "5000"},
            timeout=60,
        )

        assert result.succeeded
        invocation = mock_runner.calls[-1]
        assert invocation.timeout == 60
        assert invocation.args == (
            "-s",
            "emulator-5554",
            "shell",
            "am",
            "instrument",
            "-e",
            "NUNIT_HOSTPORT",
            "5000",
            "-w",
            "net.example.mytests/net.example.tests.Runner",
        )

    @pytest.mark.asyncio
    async def test_wait_for_boot_polls_until_completed(self, adb, mock_runner):
        mock_runner.respond("shell getprop sys.boot_completed", ok("\n"), ok("1\n"))

        assert await adb.wait_for_boot() is True
        assert mock_runner.count("shell getprop sys.boot_completed") == 2

    @pytest.mark.asyncio
    async def test_wait_for_boot_gives_up(self, adb, mock_runner):
        mock_runner.respond("shell getprop sys.boot_completed", ok("0\n"))

        assert await adb.wait_for_boot() is False

    @pytest.mark.asyncio
    async def test_dump_logcat_writes_file(self, adb, mock_runner, temp_dir):
        mock_runner.respond("logcat -d", ok("10-19 10:00:00.000 I Tag: hello\n"))

        target = temp_dir / "logcat.txt"
        assert await adb.dump_logcat(target) is True
        assert "hello" in target.read_text()

    @pytest.mark.asyncio
    async def test_getprop_retried_while_device_offline(self, adb, mock_runner):
        mock_runner.respond("devices -l", ok(AdbOutputs.MIXED))
        mock_runner.respond(
            "shell getprop ro.product.cpu.abi",
            fail(1, stderr="error: device offline"),
            ok("arm64-v8a\n"),
            serial="R58M12ABCDE",
        )
        mock_runner.respond("shell getprop ro.build.version.sdk", ok("33\n"), serial="R58M12ABCDE")

        devices = await adb.list_devices()

        assert devices[0].architecture == "arm64-v8a"
        assert mock_runner.count("shell getprop ro.product.cpu.abi") == 2
        assert mock_runner.count("shell getprop ro.build.version.sdk") == 1

    @pytest.mark.asyncio
    async def test_get_state(self, adb, mock_runner):
        adb.set_device("emulator-5554")
        mock_runner.respond("get-state", ok("device\n"))

        assert await adb.get_state() == "device"
        assert mock_runner.calls[-1].args == ("-s", "emulator-5554", "get-state")

    @pytest.mark.asyncio
    async def test_clear_logcat(self, adb, mock_runner):
        assert await adb.clear_logcat() is True
        assert mock_runner.commands("logcat") == ["logcat -c"]

        mock_runner.respond("logcat -c", fail(1, stderr="error: no devices/emulators found"))
        assert await adb.clear_logcat() is False

    @pytest.mark.asyncio
    async def test_reboot_and_wait(self, adb, mock_runner):
        mock_runner.respond("shell getprop sys.boot_completed", ok("1\n"))

        with patch.object(adb, "wait_for_device", AsyncMock()) as wait:
            assert await adb.reboot_and_wait() is True

        wait.assert_awaited()
        assert mock_runner.commands()[0] == "reboot"


def test_runner_defaults_to_config(mock_runner):
    runner = AdbRunner(mock_runner)

    assert runner.config.adb_path == "adb"
    assert runner.serial is None
