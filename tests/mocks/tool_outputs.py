"""Canned outputs of adb, simctl and the simulator system log."""

import json

from device_harness.models import CommandResult


def ok(stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout, stderr=stderr)


def fail(exit_code: int = 1, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)


def timed_out(stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=-9, stdout=stdout, elapsed=1.0, timed_out=True)


class AdbOutputs:
    """Realistic `adb` responses."""

    NO_DEVICES = "List of devices attached\n\n"
    TWO_EMULATORS = (
        "List of devices attached\n"
        "emulator-5556\tdevice product:sdk_gphone64_x86_64 model:sdk_gphone64_x86_64 transport_id:2\n"
        "emulator-5554\tdevice product:sdk_gphone64_x86_64 model:sdk_gphone64_x86_64 transport_id:1\n"
    )
    MIXED = (
        "* daemon not running; starting now at tcp:5037\n"
        "* daemon started successfully\n"
        "List of devices attached\n"
        "R58M12ABCDE\tdevice usb:1-1 product:beyond1q model:SM_G973U transport_id:3\n"
        "0A121FDD4003BQ\tunauthorized usb:1-2 transport_id:4\n"
        "emulator-5554\toffline transport_id:1\n"
    )

    BROKEN_PIPE = "adb: failed to install app.apk: cmd: Failure calling service package: Broken pipe (32)"
    INSTALL_SUCCESS = "Performing Streamed Install\nSuccess\n"
    NO_CERTIFICATES = (
        "adb: failed to install app.apk: Failure [INSTALL_PARSE_FAILED_NO_CERTIFICATES: "
        "Failed to collect certificates from /data/app/vmdl.tmp/base.apk]"
    )
    UNINSTALL_NOT_PRESENT = "Failure [DELETE_FAILED_INTERNAL_ERROR]"

    INSTRUMENTATION_SUCCESS = (
        "INSTRUMENTATION_RESULT: test-execution-summary=Tests run: 12, Passed: 12, Failed: 0\n"
        "INSTRUMENTATION_RESULT: return-code=0\n"
        "INSTRUMENTATION_CODE: -1\n"
    )
    INSTRUMENTATION_FAILED_TESTS = (
        "INSTRUMENTATION_RESULT: test-execution-summary=Tests run: 12, Passed: 10, Failed: 2\n"
        "INSTRUMENTATION_RESULT: return-code=1\n"
        "INSTRUMENTATION_CODE: -1\n"
    )
    INSTRUMENTATION_CRASH = (
        "INSTRUMENTATION_RESULT: shortMsg=Process crashed.\n"
        "INSTRUMENTATION_CODE: 0\n"
    )
    INSTRUMENTATION_NOT_FOUND = (
        "android.util.AndroidException: INSTRUMENTATION_FAILED: "
        "net.example.tests/net.example.tests.Runner\n"
    )


def simctl_devices(*entries) -> str:
    """Build `simctl list devices --json` output from (runtime, name, udid, state) tuples."""
    devices = {}
    for runtime, name, udid, state in entries:
        devices.setdefault(runtime, []).append(
            {"name": name, "udid": udid, "state": state, "isAvailable": True}
        )
    return json.dumps({"devices": devices})


IOS_17 = "com.apple.CoreSimulator.SimRuntime.iOS-17-0"
IOS_17_5 = "com.apple.CoreSimulator.SimRuntime.iOS-17-5"
WATCHOS_10 = "com.apple.CoreSimulator.SimRuntime.watchOS-10-0"

SIMULATORS = simctl_devices(
    (IOS_17, "iPhone 15", "A1A1A1A1-0000-0000-0000-000000000001", "Shutdown"),
    (IOS_17, "iPhone 15 Pro", "A1A1A1A1-0000-0000-0000-000000000002", "Booted"),
    (IOS_17_5, "iPhone 15", "B2B2B2B2-0000-0000-0000-000000000003", "Shutdown"),
    (WATCHOS_10, "Apple Watch Series 9 (45mm)", "C3C3C3C3-0000-0000-0000-000000000004", "Shutdown"),
)


def system_log_exit_line(bundle_id: str, code: int, uikit: bool = True) -> str:
    label = f"UIKitApplication:{bundle_id}[0x7a3c][rb-legacy]" if uikit else bundle_id
    return (
        f"Oct 19 10:21:07 host com.apple.CoreSimulator.SimDevice.A1A1[1234] "
        f"(com.apple.CoreSimulator.SimDevice.A1A1.launchd_sim[{label}]): "
        f"Service exited with abnormal code: {code}\n"
    )
