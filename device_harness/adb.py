"""Device bridge (adb) command layer."""

import asyncio
import logging
import os
import shutil
import tempfile
from enum import IntEnum
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Sequence

from .command_runner import CommandRunner
from .config import HarnessConfig
from .error_handler import AdbFailureError
from .models import (
    CommandInvocation,
    CommandResult,
    Device,
    DeviceKind,
    DeviceState,
    OperationResult,
)
from .retry import (
    BridgeLocks,
    RecoveryRule,
    RetryPolicy,
    output_contains,
    timed_out_or_contains,
)

logger = logging.getLogger(__name__)


class AdbExitCode(IntEnum):
    """Exit codes with a reserved meaning for adb commands."""

    INSTRUMENTATION_SUCCESS = -1
    SUCCESS = 0
    UNINSTALL_APP_NOT_ON_DEVICE = 255


class AdbMarkers:
    """Output signatures the retry rules and parsers react to."""

    TRANSPORT_FAULT: ClassVar[Sequence[str]] = (
        "broken pipe",
        "protocol fault",
        "connection reset",
        "device offline",
    )
    STORAGE_EXHAUSTED: ClassVar[Sequence[str]] = ("INSTALL_FAILED_INSUFFICIENT_STORAGE",)
    INSTALL_HUNG: ClassVar[Sequence[str]] = (
        "Exception occurred while executing",
        "Can't find service: package",
    )
    NOT_INSTALLED: ClassVar[Sequence[str]] = (
        "DELETE_FAILED_INTERNAL_ERROR",
        "Unknown package",
    )
    DEVICE_OFFLINE: ClassVar[str] = "device offline"


BRIDGE_LOCK = "adb-server"

_STATE_MAP = {
    "device": DeviceState.READY,
    "offline": DeviceState.OFFLINE,
    "unauthorized": DeviceState.LOCKED,
    "recovery": DeviceState.BOOTING,
    "bootloader": DeviceState.BOOTING,
    "sideload": DeviceState.BOOTING,
}


class AdbRunner:
    """Typed adb operations on top of CommandRunner and RetryPolicy."""

    def __init__(
        self,
        runner: CommandRunner,
        config: Optional[HarnessConfig] = None,
        locks: Optional[BridgeLocks] = None,
    ) -> None:
        self.runner = runner
        self.config = config or HarnessConfig()
        self.locks = locks or BridgeLocks()
        self.serial: Optional[str] = None

    # ------------------------------------------------------------------
    # Plumbing

    def set_device(self, serial: Optional[str]) -> None:
        self.serial = serial

    def invocation(
        self, *args: str, timeout: Optional[float] = None, serial: bool = True
    ) -> CommandInvocation:
        prefix: List[str] = []
        if serial and self.serial:
            prefix = ["-s", self.serial]
        return CommandInvocation(
            tool=self.config.adb_path,
            args=tuple(prefix + list(args)),
            timeout=timeout or self.config.adb_command_timeout,
        )

    async def run(
        self,
        *args: str,
        timeout: Optional[float] = None,
        serial: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        return await self.runner.run(
            self.invocation(*args, timeout=timeout, serial=serial),
            cancel_event=cancel_event,
        )

    # ------------------------------------------------------------------
    # Bridge server

    async def start_server(self) -> None:
        result = await self.run("start-server", serial=False)
        if not result.succeeded:
            raise AdbFailureError("Error starting ADB server", result)

    async def kill_server(self) -> None:
        result = await self.run("kill-server", serial=False)
        if not result.succeeded:
            raise AdbFailureError("Error killing ADB server", result)

    async def restart_server(self) -> None:
        async with self.locks.get(BRIDGE_LOCK):
            logger.info("Restarting ADB server")
            await self.kill_server()
            await self.start_server()

    async def get_state(self) -> str:
        result = await self.run("get-state")
        return result.stdout.strip()

    # ------------------------------------------------------------------
    # Device readiness

    async def wait_for_device(self) -> None:
        # Returns immediately when a device is already available
        logger.info(
            f"Waiting for device to be available "
            f"(max {self.config.wait_for_device_timeout:.0f}s)"
        )
        result = await self.run(
            "wait-for-device", timeout=self.config.wait_for_device_timeout
        )
        if not result.succeeded:
            raise AdbFailureError(
                "Error waiting for Android device/emulator. "
                "Do you need to set the current device?",
                result,
            )

    async def get_prop(self, key: str, retry_offline: bool = False) -> CommandResult:
        invocation = self.invocation("shell", "getprop", key, timeout=30)
        if not retry_offline:
            return await self.runner.run(invocation)

        policy = RetryPolicy(self.runner)
        outcome = await policy.poll(
            invocation,
            until=lambda r: AdbMarkers.DEVICE_OFFLINE not in r.stderr.lower(),
            attempts=self.config.enumeration_attempts,
            interval=self.config.enumeration_interval,
        )
        return outcome.result

    async def get_boot_completed(self) -> bool:
        result = await self.get_prop("sys.boot_completed")
        return result.succeeded and result.stdout.strip() == "1"

    async def wait_for_boot(self) -> bool:
        """Poll boot completion until ready or the configured wait elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.boot_wait_timeout
        await self.wait_for_device()
        while True:
            if await self.get_boot_completed():
                logger.info("Device finished booting")
                return True
            if loop.time() >= deadline:
                logger.error(
                    f"Device did not finish booting within {self.config.boot_wait_timeout:.0f}s"
                )
                return False
            await asyncio.sleep(self.config.boot_poll_interval)

    async def reboot(self) -> None:
        async with self.locks.get(BRIDGE_LOCK):
            logger.info(f"Rebooting device {self.serial or '(default)'}")
            result = await self.run("reboot", timeout=60)
            if not result.succeeded:
                raise AdbFailureError("Error rebooting device", result)

    async def reboot_and_wait(self) -> bool:
        await self.reboot()
        return await self.wait_for_boot()

    async def restart_reboot_and_wait(self) -> bool:
        await self.restart_server()
        return await self.reboot_and_wait()

    # ------------------------------------------------------------------
    # Enumeration

    async def list_devices(self) -> List[Device]:
        """Enumerate attached devices with architecture and API level."""
        policy = RetryPolicy(self.runner)
        outcome = await policy.poll(
            self.invocation("devices", "-l", timeout=30, serial=False),
            until=lambda r: r.succeeded and bool(r.stdout.strip()),
            attempts=self.config.enumeration_attempts,
            interval=self.config.enumeration_interval,
        )
        if not outcome.succeeded:
            raise AdbFailureError("Failed to enumerate ADB devices", outcome.result)

        devices = []
        previous = self.serial
        try:
            for entry in parse_devices_output(outcome.result.stdout):
                serial = entry["serial"]
                state = _STATE_MAP.get(entry["status"], DeviceState.UNKNOWN)
                architecture = ""
                api_level = ""
                if state == DeviceState.READY:
                    self.set_device(serial)
                    abi = await self.get_prop("ro.product.cpu.abi", retry_offline=True)
                    architecture = abi.stdout.strip() if abi.succeeded else ""
                    sdk = await self.get_prop("ro.build.version.sdk", retry_offline=True)
                    api_level = sdk.stdout.strip() if sdk.succeeded else ""

                devices.append(
                    Device(
                        udid=serial,
                        name=entry.get("model", serial),
                        os_version=api_level,
                        architecture=architecture,
                        kind=(
                            DeviceKind.EMULATOR
                            if serial.startswith("emulator-")
                            else DeviceKind.HARDWARE
                        ),
                        state=state,
                        usable_for_debugging=state == DeviceState.READY,
                        runtime=api_level,
                    )
                )
        finally:
            self.set_device(previous)

        return devices

    # ------------------------------------------------------------------
    # Package management

    def install_policy(self) -> RetryPolicy:
        return RetryPolicy(
            self.runner,
            rules=[
                RecoveryRule(
                    "transport-fault",
                    output_contains(*AdbMarkers.TRANSPORT_FAULT),
                    self.restart_server,
                ),
                RecoveryRule(
                    "storage-exhausted",
                    output_contains(*AdbMarkers.STORAGE_EXHAUSTED),
                    self.reboot_and_wait,
                ),
                RecoveryRule(
                    "install-hung",
                    timed_out_or_contains(*AdbMarkers.INSTALL_HUNG),
                    self.restart_reboot_and_wait,
                    timeout_multiplier=self.config.install_timeout_multiplier,
                ),
            ],
            ready_check=self.wait_for_device,
        )

    def uninstall_policy(self) -> RetryPolicy:
        return RetryPolicy(
            self.runner,
            rules=[
                RecoveryRule(
                    "transport-fault",
                    output_contains(*AdbMarkers.TRANSPORT_FAULT),
                    self.restart_server,
                ),
            ],
            success_exit_codes=(
                AdbExitCode.SUCCESS,
                AdbExitCode.UNINSTALL_APP_NOT_ON_DEVICE,
            ),
            success_markers=AdbMarkers.NOT_INSTALLED,
            ready_check=self.wait_for_device,
        )

    async def install(self, apk_path: str) -> OperationResult:
        if not apk_path:
            raise ValueError("No value supplied for apk_path")
        if not os.path.exists(apk_path):
            raise FileNotFoundError(f"Could not find {apk_path}")

        logger.info(f"Attempting to install {apk_path}")
        outcome = await self.install_policy().execute(
            self.invocation("install", apk_path, timeout=self.config.install_timeout)
        )
        if outcome.succeeded:
            logger.info(f"Successfully installed {apk_path}")
        return outcome

    async def uninstall(self, package: str) -> OperationResult:
        if not package:
            raise ValueError("No value supplied for package")

        logger.info(f"Attempting to remove apk '{package}'")
        outcome = await self.uninstall_policy().execute(self.invocation("uninstall", package))
        if outcome.succeeded and outcome.result.exit_code != AdbExitCode.SUCCESS:
            logger.info(f"APK '{package}' not on device")
        elif outcome.succeeded:
            logger.info(f"Successfully uninstalled {package}")
        return outcome

    async def kill_app(self, package: str) -> CommandResult:
        logger.info(f"Killing all running processes for '{package}'")
        result = await self.run("shell", "am", "kill", "--user", "all", package)
        if not result.succeeded:
            logger.error(f"Error killing '{package}':\n{result.describe()}")
        return result

    # ------------------------------------------------------------------
    # Execution

    async def instrument(
        self,
        package: str,
        instrumentation: Optional[str] = None,
        args: Optional[Dict[str, str]] = None,
        timeout: float = 300.0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        command = ["shell", "am", "instrument"]
        for key, value in (args or {}).items():
            command.extend(["-e", key, value])
        target = f"{package}/{instrumentation}" if instrumentation else package
        command.extend(["-w", target])

        display = instrumentation or "{default}"
        logger.info(f"Starting instrumentation class {display} on {package}")
        result = await self.run(*command, timeout=timeout, cancel_event=cancel_event)
        if result.timed_out:
            logger.info(
                f"Running instrumentation class {display} timed out after {result.elapsed:.1f}s"
            )
        else:
            logger.info(f"Running instrumentation class {display} took {result.elapsed:.1f}s")
        return result

    # ------------------------------------------------------------------
    # Diagnostics and files

    async def dump_logcat(self, output_path: Path, filter_spec: str = "") -> bool:
        args = ["logcat", "-d"]
        if filter_spec:
            args.append(filter_spec)
        result = await self.run(*args, timeout=120)
        if not result.succeeded:
            logger.error(f"Error getting ADB log:\n{result.describe()}")
            return False
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(result.stdout, encoding="utf-8")
        logger.info(f"Wrote current ADB log to {output_path}")
        return True

    async def clear_logcat(self) -> bool:
        result = await self.run("logcat", "-c")
        if not result.succeeded:
            logger.warning(f"Error clearing ADB log:\n{result.describe()}")
            return False
        return True

    async def bugreport(self, output_path: Path) -> bool:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        result = await self.run("bugreport", str(output_path), timeout=600)
        if not result.succeeded:
            logger.error(f"Error collecting bug report:\n{result.describe()}")
            return False
        logger.info(f"Wrote bug report to {output_path}")
        return True

    async def pull(self, device_path: str, local_dir: Path) -> List[Path]:
        """Pull a file or directory; returns the local files created."""
        local_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp())
        try:
            logger.info(f"Attempting to pull contents of {device_path} to {local_dir}")
            result = await self.run("pull", device_path, str(staging))
            if not result.succeeded:
                raise AdbFailureError(f"Failed pulling {device_path}", result)

            copied = []
            for source in staging.rglob("*"):
                if not source.is_file():
                    continue
                target = local_dir / source.relative_to(staging)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(source), target)
                copied.append(target)
            return copied
        finally:
            shutil.rmtree(staging, ignore_errors=True)


def parse_devices_output(stdout: str) -> List[Dict[str, str]]:
    """Parse `adb devices -l` output into dicts with serial/status/details."""
    entries = []
    for line in stdout.strip().splitlines():
        if line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue

        entry = {"serial": parts[0], "status": parts[1]}
        for part in parts[2:]:
            if ":" in part:
                key, value = part.split(":", 1)
                entry[key] = value
        entries.append(entry)
    return entries
