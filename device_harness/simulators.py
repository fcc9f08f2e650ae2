"""Apple simulator management through `xcrun simctl`."""

import json
import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .command_runner import CommandRunner
from .config import HarnessConfig
from .models import CommandInvocation, CommandResult, Device, DeviceKind, DeviceState

logger = logging.getLogger(__name__)

# simctl uninstall exit code when the simulator is in a broken state
SIMCTL_BAD_STATE = 165

DEFAULT_COMPANION_TYPE = "com.apple.CoreSimulator.SimDeviceType.iPhone-15"

_STATE_MAP = {
    "booted": DeviceState.READY,
    "booting": DeviceState.BOOTING,
    "shutdown": DeviceState.OFFLINE,
    "shutting down": DeviceState.OFFLINE,
}


def runtime_version(runtime: str) -> str:
    """Map a runtime id such as "...SimRuntime.iOS-17-0" to "17.0"."""
    match = re.search(r"-(\d+(?:-\d+)*)$", runtime)
    return match.group(1).replace("-", ".") if match else ""


class SimulatorManager:
    """Thin typed layer over simctl."""

    def __init__(self, runner: CommandRunner, config: Optional[HarnessConfig] = None) -> None:
        self.runner = runner
        self.config = config or HarnessConfig()

    async def simctl(self, *args: str, timeout: float = 120.0) -> CommandResult:
        return await self.runner.run(
            CommandInvocation(
                tool=self.config.xcrun_path, args=("simctl", *args), timeout=timeout
            )
        )

    async def list_devices(self) -> List[Device]:
        result = await self.simctl("list", "devices", "--json")
        if not result.succeeded:
            logger.error(f"Failed to list simulators:\n{result.describe()}")
            return []
        return parse_device_list(result.stdout)

    async def get_device(self, udid: str) -> Optional[Device]:
        for device in await self.list_devices():
            if device.udid == udid:
                return device
        return None

    async def list_pairs(self) -> List[Tuple[str, str]]:
        """Return (watch_udid, phone_udid) for each existing pair."""
        result = await self.simctl("list", "pairs", "--json")
        if not result.succeeded:
            logger.error(f"Failed to list simulator pairs:\n{result.describe()}")
            return []
        pairs = json.loads(result.stdout or "{}").get("pairs", {})
        return [
            (pair["watch"]["udid"], pair["phone"]["udid"])
            for pair in pairs.values()
            if "watch" in pair and "phone" in pair
        ]

    async def create_companion(
        self, runtime: str, device_type: str = DEFAULT_COMPANION_TYPE
    ) -> Optional[Device]:
        name = f"device-harness companion {runtime_version(runtime) or runtime}"
        result = await self.simctl("create", name, device_type, runtime)
        if not result.succeeded:
            logger.error(f"Failed to create companion simulator:\n{result.describe()}")
            return None
        udid = result.stdout.strip()
        logger.info(f"Created companion simulator '{name}' ({udid})")
        return Device(
            udid=udid,
            name=name,
            os_version=runtime_version(runtime),
            kind=DeviceKind.SIMULATOR,
            state=DeviceState.OFFLINE,
            runtime=runtime,
        )

    async def pair(self, watch_udid: str, phone_udid: str) -> CommandResult:
        result = await self.simctl("pair", watch_udid, phone_udid)
        if result.succeeded:
            logger.info(f"Paired {watch_udid} with {phone_udid}")
        return result

    async def boot(self, udid: str) -> CommandResult:
        return await self.simctl("boot", udid, timeout=300)

    async def shutdown(self, udid: str) -> CommandResult:
        return await self.simctl("shutdown", udid)

    async def erase(self, udid: str) -> CommandResult:
        return await self.simctl("erase", udid, timeout=300)

    async def install(self, udid: str, app_path: str, timeout: float) -> CommandResult:
        return await self.simctl("install", udid, app_path, timeout=timeout)

    async def uninstall(self, udid: str, bundle_id: str) -> CommandResult:
        return await self.simctl("uninstall", udid, bundle_id)

    async def app_data_container(self, udid: str, bundle_id: str) -> Optional[Path]:
        result = await self.simctl("get_app_container", udid, bundle_id, "data")
        if not result.succeeded or not result.stdout.strip():
            return None
        return Path(result.stdout.strip())

    def system_log_path(self, udid: str) -> Path:
        return Path.home() / "Library" / "Logs" / "CoreSimulator" / udid / "system.log"

    async def reset(self, device: Device) -> bool:
        """Shut down, erase and boot a simulator."""
        logger.info(f"Resetting simulator '{device.name}'")
        await self.shutdown(device.udid)  # fails harmlessly when already shut down
        erased = await self.erase(device.udid)
        if not erased.succeeded:
            logger.error(f"Failed to erase '{device.name}':\n{erased.describe()}")
            return False
        booted = await self.boot(device.udid)
        if not booted.succeeded:
            logger.error(f"Failed to boot '{device.name}':\n{booted.describe()}")
            return False
        return True

    async def cleanup(self, devices: Iterable[Optional[Device]]) -> None:
        for device in devices:
            if device is None:
                continue
            logger.info(f"Cleaning up simulator '{device.name}'")
            await self.shutdown(device.udid)
            erased = await self.erase(device.udid)
            if not erased.succeeded:
                logger.warning(f"Failed to erase '{device.name}':\n{erased.describe()}")


def parse_device_list(payload: str) -> List[Device]:
    """Parse `simctl list devices --json` into Device snapshots."""
    data = json.loads(payload or "{}")
    devices = []
    for runtime, entries in data.get("devices", {}).items():
        for entry in entries:
            state = _STATE_MAP.get(entry.get("state", "").lower(), DeviceState.UNKNOWN)
            devices.append(
                Device(
                    udid=entry["udid"],
                    name=entry.get("name", entry["udid"]),
                    os_version=runtime_version(runtime),
                    kind=DeviceKind.SIMULATOR,
                    state=state,
                    usable_for_debugging=entry.get("isAvailable", True),
                    runtime=runtime,
                )
            )
    return devices
