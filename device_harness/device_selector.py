"""Device enumeration, filtering and deterministic selection."""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .models import Device, DeviceKind, DeviceState

logger = logging.getLogger(__name__)

ALREADY_PAIRED_SIGNATURES = (
    "At least one of the requested devices is already paired with the maximum "
    "number of supported devices and cannot accept another pairing.",
    "The selected devices are already paired with each other.",
)


class TieBreak(Enum):
    LOWEST_OS_VERSION = "lowest_os_version"
    FIRST_LISTED = "first_listed"


def parse_version(value: str) -> Tuple[int, ...]:
    """Numeric version key; non-numeric parts are ignored ("iOS 17.0.1" -> (17, 0, 1))."""
    numbers = re.findall(r"\d+", value or "")
    return tuple(int(n) for n in numbers) if numbers else (0,)


@dataclass(frozen=True)
class DeviceFilter:
    """Include filter applied to an enumeration snapshot."""

    kinds: Tuple[DeviceKind, ...] = ()
    architecture: Optional[str] = None
    min_os_version: Optional[str] = None
    os_version: Optional[str] = None
    name_or_udid: Optional[str] = None
    require_usable: bool = True

    def accepts(self, device: Device) -> bool:
        if self.require_usable and (
            device.state == DeviceState.LOCKED or not device.usable_for_debugging
        ):
            return False
        if self.kinds and device.kind not in self.kinds:
            return False
        if self.architecture and device.architecture.lower() != self.architecture.lower():
            return False
        if self.os_version and parse_version(device.os_version) != parse_version(
            self.os_version
        ):
            return False
        if self.min_os_version and parse_version(device.os_version) < parse_version(
            self.min_os_version
        ):
            return False
        if self.name_or_udid:
            wanted = self.name_or_udid.lower()
            if wanted not in (device.name.lower(), device.udid.lower()):
                return False
        return True


@dataclass(frozen=True)
class DeviceSelection:
    """Result of a selection: either a device or an error message."""

    device: Optional[Device] = None
    companion: Optional[Device] = None
    alternatives: Tuple[Device, ...] = ()
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.device is not None


class DeviceSource:
    """Produces one enumeration snapshot of devices."""

    async def list_devices(self) -> List[Device]:
        raise NotImplementedError


class AdbDeviceSource(DeviceSource):
    def __init__(self, adb) -> None:
        self.adb = adb

    async def list_devices(self) -> List[Device]:
        return await self.adb.list_devices()


class SimulatorDeviceSource(DeviceSource):
    def __init__(self, simulators, runtime_prefix: Optional[str] = None) -> None:
        self.simulators = simulators
        self.runtime_prefix = runtime_prefix

    async def list_devices(self) -> List[Device]:
        devices = await self.simulators.list_devices()
        if self.runtime_prefix:
            devices = [d for d in devices if self.runtime_prefix in d.runtime]
        return devices


@dataclass
class DeviceSelector:
    source: DeviceSource
    default_filter: DeviceFilter = field(default_factory=DeviceFilter)

    async def enumerate(self, device_filter: Optional[DeviceFilter] = None) -> List[Device]:
        device_filter = device_filter or self.default_filter
        snapshot = await self.source.list_devices()
        matching = [d for d in snapshot if device_filter.accepts(d)]
        logger.info(f"Found {len(matching)} matching device(s) out of {len(snapshot)}")
        return matching

    @staticmethod
    def select_one(candidates: List[Device], tie_break: TieBreak) -> DeviceSelection:
        if not candidates:
            return DeviceSelection(error="No device found matching the requested target")

        if len(candidates) == 1:
            return DeviceSelection(device=candidates[0])

        if tie_break == TieBreak.LOWEST_OS_VERSION:
            # sorted() is stable, equal versions keep enumeration order
            ordered = sorted(candidates, key=lambda d: parse_version(d.os_version))
        else:
            ordered = list(candidates)

        chosen, alternatives = ordered[0], tuple(ordered[1:])
        logger.info(
            f"Selected '{chosen.name}' ({chosen.udid}, OS {chosen.os_version}); "
            f"also considered: "
            + ", ".join(f"'{d.name}' ({d.udid}, OS {d.os_version})" for d in alternatives)
        )
        return DeviceSelection(device=chosen, alternatives=alternatives)

    async def find(
        self, device_filter: Optional[DeviceFilter], tie_break: TieBreak
    ) -> DeviceSelection:
        return self.select_one(await self.enumerate(device_filter), tie_break)

    async def find_or_pair_companion(
        self, device: Device, simulators, companion_runtime: str, allow_create: bool = True
    ) -> DeviceSelection:
        """Find the simulator paired with `device`, creating and pairing one if needed."""
        pairs = await simulators.list_pairs()
        for watch_udid, phone_udid in pairs:
            if watch_udid == device.udid:
                companion = await simulators.get_device(phone_udid)
                if companion is not None:
                    return DeviceSelection(device=device, companion=companion)

        if not allow_create:
            return DeviceSelection(error=f"No companion paired with '{device.name}'")

        companion = await simulators.create_companion(companion_runtime)
        if companion is None:
            return DeviceSelection(error="Failed to create a companion simulator")

        result = await simulators.pair(device.udid, companion.udid)
        if result.succeeded:
            return DeviceSelection(device=device, companion=companion)

        if not any(sig in result.output for sig in ALREADY_PAIRED_SIGNATURES):
            return DeviceSelection(
                error=f"Failed to pair '{device.name}' with '{companion.name}': "
                f"{result.output.strip()}"
            )

        logger.warning(
            f"Pairing with '{companion.name}' rejected as already paired, "
            f"creating a fresh companion"
        )
        companion = await simulators.create_companion(companion_runtime)
        if companion is None:
            return DeviceSelection(error="Failed to create a companion simulator")
        result = await simulators.pair(device.udid, companion.udid)
        if not result.succeeded:
            return DeviceSelection(
                error=f"Failed to pair '{device.name}' with '{companion.name}': "
                f"{result.output.strip()}"
            )
        return DeviceSelection(device=device, companion=companion)
