"""Value types shared by runners, selectors and the orchestrator."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Tuple


class DeviceKind(Enum):
    """Physical or virtual target."""

    HARDWARE = "hardware"
    SIMULATOR = "simulator"
    EMULATOR = "emulator"


class DeviceState(Enum):
    """Connection state reported by enumeration."""

    UNKNOWN = "unknown"
    OFFLINE = "offline"
    BOOTING = "booting"
    READY = "ready"
    LOCKED = "locked"


@dataclass(frozen=True)
class Device:
    """A device snapshot taken by one enumeration pass."""

    udid: str
    name: str
    os_version: str = ""
    architecture: str = ""
    kind: DeviceKind = DeviceKind.HARDWARE
    state: DeviceState = DeviceState.UNKNOWN
    usable_for_debugging: bool = True
    runtime: str = ""
    companion_udid: Optional[str] = None

    @property
    def is_virtual(self) -> bool:
        return self.kind in (DeviceKind.SIMULATOR, DeviceKind.EMULATOR)

    def to_dict(self) -> Dict[str, object]:
        return {
            "udid": self.udid,
            "name": self.name,
            "os_version": self.os_version,
            "architecture": self.architecture,
            "kind": self.kind.value,
            "state": self.state.value,
            "usable_for_debugging": self.usable_for_debugging,
            "runtime": self.runtime,
            "companion_udid": self.companion_udid,
        }


@dataclass(frozen=True)
class CommandInvocation:
    """One external tool call."""

    tool: str
    args: Tuple[str, ...] = ()
    timeout: float = 300.0
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> Tuple[str, ...]:
        return (self.tool, *self.args)

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)

    def with_timeout(self, timeout: float) -> "CommandInvocation":
        return replace(self, timeout=timeout)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished (or forcibly terminated) tool call."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    elapsed: float = 0.0
    timed_out: bool = False
    command: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout

    def describe(self) -> str:
        """Multi-line summary used in failure logs."""
        lines = [f"Exit code: {self.exit_code}"]
        if self.timed_out:
            lines.append(f"Timed out after {self.elapsed:.1f}s")
        lines.append(f"Standard output:\n{self.stdout}")
        if self.stderr:
            lines.append(f"Standard error:\n{self.stderr}")
        return "\n".join(lines)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a retry-guarded operation."""

    succeeded: bool
    result: Optional[CommandResult] = None
    attempts: int = 1
    recoveries: Tuple[str, ...] = ()
    message: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return self.result is not None and self.result.timed_out


@dataclass(frozen=True)
class KnownFailure:
    pattern: str
    human_message: str
    issue_link: Optional[str] = None
    suggested_exit_code: Optional[int] = None
