"""Mock infrastructure for testing without devices or simulators."""

from .runner import MockCommandRunner
from .tool_outputs import (
    IOS_17,
    IOS_17_5,
    SIMULATORS,
    WATCHOS_10,
    AdbOutputs,
    fail,
    ok,
    simctl_devices,
    system_log_exit_line,
    timed_out,
)

__all__ = [
    "MockCommandRunner",
    "AdbOutputs",
    "SIMULATORS",
    "IOS_17",
    "IOS_17_5",
    "WATCHOS_10",
    "fail",
    "ok",
    "simctl_devices",
    "system_log_exit_line",
    "timed_out",
]
