"""Configuration for the device harness."""

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

# Configure logging to stderr (not stdout for STDIO transport)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

# Timeout configuration for MCP tools (in seconds)
TOOL_TIMEOUTS = {
    # Device tools
    "list_devices": 60,
    # Orchestration tools
    "run_orchestration": 3600,
    # Log tools
    "get_system_log_window": 10,
    "classify_log": 10,
}

DEFAULT_TOOL_TIMEOUT = 30  # Default timeout for tools not in the list

ADB_PATH_ENV = "ADB_EXE_PATH"
MLAUNCH_PATH_ENV = "MLAUNCH_PATH"
LOG_DIR_ENV = "DEVICE_HARNESS_LOG_DIR"


class HarnessConfig(BaseModel):
    """Settings passed explicitly into runners and orchestrators."""

    adb_path: str = Field(default="adb", description="Device bridge executable")
    mlaunch_path: str = Field(default="mlaunch", description="Apple launch tool")
    xcrun_path: str = Field(default="xcrun", description="Xcode tool runner")
    log_directory: Path = Field(
        default=Path("./logs"), description="Root for per-run log directories"
    )

    # Bridge command timeouts (seconds)
    adb_command_timeout: float = 300.0
    wait_for_device_timeout: float = 300.0
    install_timeout: float = 300.0
    install_timeout_multiplier: float = Field(
        default=2.0, description="Timeout factor for retrying a hung install"
    )

    # Transient device enumeration
    enumeration_attempts: int = 30
    enumeration_interval: float = 10.0

    # Boot completion polling after reboot
    boot_wait_timeout: float = 300.0
    boot_poll_interval: float = 10.0

    # Process teardown grace period before kill
    terminate_grace_period: float = 1.0

    # Launch tool flag file that makes mlaunch run the app under lldb
    lldb_flag_file: Path = Field(
        default_factory=lambda: Path.home() / ".mtouch-launch-with-lldb"
    )

    # Simulators at or above this OS version have their result files copied
    # straight from the simulator container instead of streamed over TCP.
    result_copy_min_os_version: Optional[str] = Field(
        default="18.0",
        description="Set to None to always stream results over the listener",
    )

    @classmethod
    def from_env(cls, **overrides) -> "HarnessConfig":
        """Build a config from environment variables, then apply overrides."""
        values = {}
        if os.environ.get(ADB_PATH_ENV):
            values["adb_path"] = os.environ[ADB_PATH_ENV]
        if os.environ.get(MLAUNCH_PATH_ENV):
            values["mlaunch_path"] = os.environ[MLAUNCH_PATH_ENV]
        if os.environ.get(LOG_DIR_ENV):
            values["log_directory"] = Path(os.environ[LOG_DIR_ENV])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
