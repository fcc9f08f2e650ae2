"""Component initialization shared by the MCP server and the CLI."""

import logging
from typing import Any, Dict, Optional

from .adb import AdbRunner
from .command_runner import CommandRunner
from .config import HarnessConfig
from .error_handler import error_handler
from .knowledge_base import ErrorKnowledgeBase
from .platforms import SIMULATOR_OS, AndroidPlatform, ApplePlatform, TargetPlatform
from .retry import BridgeLocks
from .simulators import SimulatorManager

logger = logging.getLogger(__name__)

TARGETS = ("android",) + tuple(SIMULATOR_OS)


def initialize_components(config: Optional[HarnessConfig] = None) -> Dict[str, Any]:
    """Initialize all harness components.

    Returns:
        Dictionary containing the config, runners, managers and the
        knowledge base. Nothing here touches a device yet.
    """
    config = config or HarnessConfig.from_env()
    runner = CommandRunner(grace_period=config.terminate_grace_period)
    locks = BridgeLocks()
    adb = AdbRunner(runner, config, locks)
    simulators = SimulatorManager(runner, config)
    knowledge_base = ErrorKnowledgeBase()

    logger.info(
        f"Components initialized (adb: {config.adb_path}, mlaunch: {config.mlaunch_path}, "
        f"logs: {config.log_directory})"
    )
    return {
        "config": config,
        "runner": runner,
        "locks": locks,
        "adb": adb,
        "simulators": simulators,
        "knowledge_base": knowledge_base,
        "error_handler": error_handler,
    }


def create_platform(target: str, components: Dict[str, Any]) -> TargetPlatform:
    """Build the platform steps for a target selector such as "ios-simulator"."""
    target = target.lower()
    if target == "android":
        # Each run binds its own serial; the bridge locks stay shared
        adb = AdbRunner(components["runner"], components["config"], components["locks"])
        return AndroidPlatform(adb, components["config"])
    if target in SIMULATOR_OS:
        return ApplePlatform(
            components["simulators"], components["runner"], target, components["config"]
        )
    raise ValueError(f"Unknown target '{target}', expected one of: {', '.join(TARGETS)}")
