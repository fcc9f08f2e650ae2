"""Orchestration tools for MCP server."""

import logging
from typing import Any, Dict

from ..decorators import timeout_wrapper
from ..error_handler import ExitCode
from ..initialization import create_platform
from ..tool_models import OrchestrationParams
from ..variants import VARIANTS, create_orchestrator

logger = logging.getLogger(__name__)

# Module-level components reference
_components = {}


@timeout_wrapper()
async def run_orchestration(params: OrchestrationParams) -> Dict[str, Any]:
    """Run one command variant (install, run, test, ...) against a device.

    When to use:
    - Install, run or test an app on an Android device/emulator or an Apple
      simulator and get back a single exit code.

    Common combos:
    - `list_devices` -> `run_orchestration` -> `get_system_log_window` or
      `classify_log` on the returned `log_directory`.
    """
    if not _components:
        return {"success": False, "error": "Components not initialized"}

    try:
        platform = create_platform(params.run.target, _components)
    except ValueError as e:
        return {
            "success": False,
            "exit_code": int(ExitCode.INVALID_ARGUMENTS),
            "exit_code_name": ExitCode.INVALID_ARGUMENTS.name,
            "error": str(e),
        }

    orchestrator = create_orchestrator(
        params.variant,
        platform,
        _components["config"],
        _components["knowledge_base"],
    )
    outcome = await orchestrator.run(params.run)
    response = outcome.to_dict()
    response["variant"] = params.variant
    return response


def register_orchestration_tools(mcp, components):
    """Register orchestration tools with the MCP server.

    Args:
        mcp: FastMCP server instance
        components: Dictionary containing initialized components
    """
    global _components
    _components = components

    mcp.tool(
        description=(
            f"Orchestrate one of: {', '.join(VARIANTS)}. Finds the device, "
            "installs/launches/uninstalls as the variant requires, captures logs and "
            "returns exit_code, message and the run's log_directory. "
            "Runs can take minutes; set timeout and launch_timeout on the run."
        )
    )(run_orchestration)
