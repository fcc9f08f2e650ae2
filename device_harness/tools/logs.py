"""Log inspection tools for MCP server."""

import logging
from collections import deque
from pathlib import Path
from typing import Any, Dict

from ..decorators import timeout_wrapper
from ..exit_code_detector import DETECTORS
from ..knowledge_base import LogStage
from ..tool_models import ClassifyLogParams, ExitCodeParams, LogWindowParams

logger = logging.getLogger(__name__)

# Module-level components storage
_components = {}


@timeout_wrapper()
async def get_system_log_window(params: LogWindowParams) -> Dict[str, Any]:
    """Return the tail of a log captured by a previous run.

    When to use:
    - After a failed `run_orchestration`, to read what the app logged while
      it ran.

    Tip:
    - Keep `max_lines` small (50-200) to protect the context window.
    """
    directory = Path(params.log_directory)
    log_path = (directory / params.log_name).resolve()
    if directory.resolve() not in log_path.parents:
        return {"success": False, "error": "log_name must stay inside log_directory"}
    if not log_path.is_file():
        return {"success": False, "error": f"No log at {log_path}"}

    with open(log_path, "r", encoding="utf-8", errors="replace") as reader:
        lines = deque(reader, maxlen=max(1, params.max_lines))

    return {
        "success": True,
        "path": str(log_path),
        "lines": [line.rstrip("\n") for line in lines],
        "line_count": len(lines),
        "size_bytes": log_path.stat().st_size,
    }


@timeout_wrapper()
async def classify_log(params: ClassifyLogParams) -> Dict[str, Any]:
    """Look a log up in the known-failure knowledge base.

    When to use:
    - Turn an install, run or test log into a human-readable cause.
    """
    knowledge_base = _components.get("knowledge_base")
    if not knowledge_base:
        return {"success": False, "error": "Knowledge base not initialized"}

    if not Path(params.log_path).is_file():
        return {"success": False, "error": f"No log at {params.log_path}"}

    known = knowledge_base.classify(params.log_path, LogStage(params.stage))
    if known is None:
        return {"success": True, "known": False}
    return {
        "success": True,
        "known": True,
        "message": known.human_message,
        "issue_link": known.issue_link,
        "suggested_exit_code": known.suggested_exit_code,
        "pattern": known.pattern,
    }


@timeout_wrapper()
async def detect_exit_code(params: ExitCodeParams) -> Dict[str, Any]:
    """Read the app's abnormal exit code from a captured system log."""
    if not Path(params.log_path).is_file():
        return {"success": False, "error": f"No log at {params.log_path}"}

    detector = DETECTORS[params.label_style]()
    exit_code = detector.detect(params.app_id, params.log_path)
    return {"success": True, "found": exit_code is not None, "exit_code": exit_code}


def register_log_tools(mcp, components):
    """Register log tools with the MCP server.

    Args:
        mcp: FastMCP server instance
        components: Dictionary containing initialized components
    """
    global _components
    _components = components

    mcp.tool(
        description=(
            "Tail a file from a run's log directory (system.log by default; also "
            "execution.log, device.log). Always set max_lines to limit output."
        )
    )(get_system_log_window)

    mcp.tool(
        description=(
            "Match a log against known install/run/test failures; returns a "
            "human-readable cause and suggested exit code when known."
        )
    )(classify_log)

    mcp.tool(
        description=(
            "Find the app's abnormal exit code in a captured system log "
            "(uikit for iOS/tvOS simulators, catalyst for Mac Catalyst apps)."
        )
    )(detect_exit_code)
