"""MCP server exposing device orchestration."""

import asyncio
import logging

from mcp.server.fastmcp import FastMCP

from .config import HarnessConfig
from .initialization import initialize_components

# Import tool registration functions
from .tools.devices import register_device_tools
from .tools.logs import register_log_tools
from .tools.orchestration import register_orchestration_tools

# Re-export tool functions for testing
from .tools.devices import list_devices  # noqa: F401
from .tools.logs import classify_log, get_system_log_window  # noqa: F401
from .tools.orchestration import run_orchestration  # noqa: F401

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("device-harness")

# Component storage
components = {}


async def init_and_register(config: HarnessConfig = None) -> None:
    """Initialize components and register all MCP tools."""
    global components

    components = initialize_components(config)

    register_device_tools(mcp, components)
    register_orchestration_tools(mcp, components)
    register_log_tools(mcp, components)

    logger.info("All MCP tools registered successfully")


def main() -> None:
    """Run the MCP server."""
    logger.info("Starting device harness MCP server...")

    async def init_and_run() -> None:
        await init_and_register()
        await mcp.run_stdio_async()

    asyncio.run(init_and_run())


if __name__ == "__main__":
    main()
