"""Device listing tools for MCP server."""

import logging
from typing import Any, Dict

from ..decorators import timeout_wrapper
from ..device_selector import DeviceFilter, DeviceSelector, SimulatorDeviceSource
from ..initialization import create_platform
from ..models import DeviceKind
from ..platforms import AndroidPlatform, ApplePlatform
from ..tool_models import DeviceListParams

logger = logging.getLogger(__name__)

# Module-level components reference
_components = {}


@timeout_wrapper()
async def list_devices(params: DeviceListParams) -> Dict[str, Any]:
    """List devices or simulators a run could target.

    When to use:
    - Before `run_orchestration`, to pick a `device_name` or check an OS
      version is available.

    Tip:
    - Locked and offline devices are hidden unless `include_unusable` is set.
    """
    if not _components:
        return {"success": False, "error": "Components not initialized"}

    try:
        platform = create_platform(params.target, _components)
    except ValueError as e:
        return {"success": False, "error": str(e)}

    device_filter = DeviceFilter(
        os_version=params.os_version, require_usable=not params.include_unusable
    )
    if isinstance(platform, AndroidPlatform):
        devices = await platform.adb.list_devices()
        devices = [d for d in devices if device_filter.accepts(d)]
    elif isinstance(platform, ApplePlatform):
        selector = DeviceSelector(
            SimulatorDeviceSource(platform.simulators, platform.runtime_prefix()),
            DeviceFilter(
                kinds=(DeviceKind.SIMULATOR,),
                os_version=params.os_version,
                require_usable=not params.include_unusable,
            ),
        )
        devices = await selector.enumerate()
    else:
        devices = []

    return {
        "success": True,
        "target": params.target,
        "devices": [d.to_dict() for d in devices],
        "count": len(devices),
    }


def register_device_tools(mcp, components):
    """Register device tools with the MCP server.

    Args:
        mcp: FastMCP server instance
        components: Dictionary containing initialized components
    """
    global _components
    _components = components

    mcp.tool(
        description=(
            "List Android devices/emulators or Apple simulators for a target "
            "(android, ios-simulator, tvos-simulator, watchos-simulator). "
            "Returns udid, name, OS version, architecture and state."
        )
    )(list_devices)
