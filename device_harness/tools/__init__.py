"""MCP tools for the device harness."""

from . import devices, logs, orchestration

__all__ = ["devices", "orchestration", "logs"]
