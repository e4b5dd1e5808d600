"""Tool system for Conduit."""

from conduit.tools.base import FunctionTool, Tool
from conduit.tools.executor import ToolExecutor
from conduit.tools.registry import ToolRegistry

__all__ = ["FunctionTool", "Tool", "ToolExecutor", "ToolRegistry"]
