"""Name-keyed tool registry."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable

from conduit.tools.base import Tool

_logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of available tools.

    Registering a tool under an existing name replaces the previous one.
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        self._lock = threading.Lock()
        self.register_many(tools)

    def register(self, tool: Tool) -> None:
        """Register a tool instance."""
        with self._lock:
            if tool.name in self._tools:
                _logger.debug("Replacing registered tool %s", tool.name)
            self._tools[tool.name] = tool

    def register_many(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> bool:
        """Remove a tool.  Returns False if it was not registered."""
        with self._lock:
            return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        """Look up a tool by name."""
        with self._lock:
            return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        """Return all registered tools."""
        with self._lock:
            return list(self._tools.values())

    def tool_names(self) -> list[str]:
        """Return list of registered tool names."""
        with self._lock:
            return list(self._tools.keys())

    def definitions(self) -> list[dict[str, Any]]:
        """Tool definitions for a generation request."""
        return [t.to_schema() for t in self.list_tools()]

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)
