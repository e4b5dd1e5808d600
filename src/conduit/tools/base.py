"""Async Tool abstract base class and a callable-backed implementation."""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from conduit.types import ToolParameter


class Tool(ABC):
    """Base class for all tools.

    Subclasses set ``name``, ``description`` and ``parameters`` as class
    attributes and implement the async ``execute()`` method.  Whatever
    ``execute()`` returns becomes the tool output: strings verbatim,
    anything else JSON-encoded.  Raising marks the attempt as failed.
    """

    name: str
    description: str
    parameters: list[ToolParameter] = []

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Execute the tool asynchronously."""

    def to_schema(self) -> dict[str, Any]:
        """Tool definition in the messages-API format."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.parameters:
            prop: dict[str, Any] = {
                "type": p.type,
                "description": p.description,
            }
            if p.enum:
                prop["enum"] = p.enum
            if p.default is not None:
                prop["default"] = p.default
            properties[p.name] = prop
            if p.required:
                required.append(p.name)

        return {
            "name": self.name,
            "description": self.description,
            "input_schema": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        }


class FunctionTool(Tool):
    """Wrap a plain function as a Tool.

    Coroutine functions are awaited; synchronous functions run in a worker
    thread so they do not block the event loop::

        def add(a: int, b: int) -> int:
            return a + b

        registry.register(FunctionTool("add", "Add two integers", add, [
            ToolParameter(name="a", type="integer", description="first"),
            ToolParameter(name="b", type="integer", description="second"),
        ]))
    """

    def __init__(
        self,
        name: str,
        description: str,
        func: Callable[..., Any],
        parameters: list[ToolParameter] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = list(parameters or [])
        self._func = func

    async def execute(self, **kwargs: Any) -> Any:
        if inspect.iscoroutinefunction(self._func):
            return await self._func(**kwargs)
        result = await asyncio.to_thread(self._func, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
