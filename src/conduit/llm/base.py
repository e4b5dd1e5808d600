"""Generation backend contract consumed by the conversation layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from conduit.types import GenerationChunk, GenerationResult, Message


@dataclass
class GenerateConfig:
    """Per-request generation parameters."""

    max_tokens: int = 4096
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: list[str] = field(default_factory=list)
    tools: list[dict[str, Any]] = field(default_factory=list)
    tool_choice: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def with_tools(self, tools: list[dict[str, Any]]) -> GenerateConfig:
        """Copy of this config carrying *tools* (unless tools are already set)."""
        if self.tools or not tools:
            return self
        return GenerateConfig(
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            stop_sequences=list(self.stop_sequences),
            tools=list(tools),
            tool_choice=self.tool_choice,
            extra=dict(self.extra),
        )


@runtime_checkable
class GenerationBackend(Protocol):
    """Anything that can generate from a message history.

    ``cancel_generation`` is best-effort and idempotent.
    """

    async def generate(
        self,
        messages: list[Message],
        model: str,
        config: GenerateConfig,
    ) -> GenerationResult: ...

    def stream(
        self,
        messages: list[Message],
        model: str,
        config: GenerateConfig,
    ) -> AsyncIterator[GenerationChunk]: ...

    async def cancel_generation(self) -> None: ...
