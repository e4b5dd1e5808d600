"""Shared data types for Conduit."""

from __future__ import annotations

import enum
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

# Upper bound for a streamed tool-call index.  Keeps the index-keyed
# accumulator from growing without limit on a malformed stream.
MAX_TOOL_CALL_INDEX = 100


# ---------------------------------------------------------------------------
# Generation metadata
# ---------------------------------------------------------------------------

class FinishReason(enum.Enum):
    """Why a generation stopped."""

    STOP = "stop"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    CANCELLED = "cancelled"
    CONTENT_FILTER = "content_filter"
    TOOL_CALL = "tool_call"
    PAUSE_TURN = "pause_turn"
    MODEL_CONTEXT_WINDOW_EXCEEDED = "model_context_window_exceeded"

    @property
    def is_tool_call_request(self) -> bool:
        return self is FinishReason.TOOL_CALL


@dataclass(frozen=True)
class UsageStats:
    """Authoritative token usage reported by the backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class TokenLogprob:
    token: str
    logprob: float
    token_id: int | None = None


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


@dataclass(frozen=True)
class ToolCall:
    """A completed tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""

    @classmethod
    def from_json(cls, id: str, name: str, arguments_json: str) -> ToolCall:
        """Build a call from a JSON argument document.

        Raises ``ValueError`` (``json.JSONDecodeError`` included) when the
        text is not a JSON object.
        """
        arguments = json.loads(arguments_json)
        if not isinstance(arguments, dict):
            raise ValueError(
                f"Tool arguments must be a JSON object, got {type(arguments).__name__}"
            )
        return cls(id=id, name=name, arguments=arguments, raw_arguments=arguments_json)

    @property
    def arguments_json(self) -> str:
        return self.raw_arguments or json.dumps(self.arguments)


@dataclass(frozen=True)
class ToolOutput:
    """Result of executing a ToolCall.  ``id`` matches the originating call."""

    id: str
    name: str
    content: str


@dataclass(frozen=True)
class PartialToolCall:
    """A tool call whose argument JSON is still streaming in."""

    id: str
    name: str
    index: int
    arguments_fragment: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("PartialToolCall id must not be empty")
        if not self.name:
            raise ValueError("PartialToolCall name must not be empty")
        if not 0 <= self.index <= MAX_TOOL_CALL_INDEX:
            raise ValueError(
                f"PartialToolCall index must be in range 0...{MAX_TOOL_CALL_INDEX}, "
                f"got {self.index}"
            )


# ---------------------------------------------------------------------------
# Streaming types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationChunk:
    """One incremental unit of a streamed generation.

    Only the terminal chunk (``is_complete=True``) carries ``finish_reason``,
    ``usage`` and ``completed_tool_calls``.
    """

    text: str
    token_count: int = 1
    token_id: int | None = None
    logprob: float | None = None
    top_logprobs: tuple[TokenLogprob, ...] | None = None
    tokens_per_second: float | None = None
    is_complete: bool = False
    finish_reason: FinishReason | None = None
    timestamp: float = field(default_factory=time.time)
    usage: UsageStats | None = None
    partial_tool_call: PartialToolCall | None = None
    completed_tool_calls: tuple[ToolCall, ...] | None = None

    @classmethod
    def completion(
        cls,
        finish_reason: FinishReason,
        usage: UsageStats | None = None,
        completed_tool_calls: tuple[ToolCall, ...] | None = None,
    ) -> GenerationChunk:
        return cls(
            text="",
            token_count=0,
            is_complete=True,
            finish_reason=finish_reason,
            usage=usage,
            completed_tool_calls=completed_tool_calls or None,
        )


@dataclass
class GenerationResult:
    """A completed (non-streamed or collected) generation."""

    text: str = ""
    token_count: int = 0
    generation_time: float = 0.0
    tokens_per_second: float = 0.0
    finish_reason: FinishReason = FinishReason.STOP
    usage: UsageStats | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class MessageMetadata:
    token_count: int | None = None
    generation_time: float | None = None
    model: str | None = None
    tokens_per_second: float | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    custom: dict[str, str] | None = None


@dataclass(frozen=True)
class Message:
    """A single entry of conversation history.

    ``content`` is either plain text or a list of structured parts
    (``{"type": "text", "text": ...}`` and friends).
    """

    role: Role
    content: str | list[dict[str, Any]]
    metadata: MessageMetadata | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            part.get("text", "")
            for part in self.content
            if part.get("type") == "text"
        )

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        if self.metadata and self.metadata.tool_calls:
            return self.metadata.tool_calls
        return ()

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=text)

    @classmethod
    def assistant(
        cls,
        text: str,
        metadata: MessageMetadata | None = None,
    ) -> Message:
        return cls(role=Role.ASSISTANT, content=text, metadata=metadata)

    @classmethod
    def tool_output(cls, output: ToolOutput) -> Message:
        return cls(
            role=Role.TOOL,
            content=output.content,
            metadata=MessageMetadata(tool_call_id=output.id, tool_name=output.name),
        )


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by sessions and tool executors."""

    # Turn lifecycle
    TURN_STARTED = "turn.started"
    TURN_COMPLETED = "turn.completed"
    TURN_FAILED = "turn.failed"
    TURN_CANCELLED = "turn.cancelled"

    # Generation
    GENERATION_STARTED = "generation.started"
    GENERATION_COMPLETED = "generation.completed"

    # Tools
    TOOLS_EXECUTING = "tools.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_RETRYING = "tool.retrying"
    TOOL_MISSING = "tool.missing"


@dataclass
class ConversationEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
