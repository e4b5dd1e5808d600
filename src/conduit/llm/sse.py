"""Server-sent-event decoder for the streaming messages dialect.

Each ``data: <json>`` line is decoded on its own; blank lines and
``event:`` lines carry nothing the JSON ``type`` field does not already say.
A ``[DONE]`` payload ends the stream.  A malformed payload is logged and
skipped; an ``error`` payload aborts the stream with :class:`ServerError`.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator

from conduit.errors import ServerError

_logger = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"


class StreamEventType(enum.Enum):
    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    ERROR = "error"
    PING = "ping"


@dataclass(frozen=True)
class StreamEvent:
    """A decoded protocol event.

    ``kind`` is the content-block type for ``content_block_start``
    (``"text"``, ``"tool_use"``) and the delta type for
    ``content_block_delta`` (``"text_delta"``, ``"input_json_delta"``).
    """

    type: StreamEventType
    index: int = 0
    kind: str = ""
    text: str = ""
    partial_json: str = ""
    tool_id: str = ""
    tool_name: str = ""
    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    error_type: str = ""
    error_message: str = ""
    data: dict[str, Any] = field(default_factory=dict, compare=False)


# ---------------------------------------------------------------------------
# Payload decoding
# ---------------------------------------------------------------------------

def _require_index(data: dict[str, Any]) -> int:
    index = data.get("index")
    if not isinstance(index, int) or isinstance(index, bool):
        raise ValueError(f"{data.get('type')} event without integer index")
    return index


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _usage_tokens(usage: Any, key: str) -> int | None:
    if isinstance(usage, dict) and isinstance(usage.get(key), int):
        return usage[key]
    return None


def decode_payload(payload: str) -> StreamEvent | None:
    """Decode one JSON payload.

    Returns ``None`` for unknown event types.  Raises ``ValueError`` when
    the payload is not valid JSON or lacks the fields its type requires.
    """
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError("event payload is not a JSON object")
    raw_type = data.get("type")
    try:
        event_type = StreamEventType(raw_type)
    except ValueError:
        _logger.debug("Skipping unknown stream event type %r", raw_type)
        return None

    if event_type == StreamEventType.MESSAGE_START:
        message = _as_dict(data.get("message"))
        return StreamEvent(
            type=event_type,
            input_tokens=_usage_tokens(message.get("usage"), "input_tokens"),
            data=data,
        )

    if event_type == StreamEventType.CONTENT_BLOCK_START:
        block = data.get("content_block")
        if not isinstance(block, dict):
            raise ValueError("content_block_start without content_block")
        return StreamEvent(
            type=event_type,
            index=_require_index(data),
            kind=str(block.get("type", "")),
            text=block.get("text") or "",
            tool_id=block.get("id") or "",
            tool_name=block.get("name") or "",
            data=data,
        )

    if event_type == StreamEventType.CONTENT_BLOCK_DELTA:
        delta = data.get("delta")
        if not isinstance(delta, dict):
            raise ValueError("content_block_delta without delta")
        kind = str(delta.get("type", ""))
        text = delta.get("text", "")
        partial_json = delta.get("partial_json", "")
        if kind == "text_delta" and not isinstance(text, str):
            raise ValueError("text_delta without text")
        if kind == "input_json_delta" and not isinstance(partial_json, str):
            raise ValueError("input_json_delta without partial_json")
        return StreamEvent(
            type=event_type,
            index=_require_index(data),
            kind=kind,
            text=text if isinstance(text, str) else "",
            partial_json=partial_json if isinstance(partial_json, str) else "",
            data=data,
        )

    if event_type == StreamEventType.CONTENT_BLOCK_STOP:
        return StreamEvent(type=event_type, index=_require_index(data), data=data)

    if event_type == StreamEventType.MESSAGE_DELTA:
        delta = _as_dict(data.get("delta"))
        usage = data.get("usage")
        return StreamEvent(
            type=event_type,
            stop_reason=delta.get("stop_reason"),
            input_tokens=_usage_tokens(usage, "input_tokens"),
            output_tokens=_usage_tokens(usage, "output_tokens"),
            data=data,
        )

    if event_type == StreamEventType.ERROR:
        error = _as_dict(data.get("error"))
        return StreamEvent(
            type=event_type,
            error_type=str(error.get("type", "unknown_error")),
            error_message=str(error.get("message", "")),
            data=data,
        )

    # message_stop, ping
    return StreamEvent(type=event_type, data=data)


def stream_error(event: StreamEvent) -> ServerError:
    """The error raised for an ``error`` event."""
    return ServerError(0, f"[{event.error_type}] {event.error_message}")


# ---------------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------------

class SSEDecoder:
    """Stateful line decoder.  Feed lines until :attr:`done` is set."""

    def __init__(self) -> None:
        self.done = False
        self.skipped = 0

    def feed(self, line: str) -> StreamEvent | None:
        """Decode a single line.  Raises ``ServerError`` on an error event."""
        if self.done:
            return None
        line = line.rstrip("\r\n")
        if not line.startswith("data:"):
            # blank separators, "event:", "id:", ":" comments
            return None
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        if payload.strip() == _DONE_SENTINEL:
            self.done = True
            return None

        try:
            event = decode_payload(payload)
        except ValueError as e:
            self.skipped += 1
            _logger.debug("Failed to parse stream event: %s", e)
            return None

        if event is not None and event.type == StreamEventType.ERROR:
            self.done = True
            raise stream_error(event)
        return event


def iter_events(lines: Iterable[str]) -> Iterator[StreamEvent]:
    """Decode events from an iterable of lines."""
    decoder = SSEDecoder()
    for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event
        if decoder.done:
            return


async def aiter_events(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Decode events from an async iterable of lines (e.g. ``aiter_lines()``).

    Consumer-paced: a line is read only when the next event is requested.
    """
    decoder = SSEDecoder()
    async for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event
        if decoder.done:
            return
