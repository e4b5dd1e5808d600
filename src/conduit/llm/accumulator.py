"""Chunk accumulator: decoded stream events -> GenerationChunks.

Only text/tool-argument deltas and ``message_delta`` produce chunks.  The
``message_delta`` chunk is terminal; :func:`stream_chunks` synthesizes one
when the upstream closes without it, so every stream ends with exactly one
terminal chunk.

Tool-use blocks are buffered per content-block index.  A buffer is
finalized into a :class:`ToolCall` at its ``content_block_stop`` (or, if
still open, when the terminal chunk is built), falling back to
:mod:`conduit.llm.json_repair` only when the raw arguments do not parse.
"""

from __future__ import annotations

import logging
import time
from typing import AsyncIterable, AsyncIterator, Callable

from conduit.llm import json_repair
from conduit.llm.sse import StreamEvent, StreamEventType, stream_error
from conduit.types import (
    MAX_TOOL_CALL_INDEX,
    FinishReason,
    GenerationChunk,
    GenerationResult,
    PartialToolCall,
    ToolCall,
    UsageStats,
)

_logger = logging.getLogger(__name__)

# Per-call cap on buffered argument text (characters)
MAX_TOOL_ARGUMENTS_LENGTH = 100_000

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "max_tokens": FinishReason.MAX_TOKENS,
    "stop_sequence": FinishReason.STOP_SEQUENCE,
    "tool_use": FinishReason.TOOL_CALL,
    "pause_turn": FinishReason.PAUSE_TURN,
    "refusal": FinishReason.CONTENT_FILTER,
    "model_context_window_exceeded": FinishReason.MODEL_CONTEXT_WINDOW_EXCEEDED,
}


def map_stop_reason(stop_reason: str | None) -> FinishReason:
    """Map a provider stop reason to a FinishReason (unknown -> STOP)."""
    if not stop_reason:
        return FinishReason.STOP
    return _STOP_REASONS.get(stop_reason, FinishReason.STOP)


def finalize_tool_call(call_id: str, name: str, raw_arguments: str) -> ToolCall | None:
    """Parse accumulated argument text into a ToolCall.

    The raw text is tried first; repair is applied only if that fails.
    Returns ``None`` when even the repaired text is not a JSON object.
    """
    if not raw_arguments.strip():
        return ToolCall(id=call_id, name=name, arguments={})
    try:
        return ToolCall.from_json(call_id, name, raw_arguments)
    except ValueError:
        pass

    repaired = json_repair.repair(raw_arguments)
    try:
        call = ToolCall.from_json(call_id, name, repaired)
    except ValueError as e:
        _logger.warning(
            "Dropping tool call %s (%s): arguments unparseable after repair: %s",
            name, call_id, e,
        )
        return None
    _logger.info("Recovered arguments for tool call %s (%s) via JSON repair", name, call_id)
    return call


class _ToolBuffer:
    """Argument text for one streaming tool-use block."""

    def __init__(self, call_id: str, name: str, index: int) -> None:
        self.call_id = call_id
        self.name = name
        self.index = index
        self._parts: list[str] = []
        self._length = 0
        self._overflowed = False

    def append(self, fragment: str) -> None:
        remaining = MAX_TOOL_ARGUMENTS_LENGTH - self._length
        if len(fragment) > remaining:
            if not self._overflowed:
                _logger.warning(
                    "Tool call %s (%s) arguments exceed %d chars, truncating",
                    self.name, self.call_id, MAX_TOOL_ARGUMENTS_LENGTH,
                )
                self._overflowed = True
            fragment = fragment[:remaining]
        if fragment:
            self._parts.append(fragment)
            self._length += len(fragment)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def snapshot(self) -> PartialToolCall:
        return PartialToolCall(
            id=self.call_id,
            name=self.name,
            index=self.index,
            arguments_fragment=self.text,
        )


class ChunkAccumulator:
    """Stateful event-to-chunk mapper for a single response.

    Feed events in order with :meth:`process`; call :meth:`finish` once the
    event source is exhausted.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._start = clock()
        self._token_count = 0
        self._input_tokens: int | None = None
        self._buffers: dict[int, _ToolBuffer] = {}
        self._completed: dict[int, ToolCall] = {}
        self._finished = False

    @property
    def is_finished(self) -> bool:
        """True once the terminal chunk has been produced."""
        return self._finished

    @property
    def token_count(self) -> int:
        return self._token_count

    def process(self, event: StreamEvent) -> GenerationChunk | None:
        """Map one event.  Raises ``ServerError`` for an ``error`` event."""
        if event.type == StreamEventType.ERROR:
            raise stream_error(event)
        if self._finished:
            return None

        if event.type == StreamEventType.MESSAGE_START:
            self._input_tokens = event.input_tokens
            return None
        if event.type == StreamEventType.CONTENT_BLOCK_START:
            if event.kind == "tool_use":
                self._open_tool(event)
            return None
        if event.type == StreamEventType.CONTENT_BLOCK_DELTA:
            return self._delta(event)
        if event.type == StreamEventType.CONTENT_BLOCK_STOP:
            self._close_tool(event.index)
            return None
        if event.type == StreamEventType.MESSAGE_DELTA:
            return self._terminal(
                map_stop_reason(event.stop_reason),
                self._usage(event.input_tokens, event.output_tokens),
            )
        # message_stop, ping
        return None

    def finish(self) -> GenerationChunk | None:
        """Synthetic terminal chunk if the stream closed without one."""
        if self._finished:
            return None
        return self._terminal(FinishReason.STOP, self._usage(None, None))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_tool(self, event: StreamEvent) -> None:
        if not 0 <= event.index <= MAX_TOOL_CALL_INDEX:
            _logger.warning(
                "Rejecting tool call at index %d (allowed 0...%d)",
                event.index, MAX_TOOL_CALL_INDEX,
            )
            return
        if not event.tool_id or not event.tool_name:
            _logger.warning("Ignoring tool_use block %d without id or name", event.index)
            return
        self._buffers[event.index] = _ToolBuffer(event.tool_id, event.tool_name, event.index)

    def _close_tool(self, index: int) -> None:
        buffer = self._buffers.pop(index, None)
        if buffer is None:
            return
        call = finalize_tool_call(buffer.call_id, buffer.name, buffer.text)
        if call is not None:
            self._completed[index] = call

    def _delta(self, event: StreamEvent) -> GenerationChunk | None:
        if event.kind == "input_json_delta":
            buffer = self._buffers.get(event.index)
            if buffer is None:
                if not 0 <= event.index <= MAX_TOOL_CALL_INDEX:
                    _logger.warning(
                        "Rejecting tool argument delta at index %d (allowed 0...%d)",
                        event.index, MAX_TOOL_CALL_INDEX,
                    )
                else:
                    _logger.debug("Argument delta for unknown block %d", event.index)
                return None
            buffer.append(event.partial_json)
            self._token_count += 1
            return GenerationChunk(
                text="",
                tokens_per_second=self._rate(),
                partial_tool_call=buffer.snapshot(),
            )

        if event.kind == "text_delta":
            self._token_count += 1
            return GenerationChunk(text=event.text, tokens_per_second=self._rate())

        # thinking/signature deltas carry no output text
        return None

    def _terminal(
        self,
        finish_reason: FinishReason,
        usage: UsageStats | None,
    ) -> GenerationChunk:
        for index in sorted(self._buffers):
            self._close_tool(index)
        calls = tuple(self._completed[i] for i in sorted(self._completed))
        self._finished = True
        return GenerationChunk.completion(
            finish_reason,
            usage=usage,
            completed_tool_calls=calls,
        )

    def _usage(self, input_tokens: int | None, output_tokens: int | None) -> UsageStats | None:
        prompt = input_tokens if input_tokens is not None else self._input_tokens
        if prompt is None and output_tokens is None:
            return None
        return UsageStats(prompt_tokens=prompt or 0, completion_tokens=output_tokens or 0)

    def _rate(self) -> float | None:
        elapsed = self._clock() - self._start
        if elapsed <= 0:
            return None
        return self._token_count / elapsed


async def stream_chunks(
    events: AsyncIterable[StreamEvent],
    accumulator: ChunkAccumulator | None = None,
) -> AsyncIterator[GenerationChunk]:
    """Map an event stream to chunks, guaranteeing one terminal chunk."""
    acc = accumulator or ChunkAccumulator()
    async for event in events:
        chunk = acc.process(event)
        if chunk is not None:
            yield chunk
    final = acc.finish()
    if final is not None:
        yield final


class GenerationStream:
    """Single-pass async iterator over GenerationChunks with helpers.

    Usage::

        stream = GenerationStream(backend.stream(messages, model, config))
        async for chunk in stream:
            print(chunk.text, end="")
    """

    def __init__(self, chunks: AsyncIterable[GenerationChunk]) -> None:
        self._chunks = chunks
        self._start = time.monotonic()
        self._iterated = False

    def __aiter__(self) -> AsyncIterator[GenerationChunk]:
        if self._iterated:
            raise RuntimeError("GenerationStream can only be iterated once")
        self._iterated = True
        return self._chunks.__aiter__()

    async def collect(self) -> str:
        """Concatenated text of every chunk."""
        parts: list[str] = []
        async for chunk in self:
            parts.append(chunk.text)
        return "".join(parts)

    async def collect_result(self) -> GenerationResult:
        """Drain the stream into a :class:`GenerationResult`."""
        parts: list[str] = []
        tokens = 0
        first_at: float | None = None
        last_at: float | None = None
        finish_reason: FinishReason | None = None
        usage: UsageStats | None = None
        tool_calls: list[ToolCall] = []

        async for chunk in self:
            now = time.monotonic()
            if first_at is None:
                first_at = now
            last_at = now
            parts.append(chunk.text)
            tokens += chunk.token_count
            if chunk.finish_reason is not None:
                finish_reason = chunk.finish_reason
            if chunk.usage is not None:
                usage = chunk.usage
            if chunk.completed_tool_calls:
                tool_calls.extend(chunk.completed_tool_calls)

        duration = (last_at - first_at) if first_at is not None and last_at is not None else 0.0
        return GenerationResult(
            text="".join(parts),
            token_count=tokens,
            generation_time=duration,
            tokens_per_second=tokens / duration if duration > 0 else 0.0,
            finish_reason=finish_reason or FinishReason.STOP,
            usage=usage,
            tool_calls=tool_calls,
        )

    async def time_to_first_token(self) -> tuple[GenerationChunk, float] | None:
        """First chunk and its latency in seconds; ``None`` for an empty stream.

        Consumes the stream.
        """
        async for chunk in self:
            return chunk, time.monotonic() - self._start
        return None
