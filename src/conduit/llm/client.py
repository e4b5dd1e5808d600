"""Async streaming client for the messages API.

Speaks the ``data: <json>`` event dialect decoded by :mod:`conduit.llm.sse`
and implements :class:`conduit.llm.base.GenerationBackend` on top of
``httpx.AsyncClient``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from typing import Any, AsyncIterator

import httpx

from conduit.config import ProviderSpec
from conduit.errors import (
    ConduitError,
    GenerationFailedError,
    GenerationTimeoutError,
    NetworkError,
    RateLimitError,
    map_status_error,
)
from conduit.llm.accumulator import map_stop_reason, stream_chunks
from conduit.llm.base import GenerateConfig
from conduit.llm.sse import aiter_events
from conduit.types import (
    GenerationChunk,
    GenerationResult,
    Message,
    Role,
    ToolCall,
    UsageStats,
)

_logger = logging.getLogger(__name__)

_MESSAGES_PATH = "/v1/messages"
_MAX_RETRY_AFTER = 300  # seconds


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------

def to_wire_messages(messages: list[Message]) -> tuple[str | None, list[dict[str, Any]]]:
    """Split history into ``(system, messages)`` for the request body.

    Assistant tool calls become ``tool_use`` blocks; tool outputs become
    ``tool_result`` blocks, merged into one user message per run.
    """
    system_parts: list[str] = []
    wire: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.text)
            continue

        if msg.role == Role.TOOL:
            block = {
                "type": "tool_result",
                "tool_use_id": msg.metadata.tool_call_id if msg.metadata else "",
                "content": msg.text,
            }
            last = wire[-1] if wire else None
            if (
                last is not None
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and all(b.get("type") == "tool_result" for b in last["content"])
            ):
                last["content"].append(block)
            else:
                wire.append({"role": "user", "content": [block]})
            continue

        if msg.role == Role.ASSISTANT and msg.tool_calls:
            blocks: list[dict[str, Any]] = []
            if msg.text:
                blocks.append({"type": "text", "text": msg.text})
            for call in msg.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments,
                })
            wire.append({"role": "assistant", "content": blocks})
            continue

        content = msg.content if isinstance(msg.content, str) else list(msg.content)
        wire.append({"role": msg.role.value, "content": content})

    system = "\n\n".join(p for p in system_parts if p) or None
    return system, wire


def _parse_message(data: dict[str, Any], elapsed: float) -> GenerationResult:
    """Decode a non-streaming response body."""
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in data.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            arguments = block.get("input") or {}
            if not isinstance(arguments, dict):
                _logger.warning("Ignoring tool_use %s with non-object input", block.get("name"))
                continue
            tool_calls.append(
                ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=arguments,
                    raw_arguments=json.dumps(arguments),
                )
            )

    raw_usage = data.get("usage") or {}
    usage = UsageStats(
        prompt_tokens=raw_usage.get("input_tokens", 0) or 0,
        completion_tokens=raw_usage.get("output_tokens", 0) or 0,
    )
    tokens = usage.completion_tokens
    return GenerationResult(
        text="".join(text_parts),
        token_count=tokens,
        generation_time=elapsed,
        tokens_per_second=tokens / elapsed if elapsed > 0 else 0.0,
        finish_reason=map_stop_reason(data.get("stop_reason")),
        usage=usage,
        tool_calls=tool_calls,
    )


def _error_message(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body[:500]
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message", body[:500]))
    return body[:500]


def _retry_after(headers: httpx.Headers) -> float | None:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class StreamingClient:
    """Async client for the messages API.

    Usage::

        client = StreamingClient(ProviderSpec(api_key="..."))
        async for chunk in client.stream(messages, "model-id", GenerateConfig()):
            print(chunk.text, end="")
        await client.close()
    """

    def __init__(
        self,
        spec: ProviderSpec,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.spec = spec
        headers = {
            "x-api-key": spec.api_key,
            "anthropic-version": spec.api_version,
            "content-type": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=spec.url,
            headers=headers,
            timeout=httpx.Timeout(spec.timeout, connect=30),
            transport=transport,
        )
        self._stream_client = httpx.AsyncClient(
            base_url=spec.url,
            headers=headers,
            timeout=httpx.Timeout(spec.timeout, connect=30, read=60),
            transport=transport,
        )
        # Requests may run on other threads' loops.
        self._active: set[asyncio.Task[Any]] = set()
        self._active_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        messages: list[Message],
        model: str,
        config: GenerateConfig,
        stream: bool,
    ) -> dict[str, Any]:
        system, wire = to_wire_messages(messages)
        payload: dict[str, Any] = {
            "model": model or self.spec.model,
            "messages": wire,
            "max_tokens": config.max_tokens or self.spec.max_tokens,
        }
        if system:
            payload["system"] = system
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        if config.stop_sequences:
            payload["stop_sequences"] = list(config.stop_sequences)
        if config.tools:
            payload["tools"] = config.tools
            if config.tool_choice:
                payload["tool_choice"] = config.tool_choice
        if stream:
            payload["stream"] = True
        if self.spec.extra_params:
            payload.update(self.spec.extra_params)
        if config.extra:
            payload.update(config.extra)
        return payload

    def _status_error(self, status_code: int, body: str, headers: httpx.Headers, model: str) -> ConduitError:
        return map_status_error(
            status_code,
            _error_message(body),
            retry_after=_retry_after(headers),
            model=model,
        )

    def _backoff(self, error: ConduitError, attempt: int) -> float:
        delay = self.spec.backoff_base * (2 ** attempt)
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            delay = min(error.retry_after, _MAX_RETRY_AFTER)
        return delay

    async def _wait_before_retry(self, error: ConduitError, attempt: int, what: str) -> None:
        delay = self._backoff(error, attempt)
        _logger.warning(
            "%s failed (attempt %d/%d): %s -- retrying in %.1fs",
            what, attempt + 1, self.spec.max_retries + 1, error, delay,
        )
        await asyncio.sleep(delay)

    def _track(self) -> asyncio.Task[Any] | None:
        task = asyncio.current_task()
        if task is not None:
            with self._active_lock:
                self._active.add(task)
        return task

    def _untrack(self, task: asyncio.Task[Any] | None) -> None:
        if task is not None:
            with self._active_lock:
                self._active.discard(task)

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def generate(
        self,
        messages: list[Message],
        model: str,
        config: GenerateConfig,
    ) -> GenerationResult:
        """Send a non-streaming request."""
        payload = self._build_payload(messages, model, config, stream=False)
        task = self._track()
        start = time.monotonic()
        try:
            attempt = 0
            while True:
                try:
                    resp = await self._client.post(_MESSAGES_PATH, json=payload)
                except httpx.TimeoutException as e:
                    error: ConduitError = GenerationTimeoutError(f"Request timed out: {e}")
                    cause: BaseException | None = e
                except httpx.TransportError as e:
                    error = NetworkError(f"Transport error: {e}")
                    cause = e
                else:
                    if resp.is_success:
                        break
                    error = self._status_error(
                        resp.status_code, resp.text, resp.headers, payload["model"],
                    )
                    cause = None

                if not error.is_retryable or attempt >= self.spec.max_retries:
                    raise error from cause
                await self._wait_before_retry(error, attempt, "Request")
                attempt += 1

            try:
                data = resp.json()
            except ValueError as e:
                raise GenerationFailedError("Invalid JSON response", underlying=e) from e
            if not isinstance(data, dict):
                raise GenerationFailedError("Response body is not a JSON object")
            return _parse_message(data, time.monotonic() - start)
        finally:
            self._untrack(task)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        messages: list[Message],
        model: str,
        config: GenerateConfig,
    ) -> AsyncIterator[GenerationChunk]:
        """Stream chunks.  Retries happen only before the first chunk."""
        payload = self._build_payload(messages, model, config, stream=True)
        task = self._track()
        try:
            attempt = 0
            while True:
                delivered = False
                try:
                    async with self._stream_client.stream(
                        "POST", _MESSAGES_PATH, json=payload,
                    ) as resp:
                        if not resp.is_success:
                            body = (await resp.aread()).decode(errors="replace")
                            raise self._status_error(
                                resp.status_code, body, resp.headers, payload["model"],
                            )
                        async for chunk in stream_chunks(aiter_events(resp.aiter_lines())):
                            delivered = True
                            yield chunk
                    return
                except httpx.TimeoutException as e:
                    error: ConduitError = GenerationTimeoutError(f"Stream timed out: {e}")
                    if delivered or attempt >= self.spec.max_retries:
                        raise error from e
                except httpx.TransportError as e:
                    error = NetworkError(f"Stream interrupted: {e}")
                    if delivered or attempt >= self.spec.max_retries:
                        raise error from e
                except ConduitError as e:
                    error = e
                    if delivered or not e.is_retryable or attempt >= self.spec.max_retries:
                        raise

                await self._wait_before_retry(error, attempt, "Stream request")
                attempt += 1
        finally:
            self._untrack(task)

    # ------------------------------------------------------------------
    # Cancellation / lifecycle
    # ------------------------------------------------------------------

    async def cancel_generation(self) -> None:
        """Cancel in-flight requests, on whichever loop they run.  Safe to call repeatedly."""
        current = asyncio.current_task()
        loop = asyncio.get_running_loop()
        with self._active_lock:
            tasks = list(self._active)
            self._active.clear()
        for task in tasks:
            if task is current or task.done():
                continue
            task_loop = task.get_loop()
            if task_loop is loop:
                task.cancel()
            else:
                task_loop.call_soon_threadsafe(task.cancel)

    async def close(self) -> None:
        """Close underlying HTTP clients."""
        await self._client.aclose()
        await self._stream_client.aclose()
