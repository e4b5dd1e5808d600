"""ToolExecutor: runs tool calls with retry and missing-tool policies.

A batch runs one task per call.  The first call to fail (after its own
retries) cancels the rest and the batch raises; otherwise outputs come back
in input order regardless of completion order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from conduit.config import MissingToolPolicy, RetryCondition, RetryPolicy
from conduit.errors import ConduitError, GenerationCancelledError, InvalidInputError
from conduit.events.bus import EventBus
from conduit.tools.registry import ToolRegistry
from conduit.types import ConversationEvent, EventType, ToolCall, ToolOutput

if TYPE_CHECKING:
    from conduit.core.cancellation import CancellationToken

_logger = logging.getLogger(__name__)


def should_retry(policy: RetryPolicy, error: BaseException, failed_attempts: int) -> bool:
    """Whether *policy* allows another attempt after *error*."""
    if failed_attempts >= policy.max_attempts:
        return False
    if isinstance(error, (asyncio.CancelledError, GenerationCancelledError)):
        return False
    if policy.condition == RetryCondition.NEVER:
        return False
    if policy.condition == RetryCondition.RETRYABLE_ERRORS:
        return isinstance(error, ConduitError) and error.is_retryable
    return True


def _to_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    if result is None:
        return ""
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


class ToolExecutor:
    """Executes tool calls against a :class:`ToolRegistry`.

    Usage::

        executor = ToolExecutor(registry)
        outputs = await executor.execute_batch(calls, RetryPolicy.retryable_errors(3))
    """

    def __init__(
        self,
        registry: ToolRegistry | None = None,
        missing_tool_policy: MissingToolPolicy = MissingToolPolicy.RAISE,
        event_bus: EventBus | None = None,
    ) -> None:
        self._registry = registry if registry is not None else ToolRegistry()
        self._missing_tool_policy = missing_tool_policy
        self._event_bus = event_bus

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def missing_tool_policy(self) -> MissingToolPolicy:
        return self._missing_tool_policy

    def definitions(self) -> list[dict[str, Any]]:
        return self._registry.definitions()

    # ------------------------------------------------------------------
    # Single call
    # ------------------------------------------------------------------

    async def execute(
        self,
        call: ToolCall,
        retry_policy: RetryPolicy | None = None,
    ) -> ToolOutput:
        """Run one call, retrying immediately while *retry_policy* allows."""
        policy = retry_policy or RetryPolicy.none()

        tool = self._registry.get(call.name)
        if tool is None:
            return await self._missing(call)

        failed = 0
        while True:
            try:
                result = await tool.execute(**call.arguments)
            except Exception as e:
                failed += 1
                if not should_retry(policy, e, failed):
                    raise
                _logger.info(
                    "Tool %s (%s) failed on attempt %d/%d, retrying: %s",
                    call.name, call.id, failed, policy.max_attempts, e,
                )
                await self._emit(EventType.TOOL_RETRYING, {
                    "tool": call.name,
                    "id": call.id,
                    "attempt": failed,
                    "error": str(e),
                })
                continue

            output = ToolOutput(id=call.id, name=call.name, content=_to_text(result))
            await self._emit(EventType.TOOL_EXECUTED, {
                "tool": call.name,
                "id": call.id,
                "attempts": failed + 1,
                "output_length": len(output.content),
            })
            return output

    async def _missing(self, call: ToolCall) -> ToolOutput:
        await self._emit(EventType.TOOL_MISSING, {"tool": call.name, "id": call.id})
        if self._missing_tool_policy == MissingToolPolicy.RAISE:
            raise InvalidInputError(f"Tool not found: {call.name}")
        _logger.warning("Model called unregistered tool %s (%s)", call.name, call.id)
        return ToolOutput(id=call.id, name=call.name, content=f"Tool not found: {call.name}")

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def execute_batch(
        self,
        calls: list[ToolCall],
        retry_policy: RetryPolicy | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[ToolOutput]:
        """Run *calls* concurrently.  ``output[i]`` answers ``calls[i]``.

        Raises ``GenerationCancelledError`` if *cancel_token* is already
        cancelled.  No partial results are returned on failure.
        """
        if cancel_token is not None and cancel_token.is_cancelled:
            raise GenerationCancelledError("Tool execution cancelled")
        if not calls:
            return []

        await self._emit(EventType.TOOLS_EXECUTING, {
            "count": len(calls),
            "tools": [c.name for c in calls],
        })

        tasks = {
            asyncio.create_task(self.execute(call, retry_policy)): index
            for index, call in enumerate(calls)
        }
        results: list[tuple[int, ToolOutput]] = []
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_EXCEPTION,
                )
                for task in done:
                    error = task.exception()
                    if error is not None:
                        raise error
                    results.append((tasks[task], task.result()))
        finally:
            unfinished = [t for t in tasks if not t.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        results.sort(key=lambda item: item[0])
        return [output for _, output in results]

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(ConversationEvent(type=event_type, data=data))
