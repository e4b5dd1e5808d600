"""Tests for the ToolExecutor: ordering, retry policies and cancellation."""

from __future__ import annotations

import asyncio
import random
from typing import Any

import pytest

from conduit.config import MissingToolPolicy, RetryPolicy
from conduit.core.cancellation import CancellationToken
from conduit.errors import (
    GenerationCancelledError,
    InvalidInputError,
    NetworkError,
)
from conduit.events.bus import EventBus
from conduit.tools.base import FunctionTool, Tool
from conduit.tools.executor import ToolExecutor, should_retry
from conduit.tools.registry import ToolRegistry
from conduit.types import EventType, ToolCall, ToolParameter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class EchoTool(Tool):
    name = "echo"
    description = "Echo input"
    parameters = [ToolParameter(name="text", type="string", description="Text to echo")]

    async def execute(self, **kwargs: Any) -> str:
        return f"Echo: {kwargs.get('text', '')}"


class SlowEchoTool(Tool):
    """Echo after a random delay."""

    name = "slow_echo"
    description = "Echo input, slowly"
    parameters = [ToolParameter(name="text", type="string", description="Text to echo")]

    async def execute(self, **kwargs: Any) -> str:
        await asyncio.sleep(random.uniform(0, 0.02))
        return kwargs["text"]


class FlakyTool(Tool):
    """Fails with *error* for the first *failures* attempts."""

    name = "flaky"
    description = "Fails a few times"

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.attempts = 0

    async def execute(self, **kwargs: Any) -> str:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        return "ok"


class BlockingTool(Tool):
    name = "block"
    description = "Blocks until cancelled"

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, **kwargs: Any) -> str:
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return "never"


class FailingTool(Tool):
    name = "fail"
    description = "Fails once the blocker is running"

    def __init__(self, blocker: BlockingTool) -> None:
        self.blocker = blocker

    async def execute(self, **kwargs: Any) -> str:
        await self.blocker.started.wait()
        raise RuntimeError("intentional failure")


def _call(name: str, call_id: str = "", **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id or f"toolu_{name}", name=name, arguments=arguments)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def registry():
    return ToolRegistry([EchoTool(), SlowEchoTool()])


# ---------------------------------------------------------------------------
# Retry decision
# ---------------------------------------------------------------------------

class TestShouldRetry:
    def test_never(self):
        assert not should_retry(RetryPolicy.none(), NetworkError("x"), 0)

    def test_retryable_errors(self):
        policy = RetryPolicy.retryable_errors(3)
        assert should_retry(policy, NetworkError("x"), 1)
        assert not should_retry(policy, RuntimeError("x"), 1)
        assert not should_retry(policy, InvalidInputError("x"), 1)

    def test_all_failures(self):
        policy = RetryPolicy.all_failures(3)
        assert should_retry(policy, RuntimeError("x"), 2)
        assert not should_retry(policy, RuntimeError("x"), 3)

    def test_cancellation_never_retried(self):
        policy = RetryPolicy.all_failures(5)
        assert not should_retry(policy, GenerationCancelledError(), 1)
        assert not should_retry(policy, asyncio.CancelledError(), 1)


# ---------------------------------------------------------------------------
# Single calls
# ---------------------------------------------------------------------------

class TestExecute:
    async def test_echo(self, registry):
        output = await ToolExecutor(registry).execute(_call("echo", text="hello"))
        assert output.id == "toolu_echo"
        assert output.name == "echo"
        assert output.content == "Echo: hello"

    async def test_non_string_result_json_encoded(self):
        tool = FunctionTool("lookup", "Look up", lambda: {"hits": [1, 2], "name": "café"})
        output = await ToolExecutor(ToolRegistry([tool])).execute(_call("lookup"))
        assert output.content == '{"hits": [1, 2], "name": "café"}'

    async def test_none_result_is_empty(self):
        tool = FunctionTool("noop", "Nothing", lambda: None)
        output = await ToolExecutor(ToolRegistry([tool])).execute(_call("noop"))
        assert output.content == ""

    async def test_retryable_error_retried(self):
        tool = FlakyTool(failures=2, error=NetworkError("reset"))
        executor = ToolExecutor(ToolRegistry([tool]))
        output = await executor.execute(_call("flaky"), RetryPolicy.retryable_errors(3))
        assert output.content == "ok"
        assert tool.attempts == 3

    async def test_retries_exhausted_raise_original(self):
        error = NetworkError("reset")
        tool = FlakyTool(failures=5, error=error)
        executor = ToolExecutor(ToolRegistry([tool]))
        with pytest.raises(NetworkError) as exc_info:
            await executor.execute(_call("flaky"), RetryPolicy.retryable_errors(3))
        assert exc_info.value is error
        assert tool.attempts == 3

    async def test_non_retryable_not_retried(self):
        tool = FlakyTool(failures=1, error=RuntimeError("bug"))
        executor = ToolExecutor(ToolRegistry([tool]))
        with pytest.raises(RuntimeError):
            await executor.execute(_call("flaky"), RetryPolicy.retryable_errors(3))
        assert tool.attempts == 1

    async def test_all_failures_retries_anything(self):
        tool = FlakyTool(failures=1, error=RuntimeError("bug"))
        executor = ToolExecutor(ToolRegistry([tool]))
        output = await executor.execute(_call("flaky"), RetryPolicy.all_failures(2))
        assert output.content == "ok"
        assert tool.attempts == 2

    async def test_default_policy_does_not_retry(self):
        tool = FlakyTool(failures=1, error=NetworkError("reset"))
        with pytest.raises(NetworkError):
            await ToolExecutor(ToolRegistry([tool])).execute(_call("flaky"))
        assert tool.attempts == 1

    async def test_cancellation_error_not_retried(self):
        tool = FlakyTool(failures=1, error=GenerationCancelledError())
        executor = ToolExecutor(ToolRegistry([tool]))
        with pytest.raises(GenerationCancelledError):
            await executor.execute(_call("flaky"), RetryPolicy.all_failures(5))
        assert tool.attempts == 1

    async def test_zero_attempts_clamped_to_one(self):
        tool = FlakyTool(failures=0, error=RuntimeError("unused"))
        output = await ToolExecutor(ToolRegistry([tool])).execute(
            _call("flaky"), RetryPolicy.all_failures(0),
        )
        assert output.content == "ok"
        assert tool.attempts == 1


class TestMissingTool:
    async def test_raise_policy(self, registry):
        executor = ToolExecutor(registry, missing_tool_policy=MissingToolPolicy.RAISE)
        with pytest.raises(InvalidInputError, match="Tool not found: nonexistent"):
            await executor.execute(_call("nonexistent"))

    async def test_emit_output_policy(self, registry):
        executor = ToolExecutor(registry, missing_tool_policy=MissingToolPolicy.EMIT_OUTPUT)
        output = await executor.execute(_call("nonexistent", call_id="toolu_9"))
        assert output.id == "toolu_9"
        assert output.content == "Tool not found: nonexistent"

    async def test_missing_event(self, registry, event_bus):
        events = []
        event_bus.subscribe(EventType.TOOL_MISSING, events.append)
        executor = ToolExecutor(
            registry,
            missing_tool_policy=MissingToolPolicy.EMIT_OUTPUT,
            event_bus=event_bus,
        )
        await executor.execute(_call("nonexistent"))
        assert events[0].data["tool"] == "nonexistent"


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

class TestExecuteBatch:
    async def test_order_preserved_under_random_delays(self, registry):
        executor = ToolExecutor(registry)
        calls = [_call("slow_echo", call_id=f"toolu_{i}", text=str(i)) for i in range(20)]
        outputs = await executor.execute_batch(calls)
        assert [o.id for o in outputs] == [c.id for c in calls]
        assert [o.content for o in outputs] == [str(i) for i in range(20)]

    async def test_runs_concurrently(self):
        running = 0
        peak = 0

        async def probe() -> str:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return "done"

        executor = ToolExecutor(ToolRegistry([FunctionTool("probe", "Probe", probe)]))
        await executor.execute_batch([_call("probe", call_id=f"p{i}") for i in range(5)])
        assert peak == 5

    async def test_empty_batch(self, registry):
        assert await ToolExecutor(registry).execute_batch([]) == []

    async def test_failure_cancels_siblings(self):
        blocker = BlockingTool()
        executor = ToolExecutor(ToolRegistry([blocker, FailingTool(blocker)]))
        with pytest.raises(RuntimeError, match="intentional"):
            await executor.execute_batch([_call("block"), _call("fail")])
        assert blocker.cancelled is True

    async def test_missing_tool_fails_batch(self, registry):
        executor = ToolExecutor(registry)
        with pytest.raises(InvalidInputError):
            await executor.execute_batch([_call("echo", text="a"), _call("nonexistent")])

    async def test_cancelled_token_runs_nothing(self):
        tool = FlakyTool(failures=0, error=RuntimeError("unused"))
        token = CancellationToken()
        token.cancel()
        with pytest.raises(GenerationCancelledError):
            await ToolExecutor(ToolRegistry([tool])).execute_batch([_call("flaky")], cancel_token=token)
        assert tool.attempts == 0

    async def test_retry_policy_applies_per_call(self):
        tool = FlakyTool(failures=1, error=NetworkError("reset"))
        executor = ToolExecutor(ToolRegistry([tool, EchoTool()]))
        outputs = await executor.execute_batch(
            [_call("flaky"), _call("echo", text="x")],
            RetryPolicy.retryable_errors(2),
        )
        assert [o.content for o in outputs] == ["ok", "Echo: x"]

    async def test_events_emitted(self, event_bus):
        tool = FlakyTool(failures=1, error=NetworkError("reset"))
        executor = ToolExecutor(ToolRegistry([tool]), event_bus=event_bus)
        events = []
        event_bus.subscribe("*", events.append)

        await executor.execute_batch([_call("flaky")], RetryPolicy.retryable_errors(2))

        assert [e.type for e in events] == [
            EventType.TOOLS_EXECUTING,
            EventType.TOOL_RETRYING,
            EventType.TOOL_EXECUTED,
        ]
        assert events[0].data == {"count": 1, "tools": ["flaky"]}
        assert events[1].data["attempt"] == 1
        assert events[2].data["attempts"] == 2
