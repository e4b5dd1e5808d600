"""ChatSession: multi-turn conversation with a bounded tool loop.

    history -> backend -> reasoner -> tool executor -> loop

State is guarded by a ``threading.Lock`` that is only held for short,
synchronous sections: the turn captures what it needs, releases the lock
for every backend or tool call, and reacquires it to commit.  A turn's
messages are committed together on success; on failure the user message is
rolled back so history never holds a half-finished turn.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

from conduit.config import ConduitConfig, RetryPolicy, SessionSpec
from conduit.core.cancellation import CancellationToken
from conduit.core.reasoner import ActionType, Reasoner
from conduit.errors import GenerationCancelledError, InvalidInputError
from conduit.events.bus import EventBus
from conduit.llm.base import GenerateConfig, GenerationBackend
from conduit.tools.executor import ToolExecutor
from conduit.tools.registry import ToolRegistry
from conduit.types import (
    ConversationEvent,
    EventType,
    GenerationResult,
    Message,
    MessageMetadata,
    Role,
    ToolCall,
)

_logger = logging.getLogger(__name__)


class SessionStatus(enum.Enum):
    """``GENERATING``/``EXECUTING_TOOLS`` while a turn runs; afterwards the
    outcome of the last turn."""

    IDLE = "idle"
    GENERATING = "generating"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class _TurnSnapshot:
    """Everything a turn needs, captured under the lock."""

    user_message: Message
    history: list[Message]
    model: str
    config: GenerateConfig
    executor: ToolExecutor | None
    retry_policy: RetryPolicy
    max_rounds: int
    token: CancellationToken
    committed: bool = False


class _StreamFailure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


_STREAM_DONE = object()


def _replace_pending(queue: asyncio.Queue[Any], item: Any) -> None:
    # The consumer may still be waiting; undelivered text is dropped.
    while not queue.empty():
        queue.get_nowait()
    queue.put_nowait(item)


class ChatSession:
    """A single conversation bound to one generation backend.

    Parameters
    ----------
    backend:
        Anything implementing :class:`GenerationBackend`.
    model:
        Model identifier passed to the backend.
    config:
        Generation parameters.  Tool definitions from *tool_executor* are
        added when the config carries none.
    tool_executor:
        Runs tool calls.  Without one, a tool-calling response fails the turn.
    session_spec:
        Round limit and tool policies (see :class:`SessionSpec`).
    event_bus:
        Optional observer for turn, generation and tool events.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        model: str = "",
        config: GenerateConfig | None = None,
        tool_executor: ToolExecutor | None = None,
        session_spec: SessionSpec | None = None,
        event_bus: EventBus | None = None,
        system_prompt: str | None = None,
    ) -> None:
        spec = session_spec or SessionSpec()
        self._backend = backend
        self._model = model
        self._config = config or GenerateConfig()
        self._tool_executor = tool_executor
        self._max_tool_call_rounds = spec.max_tool_call_rounds
        self._tool_retry_policy = spec.tool_retry
        self._event_bus = event_bus

        self._lock = threading.Lock()
        self._messages: list[Message] = []
        self._is_generating = False
        self._token = CancellationToken()
        self._last_error: BaseException | None = None
        self._task: asyncio.Task[Any] | None = None
        self._status = SessionStatus.IDLE

        if system_prompt:
            self._messages.append(Message.system(system_prompt))

    @classmethod
    def from_config(
        cls,
        backend: GenerationBackend,
        config: ConduitConfig,
        registry: ToolRegistry | None = None,
        event_bus: EventBus | None = None,
        system_prompt: str | None = None,
    ) -> ChatSession:
        """Build a session from loaded configuration.

        With a *registry*, a tool executor is created over it using the
        configured missing-tool policy.
        """
        executor = None
        if registry is not None:
            executor = ToolExecutor(registry, config.session.missing_tool_policy, event_bus)
        return cls(
            backend,
            model=config.provider.model,
            config=GenerateConfig(max_tokens=config.provider.max_tokens),
            tool_executor=executor,
            session_spec=config.session,
            event_bus=event_bus,
            system_prompt=system_prompt,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    @property
    def config(self) -> GenerateConfig:
        with self._lock:
            return self._config

    @config.setter
    def config(self, value: GenerateConfig) -> None:
        with self._lock:
            self._config = value

    @property
    def tool_executor(self) -> ToolExecutor | None:
        with self._lock:
            return self._tool_executor

    @tool_executor.setter
    def tool_executor(self, value: ToolExecutor | None) -> None:
        with self._lock:
            self._tool_executor = value

    @property
    def max_tool_call_rounds(self) -> int:
        with self._lock:
            return self._max_tool_call_rounds

    @max_tool_call_rounds.setter
    def max_tool_call_rounds(self, value: int) -> None:
        with self._lock:
            self._max_tool_call_rounds = max(0, value)

    @property
    def tool_retry_policy(self) -> RetryPolicy:
        with self._lock:
            return self._tool_retry_policy

    @tool_retry_policy.setter
    def tool_retry_policy(self, value: RetryPolicy) -> None:
        with self._lock:
            self._tool_retry_policy = value

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        """Copy of the conversation history."""
        with self._lock:
            return list(self._messages)

    @property
    def message_count(self) -> int:
        with self._lock:
            return len(self._messages)

    @property
    def user_message_count(self) -> int:
        with self._lock:
            return sum(1 for m in self._messages if m.role == Role.USER)

    @property
    def has_system_prompt(self) -> bool:
        with self._lock:
            return bool(self._messages) and self._messages[0].role == Role.SYSTEM

    @property
    def system_prompt(self) -> str | None:
        with self._lock:
            if self._messages and self._messages[0].role == Role.SYSTEM:
                return self._messages[0].text
            return None

    @property
    def is_generating(self) -> bool:
        with self._lock:
            return self._is_generating

    @property
    def last_error(self) -> BaseException | None:
        with self._lock:
            return self._last_error

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return self._status

    # ------------------------------------------------------------------
    # History management
    # ------------------------------------------------------------------

    def set_system_prompt(self, text: str) -> None:
        """Replace the leading system message, or insert one at position 0."""
        with self._lock:
            message = Message.system(text)
            if self._messages and self._messages[0].role == Role.SYSTEM:
                self._messages[0] = message
            else:
                self._messages.insert(0, message)

    def clear_history(self) -> None:
        """Drop everything except a leading system message."""
        with self._lock:
            if self._messages and self._messages[0].role == Role.SYSTEM:
                self._messages = [self._messages[0]]
            else:
                self._messages = []

    def undo_last_exchange(self) -> None:
        """Remove a trailing assistant message, then a now-trailing user message."""
        with self._lock:
            if self._messages and self._messages[-1].role == Role.ASSISTANT:
                self._messages.pop()
            if self._messages and self._messages[-1].role == Role.USER:
                self._messages.pop()

    def inject_history(self, history: list[Message]) -> None:
        """Replace history with *history*.

        The current system prompt wins over one found in *history*; system
        messages inside *history* are never kept in place.
        """
        with self._lock:
            existing = (
                self._messages[0]
                if self._messages and self._messages[0].role == Role.SYSTEM
                else None
            )
            injected = next((m for m in history if m.role == Role.SYSTEM), None)
            rest = [m for m in history if m.role != Role.SYSTEM]
            prompt = existing or injected
            self._messages = ([prompt] if prompt else []) + rest

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, text: str) -> str:
        """Run one turn and return the final response text.

        Raises whatever ended the turn; history is rolled back first.
        Once the turn is committed it is kept, even if the caller is
        cancelled while completion is being announced.
        """
        snapshot = self._begin_turn(text, asyncio.current_task())
        try:
            await self._emit(EventType.TURN_STARTED, {"text": text[:200]})
            response, turn, rounds = await self._run_turn(snapshot)
            self._commit_turn(snapshot, turn)
        except asyncio.CancelledError:
            await self._fail_turn(snapshot, GenerationCancelledError())
            raise
        except Exception as e:
            await self._fail_turn(snapshot, e)
            raise
        try:
            await self._emit_turn_completed(rounds, response)
        except asyncio.CancelledError:
            _logger.debug("Cancelled after commit; keeping the turn")
        return response

    async def _run_turn(self, snap: _TurnSnapshot) -> tuple[str, list[Message], int]:
        reasoner = Reasoner(snap.max_rounds)
        loop_messages = list(snap.history)
        turn: list[Message] = []

        while True:
            snap.token.raise_if_cancelled()
            await self._emit(EventType.GENERATION_STARTED, {
                "model": snap.model,
                "round": reasoner.rounds,
            })
            result = await self._backend.generate(loop_messages, snap.model, snap.config)
            snap.token.raise_if_cancelled()
            await self._emit_generation_completed(result, reasoner.rounds)

            assistant = self._assistant_message(result, snap.model)
            turn.append(assistant)
            loop_messages.append(assistant)

            decision = reasoner.decide(result.text, result.tool_calls)
            if decision.action == ActionType.RESPOND:
                return decision.response_text, turn, reasoner.rounds

            outputs = await self._run_tools(snap, decision.tool_calls)
            turn.extend(outputs)
            loop_messages.extend(outputs)
            reasoner.complete_round()

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    async def stream(self, text: str) -> AsyncIterator[str]:
        """Run one turn, yielding response text as it arrives.

        Tool rounds run between generations exactly as in :meth:`send`;
        only text is yielded.  Leaving the loop early cancels the turn
        unless it has already been committed.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        snapshot = self._begin_turn(text, None)
        producer = asyncio.create_task(self._produce(snapshot, queue))

        try:
            # Let the producer enter its handlers before it can be cancelled.
            await asyncio.sleep(0)
            with self._lock:
                if self._token is snapshot.token and self._is_generating:
                    self._task = producer

            while True:
                item = await queue.get()
                if item is _STREAM_DONE:
                    return
                if isinstance(item, _StreamFailure):
                    raise item.error
                yield item
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            if producer.cancelled():
                self._rollback(snapshot, GenerationCancelledError())

    async def _produce(self, snap: _TurnSnapshot, queue: asyncio.Queue[Any]) -> None:
        try:
            await self._emit(EventType.TURN_STARTED, {"text": snap.user_message.text[:200]})
            response, turn, rounds = await self._run_stream_turn(snap, queue)
            self._commit_turn(snap, turn)
        except asyncio.CancelledError:
            error = GenerationCancelledError()
            try:
                await self._fail_turn(snap, error)
            finally:
                _replace_pending(queue, _StreamFailure(error))
            raise
        except GenerationCancelledError as e:
            try:
                await self._fail_turn(snap, e)
            finally:
                _replace_pending(queue, _StreamFailure(e))
            return
        except Exception as e:
            await self._fail_turn(snap, e)
            await queue.put(_StreamFailure(e))
            return
        await self._emit_turn_completed(rounds, response)
        await queue.put(_STREAM_DONE)

    async def _run_stream_turn(
        self,
        snap: _TurnSnapshot,
        queue: asyncio.Queue[Any],
    ) -> tuple[str, list[Message], int]:
        reasoner = Reasoner(snap.max_rounds)
        loop_messages = list(snap.history)
        turn: list[Message] = []

        while True:
            snap.token.raise_if_cancelled()
            await self._emit(EventType.GENERATION_STARTED, {
                "model": snap.model,
                "round": reasoner.rounds,
            })
            result = await self._stream_generation(snap, loop_messages, queue)
            snap.token.raise_if_cancelled()
            await self._emit_generation_completed(result, reasoner.rounds)

            assistant = self._assistant_message(result, snap.model)
            turn.append(assistant)
            loop_messages.append(assistant)

            decision = reasoner.decide(result.text, result.tool_calls)
            if decision.action == ActionType.RESPOND:
                return decision.response_text, turn, reasoner.rounds

            outputs = await self._run_tools(snap, decision.tool_calls)
            turn.extend(outputs)
            loop_messages.extend(outputs)
            reasoner.complete_round()

    async def _stream_generation(
        self,
        snap: _TurnSnapshot,
        messages: list[Message],
        queue: asyncio.Queue[Any],
    ) -> GenerationResult:
        """Forward one generation's text to *queue* and summarize it."""
        start = time.monotonic()
        parts: list[str] = []
        tokens = 0
        result = GenerationResult()

        async for chunk in self._backend.stream(messages, snap.model, snap.config):
            snap.token.raise_if_cancelled()
            if chunk.is_complete:
                if chunk.finish_reason is not None:
                    result.finish_reason = chunk.finish_reason
                result.usage = chunk.usage
                result.tool_calls = list(chunk.completed_tool_calls or ())
                continue
            tokens += chunk.token_count
            if chunk.text:
                parts.append(chunk.text)
                await queue.put(chunk.text)

        elapsed = time.monotonic() - start
        result.text = "".join(parts)
        result.token_count = tokens
        result.generation_time = elapsed
        result.tokens_per_second = tokens / elapsed if elapsed > 0 else 0.0
        return result

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self) -> None:
        """Cancel the running turn, if any.  Idempotent.

        Sets the cooperative flag, cancels the in-flight task and asks the
        backend to stop.  The turn unwinds at its next checkpoint.
        """
        with self._lock:
            task = self._task
            self._task = None
            self._token.cancel()

        if task is not None and not task.done() and task is not asyncio.current_task():
            loop = task.get_loop()
            if loop is asyncio.get_running_loop():
                task.cancel()
            else:
                loop.call_soon_threadsafe(task.cancel)

        await self._backend.cancel_generation()

        with self._lock:
            if self._is_generating:
                self._is_generating = False
                self._last_error = GenerationCancelledError()
                self._status = SessionStatus.CANCELLED

    # ------------------------------------------------------------------
    # Turn bookkeeping
    # ------------------------------------------------------------------

    def _begin_turn(self, text: str, task: asyncio.Task[Any] | None) -> _TurnSnapshot:
        user_message = Message.user(text)
        with self._lock:
            if self._is_generating:
                raise InvalidInputError("A generation is already in progress")
            self._last_error = None
            self._is_generating = True
            self._status = SessionStatus.GENERATING
            self._token = CancellationToken()
            self._task = task
            self._messages.append(user_message)

            config = self._config
            if self._tool_executor is not None:
                config = config.with_tools(self._tool_executor.definitions())
            return _TurnSnapshot(
                user_message=user_message,
                history=list(self._messages),
                model=self._model,
                config=config,
                executor=self._tool_executor,
                retry_policy=self._tool_retry_policy,
                max_rounds=self._max_tool_call_rounds,
                token=self._token,
            )

    def _commit_turn(self, snap: _TurnSnapshot, turn: list[Message]) -> None:
        # A cancel that took the lock first wins; one that comes later
        # finds no task to cancel.
        with self._lock:
            snap.token.raise_if_cancelled()
            self._messages.extend(turn)
            snap.committed = True
            self._finish(snap, SessionStatus.COMPLETED)

    async def _emit_turn_completed(self, rounds: int, response: str) -> None:
        await self._emit(EventType.TURN_COMPLETED, {
            "rounds": rounds,
            "response_length": len(response),
        })

    def _rollback(self, snap: _TurnSnapshot, error: BaseException) -> None:
        cancelled = isinstance(error, GenerationCancelledError)
        with self._lock:
            if snap.committed:
                return
            for i in range(len(self._messages) - 1, -1, -1):
                if self._messages[i].id == snap.user_message.id:
                    del self._messages[i]
                    break
            if self._token is snap.token:
                self._last_error = error
            self._finish(
                snap,
                SessionStatus.CANCELLED if cancelled else SessionStatus.FAILED,
            )

    async def _fail_turn(self, snap: _TurnSnapshot, error: BaseException) -> None:
        self._rollback(snap, error)
        if isinstance(error, GenerationCancelledError):
            _logger.info("Turn cancelled")
            await self._emit(EventType.TURN_CANCELLED, {})
        else:
            _logger.debug("Turn failed: %s", error)
            await self._emit(EventType.TURN_FAILED, {
                "error": str(error),
                "error_type": type(error).__name__,
            })

    def _finish(self, snap: _TurnSnapshot, status: SessionStatus) -> None:
        # Caller holds the lock.  A later turn may already own the session.
        if self._token is not snap.token:
            return
        self._is_generating = False
        self._status = status
        self._task = None

    def _set_status(self, snap: _TurnSnapshot, status: SessionStatus) -> None:
        with self._lock:
            if self._token is snap.token and self._is_generating:
                self._status = status

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run_tools(self, snap: _TurnSnapshot, calls: list[ToolCall]) -> list[Message]:
        if snap.executor is None:
            raise InvalidInputError(
                "Tool calls were requested but the session has no tool executor"
            )
        self._set_status(snap, SessionStatus.EXECUTING_TOOLS)
        outputs = await snap.executor.execute_batch(calls, snap.retry_policy, snap.token)
        snap.token.raise_if_cancelled()
        self._set_status(snap, SessionStatus.GENERATING)
        return [Message.tool_output(o) for o in outputs]

    @staticmethod
    def _assistant_message(result: GenerationResult, model: str) -> Message:
        return Message.assistant(
            result.text,
            metadata=MessageMetadata(
                token_count=result.token_count,
                generation_time=result.generation_time,
                model=model or None,
                tokens_per_second=result.tokens_per_second,
                tool_calls=tuple(result.tool_calls) or None,
            ),
        )

    async def _emit_generation_completed(self, result: GenerationResult, round_: int) -> None:
        await self._emit(EventType.GENERATION_COMPLETED, {
            "round": round_,
            "finish_reason": result.finish_reason.value,
            "tool_calls": len(result.tool_calls),
            "text_length": len(result.text),
        })

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(ConversationEvent(type=event_type, data=data))
