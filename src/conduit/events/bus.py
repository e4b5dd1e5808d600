"""Async pub/sub EventBus for observing sessions and tool execution."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from conduit.types import ConversationEvent, EventType

_logger = logging.getLogger(__name__)

# Subscribing to this key receives every event
_WILDCARD = "*"

# Handlers may be sync or async callables taking a ConversationEvent
Handler = Callable[[ConversationEvent], Any]


class EventBus:
    """Fan ConversationEvents out to sync or async handlers.

    Handlers subscribe to one EventType or to ``"*"``.  A failing handler
    is logged and never reaches the session that emitted the event.  The
    last *max_history* events are kept for inspection.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._recent: deque[ConversationEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        self._handlers.setdefault(key, []).append(handler)

    async def emit(self, event: ConversationEvent) -> None:
        self._recent.append(event)
        targets = self._handlers.get(event.type.value, []) + self._handlers.get(_WILDCARD, [])
        if targets:
            await asyncio.gather(
                *(self._deliver(h, event) for h in targets),
                return_exceptions=True,
            )

    @property
    def history(self) -> list[ConversationEvent]:
        """Copy of the retained events, oldest first."""
        return list(self._recent)

    @staticmethod
    async def _deliver(handler: Handler, event: ConversationEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Handler %s failed on %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
