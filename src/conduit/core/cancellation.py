"""Cooperative cancellation flag polled at loop checkpoints."""

from __future__ import annotations

import threading

from conduit.errors import GenerationCancelledError


class CancellationToken:
    """Thread-safe one-way cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise ``GenerationCancelledError`` once :meth:`cancel` was called."""
        if self._event.is_set():
            raise GenerationCancelledError()
