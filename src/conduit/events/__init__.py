"""Event bus for Conduit."""

from conduit.events.bus import EventBus, Handler

__all__ = ["EventBus", "Handler"]
