"""Conversation core for Conduit."""

from conduit.core.cancellation import CancellationToken
from conduit.core.reasoner import ActionType, Reasoner, ReasonerDecision
from conduit.core.session import ChatSession, SessionStatus

__all__ = [
    "ActionType",
    "CancellationToken",
    "ChatSession",
    "Reasoner",
    "ReasonerDecision",
    "SessionStatus",
]
