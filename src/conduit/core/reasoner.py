"""Reasoner: decides what follows a generation within one turn.

Pure bookkeeping: it looks at the text and tool calls of a generation and
either ends the turn or asks for another tool round, enforcing the round
limit.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from conduit.errors import InvalidInputError
from conduit.types import ToolCall

_logger = logging.getLogger(__name__)


class ActionType(enum.Enum):
    """What the session should do after a generation."""

    EXECUTE_TOOLS = "execute_tools"  # run the tool calls, then generate again
    RESPOND = "respond"              # final text response, end the turn


@dataclass
class ReasonerDecision:
    action: ActionType
    tool_calls: list[ToolCall] = field(default_factory=list)
    response_text: str = ""


class Reasoner:
    """Tracks tool rounds for a single turn.

    Decision logic:
    1. No tool calls -> RESPOND
    2. Tool calls and fewer than ``max_tool_call_rounds`` completed rounds
       -> EXECUTE_TOOLS
    3. Tool calls with the limit reached -> ``InvalidInputError``
    """

    def __init__(self, max_tool_call_rounds: int = 8) -> None:
        self._max_rounds = max(0, max_tool_call_rounds)
        self._rounds = 0

    def decide(self, text: str, tool_calls: list[ToolCall] | tuple[ToolCall, ...]) -> ReasonerDecision:
        if not tool_calls:
            return ReasonerDecision(action=ActionType.RESPOND, response_text=text)

        if self._rounds >= self._max_rounds:
            _logger.warning("Tool-call round limit reached (%d)", self._max_rounds)
            raise InvalidInputError(
                f"Tool-call loop exceeded max_tool_call_rounds ({self._max_rounds})"
            )

        return ReasonerDecision(
            action=ActionType.EXECUTE_TOOLS,
            tool_calls=list(tool_calls),
            response_text=text,
        )

    def complete_round(self) -> None:
        """Record that a tool batch finished."""
        self._rounds += 1

    @property
    def rounds(self) -> int:
        return self._rounds

    @property
    def max_rounds(self) -> int:
        return self._max_rounds
