"""Tests for the Reasoner."""

import pytest

from conduit.core.reasoner import ActionType, Reasoner
from conduit.errors import InvalidInputError
from conduit.types import ToolCall


def _call(name: str = "search") -> ToolCall:
    return ToolCall(id=f"toolu_{name}", name=name, arguments={})


class TestReasonerDecisions:
    def test_tool_calls_execute(self):
        reasoner = Reasoner()
        decision = reasoner.decide("let me check", [_call("shell")])
        assert decision.action == ActionType.EXECUTE_TOOLS
        assert [c.name for c in decision.tool_calls] == ["shell"]
        assert decision.response_text == "let me check"

    def test_text_response(self):
        decision = Reasoner().decide("Here's the answer: 42", [])
        assert decision.action == ActionType.RESPOND
        assert decision.tool_calls == []
        assert "42" in decision.response_text

    def test_tuple_of_calls_accepted(self):
        decision = Reasoner().decide("", (_call("a"), _call("b")))
        assert len(decision.tool_calls) == 2


class TestRoundLimit:
    def test_limit_reached(self):
        reasoner = Reasoner(max_tool_call_rounds=2)

        for _ in range(2):
            assert reasoner.decide("", [_call()]).action == ActionType.EXECUTE_TOOLS
            reasoner.complete_round()

        with pytest.raises(InvalidInputError, match="max_tool_call_rounds"):
            reasoner.decide("", [_call()])

    def test_text_allowed_after_limit(self):
        reasoner = Reasoner(max_tool_call_rounds=1)
        reasoner.complete_round()
        assert reasoner.decide("done", []).action == ActionType.RESPOND

    def test_zero_rounds(self):
        with pytest.raises(InvalidInputError):
            Reasoner(max_tool_call_rounds=0).decide("", [_call()])

    def test_negative_clamped(self):
        assert Reasoner(max_tool_call_rounds=-5).max_rounds == 0
