"""Tests for Conduit shared types."""

import json

import pytest

from conduit.types import (
    MAX_TOOL_CALL_INDEX,
    ConversationEvent,
    EventType,
    FinishReason,
    GenerationChunk,
    GenerationResult,
    Message,
    MessageMetadata,
    PartialToolCall,
    Role,
    ToolCall,
    ToolOutput,
    ToolParameter,
    UsageStats,
)


class TestPartialToolCall:
    @pytest.mark.parametrize("index", range(0, MAX_TOOL_CALL_INDEX + 1))
    def test_valid_indices(self, index):
        call = PartialToolCall(id="toolu_1", name="search", index=index)
        assert call.index == index
        assert call.arguments_fragment == ""

    @pytest.mark.parametrize("index", [-1, MAX_TOOL_CALL_INDEX + 1, 10_000])
    def test_invalid_indices(self, index):
        with pytest.raises(ValueError, match="index"):
            PartialToolCall(id="toolu_1", name="search", index=index)

    def test_empty_id(self):
        with pytest.raises(ValueError, match="id"):
            PartialToolCall(id="", name="search", index=0)

    def test_empty_name(self):
        with pytest.raises(ValueError, match="name"):
            PartialToolCall(id="toolu_1", name="", index=0)


class TestToolCall:
    def test_from_json(self):
        tc = ToolCall.from_json("toolu_1", "search", '{"q": "python"}')
        assert tc.arguments == {"q": "python"}
        assert tc.raw_arguments == '{"q": "python"}'
        assert tc.arguments_json == '{"q": "python"}'

    def test_from_json_rejects_non_object(self):
        with pytest.raises(ValueError, match="JSON object"):
            ToolCall.from_json("toolu_1", "search", "[1, 2]")

    def test_from_json_rejects_invalid(self):
        with pytest.raises(json.JSONDecodeError):
            ToolCall.from_json("toolu_1", "search", "{oops")

    def test_arguments_json_without_raw(self):
        tc = ToolCall(id="toolu_1", name="search", arguments={"q": 1})
        assert json.loads(tc.arguments_json) == {"q": 1}


class TestToolParameter:
    def test_defaults(self):
        p = ToolParameter(name="path", type="string", description="File path")
        assert p.required is True
        assert p.default is None
        assert p.enum is None


class TestGenerationTypes:
    def test_finish_reason_tool_call_request(self):
        assert FinishReason.TOOL_CALL.is_tool_call_request
        assert not FinishReason.STOP.is_tool_call_request

    def test_usage_total(self):
        assert UsageStats(prompt_tokens=10, completion_tokens=5).total_tokens == 15

    def test_completion_chunk(self):
        call = ToolCall(id="a", name="b")
        chunk = GenerationChunk.completion(FinishReason.TOOL_CALL, completed_tool_calls=(call,))
        assert chunk.is_complete
        assert chunk.text == ""
        assert chunk.token_count == 0
        assert chunk.completed_tool_calls == (call,)

    def test_completion_chunk_empty_calls_normalized(self):
        chunk = GenerationChunk.completion(FinishReason.STOP, completed_tool_calls=())
        assert chunk.completed_tool_calls is None

    def test_result_defaults(self):
        r = GenerationResult()
        assert r.text == ""
        assert r.finish_reason == FinishReason.STOP
        assert r.has_tool_calls is False


class TestMessage:
    def test_factories(self):
        assert Message.system("s").role == Role.SYSTEM
        assert Message.user("u").role == Role.USER
        assert Message.assistant("a").role == Role.ASSISTANT

    def test_unique_ids(self):
        assert Message.user("x").id != Message.user("x").id

    def test_text_from_parts(self):
        msg = Message(
            role=Role.USER,
            content=[
                {"type": "text", "text": "one"},
                {"type": "image", "source": {}},
                {"type": "text", "text": "two"},
            ],
        )
        assert msg.text == "one\ntwo"

    def test_tool_calls(self):
        call = ToolCall(id="toolu_1", name="search")
        msg = Message.assistant("", metadata=MessageMetadata(tool_calls=(call,)))
        assert msg.tool_calls == (call,)
        assert Message.assistant("plain").tool_calls == ()

    def test_tool_output(self):
        msg = Message.tool_output(ToolOutput(id="toolu_1", name="search", content="found"))
        assert msg.role == Role.TOOL
        assert msg.text == "found"
        assert msg.metadata.tool_call_id == "toolu_1"
        assert msg.metadata.tool_name == "search"


class TestConversationEvent:
    def test_creation(self):
        ev = ConversationEvent(type=EventType.TURN_STARTED, data={"text": "hi"})
        assert ev.data["text"] == "hi"
        assert ev.timestamp > 0

    def test_default_data(self):
        assert ConversationEvent(type=EventType.TURN_COMPLETED).data == {}
