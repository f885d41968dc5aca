"""Tests for the Anthropic client: message translation and event stream."""

import json

import pytest

from conduit_agent.errors import ProtocolError
from conduit_agent.messages import ChatMessage, ToolCall
from conduit_agent.providers.anthropic_client import (
    AnthropicClient,
    convert_messages,
    convert_tools,
    map_stop_reason,
)
from conduit_agent.providers.base import RequestOptions


def _event(name, payload):
    payload = dict(payload, type=name)
    return [f"event: {name}", "data: " + json.dumps(payload), ""]


def _stream(*events):
    lines = []
    for name, payload in events:
        lines.extend(_event(name, payload))
    return lines


@pytest.fixture
def client():
    return AnthropicClient("claude-sonnet-4-20250514", api_key="sk-ant", max_tokens=1024)


class TestConvertMessages:

    def test_system_moves_to_top_level(self):
        system, messages = convert_messages([
            ChatMessage.system("be terse"),
            ChatMessage.user("hi"),
        ])
        assert system == "be terse"
        assert messages == [{"role": "user", "content": "hi"}]

    def test_tool_results_collapse_into_one_user_message(self):
        _, messages = convert_messages([
            ChatMessage.user("read both"),
            ChatMessage.assistant("ok", "plan it", [
                ToolCall("t1", "a-c-file_read", '{"path": "a"}'),
                ToolCall("t2", "a-c-file_read", "not json"),
            ]),
            ChatMessage.tool("t1", "A"),
            ChatMessage.tool("t2", "B"),
            ChatMessage.assistant("done"),
        ])
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]

        blocks = messages[1]["content"]
        assert [b["type"] for b in blocks] == ["thinking", "text", "tool_use", "tool_use"]
        assert blocks[2]["input"] == {"path": "a"}
        assert blocks[3]["input"] == {}

        results = messages[2]["content"]
        assert [(r["tool_use_id"], r["content"]) for r in results] == [("t1", "A"), ("t2", "B")]
        assert messages[3] == {"role": "assistant", "content": "done"}

    def test_convert_tools(self):
        tools = convert_tools([{
            "type": "function",
            "function": {"name": "f", "description": "d", "parameters": {"type": "object", "properties": {"x": {}}}},
        }])
        assert tools == [{"name": "f", "description": "d",
                          "input_schema": {"type": "object", "properties": {"x": {}}}}]


class TestRequest:

    def test_build_request(self, client):
        tools = [{"type": "function", "function": {"name": "plan_read", "parameters": {}}}]
        body = client.build_request(
            [ChatMessage.system("sys"), ChatMessage.user("hi")],
            tools, RequestOptions(tool_choice_names=("plan_read",)), stream=True,
        )
        assert body["system"] == "sys"
        assert body["max_tokens"] == 1024
        assert body["stream"] is True
        assert body["tools"][0]["name"] == "plan_read"
        assert body["tool_choice"] == {"type": "auto"}
        assert "thinking" not in body

    def test_restricted_choice_never_forces_a_call(self, client):
        tools = [
            {"type": "function", "function": {"name": n, "parameters": {}}}
            for n in ("a-c-file_read", "a-c-bash_run", "a-docker_ps")
        ]
        body = client.build_request(
            [ChatMessage.user("hi")], tools,
            RequestOptions(tool_choice_names=("a-c-file_read", "a-c-bash_run")), stream=False,
        )
        assert body["tool_choice"] == {"type": "auto"}
        assert [t["name"] for t in body["tools"]] == ["a-c-file_read", "a-c-bash_run", "a-docker_ps"]

    def test_tool_choice_shapes(self, client):
        assert client.format_tool_choice(None) is None
        assert client.format_tool_choice(("a",)) == {"type": "auto"}
        assert client.format_tool_choice(("a", "b")) == {"type": "auto"}

    def test_thinking_parameters(self):
        client = AnthropicClient("m", thinking=True, thinking_budget=2048)
        assert client.format_tool_choice(("plan_read",)) == {"type": "auto"}
        body = client.build_request([ChatMessage.user("x")], None, RequestOptions(), stream=False)
        assert body["thinking"] == {"type": "enabled", "budget_tokens": 2048}

    def test_headers(self, client):
        headers = client.headers(stream=True)
        assert headers["x-api-key"] == "sk-ant"
        assert headers["anthropic-version"] == "2023-06-01"

    def test_field_order(self, client):
        data = client.encode(client.build_request(
            [ChatMessage.system("s"), ChatMessage.user("u")], None, RequestOptions(), stream=True))
        keys = list(json.loads(data))
        assert keys == ["model", "messages", "system", "max_tokens", "stream"]


class TestStreamParsing:

    def test_text_and_thinking(self, client):
        chunks = list(client.parse_stream(_stream(
            ("message_start", {"message": {"usage": {"input_tokens": 20, "output_tokens": 1}}}),
            ("content_block_start", {"index": 0, "content_block": {"type": "thinking", "thinking": ""}}),
            ("content_block_delta", {"index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}}),
            ("content_block_start", {"index": 1, "content_block": {"type": "text", "text": ""}}),
            ("content_block_delta", {"index": 1, "delta": {"type": "text_delta", "text": "Hi"}}),
            ("message_delta", {"delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 7}}),
            ("message_stop", {}),
        )))
        assert [c.reasoning for c in chunks if c.reasoning] == ["hmm"]
        assert [c.content for c in chunks if c.content] == ["Hi"]
        terminal = chunks[-1]
        assert terminal.finish_reason == "stop"
        assert terminal.usage.prompt_tokens == 20
        assert terminal.usage.completion_tokens == 7

    def test_tool_use_input_accumulates(self, client):
        chunks = list(client.parse_stream(_stream(
            ("content_block_start", {"index": 0, "content_block": {
                "type": "tool_use", "id": "toolu_1", "name": "a-c-git_commit", "input": {}}}),
            ("content_block_delta", {"index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"mess'}}),
            ("content_block_delta", {"index": 0, "delta": {"type": "input_json_delta", "partial_json": 'age": "x"}'}}),
            ("message_delta", {"delta": {"stop_reason": "tool_use"}}),
            ("message_stop", {}),
        )))
        terminal = chunks[-1]
        assert terminal.finish_reason == "tool_calls"
        assert terminal.tool_calls == (ToolCall("toolu_1", "a-c-git_commit", '{"message": "x"}'),)
        assert terminal.usage is None

    def test_tool_use_without_input_defaults_to_empty_object(self, client):
        chunks = list(client.parse_stream(_stream(
            ("content_block_start", {"index": 0, "content_block": {
                "type": "tool_use", "id": "toolu_2", "name": "plan_read", "input": {}}}),
            ("message_delta", {"delta": {"stop_reason": "tool_use"}}),
            ("message_stop", {}),
        )))
        assert chunks[-1].tool_calls[0].arguments == "{}"

    def test_error_event_raises(self, client):
        with pytest.raises(ProtocolError, match="Overloaded") as exc_info:
            list(client.parse_stream(_stream(
                ("error", {"error": {"type": "overloaded_error", "message": "Overloaded"}}),
            )))
        assert exc_info.value.error_type == "overloaded_error"

    def test_wrongly_shaped_events_skipped(self, client):
        chunks = list(client.parse_stream(_stream(
            ("message_start", {"message": "nope"}),
            ("content_block_start", {"index": "x", "content_block": {"type": "tool_use", "name": "bad"}}),
            ("content_block_start", {"index": 0, "content_block": "text"}),
            ("content_block_delta", {"index": "x", "delta": {"type": "text_delta", "text": "lost"}}),
            ("content_block_delta", {"index": 0, "delta": "garbage"}),
            ("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": ["no"]}}),
            ("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": "kept"}}),
            ("message_delta", {"delta": [], "usage": {"output_tokens": "many"}}),
            ("message_stop", {}),
        )))
        assert [c.content for c in chunks if c.content] == ["kept"]
        terminal = chunks[-1]
        assert terminal.finish_reason == "stop"
        assert terminal.tool_calls == ()
        assert terminal.usage is None

    def test_error_event_with_plain_message(self, client):
        with pytest.raises(ProtocolError, match="boom"):
            list(client.parse_stream(_stream(("error", {"error": "boom"}))))

    def test_eof_without_message_stop(self, client):
        chunks = list(client.parse_stream(_stream(
            ("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": "partial"}}),
        )))
        assert chunks[-1].finish_reason == "stop"


class TestParseResponse:

    def test_blocks_are_flattened(self, client):
        response = client.parse_response({
            "content": [
                {"type": "thinking", "thinking": "t"},
                {"type": "text", "text": "calling"},
                {"type": "tool_use", "id": "toolu_1", "name": "f", "input": {"b": 1, "a": 2}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 9, "output_tokens": 4},
        })
        assert response.content == "calling"
        assert response.message.reasoning_content == "t"
        assert response.tool_calls == (ToolCall("toolu_1", "f", '{"a": 2, "b": 1}'),)
        assert response.finish_reason == "tool_calls"
        assert response.usage.total_tokens == 13

    def test_error_payload(self, client):
        with pytest.raises(ProtocolError):
            client.parse_response({"type": "error", "error": {"type": "invalid_request_error", "message": "bad"}})


def test_map_stop_reason():
    assert map_stop_reason("end_turn") == "stop"
    assert map_stop_reason("max_tokens") == "length"
    assert map_stop_reason("tool_use") == "tool_calls"
    assert map_stop_reason(None) == "stop"
