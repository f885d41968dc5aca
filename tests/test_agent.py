"""Tests for the turn loop: rounds, tool dispatch, masking, rollback."""

from types import SimpleNamespace

import pytest

from conduit_agent.agent import (
    INTERRUPTED_SUFFIX,
    MAX_ROUNDS_MESSAGE,
    AgentOrchestrator,
    StreamCallbacks,
    TurnOptions,
)
from conduit_agent.cancellation import CancellationToken
from conduit_agent.config import ModelCapabilities
from conduit_agent.errors import StreamCancelledError, TransportError
from conduit_agent.messages import ChatMessage, ChatResponse, StreamChunk, ToolCall, Usage
from conduit_agent.mode import ModeState
from conduit_agent.prompts import render_prefill
from conduit_agent.session import SUMMARY_PREFIX, Session
from conduit_agent.tools.executor import ToolExecutor, ToolResult
from conduit_agent.tools.handler import ToolCallHandler


def text_round(text, usage=None, reasoning=""):
    chunks = []
    if reasoning:
        chunks.append(StreamChunk(reasoning=reasoning))
    chunks.append(StreamChunk(content=text))
    chunks.append(StreamChunk(finish_reason="stop", usage=usage))
    return chunks


def tool_round(*calls, content="", usage=None):
    chunks = [StreamChunk(content=content)] if content else []
    chunks.append(StreamChunk(tool_calls=tuple(calls), finish_reason="tool_calls", usage=usage))
    return chunks


class ScriptedClient:
    """Replays canned rounds; the last one repeats once the script runs out."""

    supports_streaming = True

    def __init__(self, *rounds):
        self.rounds = list(rounds)
        self.calls = []

    def _next(self, messages, tools, options):
        self.calls.append(SimpleNamespace(messages=list(messages), tools=tools, options=options))
        step = self.rounds.pop(0) if len(self.rounds) > 1 else self.rounds[0]
        if isinstance(step, Exception):
            raise step
        return step

    def stream_chat(self, messages, tools=None, options=None):
        yield from self._next(messages, tools, options)

    def chat(self, messages, tools=None, options=None):
        return self._next(messages, tools, options)


class BlockingOnlyClient(ScriptedClient):
    supports_streaming = False


class RecordingExecutor:
    def __init__(self):
        self.calls = []

    def __call__(self, tool, action, args, cwd, timeout):
        self.calls.append((tool.id, action.name, args))
        return ToolResult(True, output=f"{tool.id}:{action.name} ok")


@pytest.fixture
def build_agent(catalog, match_context, tmp_path):
    def _build(client, capabilities=ModelCapabilities(), execute=None, mode_state=None, **kwargs):
        mode_state = mode_state or ModeState()
        execute = execute or RecordingExecutor()
        handler = ToolCallHandler(catalog, execute, str(tmp_path))
        return AgentOrchestrator(
            client, Session(context_window=100_000), catalog, handler, match_context,
            mode_state=mode_state, capabilities=capabilities, **kwargs,
        )
    return _build


class Events:
    def __init__(self):
        self.chunks = []
        self.ends = []
        self.tool_calls = []
        self.tool_results = []
        self.mode_changes = []
        self.started = 0

    def callbacks(self):
        def on_start():
            self.started += 1
        return StreamCallbacks(
            on_start=on_start,
            on_chunk=lambda c: self.chunks.append(c.content),
            on_end=lambda c: self.ends.append(c.content),
            on_tool_call=self.tool_calls.append,
            on_tool_result=self.tool_results.append,
            on_mode_change=self.mode_changes.append,
        )


class TestTurnLoop:

    def test_tool_round_then_answer(self, build_agent):
        commit = ToolCall("call_1", "a-c-git_commit", '{"message": "wip"}')
        client = ScriptedClient(
            tool_round(commit, content="Committing.", usage=Usage(200, 12)),
            text_round("Done.", usage=Usage(260, 4)),
        )
        executor = RecordingExecutor()
        agent = build_agent(client, execute=executor)
        events = Events()

        reply = agent.stream_message("commit my work", callbacks=events.callbacks())

        assert reply == "Committing.\nDone."
        history = agent.get_history()
        assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
        assert history[1].tool_calls == (commit,)
        assert history[2].tool_call_id == "call_1"
        assert history[2].content.endswith("a-c-git:commit ok")
        assert history[3].content == "Done."
        assert executor.calls == [("a-c-git", "commit", {"message": "wip"})]

        assert events.started == 1
        assert events.chunks == ["Committing.", "Committing.\nDone."]
        assert events.ends == ["Committing.\nDone."]
        assert events.tool_calls == [commit]
        assert [r.tool_call_id for r in events.tool_results] == ["call_1"]

        # Second request carries the committed assistant and tool messages.
        second = client.calls[1].messages
        assert [m.role for m in second] == ["system", "user", "assistant", "tool"]
        assert agent.session.get_used_tokens() == 264

    def test_system_prompt_installed_once(self, build_agent):
        client = ScriptedClient(text_round("a"), text_round("b"))
        agent = build_agent(client)
        agent.stream_message("one")
        prompt = agent.session.system_prompt
        agent.stream_message("two")
        assert agent.session.system_prompt == prompt
        assert "Mode: ACTION" in prompt
        assert [m.role for m in client.calls[1].messages] == ["system", "user", "assistant", "user"]

    def test_round_limit(self, build_agent):
        call = ToolCall("c", "a-c-git_status", "")
        client = ScriptedClient(tool_round(call))
        agent = build_agent(client, max_tool_call_rounds=3)
        events = Events()

        reply = agent.stream_message("loop forever", callbacks=events.callbacks())

        assert reply == MAX_ROUNDS_MESSAGE
        assert len(client.calls) == 3
        assert events.ends == [MAX_ROUNDS_MESSAGE]
        roles = [m.role for m in agent.get_history()]
        assert roles == ["user"] + ["assistant", "tool"] * 3

    def test_reasoning_is_stored_cumulatively(self, build_agent):
        call = ToolCall("c1", "a-c-file_list", "{}")
        client = ScriptedClient(
            [StreamChunk(reasoning="look first. "), *tool_round(call)],
            text_round("Listed.", reasoning="now answer."),
        )
        agent = build_agent(client)
        agent.stream_message("what files are here")
        history = agent.get_history()
        assert history[1].reasoning_content == "look first. "
        assert history[3].reasoning_content == "look first. now answer."

    def test_tool_errors_are_fed_back(self, build_agent):
        bad = ToolCall("c1", "a-nope_run", "{}")
        client = ScriptedClient(tool_round(bad), text_round("Sorry."))
        agent = build_agent(client)
        agent.stream_message("do it")
        tool_msg = agent.get_history()[2]
        assert 'Error: Tool "a-nope" not found' in tool_msg.content

    def test_non_streaming_client(self, build_agent):
        client = BlockingOnlyClient(
            ChatResponse(ChatMessage.assistant("", None, [ToolCall("c1", "a-c-git_status", "")]),
                         finish_reason="tool_calls"),
            ChatResponse(ChatMessage.assistant("Clean tree."), usage=Usage(50, 5)),
        )
        agent = build_agent(client)
        events = Events()
        assert agent.streaming is False
        reply = agent.stream_message("status?", callbacks=events.callbacks())
        assert reply == "Clean tree."
        assert events.chunks == ["Clean tree."]
        assert [m.role for m in agent.get_history()] == ["user", "assistant", "tool", "assistant"]

    def test_send_message_never_streams(self, build_agent):
        client = ScriptedClient(ChatResponse(ChatMessage.assistant("blocking")))
        agent = build_agent(client)
        assert agent.send_message("hi") == "blocking"


class TestFailure:

    def test_transport_error_rolls_back(self, build_agent):
        client = ScriptedClient(text_round("first"), TransportError("HTTP 502: bad gateway", status_code=502))
        agent = build_agent(client)
        agent.stream_message("hello")
        before = agent.session.get_messages()
        tokens = agent.session.get_used_tokens()

        with pytest.raises(TransportError):
            agent.stream_message("again")

        assert agent.session.get_messages() == before
        assert agent.session.get_used_tokens() == tokens

    def test_failure_mid_turn_discards_committed_rounds(self, build_agent):
        client = ScriptedClient(
            tool_round(ToolCall("c1", "a-c-git_status", "")),
            TransportError("connection reset"),
        )
        agent = build_agent(client)
        with pytest.raises(TransportError):
            agent.stream_message("status")
        assert agent.get_history() == []
        assert agent.session.system_prompt is None

    def test_prompt_reinstalled_after_rollback(self, build_agent):
        client = ScriptedClient(TransportError("down"), text_round("up"))
        agent = build_agent(client)
        with pytest.raises(TransportError):
            agent.stream_message("first")
        agent.stream_message("second")
        assert client.calls[1].messages[0].role == "system"

    def test_cancellation_keeps_partial_state(self, build_agent):
        token = CancellationToken()
        client = ScriptedClient([
            StreamChunk(content="Half an ans"),
            StreamChunk(content="wer"),
            StreamChunk(finish_reason="stop"),
        ])
        agent = build_agent(client)
        seen = []

        def on_chunk(content):
            seen.append(content.content)
            token.cancel("Stopped by user")

        with pytest.raises(StreamCancelledError):
            agent.stream_message("explain", callbacks=StreamCallbacks(on_chunk=on_chunk),
                                 options=TurnOptions(cancel_token=token))

        assert [m.role for m in agent.get_history()] == ["user"]
        agent.save_partial_response(seen[-1])
        history = agent.get_history()
        assert history[-1].content == "Half an ans" + INTERRUPTED_SUFFIX

    def test_save_partial_repairs_unanswered_calls(self, build_agent):
        agent = build_agent(ScriptedClient(text_round("x")))
        agent.session.add_user_message("go")
        agent.session.add_assistant_message(ChatMessage.assistant("", None, [ToolCall("c1", "a-c-git_status")]))
        agent.save_partial_response("   ")
        assert [m.role for m in agent.get_history()] == ["user"]


class TestMasking:

    def test_dynamic_fallback_filters_tools(self, build_agent, catalog):
        client = ScriptedClient(text_round("ok"), text_round("ok"))
        agent = build_agent(client)
        agent.stream_message("hello")
        agent.stream_message("start the docker container")

        first = {t["function"]["name"] for t in client.calls[0].tools}
        second = {t["function"]["name"] for t in client.calls[1].tools}
        assert "a-c-file_read" in first
        assert "a-docker_run" not in first
        assert "a-docker_run" in second
        assert client.calls[0].options.tool_choice_names is None

    def test_tool_choice_keeps_full_tool_list(self, build_agent, catalog):
        client = ScriptedClient(text_round("ok"))
        agent = build_agent(client, ModelCapabilities(supports_tool_choice=True))
        agent.stream_message("hello")

        call = client.calls[0]
        assert len(call.tools) == len(catalog.to_openai_tools())
        assert "a-c-git_status" in call.options.tool_choice_names
        assert "a-docker_run" not in call.options.tool_choice_names

    def test_prefill_is_request_only(self, build_agent):
        client = ScriptedClient(text_round("ok"))
        agent = build_agent(client, ModelCapabilities(supports_prefill=True))
        agent.stream_message("hello")

        sent = client.calls[0].messages
        assert sent[-1].role == "assistant"
        assert sent[-1].content == render_prefill("a-c-")
        assert all(m.content != render_prefill("a-c-") for m in agent.get_history())

    def test_no_tool_support(self, build_agent):
        client = ScriptedClient(text_round("ok"))
        agent = build_agent(client, ModelCapabilities(supports_tools=False))
        agent.stream_message("hello")
        assert client.calls[0].tools is None

    def test_plan_mode_snapshot_from_options(self, build_agent):
        client = ScriptedClient(text_round("ok"))
        agent = build_agent(client, ModelCapabilities(supports_tool_choice=True))
        agent.stream_message("design it", options=TurnOptions(plan_mode=True))
        assert client.calls[0].options.tool_choice_names == ("plan_read", "plan_write", "plan_exit")
        assert agent.mode_state.plan_mode is False


class TestModeSwitch:

    def test_enter_plan_mid_turn(self, build_agent, tmp_path):
        mode_state = ModeState()
        executor = ToolExecutor(mode_state, platform="linux")
        client = ScriptedClient(
            tool_round(ToolCall("c1", "a-c-enterplan_enter", '{"reason": "large refactor"}')),
            text_round("Planning."),
        )
        agent = build_agent(client, ModelCapabilities(supports_tool_choice=True),
                            execute=executor, mode_state=mode_state)
        events = Events()

        reply = agent.stream_message("refactor the whole app", callbacks=events.callbacks())

        assert reply == "Planning."
        assert mode_state.plan_mode is True
        assert events.mode_changes == [True]
        assert "Mode: PLAN" in agent.session.system_prompt
        first, second = client.calls
        assert "a-c-enterplan_enter" in first.options.tool_choice_names
        assert second.options.tool_choice_names == ("plan_read", "plan_write", "plan_exit")
        assert second.tools == first.tools
        assert "Mode: PLAN" in second.messages[0].content

    def test_next_turn_uses_new_mode_prompt(self, build_agent):
        mode_state = ModeState()
        client = ScriptedClient(text_round("a"), text_round("b"))
        agent = build_agent(client, mode_state=mode_state)
        agent.stream_message("one")
        mode_state.set_plan_mode(True)
        agent.stream_message("two")
        assert "Mode: PLAN" in client.calls[1].messages[0].content


class TestSessionManagement:

    def test_compact(self, build_agent):
        client = ScriptedClient(
            text_round("first answer"),
            ChatResponse(ChatMessage.assistant("  User asked a question; answered.  ")),
        )
        agent = build_agent(client)
        agent.stream_message("first question")

        assert agent.compact() is True
        history = agent.get_history()
        assert len(history) == 1
        assert history[0].content == SUMMARY_PREFIX + "User asked a question; answered."
        summarize_request = client.calls[1]
        assert summarize_request.tools is None
        assert summarize_request.messages[-1].role == "user"

    def test_compact_needs_history(self, build_agent):
        client = ScriptedClient(ChatResponse(ChatMessage.assistant("summary")))
        agent = build_agent(client)
        agent.session.add_user_message("only one")
        assert agent.compact() is False
        assert client.calls == []

    def test_empty_summary_keeps_history(self, build_agent):
        client = ScriptedClient(text_round("answer"), ChatResponse(ChatMessage.assistant("   ")))
        agent = build_agent(client)
        agent.stream_message("question")
        assert agent.compact() is False
        assert len(agent.get_history()) == 2

    def test_restore_session_repairs_and_reinstalls_prompt(self, build_agent):
        client = ScriptedClient(text_round("resumed"))
        agent = build_agent(client)
        state = {
            "messages": [
                {"role": "user", "content": "earlier"},
                {"role": "assistant", "content": "", "tool_calls": [
                    {"id": "c1", "name": "a-c-git_status", "arguments": ""}]},
            ],
            "systemPrompt": "stale prompt",
        }
        assert agent.restore_session(state) == 1
        agent.stream_message("continue")
        sent = client.calls[0].messages
        assert sent[0].content != "stale prompt"
        assert [m.role for m in sent] == ["system", "user", "user"]

    def test_status_and_clear(self, build_agent):
        agent = build_agent(ScriptedClient(text_round("hi", usage=Usage(40, 2))))
        agent.stream_message("hello")
        assert agent.get_status().used_tokens == 42
        agent.clear_history()
        assert agent.get_history() == []
        assert agent.should_compact().real_message_count == 0
