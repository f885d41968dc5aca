"""Tests for Session history, token accounting, repair and checkpoints."""

from conduit_agent.messages import ChatMessage, ToolCall, Usage
from conduit_agent.session import SUMMARY_PREFIX, Session, first_user_message


def _tool_call(call_id, name="a-c-file_read", arguments='{"path": "a.py"}'):
    return ToolCall(id=call_id, name=name, arguments=arguments)


class TestHistory:

    def test_system_prompt_is_first_and_not_in_history(self):
        session = Session()
        session.set_system_prompt("be brief")
        session.add_user_message("hi")

        messages = session.get_messages()
        assert [m.role for m in messages] == ["system", "user"]
        assert messages[0].content == "be brief"
        assert [m.role for m in session.get_history()] == ["user"]

    def test_add_message_with_system_role_replaces_prompt(self):
        session = Session()
        session.add_message(ChatMessage.system("first"))
        session.add_message(ChatMessage.system("second"))
        assert session.system_prompt == "second"
        assert session.message_count == 0

    def test_clear_keeps_system_prompt(self):
        session = Session()
        session.set_system_prompt("prompt")
        session.add_user_message("hi")
        session.add_assistant_message(ChatMessage.assistant("hello"), Usage(10, 2))
        session.clear()
        assert session.message_count == 0
        assert session.system_prompt == "prompt"
        assert not session.has_actual_usage

    def test_first_user_message(self):
        session = Session()
        assert first_user_message(session) is None
        session.add_user_message("fix the build")
        session.add_assistant_message(ChatMessage.assistant("ok"))
        session.add_user_message("thanks")
        assert first_user_message(session) == "fix the build"


class TestTokenAccounting:

    def test_estimates_until_usage_is_reported(self):
        session = Session(context_window=1000)
        session.set_system_prompt("x" * 40)       # 10
        session.set_tools_token_estimate(25)
        session.add_user_message("y" * 9)          # ceil(9/4) = 3
        assert session.get_used_tokens() == 10 + 25 + 3

    def test_reported_usage_plus_trailing_estimates(self):
        session = Session(context_window=1000)
        session.set_system_prompt("x" * 400)
        session.add_user_message("hello")
        session.add_assistant_message(ChatMessage.assistant("world"), Usage(120, 30))
        assert session.get_used_tokens() == 150

        session.add_user_message("z" * 8)          # 2
        assert session.get_used_tokens() == 152

    def test_tool_calls_count_toward_estimate(self):
        session = Session()
        msg = ChatMessage.assistant("", None, [_tool_call("c1", "abcd", "12345678")])
        session.add_assistant_message(msg)
        assert session.get_used_tokens() == 1 + 2

    def test_status_thresholds(self):
        session = Session(context_window=100, near_limit_threshold=0.5, full_threshold=0.9)
        session.add_user_message("a" * 240)        # 60 tokens
        status = session.get_status()
        assert status.used_tokens == 60
        assert status.available_tokens == 40
        assert status.usage_percent == 60.0
        assert status.is_near_limit is True
        assert status.is_full is False
        assert status.message_count == 1

    def test_available_tokens_respects_reserve_and_may_go_negative(self):
        session = Session(context_window=100, reserve_ratio=0.2)
        session.add_user_message("a" * 400)        # 100 tokens
        assert session.get_available_tokens() == -20

    def test_update_context_window(self):
        session = Session(context_window=100)
        session.update_context_window(0)
        assert session.context_window == 1


class TestShouldCompact:

    def test_needs_more_than_one_real_message(self):
        session = Session(context_window=10)
        session.add_user_message("a" * 400)
        check = session.should_compact()
        assert check.is_context_full is True
        assert check.should_compact is False
        assert check.real_message_count == 1

    def test_incoming_tokens_are_projected(self):
        session = Session(context_window=100, near_limit_threshold=0.8)
        session.add_user_message("a" * 200)        # 50
        session.add_assistant_message(ChatMessage.assistant("b" * 40))  # 10
        assert session.should_compact().should_compact is False

        check = session.should_compact(estimated_incoming_tokens=25)
        assert check.should_compact is True
        assert check.usage_percent == 60.0
        assert check.projected_percent == 85.0

    def test_explicit_threshold_overrides_default(self):
        session = Session(context_window=100, near_limit_threshold=0.9)
        session.add_user_message("a" * 100)
        session.add_user_message("a" * 100)
        assert session.should_compact(threshold=0.4).should_compact is True


class TestCompaction:

    def test_compact_with_replaces_history(self):
        session = Session()
        session.set_system_prompt("prompt")
        session.add_user_message("one")
        session.add_assistant_message(ChatMessage.assistant("two"), Usage(50, 5))
        session.add_user_message("three")

        session.compact_with("  user wanted X; done  ")

        history = session.get_history()
        assert len(history) == 1
        assert history[0].role == "assistant"
        assert history[0].content == SUMMARY_PREFIX + "user wanted X; done"
        assert session.system_prompt == "prompt"
        assert not session.has_actual_usage
        assert session.real_message_count() == 0


class TestCheckpoint:

    def test_rollback_restores_exact_state(self):
        session = Session()
        session.set_system_prompt("before")
        session.add_user_message("hello")
        session.add_assistant_message(ChatMessage.assistant("hi"), Usage(40, 4))
        session.set_tools_token_estimate(7)
        before_messages = session.get_messages()
        before_tokens = session.get_used_tokens()

        cp = session.checkpoint()
        session.set_system_prompt("after")
        session.add_user_message("more")
        session.add_assistant_message(ChatMessage.assistant("reply"), Usage(90, 9))
        session.set_tools_token_estimate(300)

        session.rollback(cp)
        assert session.get_messages() == before_messages
        assert session.get_used_tokens() == before_tokens
        assert session.system_prompt == "before"

    def test_rollback_after_clear(self):
        session = Session()
        session.add_user_message("keep me")
        cp = session.checkpoint()
        session.clear()
        session.rollback(cp)
        assert [m.content for m in session.get_history()] == ["keep me"]


class TestRepair:

    def test_valid_history_is_untouched(self):
        session = Session()
        session.add_user_message("read it")
        session.add_assistant_message(ChatMessage.assistant("", None, [_tool_call("c1")]))
        session.add_tool_message("c1", "contents")
        session.add_assistant_message(ChatMessage.assistant("done"))

        assert session.validate_messages().is_valid
        assert session.repair_messages() == 0
        assert session.message_count == 4

    def test_orphan_tool_result_dropped(self):
        session = Session()
        session.add_user_message("hi")
        session.add_tool_message("ghost", "nobody asked")
        session.add_assistant_message(ChatMessage.assistant("hello"))

        validation = session.validate_messages()
        assert validation.orphan_tool_results == (1,)
        assert session.repair_messages() == 1
        assert [m.role for m in session.get_history()] == ["user", "assistant"]

    def test_unanswered_calls_stripped_answered_kept(self):
        session = Session()
        session.add_user_message("two reads")
        session.add_assistant_message(ChatMessage.assistant(
            "reading", None, [_tool_call("c1"), _tool_call("c2")]))
        session.add_tool_message("c1", "first")

        assert session.validate_messages().unanswered_tool_calls == ("c2",)
        assert session.repair_messages() == 0

        history = session.get_history()
        assert [tc.id for tc in history[1].tool_calls] == ["c1"]
        assert history[2].tool_call_id == "c1"
        assert session.validate_messages().is_valid

    def test_empty_assistant_with_only_unanswered_calls_removed(self):
        session = Session()
        session.add_user_message("go")
        session.add_assistant_message(ChatMessage.assistant("", None, [_tool_call("c1")]))

        assert session.repair_messages() == 1
        assert [m.role for m in session.get_history()] == ["user"]

    def test_tool_result_after_intervening_user_is_orphan(self):
        session = Session()
        session.add_assistant_message(ChatMessage.assistant("", None, [_tool_call("c1")]))
        session.add_user_message("interrupt")
        session.add_tool_message("c1", "late")

        session.repair_messages()
        assert [m.role for m in session.get_history()] == ["user"]

    def test_repair_is_idempotent(self):
        session = Session()
        session.add_user_message("go")
        session.add_assistant_message(ChatMessage.assistant(
            "text", None, [_tool_call("c1"), _tool_call("c2")]))
        session.add_tool_message("c2", "second")
        session.add_tool_message("c9", "orphan")

        session.repair_messages()
        once = session.get_history()
        assert session.repair_messages() == 0
        assert session.get_history() == once

    def test_repair_resets_reported_usage(self):
        session = Session()
        session.add_user_message("go")
        session.add_assistant_message(ChatMessage.assistant("", None, [_tool_call("c1")]), Usage(500, 50))
        assert session.has_actual_usage
        session.repair_messages()
        assert not session.has_actual_usage


class TestPersistence:

    def test_state_round_trip(self):
        session = Session(context_window=2048)
        session.set_system_prompt("sys")
        session.add_user_message("list files")
        session.add_assistant_message(
            ChatMessage.assistant("", "thinking", [_tool_call("c1", "a-c-file_list", "{}")]),
            Usage(100, 20),
        )
        session.add_tool_message("c1", "a.py\nb.py")

        state = session.to_state()
        assert state["systemPrompt"] == "sys"
        assert state["tokenState"]["confirmedCount"] == 2
        assert state["tokenState"]["contextWindow"] == 2048

        restored = Session.from_state(state, context_window=2048)
        assert restored.get_messages() == session.get_messages()
        assert restored.get_used_tokens() == session.get_used_tokens()

    def test_load_state_ignores_bad_entries_and_confirmed_count(self):
        session = Session()
        session.load_state({
            "messages": [
                "not a dict",
                {"role": "system", "content": "dropped"},
                {"role": "user", "content": "hi", "timestamp": 1700000000.0},
            ],
            "tokenState": {"actualPromptTokens": 10, "confirmedCount": 5},
        })
        assert [m.content for m in session.get_history()] == ["hi"]
        assert session.system_prompt is None
        assert not session.has_actual_usage
