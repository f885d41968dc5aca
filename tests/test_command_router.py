import threading

import pytest

from conduit_agent.command_router import QUIT, _resolve_command, handle_command
from conduit_agent.config import Config
from conduit_agent.message_queue import MessageQueue, QueueCallbacks
from conduit_agent.messages import StreamChunk
from conduit_agent.runtime import build_runtime


class DummyConsole:
    def __init__(self):
        self.messages = []

    def print(self, *args, **kwargs):
        self.messages.append((args, kwargs))

    def input(self, prompt: str) -> str:
        self.messages.append(((prompt,), {}))
        return "n"

    def status(self, *args, **kwargs):
        return DummyStatus()

    def text(self) -> str:
        return "\n".join(str(arg) for args, _ in self.messages for arg in args)


class DummyStatus:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class ReplyClient:
    supports_streaming = True

    def __init__(self, text="ok"):
        self.text = text

    def stream_chat(self, messages, tools=None, options=None):
        yield StreamChunk(content=self.text)
        yield StreamChunk(finish_reason="stop")


class StallingClient:
    """Streams a fragment, then blocks until the turn is cancelled."""

    supports_streaming = True

    def __init__(self):
        self.streaming = threading.Event()

    def stream_chat(self, messages, tools=None, options=None):
        yield StreamChunk(content="half an ans")
        self.streaming.set()
        options.cancel_token.wait(5)
        options.cancel_token.raise_if_cancelled()
        yield StreamChunk(finish_reason="stop")


@pytest.fixture
def console():
    return DummyConsole()


@pytest.fixture
def runtime(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    config = Config(models=Config.get_default_presets(), project_root=str(project))
    return build_runtime(config, sessions_dir=tmp_path / "sessions")


class TestResolve:

    def test_exact_alias_and_prefix(self):
        assert _resolve_command("/plan") == "/plan"
        assert _resolve_command("/q") == "/exit"
        assert _resolve_command("/comp") == "/compact"
        assert _resolve_command("/s") == "/s"


class TestCommands:

    def test_unknown_command(self, console, runtime):
        assert handle_command("/frobnicate", console=console, runtime=runtime) == ""
        assert "Unknown" in console.text()

    def test_exit_returns_quit(self, console, runtime):
        assert handle_command("/exit", console=console, runtime=runtime) == QUIT

    def test_plan_toggle_and_explicit(self, console, runtime):
        handle_command("/plan", console=console, runtime=runtime)
        assert runtime.mode_state.plan_mode is True
        handle_command("/plan off", console=console, runtime=runtime)
        assert runtime.mode_state.plan_mode is False
        handle_command("/plan on", console=console, runtime=runtime)
        assert runtime.mode_state.plan_mode is True

    def test_clear_history(self, console, runtime):
        runtime.agent.session.add_user_message("hello")
        handle_command("/clear", console=console, runtime=runtime)
        assert runtime.agent.get_history() == []

    def test_new_session_becomes_active(self, console, runtime):
        old_id = runtime.session_id
        runtime.agent.session.add_user_message("in old session")
        handle_command("/new Refactor", console=console, runtime=runtime)

        assert runtime.session_id != old_id
        assert runtime.store.get_active_session_id() == runtime.session_id
        assert runtime.store.get_session_by_id(runtime.session_id).name == "Refactor"
        assert runtime.agent.get_history() == []
        assert runtime.store.get_session_by_id(old_id).message_count == 1

    def test_switch_back_restores_history(self, console, runtime):
        old_id = runtime.session_id
        runtime.agent.session.add_user_message("remember me")
        handle_command("/new", console=console, runtime=runtime)
        handle_command(f"/sessions switch {old_id[:8]}", console=console, runtime=runtime)

        assert runtime.session_id == old_id
        assert [m.content for m in runtime.agent.get_history()] == ["remember me"]

    def test_delete_active_refused(self, console, runtime):
        handle_command(f"/sessions delete {runtime.session_id}", console=console, runtime=runtime)
        assert runtime.store.get_session_by_id(runtime.session_id) is not None
        assert "cannot be deleted" in console.text()

    def test_model_switch_rebuilds_client(self, console, runtime):
        handle_command("/model claude-sonnet", console=console, runtime=runtime)
        assert runtime.config.active_model == "claude-sonnet"
        assert runtime.agent.client.protocol == "anthropic"
        assert runtime.agent.capabilities.supports_tool_choice is True
        assert runtime.agent.session.context_window == 200000

        handle_command("/model nope", console=console, runtime=runtime)
        assert runtime.config.active_model == "claude-sonnet"

    def test_compact_with_nothing_to_do(self, console, runtime):
        handle_command("/compact", console=console, runtime=runtime)
        assert "Nothing to compact" in console.text()

    def test_status_and_help(self, console, runtime):
        handle_command("/status", console=console, runtime=runtime)
        handle_command("/help", console=console, runtime=runtime)
        assert "tokens used" in console.text()
        assert "/sessions" in console.text()


def test_queue_processor_runs_turn_and_saves(runtime):
    runtime.agent.client = ReplyClient("hi there")
    queue = MessageQueue(runtime.make_processor())
    queue.enqueue("hello", plan_mode=False)
    assert queue.wait_until_idle(5)

    assert [m.role for m in runtime.agent.get_history()] == ["user", "assistant"]
    runtime.save()
    reloaded = runtime.store.load_session(runtime.session_id)
    assert [m.content for m in reloaded.get_history()] == ["hello", "hi there"]


def test_stopped_turn_keeps_partial_reply_from_worker(runtime):
    client = StallingClient()
    runtime.agent.client = client
    errors = []
    queue = MessageQueue(runtime.make_processor(), QueueCallbacks(
        on_message_error=lambda mid, e: errors.append(e)))
    queue.enqueue("explain", plan_mode=False)
    assert client.streaming.wait(5)

    queue.stop()
    assert queue.wait_until_idle(5)

    history = runtime.agent.get_history()
    assert [m.role for m in history] == ["user", "assistant"]
    assert history[-1].content == "half an ans\n\n[Response interrupted]"
    assert errors == []
