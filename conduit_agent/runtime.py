"""Wires config, tools, client, session and store into one running agent."""

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .agent import AgentOrchestrator, StreamCallbacks, TurnOptions
from .cancellation import CancellationToken
from .config import SESSIONS_DIR, Config
from .context import MatchContext, load_project_instructions
from .errors import StreamCancelledError
from .logger import get_logger
from .message_queue import QueuedMessage
from .messages import StreamContent
from .mode import ModeState
from .providers import create_client
from .session import Session
from .session_store import SessionInfo, SessionStore
from .tools.catalog import ToolCatalog
from .tools.discovery import discover_tools
from .tools.executor import ToolExecutor
from .tools.handler import ToolCallHandler

_log = get_logger(__name__)


@dataclass
class Runtime:
    config: Config
    context: MatchContext
    catalog: ToolCatalog
    mode_state: ModeState
    agent: AgentOrchestrator
    store: SessionStore
    session_id: str

    def save(self) -> bool:
        return self.store.save_session(self.agent.session, self.session_id)

    def switch_session(self, session_id: str) -> bool:
        state = self.store.load_state(session_id)
        if state is None:
            return False
        self.save()
        removed = self.agent.restore_session(state)
        if removed:
            _log.info("Dropped %d broken message(s) from session %s", removed, session_id)
        self.store.set_active_session_id(session_id)
        self.session_id = session_id
        return True

    def new_session(self, name: Optional[str] = None) -> SessionInfo:
        self.save()
        info = self.store.create_session(name)
        self.store.set_active_session_id(info.id)
        self.agent.clear_history()
        self.session_id = info.id
        return info

    def switch_model(self, name: str) -> bool:
        if not self.config.set_active_model(name):
            return False
        preset = self.config.get_active_preset()
        self.agent.client = create_client(preset, self.config)
        self.agent.capabilities = preset.capabilities()
        self.agent.session.update_context_window(preset.context_window)
        self.store.model_id = name
        return True

    def make_processor(self, hooks: Optional[StreamCallbacks] = None
                       ) -> Callable[[QueuedMessage, StreamCallbacks, CancellationToken], str]:
        """Queue processor running one turn per message.

        ``hooks`` supplies tool and mode callbacks; stream callbacks come
        from the queue.
        """
        hooks = hooks or StreamCallbacks()

        def process(message: QueuedMessage, callbacks: StreamCallbacks, token: CancellationToken) -> str:
            streamed = StreamContent()

            def on_chunk(content: StreamContent) -> None:
                nonlocal streamed
                streamed = content
                if callbacks.on_chunk:
                    callbacks.on_chunk(content)

            merged = dataclasses.replace(
                callbacks,
                on_chunk=on_chunk,
                on_tool_call=hooks.on_tool_call,
                on_tool_result=hooks.on_tool_result,
                on_mode_change=hooks.on_mode_change,
            )
            options = TurnOptions(cancel_token=token, plan_mode=message.plan_mode)
            try:
                return self.agent.stream_message(message.content, callbacks=merged, options=options)
            except StreamCancelledError:
                # Still on the worker thread: no tool result can land after this.
                self.agent.save_partial_response(streamed.content)
                raise

        return process


def build_runtime(config: Config, ask_user: Optional[Callable[[str], str]] = None,
                  sessions_dir: Path = SESSIONS_DIR) -> Runtime:
    project_root = Path(config.project_root or ".").resolve()
    context = MatchContext.for_directory(project_root)
    catalog = discover_tools(context.platform)
    mode_state = ModeState(config.plan_mode)
    preset = config.get_active_preset()

    session = Session(
        context_window=preset.context_window,
        reserve_ratio=config.reserve_ratio,
        near_limit_threshold=config.compact_threshold,
        full_threshold=config.full_threshold,
    )
    executor = ToolExecutor(mode_state, ask_user=ask_user, platform=context.platform)
    handler = ToolCallHandler(catalog, executor, str(project_root), timeout=config.tool_timeout)
    agent = AgentOrchestrator(
        create_client(preset, config),
        session,
        catalog,
        handler,
        context,
        mode_state=mode_state,
        capabilities=preset.capabilities(),
        max_tool_call_rounds=config.max_tool_call_rounds,
        context_aware=config.context_aware,
        project_instructions=load_project_instructions(project_root),
    )

    store = SessionStore(sessions_dir, model_id=config.active_model)
    info = store.initialize()
    state = store.load_state(info.id)
    if state is not None:
        agent.restore_session(state)
    _log.info("Runtime ready: %d tools, project type %s", len(catalog), context.project_type)
    return Runtime(config, context, catalog, mode_state, agent, store, info.id)
