"""Turn loop: alternate between model replies and tool execution."""

from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cancellation import CancellationToken
from .config import ModelCapabilities
from .context import MatchContext
from .errors import StreamCancelledError
from .logger import get_logger
from .messages import (
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ChatMessage,
    StreamChunk,
    StreamContent,
    ToolCall,
    Usage,
)
from .mode import ModeState
from .prompts import SUMMARIZE_PROMPT, build_system_prompt, render_prefill
from .providers.base import ProtocolClient, RequestOptions
from .session import CompactCheck, Session, SessionStatus
from .tokenizer import estimate_tools_tokens
from .tool_mask import MaskMechanism, ToolMaskState, build_tool_mask
from .tools.catalog import ToolCatalog
from .tools.handler import ToolCallHandler, ToolCallResult

_log = get_logger(__name__)

MAX_ROUNDS_MESSAGE = "Maximum tool call rounds reached"
INTERRUPTED_SUFFIX = "\n\n[Response interrupted]"
DEFAULT_MAX_TOOL_CALL_ROUNDS = 40


@dataclass
class StreamCallbacks:
    """Optional hooks; ``on_chunk`` and ``on_end`` receive cumulative text."""
    on_start: Optional[Callable[[], None]] = None
    on_chunk: Optional[Callable[[StreamContent], None]] = None
    on_end: Optional[Callable[[StreamContent], None]] = None
    on_tool_call: Optional[Callable[[ToolCall], None]] = None
    on_tool_result: Optional[Callable[[ToolCallResult], None]] = None
    on_mode_change: Optional[Callable[[bool], None]] = None


@dataclass
class TurnOptions:
    cancel_token: Optional[CancellationToken] = None
    # Mode captured when the message was queued; None reads the live flag.
    plan_mode: Optional[bool] = None


@dataclass
class _RoundResult:
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    finish_reason: str = FINISH_STOP
    usage: Optional[Usage] = None


@dataclass
class _TurnState:
    mask: ToolMaskState
    plan_mode: bool
    token: Optional[CancellationToken]
    callbacks: StreamCallbacks
    total_content: str = ""
    reasoning: str = ""

    def snapshot(self, content: str = "") -> StreamContent:
        return StreamContent(content=self.total_content + content, reasoning=self.reasoning)


class AgentOrchestrator:
    """Owns one session and runs one turn at a time against it.

    The session is checkpointed before each turn. A failed turn rolls it
    back; a cancelled turn leaves it as is so the caller can keep the
    partial reply with :meth:`save_partial_response`.
    """

    def __init__(
        self,
        client: ProtocolClient,
        session: Session,
        catalog: ToolCatalog,
        tool_handler: ToolCallHandler,
        context: MatchContext,
        mode_state: Optional[ModeState] = None,
        capabilities: ModelCapabilities = ModelCapabilities(),
        max_tool_call_rounds: int = DEFAULT_MAX_TOOL_CALL_ROUNDS,
        context_aware: bool = True,
        project_instructions: Optional[str] = None,
    ):
        self.client = client
        self.session = session
        self.catalog = catalog
        self.tool_handler = tool_handler
        self.context = context
        self.mode_state = mode_state or ModeState()
        self.capabilities = capabilities
        self.max_tool_call_rounds = max(1, int(max_tool_call_rounds))
        self.context_aware = context_aware
        self.project_instructions = project_instructions
        self.context_injected = False
        self._prompt_plan_mode: Optional[bool] = None

    @property
    def streaming(self) -> bool:
        return bool(getattr(self.client, "supports_streaming", True)) and hasattr(self.client, "stream_chat")

    # ── turns ──

    def stream_message(self, user_message: str, context: Optional[MatchContext] = None,
                       callbacks: Optional[StreamCallbacks] = None,
                       options: Optional[TurnOptions] = None) -> str:
        """Run one user turn, streaming when the client supports it."""
        return self._run_turn(user_message, context, callbacks, options, streaming=self.streaming)

    def send_message(self, user_message: str, context: Optional[MatchContext] = None,
                     callbacks: Optional[StreamCallbacks] = None,
                     options: Optional[TurnOptions] = None) -> str:
        """Run one user turn with blocking requests only."""
        return self._run_turn(user_message, context, callbacks, options, streaming=False)

    def _run_turn(self, user_message: str, context: Optional[MatchContext],
                  callbacks: Optional[StreamCallbacks], options: Optional[TurnOptions],
                  streaming: bool) -> str:
        context = context or self.context
        callbacks = callbacks or StreamCallbacks()
        options = options or TurnOptions()
        token = options.cancel_token
        plan_mode = self.mode_state.plan_mode if options.plan_mode is None else options.plan_mode

        checkpoint = self.session.checkpoint()
        try:
            self._ensure_system_prompt(context, plan_mode)
            self.session.add_user_message(user_message)
            state = _TurnState(
                mask=self._build_mask(user_message, context, plan_mode),
                plan_mode=plan_mode,
                token=token,
                callbacks=callbacks,
            )
            if callbacks.on_start:
                callbacks.on_start()
            return self._round_loop(user_message, context, state, streaming)
        except StreamCancelledError:
            raise
        except Exception:
            self.session.rollback(checkpoint)
            self.context_injected = self.session.system_prompt is not None
            self._prompt_plan_mode = None
            raise

    def _round_loop(self, user_message: str, context: MatchContext,
                    state: _TurnState, streaming: bool) -> str:
        for round_index in range(self.max_tool_call_rounds):
            if state.token is not None:
                state.token.raise_if_cancelled()
            messages, tools, request_options = self._prepare_request(state)
            if streaming:
                result = self._stream_round(messages, tools, request_options, state)
            else:
                result = self._blocking_round(messages, tools, request_options, state)

            if result.finish_reason == FINISH_TOOL_CALLS and result.tool_calls:
                self.session.add_assistant_message(
                    ChatMessage.assistant(result.content, state.reasoning, result.tool_calls),
                    result.usage,
                )
                if result.content:
                    state.total_content += result.content + "\n"
                self._dispatch_tools(result.tool_calls, state)
                self._sync_plan_mode(user_message, context, state)
                continue

            self.session.add_assistant_message(
                ChatMessage.assistant(result.content, state.reasoning),
                result.usage,
            )
            final = state.snapshot(result.content)
            if state.callbacks.on_end:
                state.callbacks.on_end(final)
            return final.content

        _log.warning("Turn stopped after %d tool-call rounds", self.max_tool_call_rounds)
        if state.callbacks.on_end:
            state.callbacks.on_end(StreamContent(MAX_ROUNDS_MESSAGE, state.reasoning))
        return MAX_ROUNDS_MESSAGE

    def _stream_round(self, messages: List[ChatMessage], tools: Optional[List[dict]],
                      request_options: RequestOptions, state: _TurnState) -> _RoundResult:
        content = ""
        terminal: Optional[StreamChunk] = None
        with closing(self.client.stream_chat(messages, tools, request_options)) as stream:
            for chunk in stream:
                if state.token is not None:
                    state.token.raise_if_cancelled()
                if chunk.reasoning:
                    state.reasoning += chunk.reasoning
                if chunk.content:
                    content += chunk.content
                if (chunk.reasoning or chunk.content) and state.callbacks.on_chunk:
                    state.callbacks.on_chunk(state.snapshot(content))
                if chunk.is_terminal:
                    terminal = chunk
                    break
        if terminal is None:
            return _RoundResult(content=content)
        return _RoundResult(content, terminal.tool_calls, terminal.finish_reason, terminal.usage)

    def _blocking_round(self, messages: List[ChatMessage], tools: Optional[List[dict]],
                        request_options: RequestOptions, state: _TurnState) -> _RoundResult:
        response = self.client.chat(messages, tools, request_options)
        if response.message.reasoning_content:
            state.reasoning += response.message.reasoning_content
        if (response.content or response.message.reasoning_content) and state.callbacks.on_chunk:
            state.callbacks.on_chunk(state.snapshot(response.content))
        return _RoundResult(response.content, response.tool_calls, response.finish_reason, response.usage)

    def _dispatch_tools(self, tool_calls, state: _TurnState) -> None:
        if state.callbacks.on_tool_call:
            for tc in tool_calls:
                state.callbacks.on_tool_call(tc)

        def _commit(result: ToolCallResult) -> None:
            self.session.add_tool_message(result.tool_call_id, result.content)
            if state.callbacks.on_tool_result:
                state.callbacks.on_tool_result(result)

        self.tool_handler.run_tool_calls(tool_calls, state.mask, state.token, on_result=_commit)

    def _sync_plan_mode(self, user_message: str, context: MatchContext, state: _TurnState) -> None:
        """Pick up a mode switch made by a tool during this round."""
        current = self.mode_state.plan_mode
        if current == state.plan_mode:
            return
        _log.info("Plan mode %s mid-turn", "entered" if current else "left")
        state.plan_mode = current
        state.mask = self._build_mask(user_message, context, current)
        self._install_system_prompt(context, current)
        if state.callbacks.on_mode_change:
            state.callbacks.on_mode_change(current)

    # ── request assembly ──

    def _ensure_system_prompt(self, context: MatchContext, plan_mode: bool) -> None:
        if self.context_injected and self._prompt_plan_mode == plan_mode:
            return
        self._install_system_prompt(context, plan_mode)

    def _install_system_prompt(self, context: MatchContext, plan_mode: bool) -> None:
        self.session.set_system_prompt(build_system_prompt(plan_mode, context, self.project_instructions))
        self.context_injected = True
        self._prompt_plan_mode = plan_mode

    def _build_mask(self, user_message: str, context: MatchContext, plan_mode: bool) -> ToolMaskState:
        return build_tool_mask(
            user_message, context, plan_mode, self.catalog,
            capabilities=self.capabilities, context_aware=self.context_aware,
        )

    def _prepare_request(self, state: _TurnState) -> Tuple[List[ChatMessage], Optional[List[dict]], RequestOptions]:
        """Map the mask onto tools, tool_choice and an optional prefill."""
        messages = self.session.get_messages()
        options = RequestOptions(cancel_token=state.token)
        if not self.capabilities.supports_tools:
            return messages, None, options

        mask = state.mask
        if not mask.allowed_tools:
            tools: List[dict] = []
        elif mask.mechanism is MaskMechanism.DYNAMIC_FALLBACK:
            tools = self.catalog.to_openai_tools(mask.allowed_tools)
        else:
            tools = self.catalog.to_openai_tools()
            if mask.mechanism is MaskMechanism.TOOL_CHOICE:
                options.tool_choice_names = self.catalog.function_names(mask.allowed_tools)
            elif mask.prompt_prefix:
                # Request-only; never stored in the session.
                messages.append(ChatMessage.assistant(render_prefill(mask.prompt_prefix)))

        self.session.set_tools_token_estimate(estimate_tools_tokens(tools))
        return messages, tools or None, options

    # ── session management ──

    def save_partial_response(self, content: str) -> None:
        """Keep what was streamed before a cancel, marked as interrupted."""
        self.session.repair_messages()
        if content and content.strip():
            self.session.add_assistant_message(ChatMessage.assistant(content + INTERRUPTED_SUFFIX))

    def compact(self, cancel_token: Optional[CancellationToken] = None) -> bool:
        """Summarize the history with the model and replace it with the summary."""
        self.session.repair_messages()
        if self.session.real_message_count() <= 1:
            return False
        messages = self.session.get_messages() + [ChatMessage.user(SUMMARIZE_PROMPT)]
        response = self.client.chat(messages, None, RequestOptions(cancel_token=cancel_token))
        summary = response.content.strip()
        if not summary:
            _log.warning("Compaction returned an empty summary; history kept")
            return False
        before = self.session.message_count
        self.session.compact_with(summary)
        _log.info("Compacted %d messages into a summary", before)
        return True

    def should_compact(self, estimated_incoming_tokens: int = 0) -> CompactCheck:
        return self.session.should_compact(estimated_incoming_tokens)

    def get_status(self) -> SessionStatus:
        return self.session.get_status()

    def get_history(self) -> List[ChatMessage]:
        return self.session.get_history()

    def clear_history(self) -> None:
        self.session.clear()

    def restore_session(self, state: Dict[str, Any]) -> int:
        """Load a persisted session; returns the number of repaired messages."""
        self.session.load_state(state)
        removed = self.session.repair_messages()
        self.context_injected = self.session.system_prompt is not None
        self._prompt_plan_mode = None
        return removed
