"""Conversation state: ordered history, system prompt slot and token budget.

Token accounting prefers what the provider reported. When an assistant
message arrives with usage, that usage becomes the basis and only messages
appended afterwards are estimated (ceil(len / 4) of their text). Until the
provider has reported anything, every message is estimated.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .logger import get_logger
from .messages import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    ChatMessage,
    Usage,
)
from .tokenizer import char_estimate, estimate_message_tokens

_log = get_logger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]\n"
DEFAULT_CONTEXT_WINDOW = 32768
DEFAULT_NEAR_LIMIT = 0.85
DEFAULT_FULL = 0.95


@dataclass(frozen=True)
class SessionEntry:
    message: ChatMessage
    tokens: int
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionStatus:
    used_tokens: int
    available_tokens: int
    usage_percent: float
    is_near_limit: bool
    is_full: bool
    message_count: int


@dataclass(frozen=True)
class CompactCheck:
    should_compact: bool
    is_context_full: bool
    real_message_count: int
    usage_percent: float
    projected_percent: float


@dataclass(frozen=True)
class MessageValidation:
    orphan_tool_results: Tuple[int, ...] = ()
    unanswered_tool_calls: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.orphan_tool_results and not self.unanswered_tool_calls


@dataclass(frozen=True)
class Checkpoint:
    """Opaque snapshot; entries are immutable so a tuple copy is exact."""
    entries: Tuple[SessionEntry, ...]
    system_prompt: Optional[str]
    actual_prompt_tokens: int
    actual_completion_tokens: int
    confirmed_count: int
    tools_tokens: int


def is_summary_message(msg: ChatMessage) -> bool:
    return msg.role == ROLE_ASSISTANT and msg.content.startswith(SUMMARY_PREFIX)


class Session:
    def __init__(
        self,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        reserve_ratio: float = 0.0,
        near_limit_threshold: float = DEFAULT_NEAR_LIMIT,
        full_threshold: float = DEFAULT_FULL,
    ):
        self.context_window = max(1, int(context_window))
        self.reserve_ratio = reserve_ratio
        self.near_limit_threshold = near_limit_threshold
        self.full_threshold = full_threshold
        self._entries: List[SessionEntry] = []
        self._system_prompt: Optional[str] = None
        self._actual_prompt_tokens = 0
        self._actual_completion_tokens = 0
        # Number of leading entries covered by the reported usage.
        self._confirmed_count = 0
        self._tools_tokens = 0

    # ── mutation ──

    def set_system_prompt(self, text: Optional[str]) -> None:
        self._system_prompt = text or None

    @property
    def system_prompt(self) -> Optional[str]:
        return self._system_prompt

    def set_tools_token_estimate(self, tokens: int) -> None:
        self._tools_tokens = max(0, int(tokens))

    def update_context_window(self, context_window: int) -> None:
        self.context_window = max(1, int(context_window))

    def _append(self, msg: ChatMessage) -> None:
        self._entries.append(SessionEntry(msg, estimate_message_tokens(msg)))

    def add_user_message(self, content: str) -> None:
        self._append(ChatMessage.user(content))

    def add_assistant_message(self, msg: ChatMessage, usage: Optional[Usage] = None) -> None:
        if msg.role != ROLE_ASSISTANT:
            msg = ChatMessage.assistant(msg.content, msg.reasoning_content, msg.tool_calls)
        self._append(msg)
        if usage is not None:
            self._actual_prompt_tokens = usage.prompt_tokens
            self._actual_completion_tokens = usage.completion_tokens
            self._confirmed_count = len(self._entries)

    def add_tool_message(self, tool_call_id: str, content: str) -> None:
        self._append(ChatMessage.tool(tool_call_id, content))

    def add_message(self, msg: ChatMessage) -> None:
        """Append a pre-built message of any non-system role."""
        if msg.role == ROLE_SYSTEM:
            self.set_system_prompt(msg.content)
            return
        self._append(msg)

    def clear(self) -> None:
        self._entries = []
        self._reset_actual()

    def _reset_actual(self) -> None:
        self._actual_prompt_tokens = 0
        self._actual_completion_tokens = 0
        self._confirmed_count = 0

    # ── reads ──

    def get_messages(self) -> List[ChatMessage]:
        """History with the system prompt first, as sent to the provider."""
        messages = [e.message for e in self._entries]
        if self._system_prompt:
            messages.insert(0, ChatMessage.system(self._system_prompt))
        return messages

    def get_history(self) -> List[ChatMessage]:
        return [e.message for e in self._entries]

    @property
    def message_count(self) -> int:
        return len(self._entries)

    @property
    def has_actual_usage(self) -> bool:
        return self._confirmed_count > 0

    def real_message_count(self) -> int:
        return sum(1 for e in self._entries if not is_summary_message(e.message))

    def get_used_tokens(self) -> int:
        if self._confirmed_count > 0:
            trailing = sum(e.tokens for e in self._entries[self._confirmed_count:])
            return self._actual_prompt_tokens + self._actual_completion_tokens + trailing
        return (
            char_estimate(self._system_prompt)
            + self._tools_tokens
            + sum(e.tokens for e in self._entries)
        )

    def get_available_tokens(self) -> int:
        # Unclamped: display code clamps at zero.
        return int(self.context_window * (1 - self.reserve_ratio)) - self.get_used_tokens()

    def get_status(self) -> SessionStatus:
        used = self.get_used_tokens()
        ratio = used / self.context_window
        return SessionStatus(
            used_tokens=used,
            available_tokens=self.get_available_tokens(),
            usage_percent=round(ratio * 100, 1),
            is_near_limit=ratio >= self.near_limit_threshold,
            is_full=ratio >= self.full_threshold,
            message_count=len(self._entries),
        )

    def should_compact(self, estimated_incoming_tokens: int = 0,
                       threshold: Optional[float] = None) -> CompactCheck:
        near = self.near_limit_threshold if threshold is None else threshold
        used = self.get_used_tokens()
        projected = used + max(0, int(estimated_incoming_tokens))
        usage_ratio = used / self.context_window
        projected_ratio = projected / self.context_window
        real = self.real_message_count()
        is_full = projected_ratio >= self.full_threshold
        return CompactCheck(
            should_compact=real > 1 and projected_ratio >= near,
            is_context_full=is_full,
            real_message_count=real,
            usage_percent=round(usage_ratio * 100, 1),
            projected_percent=round(projected_ratio * 100, 1),
        )

    # ── compaction ──

    def compact_with(self, summary: str) -> None:
        """Replace the history with one assistant message holding ``summary``."""
        self._entries = []
        self._reset_actual()
        self._append(ChatMessage.assistant(SUMMARY_PREFIX + summary.strip()))

    # ── checkpoint / rollback ──

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(
            entries=tuple(self._entries),
            system_prompt=self._system_prompt,
            actual_prompt_tokens=self._actual_prompt_tokens,
            actual_completion_tokens=self._actual_completion_tokens,
            confirmed_count=self._confirmed_count,
            tools_tokens=self._tools_tokens,
        )

    def rollback(self, cp: Checkpoint) -> None:
        self._entries = list(cp.entries)
        self._system_prompt = cp.system_prompt
        self._actual_prompt_tokens = cp.actual_prompt_tokens
        self._actual_completion_tokens = cp.actual_completion_tokens
        self._confirmed_count = cp.confirmed_count
        self._tools_tokens = cp.tools_tokens

    # ── integrity ──

    def validate_messages(self) -> MessageValidation:
        _, orphans, unanswered = self._scan()
        return MessageValidation(tuple(orphans), tuple(unanswered))

    def repair_messages(self) -> int:
        """Drop orphan tool results and strip unanswered tool calls.

        Returns the number of messages removed. Idempotent.
        """
        repaired, orphans, unanswered = self._scan()
        if not orphans and not unanswered:
            return 0
        removed = len(self._entries) - len(repaired)
        self._entries = repaired
        self._reset_actual()
        _log.info(
            "Repaired session: removed %d message(s), stripped %d unanswered tool call(s)",
            removed, len(unanswered),
        )
        return removed

    def _scan(self) -> Tuple[List[SessionEntry], List[int], List[str]]:
        """Single ordered pass; returns (repaired entries, orphan indexes, unanswered ids)."""
        result: List[SessionEntry] = []
        orphans: List[int] = []
        unanswered: List[str] = []
        open_ids: Dict[str, None] = {}
        open_pos = -1

        def close_group():
            nonlocal open_pos
            if open_ids and open_pos >= 0:
                unanswered.extend(open_ids)
                entry = result[open_pos]
                kept = tuple(tc for tc in entry.message.tool_calls if tc.id not in open_ids)
                msg = ChatMessage.assistant(entry.message.content, entry.message.reasoning_content, kept)
                if not kept and not msg.content and not msg.reasoning_content:
                    del result[open_pos]
                else:
                    result[open_pos] = SessionEntry(msg, estimate_message_tokens(msg), entry.timestamp)
            open_ids.clear()
            open_pos = -1

        for index, entry in enumerate(self._entries):
            msg = entry.message
            if msg.role == ROLE_TOOL:
                if msg.tool_call_id in open_ids:
                    del open_ids[msg.tool_call_id]
                    result.append(entry)
                else:
                    orphans.append(index)
                continue
            close_group()
            result.append(entry)
            if msg.role == ROLE_ASSISTANT and msg.tool_calls:
                open_ids.update((tc.id, None) for tc in msg.tool_calls)
                open_pos = len(result) - 1
        close_group()
        return result, orphans, unanswered

    # ── persistence ──

    def to_state(self) -> Dict[str, Any]:
        return {
            "messages": [dict(e.message.to_dict(), timestamp=e.timestamp) for e in self._entries],
            "systemPrompt": self._system_prompt,
            "tokenState": {
                "actualPromptTokens": self._actual_prompt_tokens,
                "actualCompletionTokens": self._actual_completion_tokens,
                "confirmedCount": self._confirmed_count,
                "contextWindow": self.context_window,
            },
        }

    def load_state(self, state: Dict[str, Any]) -> None:
        """Replace the whole session with a persisted state document."""
        entries = []
        for raw in state.get("messages") or []:
            if not isinstance(raw, dict):
                continue
            msg = ChatMessage.from_dict(raw)
            if msg.role == ROLE_SYSTEM:
                continue
            entries.append(SessionEntry(msg, estimate_message_tokens(msg), float(raw.get("timestamp") or time.time())))
        self._entries = entries
        self._system_prompt = state.get("systemPrompt") or None
        token_state = state.get("tokenState") or {}
        self._actual_prompt_tokens = int(token_state.get("actualPromptTokens") or 0)
        self._actual_completion_tokens = int(token_state.get("actualCompletionTokens") or 0)
        confirmed = int(token_state.get("confirmedCount") or 0)
        self._confirmed_count = confirmed if 0 <= confirmed <= len(entries) else 0

    @classmethod
    def from_state(cls, state: Dict[str, Any], **kwargs) -> "Session":
        session = cls(**kwargs)
        session.load_state(state)
        return session

    def extend(self, messages: Iterable[ChatMessage]) -> None:
        for msg in messages:
            self.add_message(msg)


def first_user_message(session: Session) -> Optional[str]:
    for msg in session.get_history():
        if msg.role == ROLE_USER:
            return msg.content
    return None

