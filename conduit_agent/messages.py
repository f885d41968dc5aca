"""Vendor-neutral message, tool-call and stream-chunk types."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"
ROLES = (ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL)

FINISH_STOP = "stop"
FINISH_EOS = "eos"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_LENGTH = "length"
FINISH_REASONS = (FINISH_STOP, FINISH_EOS, FINISH_TOOL_CALLS, FINISH_LENGTH)


def split_tool_name(name: str) -> Tuple[str, str]:
    """Split ``toolId_actionName`` at the first underscore."""
    tool_id, sep, action = (name or "").partition("_")
    if not sep or not action:
        return tool_id, "default"
    return tool_id, action


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        # Accept both the stored shape and the OpenAI wire shape.
        fn = data.get("function") or {}
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or fn.get("name") or ""),
            arguments=str(data.get("arguments") or fn.get("arguments") or ""),
        )


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Usage"]:
        if not data or not isinstance(data, dict):
            return None
        prompt = data.get("prompt_tokens", data.get("input_tokens", 0)) or 0
        completion = data.get("completion_tokens", data.get("output_tokens", 0)) or 0
        try:
            return cls(prompt_tokens=int(prompt), completion_tokens=int(completion))
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str = ""
    reasoning_content: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=ROLE_SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=ROLE_USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", reasoning_content: Optional[str] = None,
                  tool_calls: Iterable[ToolCall] = ()) -> "ChatMessage":
        return cls(role=ROLE_ASSISTANT, content=content,
                   reasoning_content=reasoning_content or None,
                   tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "ChatMessage":
        return cls(role=ROLE_TOOL, content=content, tool_call_id=tool_call_id)

    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.reasoning_content:
            data["reasoning_content"] = self.reasoning_content
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        role = data.get("role", ROLE_USER)
        if role not in ROLES:
            role = ROLE_USER
        raw_calls = data.get("tool_calls") or []
        return cls(
            role=role,
            content=data.get("content") or "",
            reasoning_content=data.get("reasoning_content") or None,
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in raw_calls if isinstance(tc, dict)),
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass(frozen=True)
class StreamChunk:
    """One increment of a streamed reply.

    ``finish_reason`` is set only on the terminal chunk; ``tool_calls`` holds
    fully accumulated calls and appears only there.
    """
    content: str = ""
    reasoning: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None


@dataclass
class ChatResponse:
    """Normalized result of a blocking ``chat`` call."""
    message: ChatMessage
    finish_reason: str = FINISH_STOP
    usage: Optional[Usage] = None

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def tool_calls(self) -> Tuple[ToolCall, ...]:
        return self.message.tool_calls


@dataclass
class StreamContent:
    """Partial text captured from a running turn."""
    content: str = ""
    reasoning: str = ""

    def is_empty(self) -> bool:
        return not self.content and not self.reasoning


def messages_to_dicts(messages: Iterable[ChatMessage]) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in messages]
