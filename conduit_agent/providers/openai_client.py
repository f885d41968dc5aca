"""OpenAI-compatible ``/chat/completions`` client."""

import time
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from ..errors import ProtocolError
from ..logger import get_logger
from ..messages import (
    FINISH_EOS,
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ChatMessage,
    ChatResponse,
    StreamChunk,
    ToolCall,
    Usage,
)
from .base import ProtocolClient, RequestOptions, as_dict, as_int, load_json_object
from .sse import iter_sse_events

_log = get_logger(__name__)

DONE_SENTINEL = "[DONE]"

_FINISH_MAP = {
    "stop": FINISH_STOP,
    "eos": FINISH_EOS,
    "length": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
}


def normalize_finish_reason(reason: Optional[str]) -> str:
    return _FINISH_MAP.get(reason or "", FINISH_STOP)


class OpenAIClient(ProtocolClient):
    protocol = "openai"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    ENDPOINT = "/chat/completions"
    FIELD_ORDER = ("model", "messages", "tools", "tool_choice", "stream", "enable_thinking")

    def headers(self, stream: bool) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    # ── request ──

    def build_request(self, messages: Sequence[ChatMessage], tools: Optional[List[Dict[str, Any]]],
                      options: RequestOptions, stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [self.convert_message(m) for m in messages],
        }
        if tools:
            body["tools"] = list(tools)
            body["tool_choice"] = self.format_tool_choice(options.tool_choice_names)
        if stream:
            body["stream"] = True
        if self.thinking:
            body["enable_thinking"] = True
        return body

    @staticmethod
    def format_tool_choice(names: Optional[Sequence[str]]) -> Any:
        if not names:
            return "auto"
        return {
            "type": "allowed_tools",
            "allowed_tools": {
                "mode": "auto",
                "tools": [{"type": "function", "function": {"name": n}} for n in names],
            },
        }

    @staticmethod
    def convert_message(msg: ChatMessage) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.role == ROLE_ASSISTANT:
            if msg.reasoning_content:
                data["reasoning_content"] = msg.reasoning_content
            if msg.tool_calls:
                data["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                    }
                    for tc in msg.tool_calls
                ]
        elif msg.role == ROLE_TOOL:
            data["tool_call_id"] = msg.tool_call_id or ""
        return data

    # ── responses ──

    def parse_response(self, payload: Dict[str, Any]) -> ChatResponse:
        choices = payload.get("choices") or []
        if not choices:
            error = payload.get("error")
            if error:
                raise ProtocolError(_error_message(error))
            raise ProtocolError("Response has no choices")
        choice = choices[0] or {}
        message = choice.get("message") or {}
        tool_calls = tuple(
            ToolCall.from_dict(tc) for tc in (message.get("tool_calls") or []) if isinstance(tc, dict)
        )
        finish = normalize_finish_reason(choice.get("finish_reason"))
        if tool_calls:
            finish = FINISH_TOOL_CALLS
        return ChatResponse(
            message=ChatMessage.assistant(
                content=message.get("content") or "",
                reasoning_content=message.get("reasoning_content"),
                tool_calls=tool_calls,
            ),
            finish_reason=finish,
            usage=Usage.from_dict(payload.get("usage")),
        )

    def parse_stream(self, lines: Iterable[str]) -> Iterator[StreamChunk]:
        pending: Dict[int, Dict[str, str]] = {}
        usage: Optional[Usage] = None

        for event in iter_sse_events(lines):
            data = event.data.strip()
            if data == DONE_SENTINEL:
                yield self._finish(pending, None, usage)
                return
            payload = load_json_object(data)
            if payload is None:
                continue
            if payload.get("error"):
                raise ProtocolError(_error_message(payload["error"]))
            usage = Usage.from_dict(as_dict(payload.get("usage"))) or usage

            choices = payload.get("choices")
            if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                continue
            choice = choices[0]
            delta = as_dict(choice.get("delta"))

            content = _text(delta.get("content"))
            reasoning = _text(delta.get("reasoning_content")) or _text(delta.get("reasoning"))
            tc_deltas = delta.get("tool_calls")
            if isinstance(tc_deltas, list):
                for tc_delta in tc_deltas:
                    _accumulate_tool_call(pending, tc_delta)
            if content or reasoning:
                yield StreamChunk(content=content, reasoning=reasoning)

            finish = choice.get("finish_reason")
            if finish and isinstance(finish, str):
                yield self._finish(pending, finish, usage)
                return

        # EOF without a terminal chunk.
        yield StreamChunk(finish_reason=FINISH_STOP, usage=usage)

    @staticmethod
    def _finish(pending: Dict[int, Dict[str, str]], reported: Optional[str],
                usage: Optional[Usage]) -> StreamChunk:
        calls = []
        stamp = int(time.time() * 1000)
        for index in sorted(pending):
            acc = pending[index]
            # Fragments that never received a function name are not calls.
            if not acc["name"]:
                continue
            calls.append(ToolCall(
                id=acc["id"] or f"call_{stamp}_{index}",
                name=acc["name"],
                arguments=acc["arguments"],
            ))
        reason = normalize_finish_reason(reported)
        if calls and reason != FINISH_TOOL_CALLS:
            # Vendor quirk: some servers report "stop" while tool calls are
            # pending. Accumulated calls win over the reported reason.
            _log.info("Overriding finish_reason %r with tool_calls", reported)
            reason = FINISH_TOOL_CALLS
        return StreamChunk(tool_calls=tuple(calls), finish_reason=reason, usage=usage)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _accumulate_tool_call(pending: Dict[int, Dict[str, str]], tc_delta: Any) -> None:
    if not isinstance(tc_delta, dict):
        return
    index = as_int(tc_delta.get("index"))
    if index is None:
        _log.debug("Skipping tool call delta with bad index: %.200r", tc_delta)
        return
    acc = pending.setdefault(index, {"id": "", "name": "", "arguments": ""})
    if tc_delta.get("id"):
        acc["id"] = str(tc_delta["id"])
    fn = as_dict(tc_delta.get("function"))
    if fn.get("name"):
        acc["name"] = str(fn["name"])
    if fn.get("arguments"):
        acc["arguments"] += str(fn["arguments"])


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
