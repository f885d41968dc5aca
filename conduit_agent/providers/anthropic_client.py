"""Anthropic ``/messages`` client.

The vendor-neutral history is OpenAI-shaped, so requests are translated:
the system prompt moves to a top-level field, assistant turns with thinking
or tool calls become content-block arrays, and runs of tool results collapse
into one user message of ``tool_result`` blocks.
"""

import json
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from ..errors import ProtocolError
from ..logger import get_logger
from ..messages import (
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
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

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_BETA = "interleaved-thinking-2025-05-14"

_STOP_REASON_MAP = {
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "tool_use": FINISH_TOOL_CALLS,
    "max_tokens": FINISH_LENGTH,
}


def map_stop_reason(reason: Optional[str]) -> str:
    return _STOP_REASON_MAP.get(reason or "", FINISH_STOP)


def convert_tools(tools: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """OpenAI function tools -> Anthropic ``{name, description, input_schema}``."""
    converted = []
    for tool in tools or []:
        fn = tool.get("function", tool)
        converted.append({
            "name": fn.get("name", ""),
            "description": fn.get("description", ""),
            "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
        })
    return converted


def _parse_arguments(arguments: str) -> Dict[str, Any]:
    try:
        value = json.loads(arguments or "{}")
    except ValueError:
        _log.debug("Tool arguments are not valid JSON: %.200s", arguments)
        return {}
    return value if isinstance(value, dict) else {}


def convert_messages(messages: Sequence[ChatMessage]):
    """Return ``(system_text, anthropic_messages)``."""
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []
    pending_results: List[Dict[str, Any]] = []

    def flush_results():
        if pending_results:
            converted.append({"role": "user", "content": list(pending_results)})
            pending_results.clear()

    for msg in messages:
        if msg.role == ROLE_SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
            continue
        if msg.role == ROLE_TOOL:
            pending_results.append({
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id or "",
                "content": msg.content,
            })
            continue
        flush_results()
        if msg.role == ROLE_ASSISTANT and (msg.reasoning_content or msg.tool_calls):
            blocks: List[Dict[str, Any]] = []
            if msg.reasoning_content:
                blocks.append({"type": "thinking", "thinking": msg.reasoning_content})
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": _parse_arguments(tc.arguments),
                })
            converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": msg.role, "content": msg.content})
    flush_results()
    return "\n\n".join(system_parts), converted


class AnthropicClient(ProtocolClient):
    protocol = "anthropic"
    DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
    ENDPOINT = "/messages"
    FIELD_ORDER = ("model", "messages", "system", "tools", "tool_choice", "thinking", "max_tokens", "stream")

    def headers(self, stream: bool) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
            "anthropic-beta": ANTHROPIC_BETA,
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def build_request(self, messages: Sequence[ChatMessage], tools: Optional[List[Dict[str, Any]]],
                      options: RequestOptions, stream: bool) -> Dict[str, Any]:
        system, converted = convert_messages(messages)
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": converted,
            "max_tokens": self.max_tokens,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = convert_tools(tools)
            choice = self.format_tool_choice(options.tool_choice_names)
            if choice is not None:
                body["tool_choice"] = choice
        if self.thinking:
            body["thinking"] = {"type": "enabled", "budget_tokens": self.thinking_budget}
        if stream:
            body["stream"] = True
        return body

    def format_tool_choice(self, names: Optional[Sequence[str]]) -> Optional[Dict[str, Any]]:
        if not names:
            return None
        # The Messages API cannot restrict choice to a subset: "any" and
        # "tool" force a call every round. The handler rejects calls outside
        # the mask instead.
        return {"type": "auto"}

    # ── responses ──

    def parse_response(self, payload: Dict[str, Any]) -> ChatResponse:
        if payload.get("type") == "error":
            error = payload.get("error") or {}
            raise ProtocolError(error.get("message") or "Provider error", error.get("type", ""))
        text_parts: List[str] = []
        thinking_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in payload.get("content") or []:
            btype = block.get("type")
            if btype == "text":
                text_parts.append(block.get("text", ""))
            elif btype == "thinking":
                thinking_parts.append(block.get("thinking", ""))
            elif btype == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=json.dumps(block.get("input") or {}, ensure_ascii=False, sort_keys=True),
                ))
        return ChatResponse(
            message=ChatMessage.assistant(
                content="".join(text_parts),
                reasoning_content="".join(thinking_parts) or None,
                tool_calls=tool_calls,
            ),
            finish_reason=map_stop_reason(payload.get("stop_reason")),
            usage=Usage.from_dict(payload.get("usage")),
        )

    def parse_stream(self, lines: Iterable[str]) -> Iterator[StreamChunk]:
        tool_blocks: Dict[int, Dict[str, str]] = {}
        stop_reason: Optional[str] = None
        input_tokens = 0
        output_tokens = 0
        saw_usage = False

        for event in iter_sse_events(lines):
            payload = load_json_object(event.data)
            if payload is None:
                continue
            etype = payload.get("type") or event.event

            if etype == "message_start":
                usage = as_dict(as_dict(payload.get("message")).get("usage"))
                if usage:
                    saw_usage = True
                    input_tokens = as_int(usage.get("input_tokens")) or 0
                    output_tokens = as_int(usage.get("output_tokens")) or 0

            elif etype == "content_block_start":
                index = as_int(payload.get("index"))
                block = payload.get("content_block")
                if index is None or not isinstance(block, dict):
                    _log.debug("Skipping malformed content_block_start: %.200r", payload)
                    continue
                btype = block.get("type")
                if btype == "tool_use":
                    initial = block.get("input")
                    tool_blocks[index] = {
                        "id": str(block.get("id") or ""),
                        "name": str(block.get("name") or ""),
                        "input": json.dumps(initial) if initial else "",
                    }
                elif btype == "text" and isinstance(block.get("text"), str) and block["text"]:
                    yield StreamChunk(content=block["text"])
                elif btype == "thinking" and isinstance(block.get("thinking"), str) and block["thinking"]:
                    yield StreamChunk(reasoning=block["thinking"])

            elif etype == "content_block_delta":
                index = as_int(payload.get("index"))
                delta = payload.get("delta")
                if index is None or not isinstance(delta, dict):
                    _log.debug("Skipping malformed content_block_delta: %.200r", payload)
                    continue
                dtype = delta.get("type")
                if dtype == "text_delta" and isinstance(delta.get("text"), str) and delta["text"]:
                    yield StreamChunk(content=delta["text"])
                elif dtype == "thinking_delta" and isinstance(delta.get("thinking"), str) and delta["thinking"]:
                    yield StreamChunk(reasoning=delta["thinking"])
                elif dtype == "input_json_delta" and isinstance(delta.get("partial_json"), str):
                    block = tool_blocks.setdefault(index, {"id": "", "name": "", "input": ""})
                    block["input"] += delta["partial_json"]

            elif etype == "message_delta":
                reason = as_dict(payload.get("delta")).get("stop_reason")
                if isinstance(reason, str) and reason:
                    stop_reason = reason
                usage = as_dict(payload.get("usage"))
                tokens = as_int(usage.get("output_tokens")) if "output_tokens" in usage else None
                if tokens is not None:
                    saw_usage = True
                    output_tokens = tokens

            elif etype == "message_stop":
                calls = tuple(
                    ToolCall(id=b["id"], name=b["name"], arguments=b["input"] or "{}")
                    for _, b in sorted(tool_blocks.items())
                    if b["name"]
                )
                usage_obj = Usage(input_tokens, output_tokens) if saw_usage else None
                yield StreamChunk(
                    tool_calls=calls,
                    finish_reason=map_stop_reason(stop_reason),
                    usage=usage_obj,
                )
                return

            elif etype == "error":
                raw = payload.get("error")
                error = as_dict(raw)
                _log.warning("Stream error event: %s", raw)
                message = error.get("message") or (raw if isinstance(raw, str) else "") or "Stream error"
                raise ProtocolError(message, error.get("type", ""))

        # EOF without message_stop.
        yield StreamChunk(finish_reason=FINISH_STOP)
