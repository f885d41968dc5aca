"""Token estimation utilities with tiktoken support."""

import json
import math
import re
from typing import Optional

import tiktoken

from .messages import ChatMessage

_encoder_cache = {}
_CJK_PATTERN = re.compile(r'[\u4e00-\u9fff\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af]')


def char_estimate(text: Optional[str]) -> int:
    """Deterministic estimate used for session accounting: ceil(len / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_message_tokens(msg: ChatMessage) -> int:
    """Deterministic estimate for a stored message."""
    tokens = char_estimate(msg.content) + char_estimate(msg.reasoning_content)
    for tc in msg.tool_calls:
        tokens += char_estimate(tc.name) + char_estimate(tc.arguments)
    return tokens


def estimate_tools_tokens(tools) -> int:
    if not tools:
        return 0
    return char_estimate(json.dumps(tools, ensure_ascii=False, sort_keys=True))


def _get_encoder(model: str):
    if model in _encoder_cache:
        return _encoder_cache[model]
    try:
        enc = tiktoken.encoding_for_model(model)
    except KeyError:
        enc = tiktoken.get_encoding("cl100k_base")
    _encoder_cache[model] = enc
    return enc


def estimate_tokens(text: str, model: Optional[str] = None) -> int:
    """Estimate token count for incoming text.

    Uses tiktoken when a model name is given, otherwise a CJK-aware heuristic.
    """
    if not text:
        return 0
    if model:
        try:
            return len(_get_encoder(model).encode(text))
        except (KeyError, ValueError, OSError):
            # Encoding files unavailable offline; fall through.
            pass
    return _heuristic_estimate(text)


def _heuristic_estimate(text: str) -> int:
    cjk_chars = len(_CJK_PATTERN.findall(text))
    non_cjk = _CJK_PATTERN.sub(' ', text)
    # ~4 chars per English token, ~1.5 chars per CJK token
    return max(1, int(len(non_cjk) / 4 + cjk_chars / 1.5))
