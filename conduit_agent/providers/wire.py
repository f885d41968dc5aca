"""Deterministic request-body encoding.

Providers cache computation for a repeated request prefix, so identical
requests must serialize to identical bytes. Top-level fields follow an
explicit order; nested objects are key-sorted.
"""

import json
from typing import Any, Dict, Sequence


def canonicalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def order_fields(body: Dict[str, Any], field_order: Sequence[str]) -> Dict[str, Any]:
    """Return ``body`` with ``field_order`` keys first, then the rest sorted.

    ``None`` values are dropped so optional fields never appear as ``null``.
    """
    ordered: Dict[str, Any] = {}
    for key in field_order:
        if body.get(key) is not None:
            ordered[key] = canonicalize(body[key])
    for key in sorted(body):
        if key not in ordered and body[key] is not None:
            ordered[key] = canonicalize(body[key])
    return ordered


def stable_json(body: Dict[str, Any], field_order: Sequence[str] = ()) -> str:
    return json.dumps(
        order_fields(body, field_order),
        ensure_ascii=False,
        separators=(",", ":"),
    )


def encode_request(body: Dict[str, Any], field_order: Sequence[str] = ()) -> bytes:
    return stable_json(body, field_order).encode("utf-8")
