"""Line-level Server-Sent Events reader."""

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Union


@dataclass(frozen=True)
class SSEEvent:
    event: Optional[str]
    data: str


def iter_sse_events(lines: Iterable[Union[str, bytes]]) -> Iterator[SSEEvent]:
    """Yield one event per ``data:`` line.

    Each data line is dispatched on its own rather than joined with its
    neighbours: OpenAI-compatible servers do not always send the blank
    separator line, and neither vendor splits a JSON payload across lines.
    The most recent ``event:`` name applies until the next blank line.
    """
    event_name: Optional[str] = None
    for raw in lines:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = raw.rstrip("\r\n")
        if not line:
            event_name = None
            continue
        if line.startswith(":"):
            continue
        field, sep, value = line.partition(":")
        if not sep:
            continue
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value.strip() or None
        elif field == "data":
            yield SSEEvent(event=event_name, data=value)
