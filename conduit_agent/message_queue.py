"""FIFO queue that feeds user messages to the agent one turn at a time."""

import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional

from .agent import StreamCallbacks
from .cancellation import CancellationToken
from .errors import is_cancellation
from .logger import get_logger
from .messages import StreamContent

_log = get_logger(__name__)


@dataclass
class QueuedMessage:
    id: str
    content: str
    files: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    # Mode captured at enqueue time, not at processing time.
    plan_mode: bool = False


@dataclass
class QueueCallbacks:
    on_message_start: Optional[Callable[[str], None]] = None
    on_message_complete: Optional[Callable[[str, str], None]] = None
    on_message_error: Optional[Callable[[str, Exception], None]] = None
    on_queue_empty: Optional[Callable[[], None]] = None
    on_stopped: Optional[Callable[[int, Optional[StreamContent]], None]] = None
    on_stream_start: Optional[Callable[[str], None]] = None
    on_stream_chunk: Optional[Callable[[str, StreamContent], None]] = None
    on_stream_end: Optional[Callable[[str, StreamContent], None]] = None


@dataclass
class StopResult:
    discarded_count: int
    partial: Optional[StreamContent] = None


MessageProcessor = Callable[[QueuedMessage, StreamCallbacks, CancellationToken], str]


@dataclass
class _InFlight:
    message: QueuedMessage
    token: CancellationToken
    content: StreamContent = field(default_factory=StreamContent)


class MessageQueue:
    """Runs ``processor`` on a background thread for each queued message.

    At most one message is processed at a time, strictly in enqueue order.
    :meth:`stop` discards everything not yet started and cancels the one in
    flight; from then on that message's callbacks are dropped.
    """

    def __init__(self, processor: MessageProcessor, callbacks: Optional[QueueCallbacks] = None):
        self.processor = processor
        self.callbacks = callbacks or QueueCallbacks()
        self._queue: Deque[QueuedMessage] = deque()
        self._cond = threading.Condition()
        self._processing = False
        self._stopped = False
        self._current: Optional[_InFlight] = None
        self._ids = itertools.count(1)

    def enqueue(self, content: str, files: Optional[List[str]] = None, plan_mode: bool = False) -> str:
        with self._cond:
            self._stopped = False
            message = QueuedMessage(
                id=f"msg_{next(self._ids)}_{int(time.time() * 1000)}",
                content=content,
                files=list(files or []),
                plan_mode=plan_mode,
            )
            self._queue.append(message)
            inflight = None
            if not self._processing:
                self._processing = True
                # Claimed under the lock so callers see it as in flight at once.
                inflight = _InFlight(self._queue.popleft(), CancellationToken())
                self._current = inflight

        if inflight is not None:
            worker = threading.Thread(
                target=self._run, args=(inflight,), daemon=True,
                name=f"queue-{inflight.message.id}",
            )
            worker.start()
        return message.id

    def stop(self) -> StopResult:
        with self._cond:
            discarded = len(self._queue)
            self._queue.clear()
            self._stopped = True
            current = self._current
        partial = None
        if current is not None:
            partial = StreamContent(current.content.content, current.content.reasoning)
            current.token.cancel("Stopped by user")
        _log.info("Queue stopped; %d pending message(s) discarded", discarded)
        self._emit("on_stopped", discarded, partial)
        return StopResult(discarded, partial)

    def clear(self) -> None:
        with self._cond:
            self._queue.clear()

    def get_queue_length(self) -> int:
        with self._cond:
            return len(self._queue)

    def is_processing(self) -> bool:
        with self._cond:
            return self._processing

    def is_stopped(self) -> bool:
        return self._stopped

    def get_current_message_id(self) -> Optional[str]:
        current = self._current
        return current.message.id if current is not None else None

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued or running; False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._processing and not self._queue, timeout)

    # ── worker ──

    def _run(self, inflight: _InFlight) -> None:
        notify_empty = False
        try:
            while inflight is not None:
                self._process(inflight)
                with self._cond:
                    if self._stopped or not self._queue:
                        notify_empty = not self._stopped
                        inflight = None
                    else:
                        inflight = _InFlight(self._queue.popleft(), CancellationToken())
                        self._current = inflight
        finally:
            with self._cond:
                self._processing = False
                self._current = None
                self._cond.notify_all()
        if notify_empty:
            self._emit("on_queue_empty")

    def _process(self, inflight: _InFlight) -> None:
        message = inflight.message
        cb = self.callbacks
        self._emit("on_message_start", message.id)

        def on_start() -> None:
            if not self._stopped and cb.on_stream_start:
                cb.on_stream_start(message.id)

        def on_chunk(content: StreamContent) -> None:
            inflight.content = content
            if not self._stopped and cb.on_stream_chunk:
                cb.on_stream_chunk(message.id, content)

        def on_end(content: StreamContent) -> None:
            if not self._stopped and cb.on_stream_end:
                cb.on_stream_end(message.id, content)

        stream_callbacks = StreamCallbacks(on_start=on_start, on_chunk=on_chunk, on_end=on_end)
        try:
            response = self.processor(message, stream_callbacks, inflight.token)
        except Exception as e:
            if self._stopped or is_cancellation(e):
                _log.debug("Message %s cancelled", message.id)
                return
            _log.error("Message %s failed: %s", message.id, e)
            self._emit("on_message_error", message.id, e)
            return
        if not self._stopped:
            self._emit("on_message_complete", message.id, response)

    def _emit(self, name: str, *args) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            # The worker keeps draining the queue when a listener fails.
            _log.exception("Queue callback %s failed", name)
