"""Shared HTTP plumbing for the vendor protocol clients.

Both clients speak JSON over HTTP with ``requests``. The blocking path
retries transport failures with exponential backoff; the streaming path
never retries, but guards the connection and every subsequent read with a
watchdog thread and wires the caller's cancellation token into the same
abort (closing the response and its session).
"""

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import requests

from ..cancellation import CancellationToken
from ..errors import (
    ProtocolError,
    StreamCancelledError,
    StreamTimeoutError,
    TransportError,
)
from ..logger import get_logger
from ..messages import ChatMessage, ChatResponse, StreamChunk
from .wire import encode_request

_log = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_ACTIVITY_TIMEOUT = 120.0
MAX_ERROR_BODY = 500


@dataclass
class RequestOptions:
    """Per-call options.

    ``tool_choice_names`` restricts the callable functions when the model
    supports ``tool_choice``; each client renders it in its own wire shape.
    """
    cancel_token: Optional[CancellationToken] = None
    tool_choice_names: Optional[Tuple[str, ...]] = None


class StreamWatchdog:
    """Connection and activity deadlines for one streaming request.

    The connection deadline covers the wait for response headers; after
    :meth:`mark_connected` the activity deadline applies and every
    :meth:`touch` pushes it forward. When a deadline passes, ``on_timeout``
    runs once on the watchdog thread.
    """

    def __init__(self, connect_timeout: Optional[float], activity_timeout: Optional[float],
                 on_timeout: Callable[[], None]):
        self.connect_timeout = connect_timeout
        self.activity_timeout = activity_timeout
        self._on_timeout = on_timeout
        self._cond = threading.Condition()
        self._phase = "connect"
        self._deadline = self._deadline_for(connect_timeout)
        self._stopped = False
        self._thread: Optional[threading.Thread] = None
        self.fired: Optional[Tuple[str, float]] = None

    @staticmethod
    def _deadline_for(timeout: Optional[float]) -> Optional[float]:
        if not timeout or timeout <= 0:
            return None
        return time.monotonic() + timeout

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="stream-watchdog", daemon=True)
        self._thread.start()

    def mark_connected(self) -> None:
        with self._cond:
            self._phase = "activity"
            self._deadline = self._deadline_for(self.activity_timeout)
            self._cond.notify_all()

    def touch(self) -> None:
        with self._cond:
            if self._phase == "activity":
                self._deadline = self._deadline_for(self.activity_timeout)

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()

    def timeout_error(self) -> Optional[StreamTimeoutError]:
        if self.fired is None:
            return None
        return StreamTimeoutError(*self.fired)

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                if self._deadline is None:
                    self._cond.wait()
                    continue
                remaining = self._deadline - time.monotonic()
                if remaining <= 0:
                    timeout = self.connect_timeout if self._phase == "connect" else self.activity_timeout
                    self.fired = (self._phase, float(timeout))
                    break
                self._cond.wait(remaining)
        if self.fired is not None:
            _log.warning("Stream %s timeout after %ss; aborting", *self.fired)
            self._on_timeout()


class ProtocolClient:
    """Base class for the vendor clients.

    Subclasses supply the endpoint, headers, request translation and the
    two response parsers; everything that touches the network lives here.
    """

    protocol = ""
    DEFAULT_BASE_URL = ""
    ENDPOINT = ""
    FIELD_ORDER: Sequence[str] = ()
    supports_streaming = True

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        max_tokens: int = 4096,
        thinking: bool = False,
        thinking_budget: int = 10000,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        activity_timeout: float = DEFAULT_ACTIVITY_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        http: Optional[requests.Session] = None,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.max_tokens = max_tokens
        self.thinking = thinking
        self.thinking_budget = thinking_budget
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.activity_timeout = activity_timeout
        self.max_retries = max(1, int(max_retries))
        # An injected session is shared by every call; otherwise each call
        # gets its own so that closing it aborts only that request.
        self._http = http

    # ── subclass hooks ──

    def build_request(self, messages: Sequence[ChatMessage], tools: Optional[List[Dict[str, Any]]],
                      options: RequestOptions, stream: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def headers(self, stream: bool) -> Dict[str, str]:
        raise NotImplementedError

    def parse_response(self, payload: Dict[str, Any]) -> ChatResponse:
        raise NotImplementedError

    def parse_stream(self, lines: Iterable[str]) -> Iterator[StreamChunk]:
        raise NotImplementedError

    # ── public API ──

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.ENDPOINT}"

    def encode(self, body: Dict[str, Any]) -> bytes:
        return encode_request(body, self.FIELD_ORDER)

    def chat(self, messages: Sequence[ChatMessage], tools: Optional[List[Dict[str, Any]]] = None,
             options: Optional[RequestOptions] = None) -> ChatResponse:
        """Blocking request with retry and exponential backoff."""
        options = options or RequestOptions()
        token = options.cancel_token
        data = self.encode(self.build_request(messages, tools, options, stream=False))

        last_error: Optional[TransportError] = None
        for attempt in range(self.max_retries):
            if token is not None:
                token.raise_if_cancelled()
            try:
                payload = self._post_json(data, token)
            except TransportError as e:
                last_error = e
                if attempt + 1 >= self.max_retries:
                    break
                delay = 2 ** attempt
                _log.warning(
                    "%s request failed (attempt %d/%d): %s; retrying in %ds",
                    self.protocol, attempt + 1, self.max_retries, e, delay,
                )
                self._backoff(delay, token)
                continue
            return self.parse_response(payload)

        assert last_error is not None
        raise last_error

    def stream_chat(self, messages: Sequence[ChatMessage], tools: Optional[List[Dict[str, Any]]] = None,
                    options: Optional[RequestOptions] = None) -> Iterator[StreamChunk]:
        """Open a streaming request and yield normalized chunks lazily.

        The last chunk always carries ``finish_reason``. Closing the
        generator early releases the connection.
        """
        options = options or RequestOptions()
        token = options.cancel_token
        if token is not None:
            token.raise_if_cancelled()

        data = self.encode(self.build_request(messages, tools, options, stream=True))
        http = self._http or requests.Session()
        state: Dict[str, Any] = {"response": None}

        def abort() -> None:
            response = state["response"]
            if response is not None:
                response.close()
            if http is not self._http:
                http.close()

        watchdog = StreamWatchdog(self.connect_timeout, self.activity_timeout, abort)
        unregister = token.add_callback(abort) if token is not None else _noop
        watchdog.start()
        try:
            try:
                response = http.post(
                    self.url,
                    data=data,
                    headers=self.headers(stream=True),
                    stream=True,
                    timeout=(self.connect_timeout or None, self.activity_timeout or None),
                )
            except requests.RequestException as e:
                raise self._abort_error(e, token, watchdog) from e
            state["response"] = response
            watchdog.mark_connected()
            if token is not None and token.cancelled:
                raise StreamCancelledError(token.reason or "Request cancelled")
            self._check_status(response)
            yield from self.parse_stream(self._iter_lines(response, token, watchdog))
        finally:
            watchdog.stop()
            unregister()
            if state["response"] is not None:
                state["response"].close()
            if http is not self._http:
                http.close()

    # ── internals ──

    def _backoff(self, delay: float, token: Optional[CancellationToken]) -> None:
        if token is None:
            time.sleep(delay)
        elif token.wait(delay):
            raise StreamCancelledError(token.reason or "Request cancelled")

    def _post_json(self, data: bytes, token: Optional[CancellationToken]) -> Dict[str, Any]:
        http = self._http or requests.Session()
        unregister = _noop
        if token is not None and http is not self._http:
            unregister = token.add_callback(http.close)
        try:
            try:
                response = http.post(
                    self.url,
                    data=data,
                    headers=self.headers(stream=False),
                    timeout=self.request_timeout,
                )
            except requests.Timeout as e:
                if token is not None and token.cancelled:
                    raise StreamCancelledError(token.reason or "Request cancelled") from e
                raise TransportError(f"Request timed out after {self.request_timeout:g}s") from e
            except requests.RequestException as e:
                if token is not None and token.cancelled:
                    raise StreamCancelledError(token.reason or "Request cancelled") from e
                raise TransportError(f"Connection failed: {e}") from e
            self._check_status(response)
            try:
                payload = response.json()
            except ValueError as e:
                raise ProtocolError(f"Unreadable response body: {e}") from e
            if not isinstance(payload, dict):
                raise ProtocolError("Response body is not a JSON object")
            return payload
        finally:
            unregister()
            if http is not self._http:
                http.close()

    @staticmethod
    def _check_status(response) -> None:
        status = getattr(response, "status_code", 200)
        if status < 400:
            return
        try:
            body = response.text or ""
        except (requests.RequestException, ValueError):
            body = ""
        raise TransportError(f"HTTP {status}: {body[:MAX_ERROR_BODY]}", status_code=status, body=body)

    def _iter_lines(self, response, token: Optional[CancellationToken],
                    watchdog: StreamWatchdog) -> Iterator[str]:
        lines = iter(response.iter_lines())
        while True:
            try:
                raw = next(lines)
            except StopIteration:
                # A clean EOF can also be the result of an abort closing the socket.
                pending = self._pending_abort(token, watchdog)
                if pending is not None:
                    raise pending
                return
            except Exception as e:
                # urllib3 raises assorted errors once another thread closes the response.
                raise self._abort_error(e, token, watchdog) from e
            watchdog.touch()
            if token is not None and token.cancelled:
                raise StreamCancelledError(token.reason or "Request cancelled")
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            yield raw

    @staticmethod
    def _pending_abort(token: Optional[CancellationToken], watchdog: StreamWatchdog):
        if token is not None and token.cancelled:
            return StreamCancelledError(token.reason or "Request cancelled")
        return watchdog.timeout_error()

    def _abort_error(self, exc: BaseException, token: Optional[CancellationToken],
                     watchdog: StreamWatchdog) -> Exception:
        pending = self._pending_abort(token, watchdog)
        if pending is not None:
            return pending
        if isinstance(exc, requests.ConnectTimeout):
            return StreamTimeoutError("connect", float(self.connect_timeout))
        if isinstance(exc, requests.Timeout):
            return StreamTimeoutError("activity", float(self.activity_timeout))
        return TransportError(f"Stream interrupted: {type(exc).__name__}: {exc}")


def load_json_object(data: str) -> Optional[Dict[str, Any]]:
    """Parse one SSE payload; ``None`` for malformed or non-object data."""
    try:
        payload = json.loads(data)
    except ValueError:
        _log.debug("Skipping malformed stream line: %.200s", data)
        return None
    return payload if isinstance(payload, dict) else None


def as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_int(value: Any) -> Optional[int]:
    """Lenient integer read of a stream field; ``None`` when unusable."""
    if isinstance(value, bool):
        return None
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return None


def _noop() -> None:
    return None
