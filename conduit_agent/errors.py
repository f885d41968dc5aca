"""Structured error types for the conversation engine."""

from typing import Optional


class AgentError(Exception):
    """Base error for all agent operations."""
    pass


class ConfigError(AgentError):
    """Invalid or incomplete model configuration."""
    pass


class TransportError(AgentError):
    """Network failure, non-2xx status, or request timeout."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class StreamTimeoutError(TransportError):
    """Raised when a streaming watchdog fires."""

    def __init__(self, phase: str, timeout: float):
        self.phase = phase
        self.timeout = timeout
        label = "Connection" if phase == "connect" else "Stream activity"
        super().__init__(f"{label} timed out after {timeout:g}s")


class StreamCancelledError(AgentError):
    """The in-flight request was cancelled by the caller."""

    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message)


class ProtocolError(AgentError):
    """The provider reported an error event or sent an unreadable body."""

    def __init__(self, message: str, error_type: str = ""):
        self.error_type = error_type
        super().__init__(message)


class ToolError(AgentError):
    """Error raised during tool execution."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name} error: {message}")


def is_cancellation(exc: BaseException) -> bool:
    return isinstance(exc, StreamCancelledError)
