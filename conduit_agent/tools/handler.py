"""Turns model-issued tool calls into tool-role result messages."""

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..cancellation import CancellationToken
from ..logger import get_logger
from ..messages import ChatMessage, ToolCall, split_tool_name
from ..tool_mask import ToolMaskState, tool_not_allowed_error
from .catalog import ToolAction, ToolCatalog, ToolDescriptor
from .executor import ToolResult

_log = get_logger(__name__)

ToolExecuteFn = Callable[[ToolDescriptor, ToolAction, Dict[str, Any], str, float], ToolResult]


@dataclass
class ToolCallResult:
    tool_call_id: str
    tool_id: str
    action: str
    label: str
    success: bool
    output: str = ""
    error: str = ""
    elapsed_ms: int = 0

    @property
    def content(self) -> str:
        body = self.output if self.success else f"Error: {self.error}"
        return f"[{self.label}:{self.action}] ({self.elapsed_ms}ms)\n{body}"

    def to_message(self) -> ChatMessage:
        return ChatMessage.tool(self.tool_call_id, self.content)


class ToolCallHandler:
    """Resolve, execute and wrap tool calls, one at a time in issue order.

    Every failure (unknown tool, tool not installed, unknown action, bad
    arguments, executor crash) becomes an error result the model can read.
    """

    def __init__(self, catalog: ToolCatalog, execute: ToolExecuteFn, cwd: str,
                 timeout: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.catalog = catalog
        self.execute = execute
        self.cwd = cwd
        self.timeout = timeout
        self._clock = clock

    def handle_tool_calls(self, tool_calls: Sequence[ToolCall],
                          mask: Optional[ToolMaskState] = None,
                          cancel_token: Optional[CancellationToken] = None) -> List[ChatMessage]:
        return [r.to_message() for r in self.run_tool_calls(tool_calls, mask, cancel_token)]

    def run_tool_calls(self, tool_calls: Sequence[ToolCall],
                       mask: Optional[ToolMaskState] = None,
                       cancel_token: Optional[CancellationToken] = None,
                       on_result: Optional[Callable[[ToolCallResult], None]] = None) -> List[ToolCallResult]:
        results = []
        for tc in tool_calls:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            result = self.handle_tool_call(tc, mask)
            results.append(result)
            if on_result is not None:
                on_result(result)
        return results

    def handle_tool_call(self, tc: ToolCall, mask: Optional[ToolMaskState] = None) -> ToolCallResult:
        tool_id, action_name = split_tool_name(tc.name)
        started = self._clock()

        def fail(label: str, error: str) -> ToolCallResult:
            return ToolCallResult(
                tc.id, tool_id, action_name, label, False, error=error,
                elapsed_ms=self._elapsed(started),
            )

        tool = self.catalog.get(tool_id)
        if tool is None:
            return fail(tool_id, f'Tool "{tool_id}" not found')
        if not tool.installed:
            hint = f" Install: {tool.install_hint}" if tool.install_hint else ""
            return fail(tool.name, f'Tool "{tool.name}" is not installed.{hint}')
        if mask is not None and not mask.allows(tool_id):
            return fail(tool.name, tool_not_allowed_error(tool_id, mask).removeprefix("Error: "))
        action = tool.get_action(action_name)
        if action is None:
            available = ", ".join(a.name for a in tool.actions)
            return fail(tool.name, f'Unknown action "{action_name}" for {tool.name}. Available: {available}')

        try:
            args = json.loads(tc.arguments) if tc.arguments.strip() else {}
        except ValueError as e:
            return fail(tool.name, f"Invalid arguments JSON: {e}")
        if not isinstance(args, dict):
            return fail(tool.name, "Arguments must be a JSON object")

        try:
            outcome = self.execute(tool, action, args, self.cwd, self.timeout)
        except Exception as e:
            _log.warning("Tool %s:%s failed: %s", tool_id, action_name, e)
            return fail(tool.name, f"{type(e).__name__}: {e}")

        return ToolCallResult(
            tc.id, tool_id, action_name, tool.name, outcome.success,
            output=outcome.output, error=outcome.error,
            elapsed_ms=self._elapsed(started),
        )

    def _elapsed(self, started: float) -> int:
        return int((self._clock() - started) * 1000)
