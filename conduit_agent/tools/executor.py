"""Default tool-execution service.

Built-in actions (file I/O, plan file, mode switches, ask-user, web fetch)
run in-process; every other action is a command template rendered with the
call's arguments and run through the platform shell.
"""

import os
import re
import shlex
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import requests

from ..errors import ToolError
from ..logger import get_logger
from ..mode import ModeState
from . import discovery as d
from .catalog import ToolAction, ToolDescriptor

_log = get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
_MULTI_NEWLINE_RE = re.compile(r"\n{3,}")
MAX_READ_CHARS = 100_000
MAX_FETCH_CHARS = 40_000
PLAN_FILE = Path(".conduit") / "plan.md"


@dataclass
class ToolResult:
    success: bool
    output: str = ""
    error: str = ""


def _quote(value: str, platform: str) -> str:
    if platform.startswith("win"):
        return subprocess.list2cmdline([value])
    return shlex.quote(value)


def render_command(action: ToolAction, args: Dict[str, Any], platform: str = sys.platform) -> str:
    """Fill ``{{param}}`` placeholders; raw params are inserted unquoted."""
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = args.get(name)
        if value is None or value == "":
            if name in action.required:
                raise ToolError(action.name, f"missing required parameter '{name}'")
            return ""
        text = str(value)
        return text if name in action.raw_params else _quote(text, platform)

    return _PLACEHOLDER_RE.sub(_replace, action.command).strip()


class ToolExecutor:
    """Callable ``(tool, action, args, cwd, timeout) -> ToolResult``."""

    MAX_STDOUT = 8000
    MAX_STDERR = 4000

    def __init__(
        self,
        mode_state: ModeState,
        ask_user: Optional[Callable[[str], str]] = None,
        platform: str = sys.platform,
        http: Optional[requests.Session] = None,
    ):
        self.mode_state = mode_state
        self.ask_user = ask_user
        self.platform = platform
        self._http = http
        self._builtins: Dict[str, Callable[[Dict[str, Any], Path, float], ToolResult]] = {
            d.ASK_USER: self._ask_user,
            d.FILE_READ: self._file_read,
            d.FILE_WRITE: self._file_write,
            d.FILE_LIST: self._file_list,
            d.WEB_FETCH: self._web_fetch,
            d.PLAN_READ: self._plan_read,
            d.PLAN_WRITE: self._plan_write,
            d.PLAN_ENTER_MODE: self._plan_enter,
            d.PLAN_EXIT_MODE: self._plan_exit,
        }

    def __call__(self, tool: ToolDescriptor, action: ToolAction, args: Dict[str, Any],
                 cwd: str, timeout: float) -> ToolResult:
        root = Path(cwd).resolve()
        handler = self._builtins.get(action.command)
        try:
            if handler is not None:
                return handler(args, root, timeout)
            return self._run_command(render_command(action, args, self.platform), root, timeout)
        except ToolError as e:
            return ToolResult(False, error=str(e))

    # ── shell ──

    def _shell_argv(self, command: str) -> list:
        if self.platform.startswith("win"):
            return ["cmd", "/d", "/c", command]
        return ["bash", "-c", command]

    def _run_command(self, command: str, cwd: Path, timeout: float) -> ToolResult:
        _log.debug("Executing command: %s", command[:100])
        try:
            result = subprocess.run(
                self._shell_argv(command),
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(cwd),
                env={**os.environ, "TERM": "dumb"},
            )
        except subprocess.TimeoutExpired:
            return ToolResult(False, error=f"Timed out after {timeout:g}s")
        except OSError as e:
            return ToolResult(False, error=f"{type(e).__name__}: {e}")

        parts = []
        if result.stdout:
            out = result.stdout
            if len(out) > self.MAX_STDOUT:
                half = self.MAX_STDOUT // 2
                out = out[:half] + "\n...(truncated)...\n" + out[-half:]
            parts.append(out)
        if result.stderr:
            err = result.stderr
            if len(err) > self.MAX_STDERR:
                half = self.MAX_STDERR // 2
                err = err[:half] + "\n...(truncated)...\n" + err[-half:]
            parts.append(f"[stderr]\n{err}")
        if result.returncode != 0:
            parts.append(f"[exit code: {result.returncode}]")

        output = "\n".join(parts).strip() or "(no output)"
        if result.returncode != 0:
            return ToolResult(False, error=output)
        return ToolResult(True, output=output)

    # ── files ──

    @staticmethod
    def _resolve(root: Path, path: str) -> Path:
        p = Path(path or ".")
        if not p.is_absolute():
            p = root / p
        p = p.resolve()
        try:
            p.relative_to(root)
        except ValueError:
            raise ToolError("file", f"'{path}' is outside project root ({root})")
        return p

    def _file_read(self, args, root: Path, timeout: float) -> ToolResult:
        fp = self._resolve(root, args.get("path", ""))
        if not fp.is_file():
            return ToolResult(False, error=f"File not found: {args.get('path')}")
        text = fp.read_text(encoding="utf-8", errors="replace")
        if len(text) > MAX_READ_CHARS:
            text = text[:MAX_READ_CHARS] + "\n... (truncated)"
        return ToolResult(True, output=text)

    def _file_write(self, args, root: Path, timeout: float) -> ToolResult:
        fp = self._resolve(root, args.get("path", ""))
        content = str(args.get("content", ""))
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(content, encoding="utf-8")
        return ToolResult(True, output=f"Wrote {len(content)} chars to {fp.relative_to(root)}")

    def _file_list(self, args, root: Path, timeout: float) -> ToolResult:
        dp = self._resolve(root, args.get("path") or ".")
        if not dp.is_dir():
            return ToolResult(False, error=f"Not a directory: {args.get('path')}")
        names = sorted(
            (p.name + "/" if p.is_dir() else p.name) for p in dp.iterdir()
        )
        return ToolResult(True, output="\n".join(names) or "(empty)")

    # ── plan ──

    def _plan_read(self, args, root: Path, timeout: float) -> ToolResult:
        fp = root / PLAN_FILE
        if not fp.exists():
            return ToolResult(True, output="(no plan yet)")
        return ToolResult(True, output=fp.read_text(encoding="utf-8"))

    def _plan_write(self, args, root: Path, timeout: float) -> ToolResult:
        fp = root / PLAN_FILE
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(str(args.get("content", "")), encoding="utf-8")
        return ToolResult(True, output=f"Plan saved to {PLAN_FILE.as_posix()}")

    def _plan_enter(self, args, root: Path, timeout: float) -> ToolResult:
        self.mode_state.set_plan_mode(True)
        reason = args.get("reason")
        return ToolResult(True, output="Entered plan mode." + (f" Reason: {reason}" if reason else ""))

    def _plan_exit(self, args, root: Path, timeout: float) -> ToolResult:
        self.mode_state.set_plan_mode(False)
        summary = args.get("summary")
        return ToolResult(True, output="Exited plan mode." + (f" Plan: {summary}" if summary else ""))

    # ── interaction / web ──

    def _ask_user(self, args, root: Path, timeout: float) -> ToolResult:
        if self.ask_user is None:
            return ToolResult(False, error="No interactive user available")
        answer = self.ask_user(str(args.get("question", "")))
        return ToolResult(True, output=answer or "(no answer)")

    def _web_fetch(self, args, root: Path, timeout: float) -> ToolResult:
        url = str(args.get("url", ""))
        if urlparse(url).scheme not in ("http", "https"):
            return ToolResult(False, error=f"Invalid URL: {url}")
        http = self._http or requests
        try:
            resp = http.get(url, timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            return ToolResult(False, error=f"Fetch failed: {e}")
        text = _MULTI_NEWLINE_RE.sub("\n\n", resp.text.strip())
        if len(text) > MAX_FETCH_CHARS:
            text = text[:MAX_FETCH_CHARS] + "\n\n... (truncated)"
        return ToolResult(True, output=f"URL: {url}\n\n{text}")
