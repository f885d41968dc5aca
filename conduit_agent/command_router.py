"""Slash-command routing and handlers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import AgentError
from .runtime import Runtime
from .ui import ACCENT, BORDER, DIM, ERROR, PLAN, SLASH_COMMANDS, SUCCESS, WARN, build_help_text

QUIT = "quit"

_SLASH_ALIASES = {"/h": "/help", "/?": "/help", "/quit": "/exit", "/q": "/exit"}


@dataclass
class CommandContext:
    console: Console
    runtime: Runtime


CommandHandler = Callable[[CommandContext, list[str]], str]


def _resolve_command(raw_cmd: str) -> str:
    """Resolve abbreviated slash commands via exact/alias/prefix matching."""
    cmd = raw_cmd.lower()
    if cmd in SLASH_COMMANDS:
        return cmd
    if cmd in _SLASH_ALIASES:
        return _SLASH_ALIASES[cmd]
    matches = [candidate for candidate in SLASH_COMMANDS if candidate.startswith(cmd)]
    if len(matches) == 1:
        return matches[0]
    return cmd


def handle_command(command: str, *, console: Console, runtime: Runtime) -> str:
    """Handle one slash command string; returns ``"quit"`` to leave the REPL."""
    parts = command.split()
    if not parts:
        return ""

    cmd = _resolve_command(parts[0])
    handler = COMMAND_HANDLERS.get(cmd)
    if handler is None:
        console.print(f"  [{WARN}]Unknown: {cmd}. Try /help[/{WARN}]")
        return ""
    return handler(CommandContext(console=console, runtime=runtime), parts[1:])


def show_config_panel(console: Console, config) -> None:
    table = Table(show_header=False, border_style=BORDER, padding=(0, 2), box=None)
    table.add_column("Key", style=f"bold {ACCENT}", min_width=14)
    table.add_column("Value", style="#E6EDF3")
    for key, value in config.summary().items():
        table.add_row(key, str(value))
    console.print(Panel(table, title=f"[bold {ACCENT}] Configuration [/bold {ACCENT}]",
                        title_align="left", border_style=BORDER, padding=(0, 1)))


def show_sessions_table(console: Console, store) -> None:
    sessions = store.list_sessions()
    if not sessions:
        console.print(f"  [{DIM}]No saved sessions[/{DIM}]")
        return
    active_id = store.get_active_session_id()
    table = Table(border_style=BORDER)
    table.add_column("", width=2)
    table.add_column("ID", style=DIM)
    table.add_column("Name", style=f"bold {ACCENT}")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", style=DIM, justify="right")
    table.add_column("Updated", style=DIM)
    for info in sessions:
        marker = f"[{SUCCESS}]●[/{SUCCESS}]" if info.id == active_id else " "
        updated = datetime.fromtimestamp(info.updated_at / 1000).strftime("%Y-%m-%d %H:%M")
        table.add_row(marker, info.id[:8], info.name, str(info.message_count),
                      f"{info.token_usage:,}", updated)
    console.print(Panel(table, title=f"[bold {ACCENT}] Sessions [/bold {ACCENT}]",
                        title_align="left", border_style=BORDER))


def show_status(console: Console, runtime: Runtime) -> None:
    status = runtime.agent.get_status()
    color = ERROR if status.is_full else WARN if status.is_near_limit else SUCCESS
    mode = f"[{PLAN}]PLAN[/{PLAN}]" if runtime.mode_state.plan_mode else "action"
    console.print(
        f"  [{color}]{status.usage_percent:.1f}%[/{color}] of "
        f"{runtime.agent.session.context_window:,} tokens used "
        f"[{DIM}]({status.used_tokens:,} used, {max(0, status.available_tokens):,} available, "
        f"{status.message_count} messages)[/{DIM}]"
    )
    console.print(f"  [{DIM}]mode[/{DIM}] {mode}  [{DIM}]model[/{DIM}] {runtime.config.active_model}")


def _find_session_id(runtime: Runtime, prefix: str) -> str | None:
    matches = [s.id for s in runtime.store.list_sessions() if s.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


def _cmd_exit(ctx: CommandContext, args: list[str]) -> str:
    _ = args
    ctx.runtime.save()
    ctx.console.print(f"  [{DIM}]Goodbye![/{DIM}]")
    return QUIT


def _cmd_help(ctx: CommandContext, args: list[str]) -> str:
    _ = args
    ctx.console.print(build_help_text())
    return ""


def _cmd_clear(ctx: CommandContext, args: list[str]) -> str:
    _ = args
    ctx.runtime.agent.clear_history()
    ctx.runtime.save()
    ctx.console.print(f"  [{SUCCESS}]✓ Conversation cleared[/{SUCCESS}]")
    return ""


def _cmd_plan(ctx: CommandContext, args: list[str]) -> str:
    mode_state = ctx.runtime.mode_state
    if args and args[0] in ("on", "off"):
        mode_state.set_plan_mode(args[0] == "on")
    else:
        mode_state.toggle()
    if mode_state.plan_mode:
        ctx.console.print(f"  [{PLAN}]Plan mode ON[/{PLAN}] [{DIM}]· only the plan tool is offered[/{DIM}]")
    else:
        ctx.console.print(f"  [{SUCCESS}]Plan mode OFF[/{SUCCESS}] [{DIM}]· action tools offered[/{DIM}]")
    return ""


def _cmd_compact(ctx: CommandContext, args: list[str]) -> str:
    _ = args
    before = ctx.runtime.agent.get_status()
    try:
        with ctx.console.status(f"[{DIM}]Summarizing conversation...[/{DIM}]"):
            compacted = ctx.runtime.agent.compact()
    except AgentError as e:
        ctx.console.print(f"  [{ERROR}]Compaction failed: {e}[/{ERROR}]")
        return ""
    if not compacted:
        ctx.console.print(f"  [{DIM}]Nothing to compact[/{DIM}]")
        return ""
    after = ctx.runtime.agent.get_status()
    ctx.runtime.save()
    ctx.console.print(
        f"  [{SUCCESS}]✓ Compacted {before.message_count} messages[/{SUCCESS}] "
        f"[{DIM}]({before.usage_percent:.1f}% → {after.usage_percent:.1f}%)[/{DIM}]"
    )
    return ""


def _cmd_status(ctx: CommandContext, args: list[str]) -> str:
    _ = args
    show_status(ctx.console, ctx.runtime)
    return ""


def _cmd_sessions(ctx: CommandContext, args: list[str]) -> str:
    runtime = ctx.runtime
    if not args:
        runtime.save()
        show_sessions_table(ctx.console, runtime.store)
        return ""

    sub, rest = args[0], args[1:]
    if not rest:
        ctx.console.print(f"  [{WARN}]Usage: /sessions {sub} <id-prefix>[/{WARN}]")
        return ""
    session_id = _find_session_id(runtime, rest[0])
    if session_id is None:
        ctx.console.print(f"  [{WARN}]No unique session matches '{rest[0]}'[/{WARN}]")
        return ""

    if sub == "switch":
        if runtime.switch_session(session_id):
            info = runtime.store.get_session_by_id(session_id)
            ctx.console.print(f"  [{SUCCESS}]✓ Switched to[/{SUCCESS}] [bold]{info.name}[/bold]")
        else:
            ctx.console.print(f"  [{ERROR}]Could not load session {session_id[:8]}[/{ERROR}]")
    elif sub == "delete":
        if runtime.store.delete_session(session_id):
            ctx.console.print(f"  [{SUCCESS}]✓ Deleted {session_id[:8]}[/{SUCCESS}]")
        else:
            ctx.console.print(f"  [{WARN}]The active session cannot be deleted[/{WARN}]")
    elif sub == "rename" and len(rest) > 1:
        runtime.store.rename_session(session_id, " ".join(rest[1:]))
        ctx.console.print(f"  [{SUCCESS}]✓ Renamed[/{SUCCESS}]")
    else:
        ctx.console.print(f"  [{WARN}]Usage: /sessions [switch|delete|rename] <id-prefix> [name][/{WARN}]")
    return ""


def _cmd_new(ctx: CommandContext, args: list[str]) -> str:
    info = ctx.runtime.new_session(" ".join(args) or None)
    ctx.console.print(f"  [{SUCCESS}]✓ New session[/{SUCCESS}] [{DIM}]{info.id[:8]}[/{DIM}]")
    return ""


def _cmd_model(ctx: CommandContext, args: list[str]) -> str:
    config = ctx.runtime.config
    if not args:
        table = Table(border_style=BORDER)
        table.add_column("", width=2)
        table.add_column("Name", style=f"bold {ACCENT}")
        table.add_column("Protocol", style=DIM)
        table.add_column("Model")
        table.add_column("Description", style="#8B949E")
        for name, preset in config.models.items():
            marker = f"[{SUCCESS}]●[/{SUCCESS}]" if name == config.active_model else " "
            table.add_row(marker, name, preset.protocol, preset.model, preset.description)
        ctx.console.print(table)
        return ""

    name = args[0]
    if not ctx.runtime.switch_model(name):
        ctx.console.print(f"  [{WARN}]Model '{name}' not found[/{WARN}]")
        return ""
    preset = config.get_active_preset()
    ctx.console.print(f"  [{SUCCESS}]✓[/{SUCCESS}] Switched → [bold]{name}[/bold] [{DIM}]({preset.model})[/{DIM}]")
    return ""


def _cmd_config(ctx: CommandContext, args: list[str]) -> str:
    _ = args
    show_config_panel(ctx.console, ctx.runtime.config)
    return ""


COMMAND_HANDLERS: dict[str, CommandHandler] = {
    "/help": _cmd_help,
    "/plan": _cmd_plan,
    "/compact": _cmd_compact,
    "/status": _cmd_status,
    "/sessions": _cmd_sessions,
    "/new": _cmd_new,
    "/clear": _cmd_clear,
    "/model": _cmd_model,
    "/config": _cmd_config,
    "/exit": _cmd_exit,
}
