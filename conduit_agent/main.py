"""
conduit-agent - streaming AI coding assistant for your terminal.

Command: conduit run
"""

import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from . import __version__
from .agent import StreamCallbacks
from .command_router import QUIT, handle_command, show_config_panel, show_sessions_table
from .config import CONFIG_DIR, CONFIG_FIELDS, HISTORY_FILE, SESSIONS_DIR, Config
from .errors import AgentError, ConfigError
from .logger import setup_logger
from .message_queue import MessageQueue, QueueCallbacks
from .messages import StreamContent, ToolCall
from .runtime import Runtime, build_runtime
from .session_store import SessionStore
from .tokenizer import estimate_tokens
from .tools.handler import ToolCallResult
from .ui import (
    DIM,
    ERROR,
    PLAN,
    PTK_STYLE,
    SUCCESS,
    WARN,
    SlashCommandCompleter,
    build_banner,
    make_prompt_html,
    render_startup,
)

console = Console()

_ARGS_PREVIEW = 80


class TurnPrinter:
    """Prints streamed text and tool activity as it arrives."""

    def __init__(self, out: Console):
        self.console = out
        self._content = ""
        self._reasoning = ""

    def reset(self, message_id: str = "") -> None:
        self._content = ""
        self._reasoning = ""

    def _emit(self, shown: str, new: str, style: str = "") -> str:
        if new.startswith(shown):
            delta = new[len(shown):]
        else:
            delta = "\n" + new
        if delta:
            self.console.print(delta, end="", style=style or None, markup=False, highlight=False, soft_wrap=True)
        return new

    def on_stream_chunk(self, message_id: str, content: StreamContent) -> None:
        if content.reasoning != self._reasoning:
            self._reasoning = self._emit(self._reasoning, content.reasoning, f"italic {DIM}")
        if content.content != self._content:
            self._content = self._emit(self._content, content.content)

    def on_stream_end(self, message_id: str, content: StreamContent) -> None:
        self.on_stream_chunk(message_id, content)
        self.console.print()

    def on_tool_call(self, tc: ToolCall) -> None:
        args = tc.arguments if len(tc.arguments) <= _ARGS_PREVIEW else tc.arguments[:_ARGS_PREVIEW] + "…"
        self.console.print(f"\n  [{DIM}]⚙ {escape(tc.name)} {escape(args)}[/{DIM}]")

    def on_tool_result(self, result: ToolCallResult) -> None:
        if result.success:
            self.console.print(f"  [{SUCCESS}]✓[/{SUCCESS}] [{DIM}]{escape(result.label)}:{escape(result.action)} "
                               f"({result.elapsed_ms}ms)[/{DIM}]")
        else:
            first_line = (result.error or "").strip().splitlines()[:1]
            detail = escape(first_line[0]) if first_line else ""
            self.console.print(f"  [{ERROR}]✗[/{ERROR}] [{DIM}]{escape(result.label)}:{escape(result.action)}[/{DIM}] {detail}")

    def on_mode_change(self, plan_mode: bool) -> None:
        label = f"[{PLAN}]Plan mode ON[/{PLAN}]" if plan_mode else f"[{SUCCESS}]Plan mode OFF[/{SUCCESS}]"
        self.console.print(f"\n  {label}")

    def on_message_error(self, message_id: str, error: Exception) -> None:
        self.console.print(f"\n[{ERROR}]  Error: {escape(str(error))}[/{ERROR}]")


def _ask_user(question: str) -> str:
    console.print(f"\n  [bold]?[/bold] {escape(question)}")
    return console.input("  › ")


def _bootstrap(model: Optional[str], project_dir: str, plan: bool = False,
               verbose: bool = False, thinking: bool = False) -> Runtime:
    try:
        config = Config.load(project_dir)
    except ConfigError as e:
        console.print(f"[red]Config error: {e}[/red]")
        sys.exit(1)

    if model:
        if model not in config.models:
            console.print(f"[red]Error: unknown model preset '{model}'.[/red] "
                          f"Available: {', '.join(config.models)}")
            sys.exit(1)
        config.active_model = model
    if plan:
        config.plan_mode = True
    if verbose:
        config.verbose = True
    if thinking:
        config.thinking_enabled = True

    setup_logger("conduit_agent", verbose=config.verbose)

    if not Path(config.project_root).is_dir():
        console.print(f"[red]Error: '{project_dir}' is not a valid directory.[/red]")
        sys.exit(1)

    try:
        return build_runtime(config, ask_user=_ask_user)
    except ConfigError as e:
        console.print(f"[red]Config error: {e}[/red]")
        sys.exit(1)


def _maybe_compact(runtime: Runtime, incoming_tokens: int) -> None:
    check = runtime.agent.should_compact(incoming_tokens)
    if not check.should_compact:
        return
    if not runtime.config.auto_compact:
        if check.is_context_full:
            console.print(f"  [{WARN}]Context is {check.projected_percent:.0f}% full. Run /compact.[/{WARN}]")
        return
    try:
        with console.status(f"[{DIM}]Context at {check.usage_percent:.0f}%, summarizing...[/{DIM}]"):
            compacted = runtime.agent.compact()
    except AgentError as e:
        console.print(f"  [{WARN}]Auto-compact failed: {e}[/{WARN}]")
        return
    if compacted:
        console.print(f"  [{DIM}]History compacted ({check.real_message_count} messages)[/{DIM}]")


def _submit(runtime: Runtime, queue: MessageQueue, text: str) -> None:
    _maybe_compact(runtime, estimate_tokens(text))
    if runtime.agent.session.real_message_count() == 0:
        runtime.store.title_from_first_message(runtime.session_id, text)

    queue.enqueue(text, plan_mode=runtime.mode_state.plan_mode)
    try:
        while not queue.wait_until_idle(timeout=0.2):
            pass
    except KeyboardInterrupt:
        queue.stop()
        # The worker records the partial reply itself once the turn unwinds.
        while not queue.wait_until_idle(timeout=0.2):
            pass
        console.print(f"\n[{WARN}]  Interrupted.[/{WARN}]")
    runtime.save()


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """conduit-agent - streaming AI coding assistant for your terminal."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@cli.command()
@click.option("--model", "-m", default=None, help="Model preset name")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--plan", is_flag=True, help="Start in plan mode")
@click.option("--thinking", is_flag=True, help="Request model reasoning when supported")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(model, project_dir, plan, thinking, verbose):
    """Start an interactive session."""
    console.print(build_banner(__version__))
    os.environ.setdefault("PROMPT_TOOLKIT_NO_CPR", "1")
    runtime = _bootstrap(model, project_dir, plan=plan, verbose=verbose, thinking=thinking)
    render_startup(console, runtime.config, runtime.context.project_type, len(runtime.catalog.installed_ids))

    printer = TurnPrinter(console)
    hooks = StreamCallbacks(
        on_tool_call=printer.on_tool_call,
        on_tool_result=printer.on_tool_result,
        on_mode_change=printer.on_mode_change,
    )
    queue = MessageQueue(runtime.make_processor(hooks), QueueCallbacks(
        on_stream_start=printer.reset,
        on_stream_chunk=printer.on_stream_chunk,
        on_stream_end=printer.on_stream_end,
        on_message_error=printer.on_message_error,
    ))

    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.key_binding import KeyBindings

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(HISTORY_FILE)),
        multiline=False,
        completer=SlashCommandCompleter(),
        complete_while_typing=True,
        style=PTK_STYLE,
    )

    repl_kb = KeyBindings()

    @repl_kb.add("escape", "enter")
    def _newline(event):
        event.current_buffer.insert_text("\n")

    pending_ctrl_d_exit = False

    while True:
        try:
            prompt_html = make_prompt_html(runtime.mode_state.plan_mode)
            user_input = session.prompt(prompt_html, key_bindings=repl_kb).strip()
            pending_ctrl_d_exit = False
        except EOFError:
            if pending_ctrl_d_exit:
                console.print("\n[dim]Goodbye![/dim]")
                break
            pending_ctrl_d_exit = True
            console.print("\n[dim]Press Ctrl-D again to exit.[/dim]")
            continue
        except KeyboardInterrupt:
            console.print("\n[dim]Goodbye![/dim]")
            break

        if not user_input:
            continue

        if user_input.startswith("/"):
            if handle_command(user_input, console=console, runtime=runtime) == QUIT:
                break
            continue

        _submit(runtime, queue, user_input)

    runtime.save()


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--model", "-m", default=None)
@click.option("--project-dir", "-d", default=".")
@click.option("--plan", is_flag=True, help="Run the query in plan mode")
def ask(message, model, project_dir, plan):
    """Run a single query and print the reply."""
    runtime = _bootstrap(model, project_dir, plan=plan)
    printer = TurnPrinter(console)
    callbacks = StreamCallbacks(
        on_chunk=lambda content: printer.on_stream_chunk("", content),
        on_end=lambda content: printer.on_stream_end("", content),
        on_tool_call=printer.on_tool_call,
        on_tool_result=printer.on_tool_result,
    )
    try:
        runtime.agent.stream_message(" ".join(message), callbacks=callbacks)
    except AgentError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    finally:
        runtime.save()


@cli.command()
@click.option("--delete", "delete_id", default=None, help="Delete a session by id prefix")
def sessions(delete_id):
    """List saved sessions."""
    store = SessionStore(SESSIONS_DIR)
    store.initialize()
    if delete_id:
        matches = [s.id for s in store.list_sessions() if s.id.startswith(delete_id)]
        if len(matches) != 1:
            console.print(f"[{WARN}]No unique session matches '{delete_id}'[/{WARN}]")
        elif store.delete_session(matches[0]):
            console.print(f"[{SUCCESS}]✓ Deleted {matches[0][:8]}[/{SUCCESS}]")
        else:
            console.print(f"[{WARN}]The active session cannot be deleted[/{WARN}]")
    show_sessions_table(console, store)


@cli.command("config")
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE", help="Set a configuration value")
@click.option("--reset", "reset_keys", multiple=True, metavar="KEY", help="Reset a key to its default")
def config_cmd(assignments, reset_keys):
    """Show or change configuration."""
    cfg = Config.load()
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep:
            console.print(f"[{WARN}]Expected KEY=VALUE, got '{assignment}'[/{WARN}]")
            continue
        ok, error = cfg.set_config_value(key.strip(), value.strip())
        if ok:
            console.print(f"[{SUCCESS}]✓[/{SUCCESS}] {key.strip()} = {cfg.get_config_value(key.strip())}")
        else:
            console.print(f"[{ERROR}]{error}[/{ERROR}]")
    for key in reset_keys:
        ok, error = cfg.reset_config_value(key)
        if ok:
            console.print(f"[{SUCCESS}]✓[/{SUCCESS}] {key} reset to {CONFIG_FIELDS[key].default}")
        else:
            console.print(f"[{ERROR}]{error}[/{ERROR}]")
    show_config_panel(console, cfg)


if __name__ == "__main__":
    cli()
