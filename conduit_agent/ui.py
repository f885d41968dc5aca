"""Terminal UI primitives: colors, prompt, slash-command palette."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.styles import Style

ACCENT = "#7FA6D9"
BORDER = "#30363D"
DIM = "#6E7681"
SUCCESS = "#57DB9C"
WARN = "#E3B341"
ERROR = "#F85149"
INFO = "#58A6FF"
PROMPT = "#B7C6D8"
PLAN = "#D2A8FF"

PTK_STYLE = Style.from_dict({
    "completion-menu": "bg:default",
    "completion-menu.completion": "bg:default #C8D8EE",
    "completion-menu.completion.current": "bg:#1E2834 #E7EEF8",
    "completion-menu.command": SUCCESS,
    "completion-menu.args": "#9BB0C9",
    "completion-menu.description": "#7AA7E8",
    "scrollbar.background": "bg:default",
    "scrollbar.button": "bg:default",
})


@dataclass(frozen=True)
class SlashCommandSpec:
    command: str
    usage: str
    description: str
    keywords: tuple[str, ...] = ()


SLASH_COMMAND_SPECS: tuple[SlashCommandSpec, ...] = (
    SlashCommandSpec("/help", "/help", "Show help", ("docs", "usage", "commands")),
    SlashCommandSpec("/plan", "/plan", "Toggle plan mode", ("mode", "design", "action")),
    SlashCommandSpec("/compact", "/compact", "Summarize history", ("context", "tokens")),
    SlashCommandSpec("/status", "/status", "Context usage", ("tokens", "usage")),
    SlashCommandSpec("/sessions", "/sessions [switch|delete|rename]", "Manage sessions", ("session", "history")),
    SlashCommandSpec("/new", "/new [name]", "Start a new session", ("session", "reset")),
    SlashCommandSpec("/clear", "/clear", "Clear conversation", ("reset", "history")),
    SlashCommandSpec("/model", "/model [name]", "Show or switch model", ("llm", "preset")),
    SlashCommandSpec("/config", "/config", "Show config", ("settings",)),
    SlashCommandSpec("/exit", "/exit", "Quit", ("quit",)),
)

SLASH_COMMANDS = [spec.command for spec in SLASH_COMMAND_SPECS]
MAX_SLASH_MENU_ITEMS = 12


def build_banner(version: str) -> str:
    return (
        f"[bold {ACCENT}]conduit[/bold {ACCENT}] "
        f"[dim]v{version} · AI coding assistant[/dim]"
    )


def build_help_text() -> str:
    usage_width = max(len(spec.usage) for spec in SLASH_COMMAND_SPECS)
    lines = ["", f"[bold {ACCENT}]Commands:[/bold {ACCENT}]"]
    for spec in SLASH_COMMAND_SPECS:
        lines.append(f"  {spec.usage:<{usage_width}}  {spec.description}")
    lines.extend([
        "",
        f"[bold {ACCENT}]Tips:[/bold {ACCENT}]",
        "  Esc → Enter   Multi-line input",
        "  Ctrl-C        Stop the running reply (partial text is kept)",
        "  Ctrl-D ×2     Exit",
    ])
    return "\n".join(lines)


def make_prompt_html(plan_mode: bool = False) -> HTML:
    if plan_mode:
        return HTML(
            f'<style fg="{PLAN}">plan</style>'
            f'<style fg="#66788A"> › </style>'
        )
    return HTML(
        f'<style fg="{PROMPT}">conduit</style>'
        f'<style fg="#66788A"> › </style>'
    )


def render_startup(console, config, project_type: str, tool_count: int) -> None:
    preset = config.get_active_preset()
    key_status = "[green]✓[/green]" if preset.resolve_api_key() else "[red]✗[/red]"
    mode_text = f"[{PLAN}]PLAN[/{PLAN}]" if config.plan_mode else "action"

    console.print(
        f"[dim]model[/dim] [bold]{config.active_model}[/bold] [dim]→[/dim] {preset.model}"
        f" [dim]• protocol[/dim] {preset.protocol}"
        f" [dim]• mode[/dim] {mode_text}"
        f" [dim]• key[/dim] {key_status}"
    )
    console.print(
        f"[dim]context[/dim] {preset.context_window:,} (max_tokens={preset.max_tokens:,})"
        f" [dim]• tools[/dim] {tool_count}"
    )
    console.print(f"[dim]project[/dim] {config.project_root} [dim]({project_type})[/dim]")
    if preset.base_url:
        console.print(f"[dim]api[/dim] {preset.base_url}")
    console.print("[dim]/help · /plan · /sessions · Ctrl+C to stop[/dim]")
    console.print()


def _fuzzy_span_score(query: str, candidate: str) -> int | None:
    positions = []
    cursor = 0
    for char in query:
        index = candidate.find(char, cursor)
        if index < 0:
            return None
        positions.append(index)
        cursor = index + 1
    return positions[-1] - positions[0] + 1 if positions else 0


def _command_sort_key(token: str, spec: SlashCommandSpec, order_map: dict[str, int]):
    lowered = token.lower().lstrip("/")
    command_only = spec.command.lower().lstrip("/")
    order = order_map[spec.command]

    if not lowered or command_only.startswith(lowered):
        return (0, 0, order)

    contains_pos = command_only.find(lowered)
    if contains_pos >= 0:
        return (1, contains_pos, order)

    fuzzy_span = _fuzzy_span_score(lowered, command_only)
    if fuzzy_span is not None:
        return (2, fuzzy_span, order)

    haystack = " ".join((spec.description, *spec.keywords)).lower()
    keyword_pos = haystack.find(lowered)
    if keyword_pos >= 0:
        return (3, keyword_pos, order)
    return None


class SlashCommandCompleter(Completer):
    """Slash-command palette with prefix, substring and fuzzy matching."""

    def __init__(
        self,
        specs: Sequence[SlashCommandSpec] = SLASH_COMMAND_SPECS,
        max_items: int = MAX_SLASH_MENU_ITEMS,
    ):
        self.specs = list(specs)
        self.max_items = max_items
        self.order_map = {spec.command: index for index, spec in enumerate(self.specs)}
        self.usage_width = max(len(spec.usage) for spec in self.specs)

    def _display(self, spec: SlashCommandSpec):
        args = spec.usage[len(spec.command):]
        gap = " " * max(2, self.usage_width - len(spec.usage) + 1)
        display = [("class:completion-menu.command", spec.command)]
        if args:
            display.append(("class:completion-menu.args", args))
        display.append(("", gap))
        display.append(("class:completion-menu.description", spec.description))
        return display

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor.lstrip()
        if not text.startswith("/") or " " in text:
            return

        ranked = []
        for spec in self.specs:
            key = _command_sort_key(text, spec, self.order_map)
            if key is not None:
                ranked.append((key, spec))
        ranked.sort(key=lambda item: item[0])

        for _, spec in ranked[: self.max_items]:
            yield Completion(
                text=spec.command,
                start_position=-len(text),
                display=self._display(spec),
            )
