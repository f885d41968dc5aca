"""Frozen tool catalog: descriptors, actions and their function schemas.

A function exposed to the model is named ``<toolId>_<actionName>``; tool ids
never contain an underscore, so the first underscore splits the two.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

ASK_USER_TOOL = "a-c-askuser"
FILE_TOOL = "a-c-file"
WEB_TOOL = "a-c-web"
GIT_TOOL = "a-c-git"
ENTER_PLAN_TOOL = "a-c-enterplan"
PLAN_TOOL = "plan"

BASH_TOOL = "a-c-bash"
POWERSHELL_TOOL = "a-c-powershell"
PWSH_TOOL = "a-c-pwsh"
CMD_TOOL = "a-c-cmd"

CORE_PREFIX = "a-c-"
ACTION_PREFIX = "a-"
PLAN_PREFIX = "plan_"

ACTION_CORE_TOOLS = (ASK_USER_TOOL, FILE_TOOL, WEB_TOOL, GIT_TOOL, ENTER_PLAN_TOOL)
POSIX_SHELL_TOOLS = (BASH_TOOL,)
WINDOWS_SHELL_TOOLS = (POWERSHELL_TOOL, PWSH_TOOL, CMD_TOOL)


def platform_shell_tools(platform: str) -> Tuple[str, ...]:
    return WINDOWS_SHELL_TOOLS if platform.startswith("win") else POSIX_SHELL_TOOLS


def _schema(name: str, description: str, properties: dict,
            required: list) -> dict:
    """Build an OpenAI-compatible function schema."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


@dataclass(frozen=True)
class ToolAction:
    name: str
    description: str
    command: str
    properties: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    required: Tuple[str, ...] = ()
    # Parameters substituted without shell quoting (whole command lines).
    raw_params: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolDescriptor:
    id: str
    name: str
    description: str
    category: str
    actions: Tuple[ToolAction, ...]
    installed: bool = True
    install_hint: str = ""

    def get_action(self, name: str) -> Optional[ToolAction]:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    def function_name(self, action: ToolAction) -> str:
        return f"{self.id}_{action.name}"

    def schemas(self) -> List[dict]:
        return [
            _schema(
                self.function_name(action),
                f"[{self.name}] {action.description}",
                dict(action.properties),
                list(action.required),
            )
            for action in self.actions
        ]


class ToolCatalog:
    """Immutable snapshot of discovered tools, ordered by id."""

    def __init__(self, tools: Iterable[ToolDescriptor] = ()):
        ordered = sorted(tools, key=lambda t: t.id)
        self._tools = MappingProxyType({t.id: t for t in ordered})
        self._installed = frozenset(t.id for t in ordered if t.installed)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, tool_id: str) -> Optional[ToolDescriptor]:
        return self._tools.get(tool_id)

    @property
    def installed_ids(self) -> FrozenSet[str]:
        return self._installed

    def is_installed(self, tool_id: str) -> bool:
        return tool_id in self._installed

    def function_names(self, ids: Optional[Iterable[str]] = None) -> Tuple[str, ...]:
        wanted = self._installed if ids is None else frozenset(ids) & self._installed
        return tuple(
            tool.function_name(action)
            for tool in self._tools.values() if tool.id in wanted
            for action in tool.actions
        )

    def to_openai_tools(self, ids: Optional[Iterable[str]] = None) -> List[dict]:
        """Function schemas for installed tools, in stable id order."""
        wanted = self._installed if ids is None else frozenset(ids) & self._installed
        schemas: List[dict] = []
        for tool in self._tools.values():
            if tool.id in wanted:
                schemas.extend(tool.schemas())
        return schemas
