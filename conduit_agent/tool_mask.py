"""Per-turn tool masking.

The request always carries the same tool list wherever the model allows it,
so the provider's prompt-prefix cache survives across turns. Restriction is
applied by ``tool_choice`` or by an assistant prefill naming the allowed
prefix; only models with neither get a filtered tool list.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Set

from .config import ModelCapabilities
from .context import MatchContext
from .tools.catalog import (
    ACTION_CORE_TOOLS,
    ACTION_PREFIX,
    CORE_PREFIX,
    PLAN_PREFIX,
    PLAN_TOOL,
    WEB_TOOL,
    ToolCatalog,
    platform_shell_tools,
)

MODE_PLAN = "plan"
MODE_ACTION = "action"


class MaskMechanism(str, Enum):
    TOOL_CHOICE = "tool_choice"
    PROMPT_PREFIX = "prompt_prefix"
    DYNAMIC_FALLBACK = "dynamic_fallback"


@dataclass(frozen=True)
class ToolMaskState:
    mode: str
    allowed_tools: FrozenSet[str]
    mechanism: MaskMechanism
    required_tool_id: Optional[str] = None
    prompt_prefix: Optional[str] = None

    @property
    def is_plan(self) -> bool:
        return self.mode == MODE_PLAN

    def allows(self, tool_id: str) -> bool:
        return tool_id in self.allowed_tools


# Lower-cased substring match against the raw user input.
KEYWORD_TO_TOOL = {
    WEB_TOOL: ("http", "https", "url", "fetch", "web", "webpage", "website", "网页", "网站", "链接"),
    "a-c-git": ("git", "commit", "branch", "merge", "push", "pull", "clone", "checkout",
                "stash", "rebase", "提交", "分支"),
    "a-node": ("node", "nodejs", "npm", "npx", "yarn", "pnpm", "package.json", "javascript", "typescript"),
    "a-python": ("python", "pip", "pyenv", "conda", "poetry", "requirements.txt"),
    "a-java": ("java", "javac", "maven", "gradle", "mvn"),
    "a-cmake": ("cmake", "cmakelists", "make"),
    "a-gradle": ("gradle", "gradlew"),
    "a-maven": ("maven", "mvn", "pom.xml"),
    "a-docker": ("docker", "dockerfile", "container", "compose", "容器"),
    "a-dockercompose": ("dockercompose", "docker compose", "compose.yml"),
    "a-mysql": ("mysql", "mariadb"),
    "a-psql": ("postgresql", "postgres", "psql"),
    "a-sqlite3": ("sqlite", "sqlite3"),
    "a-vscode": ("vscode", "code", "visual studio code"),
    "a-vs2022": ("visual studio", "msbuild", "sln", "csproj"),
    "a-beyondcompare": ("beyond compare", "diff", "compare", "merge files"),
}

PROJECT_TYPE_TOOLS = {
    "node": frozenset({"a-node", "a-npm"}),
    "python": frozenset({"a-python"}),
    "java": frozenset({"a-java", "a-javac", "a-maven", "a-gradle"}),
    "cpp": frozenset({"a-cmake"}),
    "dotnet": frozenset({"a-vs2022", "a-msbuild"}),
}


def select_mechanism(capabilities: ModelCapabilities) -> MaskMechanism:
    if capabilities.supports_tool_choice:
        return MaskMechanism.TOOL_CHOICE
    if capabilities.supports_prefill:
        return MaskMechanism.PROMPT_PREFIX
    return MaskMechanism.DYNAMIC_FALLBACK


def match_tools_by_input(text: str) -> Set[str]:
    lowered = (text or "").lower()
    return {
        tool_id for tool_id, keywords in KEYWORD_TO_TOOL.items()
        if any(keyword in lowered for keyword in keywords)
    }


def tools_for_project_type(project_type: Optional[str]) -> FrozenSet[str]:
    return PROJECT_TYPE_TOOLS.get(project_type or "", frozenset())


def narrowest_prefix(allowed: Iterable[str]) -> str:
    allowed = list(allowed)
    if allowed and all(tool_id.startswith(CORE_PREFIX) for tool_id in allowed):
        return CORE_PREFIX
    return ACTION_PREFIX


def build_tool_mask(
    user_input: str,
    context: MatchContext,
    plan_mode: bool,
    catalog: ToolCatalog,
    capabilities: ModelCapabilities = ModelCapabilities(),
    context_aware: bool = True,
) -> ToolMaskState:
    """Compute the tools the model may call this turn. Never raises."""
    mechanism = select_mechanism(capabilities)

    if plan_mode:
        return ToolMaskState(
            mode=MODE_PLAN,
            allowed_tools=frozenset({PLAN_TOOL}),
            mechanism=mechanism,
            required_tool_id=PLAN_TOOL,
            prompt_prefix=PLAN_PREFIX if mechanism is MaskMechanism.PROMPT_PREFIX else None,
        )

    candidates: Set[str] = set(ACTION_CORE_TOOLS)
    candidates.update(platform_shell_tools(context.platform))
    if context_aware:
        candidates.update(tools_for_project_type(context.project_type))
        candidates.update(match_tools_by_input(user_input))

    allowed = frozenset(candidates & catalog.installed_ids)
    return ToolMaskState(
        mode=MODE_ACTION,
        allowed_tools=allowed,
        mechanism=mechanism,
        prompt_prefix=narrowest_prefix(allowed) if mechanism is MaskMechanism.PROMPT_PREFIX else None,
    )


def tool_not_allowed_error(tool_id: str, mask: ToolMaskState) -> str:
    available = ", ".join(sorted(mask.allowed_tools))
    return f'Error: Tool "{tool_id}" is not available in current context. Available tools: {available}'
