"""Builds the tool catalog for this machine.

Built-in tools are always present; command-line tools are marked installed
when their executable is on ``PATH``.
"""

import shutil
import sys
from typing import Callable, List, Optional

from .catalog import (
    ASK_USER_TOOL,
    BASH_TOOL,
    CMD_TOOL,
    ENTER_PLAN_TOOL,
    FILE_TOOL,
    GIT_TOOL,
    PLAN_TOOL,
    POWERSHELL_TOOL,
    PWSH_TOOL,
    WEB_TOOL,
    ToolAction,
    ToolCatalog,
    ToolDescriptor,
)

# Built-in action templates handled in-process by the executor.
ASK_USER = "__ASK_USER__"
FILE_READ = "__FILE_READ__"
FILE_WRITE = "__FILE_WRITE__"
FILE_LIST = "__FILE_LIST__"
WEB_FETCH = "__WEB_FETCH__"
PLAN_READ = "__PLAN_READ__"
PLAN_WRITE = "__PLAN_WRITE__"
PLAN_ENTER_MODE = "__PLAN_ENTER_MODE__"
PLAN_EXIT_MODE = "__PLAN_EXIT_MODE__"

# Shorthand helpers for property definitions
_S = lambda desc, **kw: {"type": "string", "description": desc, **kw}
_I = lambda desc, **kw: {"type": "integer", "description": desc, **kw}

_ARGS = {"args": _S("Command-line arguments, passed through verbatim")}


def _builtin_tools() -> List[ToolDescriptor]:
    A = ToolAction
    return [
        ToolDescriptor(
            id=ASK_USER_TOOL, name="AskUser", category="core",
            description="Ask the user a clarifying question",
            actions=(
                A("ask", "Ask the user a question and wait for the answer.", ASK_USER,
                  {"question": _S("The question to ask")}, ("question",)),
            ),
        ),
        ToolDescriptor(
            id=FILE_TOOL, name="File", category="core",
            description="Read, write and list project files",
            actions=(
                A("read", "Read a file relative to the project root.", FILE_READ,
                  {"path": _S("File path relative to project root")}, ("path",)),
                A("write", "Create or overwrite a file.", FILE_WRITE,
                  {"path": _S("File path"), "content": _S("Full file content")}, ("path", "content")),
                A("list", "List a directory.", FILE_LIST,
                  {"path": _S("Directory path (default: .)", default=".")}),
            ),
        ),
        ToolDescriptor(
            id=WEB_TOOL, name="Web", category="core",
            description="Fetch web pages",
            actions=(
                A("fetch", "Fetch a URL and return its text.", WEB_FETCH,
                  {"url": _S("http(s) URL to fetch")}, ("url",)),
            ),
        ),
        ToolDescriptor(
            id=ENTER_PLAN_TOOL, name="EnterPlan", category="core",
            description="Switch to plan mode",
            actions=(
                A("enter", "Switch to plan mode to design before acting.", PLAN_ENTER_MODE,
                  {"reason": _S("Why planning is needed")}),
            ),
        ),
        ToolDescriptor(
            id=PLAN_TOOL, name="Plan", category="plan",
            description="Maintain the working plan",
            actions=(
                A("read", "Read the current plan.", PLAN_READ),
                A("write", "Replace the plan with new markdown content.", PLAN_WRITE,
                  {"content": _S("Plan in markdown")}, ("content",)),
                A("exit", "Leave plan mode and start acting on the plan.", PLAN_EXIT_MODE,
                  {"summary": _S("One-line summary of the plan")}),
            ),
        ),
    ]


def _cli_tool(tool_id: str, name: str, binary: str, description: str, category: str,
              install_hint: str, which: Callable[[str], Optional[str]]) -> ToolDescriptor:
    actions = (
        ToolAction("run", f"Run {binary} with arguments.", f"{binary} {{{{args}}}}",
                   dict(_ARGS), ("args",), raw_params=("args",)),
    )
    return ToolDescriptor(
        id=tool_id, name=name, description=description, category=category,
        actions=actions, installed=which(binary) is not None, install_hint=install_hint,
    )


def _shell_tools(platform: str, which: Callable[[str], Optional[str]]) -> List[ToolDescriptor]:
    cmd = {"command": _S("Command line to execute")}
    if platform.startswith("win"):
        shells = [
            (POWERSHELL_TOOL, "PowerShell", "powershell", "powershell -NoProfile -Command {{command}}"),
            (PWSH_TOOL, "PowerShell 7", "pwsh", "pwsh -NoProfile -Command {{command}}"),
            (CMD_TOOL, "Cmd", "cmd", "{{command}}"),
        ]
    else:
        shells = [(BASH_TOOL, "Bash", "bash", "{{command}}")]
    return [
        ToolDescriptor(
            id=tool_id, name=name, category="shell",
            description=f"Run commands in {name}",
            actions=(ToolAction("run", "Execute a shell command in the project directory.",
                                template, dict(cmd), ("command",), raw_params=("command",)),),
            installed=which(binary) is not None,
        )
        for tool_id, name, binary, template in shells
    ]


def _git_tool(which: Callable[[str], Optional[str]]) -> ToolDescriptor:
    A = ToolAction
    return ToolDescriptor(
        id=GIT_TOOL, name="Git", category="vcs",
        description="Version control",
        actions=(
            A("status", "Show working tree status.", "git status --short --branch"),
            A("diff", "Show changes.", "git diff {{args}}", dict(_ARGS), raw_params=("args",)),
            A("log", "Show recent commits.", "git log --oneline -n {{count}}",
              {"count": _I("Number of commits", default=10)}, ("count",)),
            A("commit", "Stage all changes and commit.", "git add -A && git commit -m {{message}}",
              {"message": _S("Commit message")}, ("message",)),
            A("run", "Run git with arguments.", "git {{args}}", dict(_ARGS), ("args",), raw_params=("args",)),
        ),
        installed=which("git") is not None,
        install_hint="https://git-scm.com/downloads",
    )


_CLI_TOOLS = [
    ("a-node", "Node.js", "node", "JavaScript runtime", "runtime", "https://nodejs.org"),
    ("a-npm", "npm", "npm", "Node package manager", "runtime", "https://nodejs.org"),
    ("a-python", "Python", "python3", "Python interpreter", "runtime", "https://python.org"),
    ("a-java", "Java", "java", "Java runtime", "runtime", "https://adoptium.net"),
    ("a-javac", "javac", "javac", "Java compiler", "build", "https://adoptium.net"),
    ("a-maven", "Maven", "mvn", "Java build tool", "build", "https://maven.apache.org"),
    ("a-gradle", "Gradle", "gradle", "JVM build tool", "build", "https://gradle.org"),
    ("a-cmake", "CMake", "cmake", "C/C++ build generator", "build", "https://cmake.org"),
    ("a-msbuild", "MSBuild", "msbuild", ".NET build engine", "build", "https://visualstudio.microsoft.com"),
    ("a-docker", "Docker", "docker", "Container runtime", "container", "https://docs.docker.com/get-docker/"),
    ("a-dockercompose", "Docker Compose", "docker-compose", "Multi-container orchestration", "container",
     "https://docs.docker.com/compose/install/"),
    ("a-mysql", "MySQL", "mysql", "MySQL client", "database", "https://dev.mysql.com/downloads/"),
    ("a-psql", "psql", "psql", "PostgreSQL client", "database", "https://www.postgresql.org/download/"),
    ("a-sqlite3", "SQLite", "sqlite3", "SQLite shell", "database", "https://sqlite.org/download.html"),
    ("a-vscode", "VS Code", "code", "Visual Studio Code", "ide", "https://code.visualstudio.com"),
    ("a-vs2022", "Visual Studio 2022", "devenv", "Visual Studio IDE", "ide", "https://visualstudio.microsoft.com"),
    ("a-beyondcompare", "Beyond Compare", "bcompare", "File comparison", "diff",
     "https://www.scootersoftware.com"),
]


def discover_tools(platform: str = sys.platform,
                   which: Callable[[str], Optional[str]] = shutil.which) -> ToolCatalog:
    """Probe the machine once and freeze the result."""
    tools = _builtin_tools()
    tools.append(_git_tool(which))
    tools.extend(_shell_tools(platform, which))
    for tool_id, name, binary, description, category, hint in _CLI_TOOLS:
        tools.append(_cli_tool(tool_id, name, binary, description, category, hint, which))
    return ToolCatalog(tools)
