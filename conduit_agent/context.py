"""Working-directory context used for tool selection."""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

PROJECT_UNKNOWN = "unknown"

# Checked in order; the first marker present wins.
PROJECT_MARKERS = (
    ("package.json", "node"),
    ("requirements.txt", "python"),
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("pom.xml", "java"),
    ("build.gradle", "java"),
    ("build.gradle.kts", "java"),
    ("CMakeLists.txt", "cpp"),
    ("*.csproj", "dotnet"),
    ("*.sln", "dotnet"),
    ("Cargo.toml", "rust"),
    ("go.mod", "go"),
)


def detect_project_type(cwd: Union[str, Path]) -> str:
    root = Path(cwd)
    if not root.is_dir():
        return PROJECT_UNKNOWN
    for marker, project_type in PROJECT_MARKERS:
        if "*" in marker:
            if next(root.glob(marker), None) is not None:
                return project_type
        elif (root / marker).exists():
            return project_type
    return PROJECT_UNKNOWN


@dataclass(frozen=True)
class MatchContext:
    cwd: str
    project_type: str = PROJECT_UNKNOWN
    platform: str = sys.platform

    @property
    def is_windows(self) -> bool:
        return self.platform.startswith("win")

    @classmethod
    def for_directory(cls, cwd: Union[str, Path], platform: str = sys.platform) -> "MatchContext":
        return cls(cwd=str(cwd), project_type=detect_project_type(cwd), platform=platform)


PROJECT_INSTRUCTIONS_FILE = "AGENT.md"
MAX_INSTRUCTIONS_CHARS = 20_000


def load_project_instructions(cwd: Union[str, Path]) -> Optional[str]:
    """Contents of ``AGENT.md`` at the project root, if present."""
    path = Path(cwd) / PROJECT_INSTRUCTIONS_FILE
    if not path.is_file():
        return None
    try:
        text = path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    return text[:MAX_INSTRUCTIONS_CHARS] or None
