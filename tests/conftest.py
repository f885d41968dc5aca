"""Shared fixtures for conduit-agent tests."""

import os
from unittest.mock import MagicMock

import pytest
import yaml

import conduit_agent.config as config_module
from conduit_agent.context import MatchContext
from conduit_agent.tools.discovery import discover_tools


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep Config.load() away from the real ~/.conduit-agent."""
    home = tmp_path / ".conduit-home"
    monkeypatch.setattr(config_module, "CONFIG_DIR", home)
    monkeypatch.setattr(config_module, "CONFIG_FILE", home / "config.yml")
    for var in ("CONDUIT_MODEL", "CONDUIT_VERBOSE", "CONDUIT_PLAN_MODE"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture
def sample_config_data():
    """Minimal .conduit.yml data dict."""
    return {
        "active-model": "local",
        "max-tool-call-rounds": 12,
        "context-aware": True,
        "compact-threshold": 0.8,
        "request-timeout": 45,
        "thinking-enabled": False,
        "plan-mode": False,
        "verbose": False,
        "models": {
            "local": {
                "protocol": "openai",
                "model": "qwen2.5-coder",
                "description": "Local test model",
                "context-window": 65536,
                "max-tokens": 8192,
                "base-url": "http://localhost:8080/v1",
                "api-key": "not-needed",
            },
            "claude": {
                "protocol": "anthropic",
                "model": "claude-sonnet-4-20250514",
                "api-key-env": "TEST_ANTHROPIC_KEY",
                "supports-tool-choice": True,
                "supports-thinking": True,
            },
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a project config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".conduit.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


@pytest.fixture
def catalog():
    """Linux catalog with every executable present."""
    return discover_tools("linux", which=lambda binary: f"/usr/bin/{binary}")


@pytest.fixture
def bare_catalog():
    """Linux catalog where no external executable is installed."""
    return discover_tools("linux", which=lambda binary: None)


@pytest.fixture
def match_context(tmp_path):
    return MatchContext(cwd=str(tmp_path), project_type="unknown", platform="linux")


@pytest.fixture
def mock_console():
    """A mock Rich Console that silently accepts all print calls."""
    c = MagicMock()
    c.print = MagicMock()
    c.input = MagicMock(return_value="n")
    return c
