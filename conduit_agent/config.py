"""
Configuration: model presets plus engine tuning, loaded from YAML.

Loading priority:
  1. Project dir .conduit.yml
  2. Git root .conduit.yml
  3. Global ~/.conduit-agent/config.yml (written with defaults when missing)

``.env`` files in the global dir and the project dir are loaded first so
``api-key-env`` references resolve.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Callable, Any

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .logger import get_logger

_log = get_logger(__name__)

CONFIG_DIR = Path.home() / ".conduit-agent"
CONFIG_FILE = CONFIG_DIR / "config.yml"
HISTORY_FILE = CONFIG_DIR / "history.txt"
SESSIONS_DIR = CONFIG_DIR / "sessions"
PROJECT_CONFIG_NAME = ".conduit.yml"

PROTOCOLS = {"openai", "anthropic"}


@dataclass(frozen=True)
class ModelCapabilities:
    """What the active model accepts; drives tool-mask mechanism selection."""
    supports_tools: bool = True
    supports_tool_choice: bool = False
    supports_prefill: bool = False
    supports_thinking: bool = False


# ── Configuration metadata and validation ──


@dataclass
class ConfigFieldSpec:
    """Configuration field specification with validation rules."""
    key: str
    field_name: str
    description: str
    value_type: str  # "str", "int", "float", "bool"
    default: Any
    validator: Optional[Callable[[Any], tuple[bool, Any, str]]] = None  # (valid, coerced_value, error_msg)


def _validate_int_range(value: Any, min_val: int, max_val: int) -> tuple[bool, int, str]:
    """Validate integer within range."""
    if isinstance(value, bool):
        return False, 0, "Must be an integer"
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_float_range(value: Any, min_val: float, max_val: float) -> tuple[bool, float, str]:
    if isinstance(value, bool):
        return False, 0.0, "Must be a number"
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return False, 0.0, "Must be a number"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_enum(value: Any, valid_values: set) -> tuple[bool, str, str]:
    """Validate value is in allowed set."""
    val_str = str(value).strip().lower()
    if val_str not in valid_values:
        return False, "", f"Must be one of: {', '.join(sorted(valid_values))}"
    return True, val_str, ""


def _validate_bool(value: Any) -> tuple[bool, bool, str]:
    """Validate boolean value."""
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


def _field(key: str, description: str, value_type: str, default: Any, validator=None) -> ConfigFieldSpec:
    return ConfigFieldSpec(
        key=key,
        field_name=key.replace("-", "_"),
        description=description,
        value_type=value_type,
        default=default,
        validator=validator,
    )


# Configuration field registry with validation
CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {
    spec.key: spec for spec in [
        _field("active-model", "Currently active model preset name", "str", "local"),
        _field("max-tool-call-rounds", "Maximum tool-call rounds per turn", "int", 40,
               lambda v: _validate_int_range(v, 1, 200)),
        _field("context-aware", "Offer tools based on project type and request keywords", "bool", True,
               _validate_bool),
        _field("compact-threshold", "Context usage ratio that triggers compaction", "float", 0.85,
               lambda v: _validate_float_range(v, 0.1, 1.0)),
        _field("full-threshold", "Context usage ratio treated as full", "float", 0.95,
               lambda v: _validate_float_range(v, 0.1, 1.0)),
        _field("reserve-ratio", "Share of the context window kept in reserve", "float", 0.0,
               lambda v: _validate_float_range(v, 0.0, 0.9)),
        _field("request-timeout", "Blocking request timeout in seconds", "int", 60,
               lambda v: _validate_int_range(v, 5, 600)),
        _field("connect-timeout", "Streaming connection timeout in seconds", "int", 30,
               lambda v: _validate_int_range(v, 1, 300)),
        _field("activity-timeout", "Streaming inactivity timeout in seconds", "int", 120,
               lambda v: _validate_int_range(v, 5, 1800)),
        _field("max-retries", "Attempts for blocking requests", "int", 3,
               lambda v: _validate_int_range(v, 1, 10)),
        _field("tool-timeout", "Tool execution timeout in seconds", "int", 60,
               lambda v: _validate_int_range(v, 5, 600)),
        _field("thinking-enabled", "Request model reasoning when supported", "bool", False, _validate_bool),
        _field("plan-mode", "Start in plan mode", "bool", False, _validate_bool),
        _field("verbose", "Enable verbose logging", "bool", False, _validate_bool),
        _field("auto-compact", "Compact history automatically near the context limit", "bool", True,
               _validate_bool),
    ]
}


def validate_config_value(key: str, value: Any) -> tuple[bool, Any, str]:
    """
    Validate a configuration value.

    Returns:
        (is_valid, coerced_value, error_message)
    """
    if key not in CONFIG_FIELDS:
        return False, value, f"Unknown configuration key: {key}"

    spec = CONFIG_FIELDS[key]
    if spec.validator:
        return spec.validator(value)
    return True, str(value), ""


@dataclass
class ModelPreset:
    name: str
    protocol: str
    model: str
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    context_window: int = 32768
    max_tokens: int = 4096
    supports_tools: bool = True
    supports_tool_choice: bool = False
    supports_prefill: bool = False
    supports_thinking: bool = False
    thinking_budget: int = 10000
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        env_var = {"openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY"}.get(self.protocol)
        return os.environ.get(env_var) if env_var else None

    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(
            supports_tools=self.supports_tools,
            supports_tool_choice=self.supports_tool_choice,
            supports_prefill=self.supports_prefill,
            supports_thinking=self.supports_thinking,
        )

    @classmethod
    def from_yaml(cls, name: str, data: Dict[str, Any]) -> "ModelPreset":
        protocol = str(data.get("protocol", "openai")).strip().lower()
        if protocol not in PROTOCOLS:
            raise ConfigError(f"Model '{name}': unknown protocol '{protocol}'")
        return cls(
            name=name,
            protocol=protocol,
            model=str(data.get("model", "")),
            base_url=data.get("base-url"),
            api_key=data.get("api-key"),
            api_key_env=data.get("api-key-env"),
            context_window=Config._coerce_positive_int(data.get("context-window", 32768), 32768, 1024, 10_000_000),
            max_tokens=Config._coerce_positive_int(data.get("max-tokens", 4096), 4096, 1, 1_000_000),
            supports_tools=Config._coerce_bool(data.get("supports-tools", True), True),
            supports_tool_choice=Config._coerce_bool(data.get("supports-tool-choice", False), False),
            supports_prefill=Config._coerce_bool(data.get("supports-prefill", False), False),
            supports_thinking=Config._coerce_bool(data.get("supports-thinking", False), False),
            thinking_budget=Config._coerce_positive_int(data.get("thinking-budget", 10000), 10000, 1024, 1_000_000),
            description=str(data.get("description", "")),
        )

    def to_yaml(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "protocol": self.protocol,
            "model": self.model,
            "description": self.description,
            "context-window": self.context_window,
            "max-tokens": self.max_tokens,
            "supports-tools": self.supports_tools,
            "supports-tool-choice": self.supports_tool_choice,
            "supports-prefill": self.supports_prefill,
            "supports-thinking": self.supports_thinking,
            "thinking-budget": self.thinking_budget,
        }
        if self.base_url:
            entry["base-url"] = self.base_url
        if self.api_key:
            entry["api-key"] = self.api_key
        if self.api_key_env:
            entry["api-key-env"] = self.api_key_env
        return entry


@dataclass
class Config:
    active_model: str = "local"
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    max_tool_call_rounds: int = 40
    context_aware: bool = True
    compact_threshold: float = 0.85
    full_threshold: float = 0.95
    reserve_ratio: float = 0.0
    request_timeout: int = 60
    connect_timeout: int = 30
    activity_timeout: int = 120
    max_retries: int = 3
    tool_timeout: int = 60
    thinking_enabled: bool = False
    plan_mode: bool = False
    verbose: bool = False
    auto_compact: bool = True
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        git_root = cls._find_git_root(project_path)
        config_loaded = False
        for candidate in [
            project_path / PROJECT_CONFIG_NAME,
            (git_root / PROJECT_CONFIG_NAME) if git_root and git_root != project_path else None,
            CONFIG_FILE,
        ]:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                config_loaded = True
                break

        if not config_loaded:
            config._add_default_presets()
            config._config_source = str(CONFIG_FILE)
            config.save()

        config._apply_env()
        config.project_root = str(project_path)
        return config

    @classmethod
    def get_default_presets(cls) -> Dict[str, ModelPreset]:
        return {
            "local": ModelPreset(
                name="local", protocol="openai", model="model",
                base_url="http://localhost:8080/v1", api_key="not-needed",
                description="Local OpenAI-compatible server",
            ),
            "gpt-4o": ModelPreset(
                name="gpt-4o", protocol="openai", model="gpt-4o",
                api_key_env="OPENAI_API_KEY", context_window=128000,
                supports_tool_choice=True,
                description="OpenAI GPT-4o",
            ),
            "deepseek-chat": ModelPreset(
                name="deepseek-chat", protocol="openai", model="deepseek-chat",
                base_url="https://api.deepseek.com/v1", api_key_env="DEEPSEEK_API_KEY",
                context_window=65536, supports_prefill=True,
                description="DeepSeek V3 chat",
            ),
            "claude-sonnet": ModelPreset(
                name="claude-sonnet", protocol="anthropic", model="claude-sonnet-4-20250514",
                api_key_env="ANTHROPIC_API_KEY", context_window=200000,
                supports_tool_choice=True, supports_prefill=True, supports_thinking=True,
                description="Anthropic Claude Sonnet 4",
            ),
        }

    def _add_default_presets(self):
        self.models = self.get_default_presets()
        self.active_model = "local"

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            _log.warning("Could not read %s (%s); using default presets", filepath, e)
            self._add_default_presets()
            return

        for key, spec in CONFIG_FIELDS.items():
            if key not in data:
                continue
            valid, coerced, error = validate_config_value(key, data[key])
            if valid:
                setattr(self, spec.field_name, coerced)
            else:
                _log.warning("%s: %s (%s); using default %r", filepath, key, error, spec.default)

        self.models = {}
        for name, m in (data.get("models") or {}).items():
            if not isinstance(m, dict):
                continue
            try:
                self.models[name] = ModelPreset.from_yaml(name, m)
            except ConfigError as e:
                _log.warning("%s", e)
        if not self.models:
            self._add_default_presets()
        elif "active-model" not in data:
            self.active_model = next(iter(self.models))

    def _apply_env(self):
        env_map = {
            "CONDUIT_MODEL": ("active_model", str),
            "CONDUIT_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
            "CONDUIT_PLAN_MODE": ("plan_mode", lambda v: v.lower() in ("true", "1")),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                setattr(self, attr, conv(val))

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        target.parent.mkdir(parents=True, exist_ok=True)

        data: Dict[str, Any] = {
            key: getattr(self, spec.field_name) for key, spec in CONFIG_FIELDS.items()
        }
        data["models"] = {name: m.to_yaml() for name, m in self.models.items() if m is not None}

        with open(target, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        self._config_source = str(target)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model in self.models:
            return self.models[self.active_model]
        if self.models:
            return next(iter(self.models.values()))
        raise ConfigError("No model presets configured")

    def set_active_model(self, name: str) -> bool:
        if name in self.models:
            self.active_model = name
            self.save()
            return True
        return False

    def summary(self) -> dict:
        p = self.get_active_preset()
        return {
            "Active model": f"{self.active_model} → {p.model}",
            "Protocol": p.protocol,
            "Base URL": p.base_url or "(protocol default)",
            "API key": "set" if p.resolve_api_key() else "not set",
            "Context window": p.context_window,
            "Plan mode": "ON" if self.plan_mode else "OFF",
            "Thinking": "ON" if self.thinking_enabled and p.supports_thinking else "OFF",
            "Tool-call rounds": self.max_tool_call_rounds,
            "Compact threshold": self.compact_threshold,
            "Project": self.project_root,
            "Config": self._config_source or "(defaults)",
        }

    @staticmethod
    def _coerce_bool(value, default: bool) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
        if isinstance(value, (int, float)):
            return bool(value)
        return default

    @staticmethod
    def _coerce_positive_int(value, default: int, min_value: int = 1, max_value: int = 100000) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return default
        if parsed < min_value:
            return min_value
        if parsed > max_value:
            return max_value
        return parsed

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        current = path
        while current != current.parent:
            if (current / ".git").exists():
                return current
            current = current.parent
        return None

    def get_config_value(self, key: str) -> Any:
        """Get configuration value by key."""
        if key not in CONFIG_FIELDS:
            return None
        spec = CONFIG_FIELDS[key]
        return getattr(self, spec.field_name, spec.default)

    def set_config_value(self, key: str, value: Any) -> tuple[bool, str]:
        """
        Set configuration value with validation.

        Returns:
            (success, error_message)
        """
        if key == "active-model":
            if value not in self.models:
                return False, f"Model '{value}' not found."
            self.active_model = value
            self.save()
            return True, ""

        is_valid, coerced_value, error_msg = validate_config_value(key, value)
        if not is_valid:
            return False, error_msg

        spec = CONFIG_FIELDS[key]
        setattr(self, spec.field_name, coerced_value)
        self.save()
        return True, ""

    def reset_config_value(self, key: str) -> tuple[bool, str]:
        if key not in CONFIG_FIELDS:
            return False, f"Unknown configuration key: {key}"
        spec = CONFIG_FIELDS[key]
        setattr(self, spec.field_name, spec.default)
        self.save()
        return True, ""
