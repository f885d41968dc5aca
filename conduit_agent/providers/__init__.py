"""Vendor protocol clients."""

from ..config import Config, ModelPreset
from ..errors import ConfigError
from .anthropic_client import AnthropicClient
from .base import ProtocolClient, RequestOptions, StreamWatchdog
from .openai_client import OpenAIClient

__all__ = [
    "AnthropicClient",
    "OpenAIClient",
    "ProtocolClient",
    "RequestOptions",
    "StreamWatchdog",
    "create_client",
]

_CLIENTS = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
}


def create_client(preset: ModelPreset, config: Config) -> ProtocolClient:
    """Build the client for ``preset`` with timeouts taken from ``config``."""
    client_cls = _CLIENTS.get(preset.protocol)
    if client_cls is None:
        raise ConfigError(f"Unknown protocol '{preset.protocol}' for model '{preset.name}'")
    return client_cls(
        preset.model,
        api_key=preset.resolve_api_key(),
        base_url=preset.base_url,
        max_tokens=preset.max_tokens,
        thinking=bool(config.thinking_enabled and preset.supports_thinking),
        thinking_budget=preset.thinking_budget,
        request_timeout=config.request_timeout,
        connect_timeout=config.connect_timeout,
        activity_timeout=config.activity_timeout,
        max_retries=config.max_retries,
    )
