"""Explicit name → provider factory registry."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from config import ProviderConfig
from exceptions import ConfigurationError, ProviderUnavailableError
from providers.anthropic_provider import AnthropicProvider
from providers.base import LLMProvider
from providers.openai_provider import OpenAIProvider

ProviderFactory = Callable[[ProviderConfig, Optional[logging.Logger]], LLMProvider]

_FACTORIES: Dict[str, ProviderFactory] = {}
_ALIASES: Dict[str, str] = {}


def register_provider(name: str, factory: ProviderFactory, aliases: Optional[List[str]] = None) -> None:
    """Make ``factory`` selectable by ``name`` (and any aliases) in config."""
    key = name.strip().lower()
    _FACTORIES[key] = factory
    for alias in aliases or []:
        _ALIASES[alias.strip().lower()] = key


def available_providers() -> List[str]:
    return sorted(_FACTORIES)


def create_provider(
    config: ProviderConfig,
    name: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
    require_available: bool = True,
) -> LLMProvider:
    """Build the provider selected by ``name`` or ``config.name``.

    Raises ConfigurationError for unknown names and ProviderUnavailableError
    when the provider lacks its credentials (unless ``require_available`` is False).
    """
    key = (name or config.name).strip().lower()
    key = _ALIASES.get(key, key)
    factory = _FACTORIES.get(key)
    if factory is None:
        raise ConfigurationError(
            f"Unknown LLM provider: {key}",
            {"available": available_providers()},
        )
    provider = factory(config, logger)
    if require_available and not provider.is_available():
        raise ProviderUnavailableError(key, "missing API key")
    return provider


register_provider("openai", lambda cfg, logger: OpenAIProvider(cfg.openai, logger=logger), aliases=["gpt"])
register_provider(
    "anthropic",
    lambda cfg, logger: AnthropicProvider(cfg.anthropic, logger=logger),
    aliases=["claude"],
)
