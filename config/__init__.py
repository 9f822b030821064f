"""Configuration module for the browser test agent core."""
from config.models import (
    AgentConfig,
    AgentCoreConfig,
    AnthropicProviderConfig,
    OpenAIProviderConfig,
    PromptConfig,
    ProviderConfig,
    ReportingConfig,
    TransportConfig,
    load_config,
)

__all__ = [
    "AgentConfig",
    "AgentCoreConfig",
    "AnthropicProviderConfig",
    "OpenAIProviderConfig",
    "PromptConfig",
    "ProviderConfig",
    "ReportingConfig",
    "TransportConfig",
    "load_config",
]
