"""LLM provider implementations."""
from providers.anthropic_provider import AnthropicProvider
from providers.base import LLMProvider
from providers.openai_provider import OpenAIProvider
from providers.registry import available_providers, create_provider, register_provider

__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "OpenAIProvider",
    "available_providers",
    "create_provider",
    "register_provider",
]
