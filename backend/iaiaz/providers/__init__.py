"""AI provider integrations."""

import logging
from typing import Optional

from .base import AIProvider, ProviderError, ProviderResponse
from .anthropic_provider import AnthropicProvider
from .google_provider import GoogleProvider
from .mistral_provider import MistralProvider
from .openai_provider import OpenAIProvider
from ..core.config import get_settings

logger = logging.getLogger(__name__)

_providers: dict[str, AIProvider] = {}


def get_provider(name: str) -> Optional[AIProvider]:
    """
    Get (or lazily build) the provider client for a provider name.

    Returns None when the provider is unknown or its API key is not set.
    """
    if name in _providers:
        return _providers[name]

    settings = get_settings()
    factories = {
        "anthropic": (settings.anthropic_api_key, AnthropicProvider),
        "openai": (settings.openai_api_key, OpenAIProvider),
        "google": (settings.google_api_key, GoogleProvider),
        "mistral": (settings.mistral_api_key, MistralProvider),
    }
    if name not in factories:
        logger.warning(f"Unknown provider {name}")
        return None

    api_key, provider_class = factories[name]
    if not api_key:
        logger.warning(f"No API key configured for provider {name}")
        return None

    _providers[name] = provider_class(api_key)
    return _providers[name]


__all__ = [
    "AIProvider",
    "ProviderError",
    "ProviderResponse",
    "AnthropicProvider",
    "GoogleProvider",
    "MistralProvider",
    "OpenAIProvider",
    "get_provider",
]
