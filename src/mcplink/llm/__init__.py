import logging
from typing import Dict, List, Optional, Union

from mcplink.core.config.llm_config import APITypes, LLMConfig, ProviderSettings
from mcplink.core.exceptions import ProviderNotConfiguredError
from mcplink.llm.anthropic import AnthropicProvider
from mcplink.llm.base import LLMProvider, ProviderRequest, ProviderResponse
from mcplink.llm.ollama import OllamaProvider
from mcplink.llm.openai import OpenAIProvider

logger = logging.getLogger(__name__)


def get_client(config: LLMConfig) -> LLMProvider:
    """Get a provider for a given configuration."""
    if config.api_type == APITypes.ANTHROPIC:
        return AnthropicProvider(llm_config=config)
    elif config.api_type == APITypes.OPENAI:
        return OpenAIProvider(llm_config=config)
    elif config.api_type == APITypes.OLLAMA:
        return OllamaProvider(llm_config=config)
    raise ProviderNotConfiguredError(f"Unsupported provider type: {config.api_type}")


class ProviderRegistry:
    """Explicit set of LLM providers, selected by name per query."""

    def __init__(self, providers: Dict[str, LLMProvider], default_provider: Optional[str] = None):
        self.providers = dict(providers)
        self.default_provider = default_provider or next(iter(self.providers), None)

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "ProviderRegistry":
        providers: Dict[str, LLMProvider] = {}
        for api_type, config in settings.providers.items():
            provider = get_client(config)
            if not provider.validate_config():
                logger.warning(f"Skipping {api_type.value} provider: invalid configuration")
                continue
            providers[api_type.value] = provider
        default = settings.get_default_provider()
        if default is not None and default.value not in providers:
            logger.warning(f"Default provider {default.value} is unavailable, falling back")
            default = None
        return cls(providers, default_provider=default.value if default else None)

    async def aclose(self) -> None:
        """Close every provider, logging failures so the rest still close."""
        for name, provider in self.providers.items():
            try:
                await provider.aclose()
            except Exception as e:
                logger.warning(f"Failed to close {name} provider: {str(e)}")

    @property
    def names(self) -> List[str]:
        return list(self.providers)

    def get(self, name: Optional[Union[str, APITypes]] = None) -> LLMProvider:
        """Return the named provider, or the default one.

        Raises:
            ProviderNotConfiguredError: No provider with that name is configured
        """
        if isinstance(name, APITypes):
            name = name.value
        key = name or self.default_provider
        provider = self.providers.get(key) if key else None
        if provider is None:
            raise ProviderNotConfiguredError(
                f"No {name or 'default'} provider available. Please check your API key configuration."
            )
        return provider


__all__ = [
    "LLMProvider",
    "ProviderRequest",
    "ProviderResponse",
    "AnthropicProvider",
    "OpenAIProvider",
    "OllamaProvider",
    "ProviderRegistry",
    "get_client",
]
