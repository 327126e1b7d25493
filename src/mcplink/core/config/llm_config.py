import os
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, SecretStr


class APITypes(str, Enum):
    """Supported LLM provider families."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"


DEFAULT_MODELS = {
    APITypes.ANTHROPIC: "claude-3-5-sonnet-latest",
    APITypes.OPENAI: "gpt-4o",
    APITypes.OLLAMA: "llama3.1",
}


class LLMConfig(BaseModel):
    """Configuration for one LLM provider.

    Attributes:
        api_type: Provider family.
        api_key: API key, absent for local providers such as Ollama.
        model: Default model used when a query does not name one.
        base_url: Override for the provider endpoint (Ollama host).
        max_retries: Retries performed by the vendor SDK.
    """

    api_type: APITypes
    api_key: SecretStr | None = Field(default=None, description="Provider API key")
    model: Optional[str] = None
    base_url: Optional[str] = None
    max_retries: int = 3
    timeout: float = 120.0

    @property
    def default_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.api_type]


class ProviderSettings(BaseModel):
    """Configured LLM providers and the one used when a query names none."""

    providers: Dict[APITypes, LLMConfig] = Field(default_factory=dict)
    default_provider: Optional[APITypes] = None

    model_config = {
        "validate_assignment": True,
    }

    def get_default_provider(self) -> Optional[APITypes]:
        if self.default_provider is not None:
            return self.default_provider
        for api_type in APITypes:
            if api_type in self.providers:
                return api_type
        return None

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        """Build settings from ``ANTHROPIC_API_KEY``, ``OPENAI_API_KEY`` and ``OLLAMA_HOST``.

        ``MCPLINK_PROVIDER`` selects the default provider.
        """
        providers: Dict[APITypes, LLMConfig] = {}
        anthropic_key = os.environ.get("ANTHROPIC_API_KEY")
        if anthropic_key:
            providers[APITypes.ANTHROPIC] = LLMConfig(
                api_type=APITypes.ANTHROPIC, api_key=SecretStr(anthropic_key)
            )
        openai_key = os.environ.get("OPENAI_API_KEY")
        if openai_key:
            providers[APITypes.OPENAI] = LLMConfig(
                api_type=APITypes.OPENAI,
                api_key=SecretStr(openai_key),
                base_url=os.environ.get("OPENAI_BASE_URL") or None,
            )
        ollama_host = os.environ.get("OLLAMA_HOST")
        if ollama_host:
            providers[APITypes.OLLAMA] = LLMConfig(api_type=APITypes.OLLAMA, base_url=ollama_host)

        default_name = os.environ.get("MCPLINK_PROVIDER")
        return cls(
            providers=providers,
            default_provider=APITypes(default_name) if default_name else None,
        )
