"""LLM provider for Anthropic models."""

import logging
from typing import Any, Dict, List, Optional

import anthropic
import httpx

from mcplink.core.config.llm_config import LLMConfig
from mcplink.core.exceptions import ProviderError
from mcplink.llm.base import (
    LLMProvider,
    ProviderRequest,
    ProviderResponse,
    TextBlock,
    ToolUseBlock,
    Usage,
)

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Use Anthropic models via first party API."""

    name = "anthropic"

    def __init__(self, llm_config: LLMConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.llm_config = llm_config
        self.client = anthropic.AsyncAnthropic(
            api_key=llm_config.api_key.get_secret_value() if llm_config.api_key else None,
            base_url=llm_config.base_url,
            max_retries=llm_config.max_retries,
            timeout=llm_config.timeout,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        await self.client.close()

    @property
    def default_model(self) -> str:
        return self.llm_config.default_model

    def validate_config(self) -> bool:
        return bool(self.llm_config.api_key and self.llm_config.api_key.get_secret_value())

    def supported_models(self) -> List[str]:
        return [
            "claude-3-5-sonnet-latest",
            "claude-3-5-haiku-latest",
            "claude-3-opus-latest",
        ]

    @staticmethod
    def _convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool["name"],
                "description": tool.get("description") or "",
                "input_schema": {"type": "object", **tool.get("input_schema", {})},
            }
            for tool in tools
        ]

    async def create_message(self, request: ProviderRequest) -> ProviderResponse:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [message.to_dict() for message in request.messages],
        }
        if request.tools:
            kwargs["tools"] = self._convert_tools(request.tools)

        logger.debug(f"Request to Anthropic model: {request.model} with {len(request.tools)} tools")
        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIStatusError as e:
            raise ProviderError(f"Anthropic API Error ({e.status_code}): {e.message}", status=e.status_code) from e
        except anthropic.APIConnectionError as e:
            raise ProviderError(f"Anthropic Connection Error: {str(e)}") from e

        content = []
        for block in response.content:
            if block.type == "text":
                content.append(TextBlock(block.text))
            elif block.type == "tool_use":
                content.append(ToolUseBlock(id=block.id, name=block.name, input=dict(block.input or {})))
            else:
                logger.debug(f"Skipping unsupported Anthropic content block: {block.type}")

        usage = None
        if response.usage is not None:
            usage = Usage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )
        return ProviderResponse(content=content, model=response.model, usage=usage)
