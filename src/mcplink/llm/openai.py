"""LLM provider for OpenAI models."""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
import openai
from openai import NOT_GIVEN

from mcplink.core.config.llm_config import LLMConfig
from mcplink.core.exceptions import ProviderError
from mcplink.llm.base import (
    LLMProvider,
    ProviderMessage,
    ProviderRequest,
    ProviderResponse,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)

logger = logging.getLogger(__name__)

_STATUS_MESSAGES = {
    429: "OpenAI Rate Limit Exceeded",
    401: "OpenAI Authentication Error",
    403: "OpenAI Permission Error",
    400: "OpenAI Request Error",
}


def convert_to_openai_messages(messages: List[ProviderMessage]) -> List[Dict[str, Any]]:
    """Translate Anthropic-layout messages to chat completion messages.

    Tool results become separate ``tool`` role messages following the
    assistant message that requested them.
    """
    result: List[Dict[str, Any]] = []
    for message in messages:
        if isinstance(message.content, str):
            result.append({"role": "user" if message.role == "user" else "assistant", "content": message.content})
            continue

        if message.role == "assistant":
            assistant_message: Dict[str, Any] = {"role": "assistant", "content": message.text() or None}
            tool_calls = [block for block in message.content if isinstance(block, ToolUseBlock)]
            if tool_calls:
                assistant_message["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.input or {})},
                    }
                    for call in tool_calls
                ]
            result.append(assistant_message)
            continue

        tool_results = [block for block in message.content if isinstance(block, ToolResultBlock)]
        if tool_results:
            for block in tool_results:
                result.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content})
        else:
            result.append({"role": "user", "content": message.text()})
    return result


class OpenAIProvider(LLMProvider):
    """Use OpenAI models via first party API."""

    name = "openai"

    def __init__(self, llm_config: LLMConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.llm_config = llm_config
        self.client = openai.AsyncOpenAI(
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
        return ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo", "o1-preview", "o1-mini"]

    async def create_message(self, request: ProviderRequest) -> ProviderResponse:
        openai_tools = [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description") or "",
                    "parameters": tool.get("input_schema", {}),
                },
            }
            for tool in request.tools
        ]

        logger.debug(f"Request to OpenAI model: {request.model} with {len(openai_tools)} tools")
        try:
            response = await self.client.chat.completions.create(
                model=request.model,
                max_tokens=request.max_tokens,
                messages=convert_to_openai_messages(request.messages),
                tools=openai_tools if openai_tools else NOT_GIVEN,
            )
        except openai.APIStatusError as e:
            label = _STATUS_MESSAGES.get(e.status_code)
            if label is None:
                label = "OpenAI Server Error" if e.status_code >= 500 else "OpenAI API Error"
            raise ProviderError(f"{label}: {e.message}", status=e.status_code) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"OpenAI Connection Error: {str(e)}") from e

        message = response.choices[0].message
        content = []
        if message.content:
            content.append(TextBlock(message.content))
        for tool_call in message.tool_calls or []:
            if tool_call.type != "function":
                continue
            try:
                tool_input = json.loads(tool_call.function.arguments or "{}")
            except json.JSONDecodeError as e:
                logger.error(f"Failed to decode arguments for {tool_call.function.name}: {e}")
                tool_input = {}
            content.append(ToolUseBlock(id=tool_call.id, name=tool_call.function.name, input=tool_input))

        usage = None
        if response.usage is not None:
            usage = Usage(
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
            )
        return ProviderResponse(content=content, model=response.model, usage=usage)
