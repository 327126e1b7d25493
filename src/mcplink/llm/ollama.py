"""LLM provider for locally hosted Ollama models."""

import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx

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

DEFAULT_OLLAMA_HOST = "http://127.0.0.1:11434"


def convert_to_ollama_messages(messages: List[ProviderMessage]) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    for message in messages:
        if isinstance(message.content, str):
            result.append({"role": message.role, "content": message.content})
            continue

        if message.role == "assistant":
            ollama_message: Dict[str, Any] = {"role": "assistant", "content": message.text()}
            tool_calls = [block for block in message.content if isinstance(block, ToolUseBlock)]
            if tool_calls:
                ollama_message["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.input or {}}}
                    for call in tool_calls
                ]
            result.append(ollama_message)
            continue

        tool_results = [block for block in message.content if isinstance(block, ToolResultBlock)]
        for block in tool_results:
            result.append({"role": "tool", "content": block.content})
        text = message.text()
        if text or not tool_results:
            result.append({"role": "user", "content": text})
    return result


class OllamaProvider(LLMProvider):
    """Use models served by an Ollama host over its HTTP API."""

    name = "ollama"

    def __init__(self, llm_config: LLMConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.llm_config = llm_config
        self.host = (llm_config.base_url or DEFAULT_OLLAMA_HOST).rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.host,
            timeout=llm_config.timeout,
            transport=transport,
        )

    @property
    def default_model(self) -> str:
        return self.llm_config.default_model

    async def list_local_models(self) -> List[str]:
        """Models pulled on the Ollama host; empty when the host is unreachable."""
        try:
            response = await self.client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch local Ollama models: {str(e)}")
            return []
        return [model["name"] for model in response.json().get("models", []) if "name" in model]

    async def create_message(self, request: ProviderRequest) -> ProviderResponse:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": convert_to_ollama_messages(request.messages),
            "stream": False,
            "options": {"num_predict": request.max_tokens},
        }
        if request.tools:
            payload["tools"] = [
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

        try:
            response = await self.client.post("/api/chat", json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderError(
                "Ollama Timeout Error: Request timed out. The model might be loading or the request is taking too long."
            ) from e
        except httpx.ConnectError as e:
            raise ProviderError(
                f"Ollama Connection Error: Unable to connect to Ollama server at {self.host}."
            ) from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Ollama Error: HTTP {e.response.status_code}: {e.response.text}",
                status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama Error: {str(e)}") from e

        data = response.json()
        message = data.get("message") or {}
        content = []
        if message.get("content"):
            content.append(TextBlock(message["content"]))
        for tool_call in message.get("tool_calls") or []:
            function = tool_call.get("function")
            if not function:
                continue
            content.append(ToolUseBlock(
                id=f"tool_{uuid.uuid4().hex[:12]}",
                name=function.get("name", ""),
                input=function.get("arguments") or {},
            ))

        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            usage = Usage(
                input_tokens=data.get("prompt_eval_count", 0),
                output_tokens=data.get("eval_count", 0),
            )
        return ProviderResponse(content=content, model=data.get("model", request.model), usage=usage)

    async def aclose(self) -> None:
        await self.client.aclose()
