"""Provider-neutral message types and the LLM provider interface.

Conversations use the Anthropic message layout: a message is a role plus
either plain text or a list of content blocks (``text``, ``tool_use``,
``tool_result``). Providers translate to and from their own wire formats.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class TextBlock:
    text: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: Dict[str, Any]
    type: str = field(default="tool_use", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)

    def to_dict(self) -> Dict[str, Any]:
        block = {"type": self.type, "tool_use_id": self.tool_use_id, "content": self.content}
        if self.is_error:
            block["is_error"] = True
        return block


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class ProviderMessage:
    role: str
    content: Union[str, List[ContentBlock]]

    def blocks(self) -> List[ContentBlock]:
        if isinstance(self.content, str):
            return [TextBlock(self.content)]
        return list(self.content)

    def text(self) -> str:
        """First text block, or the plain string content."""
        if isinstance(self.content, str):
            return self.content
        for block in self.content:
            if isinstance(block, TextBlock):
                return block.text
        return ""

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_dict() for block in self.content]}


@dataclass
class ProviderRequest:
    model: str
    max_tokens: int
    messages: List[ProviderMessage]
    tools: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ProviderResponse:
    content: List[Union[TextBlock, ToolUseBlock]]
    model: str
    usage: Optional[Usage] = None

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


class LLMProvider(ABC):
    """A vendor-specific chat completion backend."""

    name: str = ""

    @property
    @abstractmethod
    def default_model(self) -> str:
        """Model used when a query does not name one."""

    @abstractmethod
    async def create_message(self, request: ProviderRequest) -> ProviderResponse:
        """Send one conversation turn and return the model's content blocks."""

    def validate_config(self) -> bool:
        return True

    def supported_models(self) -> List[str]:
        return [self.default_model]

    async def aclose(self) -> None:
        """Release the provider's HTTP resources."""
