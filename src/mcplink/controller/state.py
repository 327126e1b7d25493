from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from mcplink.llm.base import ContentBlock, ProviderMessage, ToolResultBlock

DEFAULT_MAX_ITERATIONS = 50


class QueryState(Enum):
    """Where a query is in the agent loop."""
    INIT = "init"
    AWAITING_MODEL = "awaiting_model"
    EMITTING_TEXT = "emitting_text"
    AWAITING_TOOL_APPROVAL = "awaiting_tool_approval"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class QueryContext:
    """Mutable state of one ``process_query`` call."""
    query: str
    tools: List[Dict[str, Any]]
    model: str
    messages: List[ProviderMessage] = field(default_factory=list)
    final_text: List[str] = field(default_factory=list)
    iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    provider_calls: int = 0
    state: QueryState = QueryState.INIT

    @classmethod
    def start(cls, query: str, tools: List[Dict[str, Any]], model: str, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> QueryContext:
        return cls(
            query=query,
            tools=tools,
            model=model,
            messages=[ProviderMessage(role="user", content=query)],
            max_iterations=max_iterations,
        )

    @property
    def output(self) -> str:
        return "\n".join(self.final_text)

    def add_turn(self, assistant_content: List[ContentBlock], tool_results: List[ToolResultBlock]) -> None:
        """Append the assistant turn, then the user turn carrying its tool results."""
        if assistant_content:
            self.messages.append(ProviderMessage(role="assistant", content=list(assistant_content)))
        if tool_results:
            self.messages.append(ProviderMessage(role="user", content=list(tool_results)))
