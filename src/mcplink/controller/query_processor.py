"""Agentic tool-calling loop.

``QueryProcessor`` turns one user query into a bounded sequence of provider
calls and MCP tool executions. Text is streamed per iteration through an
``on_update`` callback, tool calls can be gated by an approver, and the loop
checks its cancel event before and after every provider call and every tool
execution.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union

from mcplink.controller.state import DEFAULT_MAX_ITERATIONS, QueryContext, QueryState
from mcplink.core.exceptions import QueryCancelledError, ToolExecutionError
from mcplink.core.logger import ClientLogLevel, ClientLogSink, safe_log
from mcplink.llm import ProviderRegistry
from mcplink.llm.base import (
    ContentBlock,
    LLMProvider,
    ProviderRequest,
    ProviderResponse,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from mcplink.mcp.base import MCPToolInfo
from mcplink.mcp.schema_utils import sanitize_tools, tool_result_to_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1000
REJECTED_TOOL_RESULT = "Tool execution was rejected by user"


class ToolCaller(Protocol):
    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        ...


class ToolCallApprover(Protocol):
    async def request_tool_call_approval(self, name: str, input: Any, tool_call_id: str) -> bool:
        ...


class QueryProcessor:
    """Runs queries against an injected provider registry and tool caller."""

    def __init__(
        self,
        tool_caller: ToolCaller,
        providers: ProviderRegistry,
        tool_call_approver: Optional[ToolCallApprover] = None,
        client_log: Optional[ClientLogSink] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.tool_caller = tool_caller
        self.providers = providers
        self.tool_call_approver = tool_call_approver
        self.client_log = client_log
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens

    def _log(self, message: str, level: ClientLogLevel = ClientLogLevel.INFO) -> None:
        safe_log(self.client_log, message, level, fallback=logger)

    async def process_query(
        self,
        query: str,
        tools: Sequence[Union[MCPToolInfo, Dict[str, Any]]],
        on_update: Optional[Callable[[str], None]] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Run a query to completion and return the accumulated output text."""
        context = await self.run_query(query, tools, on_update, model, provider, cancel_event)
        return context.output

    async def run_query(
        self,
        query: str,
        tools: Sequence[Union[MCPToolInfo, Dict[str, Any]]],
        on_update: Optional[Callable[[str], None]] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> QueryContext:
        """Run a query and return its final ``QueryContext``.

        Args:
            query: Raw user query, sent as the first user message
            tools: Tools offered to the model; schemas are sanitized here
            on_update: Receives each iteration's output as it is produced
            model: Model id; defaults to the provider's default model
            provider: Provider name; defaults to the registry default
            cancel_event: Setting it stops the loop at the next checkpoint

        Raises:
            ProviderNotConfiguredError: ``provider`` is not configured
            QueryCancelledError: ``cancel_event`` was set; carries partial output
        """
        llm = self.providers.get(provider)
        context = QueryContext.start(
            query,
            sanitize_tools(tools),
            model or llm.default_model,
            max_iterations=self.max_iterations,
        )
        self._check_cancelled(context, cancel_event)
        self._log(f"Processing query with {len(context.tools)} tools using model {context.model}")

        response = await self._call_provider(llm, context, cancel_event)

        while True:
            self._check_cancelled(context, cancel_event)
            context.iteration += 1
            self._log(
                f"Processing iteration {context.iteration}/{context.max_iterations}",
                ClientLogLevel.DEBUG,
            )

            iteration_content, has_tool_use = await self._process_iteration(response, context, cancel_event)
            self._send_update(iteration_content, on_update)

            if not has_tool_use:
                self._log("No tool use detected, ending iterations", ClientLogLevel.DEBUG)
                break

            if context.iteration >= context.max_iterations:
                warning = (
                    f"[Warning: Reached maximum iterations ({context.max_iterations}). "
                    "Stopping to prevent excessive API usage.]"
                )
                self._log(f"Maximum iterations reached ({context.max_iterations})", ClientLogLevel.WARN)
                context.final_text.append(warning)
                self._send_update([warning], on_update)
                break

            try:
                response = await self._call_provider(llm, context, cancel_event)
            except QueryCancelledError:
                raise
            except Exception as e:
                error_message = f"[API Error: {e}]"
                self._log(f"API error in iteration {context.iteration}: {e}", ClientLogLevel.ERROR)
                context.final_text.append(error_message)
                self._send_update([error_message], on_update)
                break

        context.state = QueryState.DONE
        self._log(f"Query processing completed in {context.iteration} iterations")
        return context

    def _check_cancelled(self, context: QueryContext, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            context.state = QueryState.CANCELLED
            raise QueryCancelledError(partial_output=context.output)

    async def _call_provider(
        self,
        llm: LLMProvider,
        context: QueryContext,
        cancel_event: Optional[asyncio.Event],
    ) -> ProviderResponse:
        self._check_cancelled(context, cancel_event)
        context.state = QueryState.AWAITING_MODEL
        context.provider_calls += 1
        response = await llm.create_message(ProviderRequest(
            model=context.model,
            max_tokens=self.max_tokens,
            messages=list(context.messages),
            tools=context.tools,
        ))
        self._check_cancelled(context, cancel_event)
        return response

    async def _process_iteration(
        self,
        response: ProviderResponse,
        context: QueryContext,
        cancel_event: Optional[asyncio.Event],
    ):
        iteration_content: List[str] = []
        assistant_content: List[ContentBlock] = []
        tool_results: List[ToolResultBlock] = []
        has_tool_use = False

        for block in response.content:
            self._check_cancelled(context, cancel_event)
            if isinstance(block, TextBlock):
                context.state = QueryState.EMITTING_TEXT
                iteration_content.append(block.text)
                context.final_text.append(block.text)
                assistant_content.append(block)
            elif isinstance(block, ToolUseBlock):
                has_tool_use = True
                assistant_content.append(block)
                self._log(f"Tool use detected: {block.name}", ClientLogLevel.DEBUG)
                tool_results.append(
                    await self._handle_tool_use(block, context, iteration_content, cancel_event)
                )

        context.add_turn(assistant_content, tool_results)
        return iteration_content, has_tool_use

    async def _handle_tool_use(
        self,
        block: ToolUseBlock,
        context: QueryContext,
        iteration_content: List[str],
        cancel_event: Optional[asyncio.Event],
    ) -> ToolResultBlock:
        tool_message = f"[Calling tool {block.name} with args {json.dumps(block.input)}]"
        iteration_content.append(tool_message)
        context.final_text.append(tool_message)

        try:
            approved = True
            if self.tool_call_approver is not None:
                context.state = QueryState.AWAITING_TOOL_APPROVAL
                self._log(f"Requesting approval for tool: {block.name}", ClientLogLevel.DEBUG)
                approved = await self.tool_call_approver.request_tool_call_approval(
                    block.name, block.input, block.id
                )

            if not approved:
                self._log(f"Tool execution rejected by user: {block.name}")
                reject_message = f"[Tool {block.name} execution was rejected by user]"
                iteration_content.append(reject_message)
                context.final_text.append(reject_message)
                return ToolResultBlock(tool_use_id=block.id, content=REJECTED_TOOL_RESULT, is_error=True)

            self._check_cancelled(context, cancel_event)
            context.state = QueryState.EXECUTING_TOOL
            self._log(f"Executing tool: {block.name}", ClientLogLevel.DEBUG)
            result = await self.execute_tool(block.name, block.input)
            self._check_cancelled(context, cancel_event)

        except QueryCancelledError:
            raise
        except Exception as e:
            self._log(f"Tool execution failed: {block.name} - {e}", ClientLogLevel.ERROR)
            error_message = f"[Tool {block.name} failed: {e}]"
            iteration_content.append(error_message)
            context.final_text.append(error_message)
            return ToolResultBlock(tool_use_id=block.id, content=f"Error: {e}", is_error=True)

        result_content = tool_result_to_text(result)
        result_message = f"[Tool {block.name} result: {result_content}]"
        iteration_content.append(result_message)
        context.final_text.append(result_message)
        self._log(f"Tool execution successful: {block.name}", ClientLogLevel.DEBUG)
        is_error = isinstance(result, dict) and bool(result.get("isError"))
        return ToolResultBlock(tool_use_id=block.id, content=result_content, is_error=is_error)

    async def execute_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Run one tool through the tool caller.

        Raises:
            ToolExecutionError: The tool caller failed; the original error is chained
        """
        try:
            return await self.tool_caller.call_tool(name, arguments)
        except QueryCancelledError:
            raise
        except Exception as e:
            raise ToolExecutionError(str(e)) from e

    @staticmethod
    def _send_update(content: List[str], on_update: Optional[Callable[[str], None]]) -> None:
        if on_update is None:
            return
        message = "\n".join(content)
        if message:
            on_update(message)
