"""Interactive read-eval loop feeding operator queries into the agent loop."""

import asyncio
import logging
import signal
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.text import Text

from mcplink.controller.query_processor import QueryProcessor
from mcplink.core.exceptions import MCPLinkError, QueryCancelledError
from mcplink.core.logger import ClientLogLevel, ClientLogSink, safe_log
from mcplink.mcp.base import ConnectionStatus
from mcplink.mcp.manager import MCPConnectionRegistry

logger = logging.getLogger(__name__)

EXIT_COMMANDS = ("quit", "exit")

InputReader = Callable[[str], Awaitable[str]]


class ConsoleToolCallApprover:
    """Asks the operator on the console before each tool call."""

    def __init__(self, console: Console):
        self.console = console

    async def request_tool_call_approval(self, name: str, input: Any, tool_call_id: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: Confirm.ask(
                f"Allow tool [bold]{name}[/bold] with input {input!r}?",
                console=self.console,
                default=True,
            ),
        )


class InteractiveLoop:
    """Reads queries until ``quit``/``exit`` and prints each answer.

    Every query is offered all tools currently cached by the registry.
    Ctrl+C while a query runs cancels that query only.
    """

    def __init__(
        self,
        registry: MCPConnectionRegistry,
        processor: QueryProcessor,
        console: Optional[Console] = None,
        read_input: Optional[InputReader] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        client_log: Optional[ClientLogSink] = None,
    ):
        self.registry = registry
        self.processor = processor
        self.console = console or Console()
        self.read_input = read_input or self._read_from_console
        self.model = model
        self.provider = provider
        self.client_log = client_log

    def _log(self, message: str, level: ClientLogLevel = ClientLogLevel.INFO) -> None:
        safe_log(self.client_log, message, level, fallback=logger)

    async def _read_from_console(self, prompt: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self.console.input(prompt))

    def print_banner(self) -> None:
        connected = [
            info.name for info in self.registry.get_all_connection_info()
            if info.connection_status == ConnectionStatus.CONNECTED
        ]
        tool_count = len(self.registry.get_all_tools_flat())
        self.console.print(
            Panel(
                "[bold]MCP client chat[/bold]\n\n"
                + f"Servers: {', '.join(connected) or 'none connected'}\n"
                + f"Tools: {tool_count}\n\n"
                + "Press Ctrl+C to cancel a running query. Type 'exit' or 'quit' to end the session.",
                title="[bold blue]mcplink[/bold blue]",
                border_style="blue",
                padding=(1, 2),
            )
        )

    async def run(self) -> None:
        self._log("Starting interactive chat loop")
        try:
            while True:
                try:
                    query = await self.read_input("\nQuery: ")
                except EOFError:
                    break
                query = query.strip()
                if query.lower() in EXIT_COMMANDS:
                    self._log("Chat loop terminated by user")
                    self.console.print("[bold]Exiting...[/bold]")
                    break
                if not query:
                    continue
                await self.run_query(query)
        finally:
            self._log("Chat loop interface closed", ClientLogLevel.DEBUG)

    async def run_query(self, query: str) -> Optional[str]:
        """Run one query and print its output; returns ``None`` if it did not complete."""
        self._log(
            f"Processing user query: {query[:50]}{'...' if len(query) > 50 else ''}",
            ClientLogLevel.DEBUG,
        )
        cancel_event = asyncio.Event()
        remove_handler = self._install_interrupt_handler(cancel_event)
        try:
            result = await self.processor.process_query(
                query,
                self.registry.get_all_tools_flat(),
                on_update=self._print_update,
                model=self.model,
                provider=self.provider,
                cancel_event=cancel_event,
            )
        except QueryCancelledError:
            self.console.print("[bold yellow]Query cancelled[/bold yellow]")
            return None
        except KeyboardInterrupt:
            cancel_event.set()
            self.console.print("[bold yellow]Query cancelled[/bold yellow]")
            return None
        except MCPLinkError as e:
            logger.error(f"Error: {str(e)}")
            self.console.print(f"[bold red]Error:[/bold red] {e}")
            return None
        finally:
            remove_handler()

        self.console.rule()
        return result

    def _print_update(self, content: str) -> None:
        self.console.print(Text(content))

    @staticmethod
    def _install_interrupt_handler(cancel_event: asyncio.Event) -> Callable[[], None]:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # No signal support here (non-main thread or Windows); KeyboardInterrupt still applies
            return lambda: None

        def remove() -> None:
            loop.remove_signal_handler(signal.SIGINT)

        return remove
