#!/usr/bin/env python3
"""
Command-line entry point for mcplink.

Loads server configurations, connects to every server through the MCP proxy
and runs an interactive chat that can call the servers' tools.
"""

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

from rich.console import Console
from rich.text import Text

from mcplink.controller.chat_loop import ConsoleToolCallApprover, InteractiveLoop
from mcplink.controller.query_processor import QueryProcessor
from mcplink.core.config import ClientConfig, ProviderSettings
from mcplink.core.exceptions import MCPLinkError
from mcplink.llm import ProviderRegistry
from mcplink.mcp.auth import OAuthClientProvider, OAuthTokenStore
from mcplink.mcp.manager import MCPConnectionRegistry
from mcplink.mcp.registry import ServerConfigLoader

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Chat with LLMs using tools from MCP servers reached through an MCP proxy"
    )
    parser.add_argument(
        "--proxy",
        type=str,
        default=None,
        help="Proxy address (defaults to MCP_PROXY_FULL_ADDRESS or http://localhost:6277)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON file with server configurations (an 'mcpServers' mapping or a plain mapping)",
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Workspace directory searched for .mcprc and exposed to servers as a root",
    )
    parser.add_argument(
        "--no-proxy-config",
        action="store_true",
        default=False,
        help="Do not merge server configurations announced by the proxy",
    )
    parser.add_argument(
        "--provider",
        type=str,
        default=None,
        help="LLM provider to use (anthropic, openai or ollama)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Model to use (defaults to the provider's default model)",
    )
    parser.add_argument(
        "--approve-tools",
        action="store_true",
        default=False,
        help="Ask for confirmation before every tool call",
    )
    parser.add_argument(
        "--bearer-token",
        type=str,
        default=os.environ.get("MCP_BEARER_TOKEN"),
        help="Bearer token sent to every server (defaults to MCP_BEARER_TOKEN env var)",
    )
    parser.add_argument(
        "--header-name",
        type=str,
        default=None,
        help="Header carrying the bearer token (defaults to Authorization)",
    )
    parser.add_argument(
        "--oauth-store",
        type=Path,
        default=None,
        help="File where OAuth tokens are persisted between sessions",
    )
    parser.add_argument(
        "--query",
        type=str,
        default=None,
        help="Run a single query and exit instead of starting the interactive loop",
    )
    return parser.parse_args(argv)


def load_explicit_config(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if path is None:
        return None
    with open(path, "r") as f:
        return json.load(f)


async def async_main(argv: Optional[List[str]] = None) -> int:
    """Async main entry point"""
    args = parse_args(argv)
    console = Console()

    client_config = ClientConfig.from_env()
    if args.proxy:
        client_config = client_config.model_copy(update={"proxy_address": args.proxy.rstrip("/")})

    providers = ProviderRegistry.from_settings(ProviderSettings.from_env())
    if not providers.names:
        console.print(
            "[bold red]No LLM provider configured.[/bold red] "
            "Set ANTHROPIC_API_KEY, OPENAI_API_KEY or OLLAMA_HOST."
        )
        return 1

    workspace = args.workspace.resolve()
    loader = ServerConfigLoader(workspace_root=workspace, client_config=client_config)
    servers = await loader.load(
        explicit=load_explicit_config(args.config),
        include_proxy=not args.no_proxy_config,
    )
    if not servers:
        console.print("[yellow]No MCP servers configured; continuing without tools.[/yellow]")

    registry = MCPConnectionRegistry(
        servers=servers,
        client_config=client_config,
        bearer_token=args.bearer_token,
        header_name=args.header_name,
        on_stderr=lambda name, content: console.print(Text.assemble((f"{name} stderr: ", "dim"), content)),
        get_roots=lambda: [{"uri": workspace.as_uri(), "name": workspace.name}],
        auth_provider=OAuthClientProvider(store=OAuthTokenStore(args.oauth_store)),
    )

    processor = QueryProcessor(
        tool_caller=registry,
        providers=providers,
        tool_call_approver=ConsoleToolCallApprover(console) if args.approve_tools else None,
    )
    chat = InteractiveLoop(
        registry,
        processor,
        console=console,
        model=args.model,
        provider=args.provider,
    )

    try:
        await registry.connect_to_all_servers()
        if args.query:
            result = await chat.run_query(args.query)
            return 0 if result is not None else 1
        chat.print_banner()
        await chat.run()
    except KeyboardInterrupt:
        console.print("\n[bold]Session interrupted. Exiting...[/bold]")
    except MCPLinkError as e:
        logger.error(f"Error: {str(e)}")
        logger.debug("Full error:", exc_info=True)
        return 1
    finally:
        await registry.shutdown()
        await providers.aclose()

    console.print("[bold]Goodbye![/bold]")
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
