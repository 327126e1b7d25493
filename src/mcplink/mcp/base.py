"""Base types shared by the MCP client and the connection registry."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from mcplink.core.config.server_config import HttpServerConfig, StdioServerConfig


class ConnectionStatus(str, Enum):
    """Connection state of a single MCP server."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"
    ERROR_CONNECTING_TO_PROXY = "error-connecting-to-proxy"

    @property
    def is_error(self) -> bool:
        return self in (ConnectionStatus.ERROR, ConnectionStatus.ERROR_CONNECTING_TO_PROXY)


@dataclass(frozen=True)
class MCPToolInfo:
    """Information about a tool available from an MCP server."""
    name: str
    description: str
    input_schema: Dict[str, Any]
    server_name: str

    @classmethod
    def from_mcp(cls, tool: Dict[str, Any], server_name: str) -> "MCPToolInfo":
        return cls(
            name=tool.get("name", ""),
            description=tool.get("description") or "",
            input_schema=tool.get("inputSchema") or {},
            server_name=server_name,
        )


@dataclass
class ServerConnectionInfo:
    """Snapshot of one configured server as seen by the registry."""
    name: str
    config: Union[StdioServerConfig, HttpServerConfig]
    client: Optional[Any]
    connection_status: ConnectionStatus
    capabilities: Optional[Dict[str, Any]]


ProgressCallback = Callable[[Dict[str, Any]], None]


@dataclass
class RequestOptions:
    """Per-request overrides for timeouts and cancellation.

    ``None`` fields fall back to the client's ``ClientConfig``.
    """
    timeout: Optional[float] = None
    max_total_timeout: Optional[float] = None
    reset_timeout_on_progress: Optional[bool] = None
    cancel_event: Optional[asyncio.Event] = None
    on_progress: Optional[ProgressCallback] = None
