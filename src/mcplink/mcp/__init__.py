"""MCP (Model Context Protocol) client side of mcplink.

This package connects to MCP servers through the MCP proxy, keeps one client
per configured server and routes tool, resource and prompt operations.
"""

from .base import ConnectionStatus, MCPToolInfo, RequestOptions, ServerConnectionInfo
from .client import MCPProtocolClient
from .manager import MCPConnectionRegistry, ReconnectPlan
from .registry import ServerConfigLoader

__all__ = [
    "ConnectionStatus",
    "MCPToolInfo",
    "RequestOptions",
    "ServerConnectionInfo",
    "MCPProtocolClient",
    "MCPConnectionRegistry",
    "ReconnectPlan",
    "ServerConfigLoader",
]
