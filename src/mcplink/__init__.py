"""mcplink: a client for Model Context Protocol servers reached through an MCP proxy."""

__version__ = "0.1.0"
