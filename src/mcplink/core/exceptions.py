"""Error taxonomy for mcplink."""

from typing import Any, Optional

# JSON-RPC error codes used by MCP
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
REQUEST_TIMEOUT = -32001


class MCPLinkError(Exception):
    """Base class for all mcplink errors."""


class ProxyUnavailableError(MCPLinkError):
    """The MCP proxy did not answer its health check with ``{"status": "ok"}``."""


class TransportError(MCPLinkError):
    """A transport-level failure, optionally carrying the HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401


class AuthenticationRequiredError(MCPLinkError):
    """The server needs authorization that has not completed yet.

    Raised when an OAuth flow handed control to an external redirect; the
    connection is not in a terminal error state.
    """


class ConnectionFailedError(MCPLinkError):
    """A connect attempt failed. The caller decides whether to retry."""


class MCPError(MCPLinkError):
    """A JSON-RPC error response returned by an MCP server."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"MCP error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def is_method_not_found(self) -> bool:
        return self.code == METHOD_NOT_FOUND


class RequestTimeoutError(MCPLinkError):
    """A request did not complete within its timeout budget."""


class RequestCancelledError(MCPLinkError):
    """A request was cancelled by its caller."""


class ServerNotFoundError(MCPLinkError, KeyError):
    """No server with the given name is configured."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class ToolNotFoundError(MCPLinkError, LookupError):
    """No connected server advertises the requested tool."""


class ToolExecutionError(MCPLinkError):
    """A tool call failed while running inside the agent loop."""


class QueryCancelledError(MCPLinkError):
    """The agent loop observed its cancellation signal."""

    def __init__(self, message: str = "Chat was cancelled", partial_output: str = ""):
        super().__init__(message)
        self.partial_output = partial_output


class ProviderNotConfiguredError(MCPLinkError):
    """The requested LLM provider has no usable configuration."""


class ProviderError(MCPLinkError):
    """An LLM provider call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
