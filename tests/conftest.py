"""Shared fakes: an in-process MCP server, its transport and a scripted LLM provider."""

from typing import Any, Callable, Dict, List, Optional

import pytest

from mcplink.core.config.client_config import ClientConfig
from mcplink.core.config.server_config import StdioServerConfig
from mcplink.core.exceptions import METHOD_NOT_FOUND, MCPError
from mcplink.llm import ProviderRegistry
from mcplink.llm.base import LLMProvider, ProviderRequest, ProviderResponse
from mcplink.mcp.transport import MCPTransport

Handler = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


class FakeMCPServer:
    """Answers JSON-RPC requests the way a small MCP server would.

    A handler returning ``None`` leaves the request unanswered so tests can
    drive progress, timeouts and cancellation by hand.
    """

    def __init__(
        self,
        tools: Optional[List[Dict[str, Any]]] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        handlers: Optional[Dict[str, Handler]] = None,
        start_errors: Optional[List[Exception]] = None,
    ):
        self.tools = list(tools or [])
        self.capabilities = capabilities if capabilities is not None else {"tools": {}}
        self.handlers: Dict[str, Handler] = {
            "initialize": self._initialize,
            "tools/list": lambda params: {"tools": self.tools},
            "tools/call": self._call_tool,
            "ping": lambda params: {},
        }
        self.handlers.update(handlers or {})
        self.start_errors = list(start_errors or [])
        self.received: List[Dict[str, Any]] = []
        self.transports: List["FakeTransport"] = []
        self.tool_calls: List[Dict[str, Any]] = []

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "protocolVersion": params.get("protocolVersion"),
            "capabilities": self.capabilities,
            "serverInfo": {"name": "fake-server", "version": "1.0.0"},
        }

    def _call_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.tool_calls.append(params)
        if not any(tool["name"] == params["name"] for tool in self.tools):
            raise MCPError(METHOD_NOT_FOUND, f"Unknown tool: {params['name']}")
        return {"content": [{"type": "text", "text": f"{params['name']} ok"}]}

    def requests(self, method: str) -> List[Dict[str, Any]]:
        return [m for m in self.received if m.get("method") == method and "id" in m]

    def notifications(self, method: str) -> List[Dict[str, Any]]:
        return [m for m in self.received if m.get("method") == method and "id" not in m]

    def replies(self) -> List[Dict[str, Any]]:
        return [m for m in self.received if "method" not in m]

    @property
    def transport(self) -> "FakeTransport":
        return self.transports[-1]

    def reply_to(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        handler = self.handlers.get(message["method"])
        if handler is None:
            return {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": "Method not found"},
            }
        try:
            result = handler(message.get("params") or {})
        except MCPError as e:
            return {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": e.code, "message": e.message},
            }
        if result is None:
            return None
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}

    def factory(self, proxy_address: str, config: Any, headers: Dict[str, str]) -> "FakeTransport":
        transport = FakeTransport(self, f"{proxy_address}/fake", headers)
        self.transports.append(transport)
        return transport


class FakeTransport(MCPTransport):
    def __init__(self, server: FakeMCPServer, url: str, headers: Dict[str, str]):
        super().__init__(url, headers)
        self.server = server
        self.started = False
        self.closed = False

    async def start(self) -> None:
        if self.server.start_errors:
            raise self.server.start_errors.pop(0)
        self.started = True

    async def send(self, message: Dict[str, Any]) -> None:
        self.server.received.append(message)
        if "method" in message and "id" in message:
            reply = self.server.reply_to(message)
            if reply is not None:
                await self.on_message(reply)

    async def close(self) -> None:
        self.closed = True

    async def deliver(self, message: Dict[str, Any]) -> None:
        """Push a server-initiated message into the client."""
        await self.on_message({"jsonrpc": "2.0", **message})


class FakeNetwork:
    """Routes each server config to its own ``FakeMCPServer``.

    Stdio configs are looked up by command, HTTP configs by URL.
    """

    def __init__(self, servers: Dict[str, FakeMCPServer]):
        self.servers = servers

    def factory(self, proxy_address: str, config: Any, headers: Dict[str, str]) -> FakeTransport:
        key = config.command if isinstance(config, StdioServerConfig) else config.url
        return self.servers[key].factory(proxy_address, config, headers)


async def healthy_proxy(proxy_address: str, timeout: float) -> bool:
    return True


async def unhealthy_proxy(proxy_address: str, timeout: float) -> bool:
    return False


class ScriptedProvider(LLMProvider):
    """Returns queued responses and records every request it receives.

    When the script runs out the last response is repeated.
    """

    name = "scripted"

    def __init__(self, responses: List[ProviderResponse]):
        self.responses = list(responses)
        self.requests: List[ProviderRequest] = []

    @property
    def default_model(self) -> str:
        return "scripted-model"

    async def create_message(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class RecordingToolCaller:
    def __init__(self, results: Optional[Dict[str, Any]] = None, errors: Optional[Dict[str, Exception]] = None):
        self.results = results or {}
        self.errors = errors or {}
        self.calls: List[Dict[str, Any]] = []
        self.on_call: Optional[Callable[[str], None]] = None

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append({"name": name, "arguments": arguments})
        if self.on_call is not None:
            self.on_call(name)
        if name in self.errors:
            raise self.errors[name]
        return self.results.get(name, {"content": [{"type": "text", "text": f"{name} done"}]})


def provider_registry(provider: LLMProvider) -> ProviderRegistry:
    return ProviderRegistry({"scripted": provider}, default_provider="scripted")


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(proxy_address="http://proxy.test:6277")
