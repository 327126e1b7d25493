"""Connection registry for handling named MCP server connections and their tools."""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from mcplink.core.config.client_config import ClientConfig
from mcplink.core.config.server_config import HttpServerConfig, StdioServerConfig
from mcplink.core.exceptions import ServerNotFoundError, ToolNotFoundError
from mcplink.core.history import RequestHistory
from mcplink.core.logger import ClientLogLevel, ClientLogSink, safe_log
from mcplink.mcp.auth import OAuthClientProvider
from mcplink.mcp.base import ConnectionStatus, MCPToolInfo, ServerConnectionInfo
from mcplink.mcp.client import (
    ElicitationHandler,
    HealthCheck,
    MCPProtocolClient,
    RootsProvider,
    SamplingHandler,
    TransportFactory,
)

logger = logging.getLogger(__name__)

ServerConfigType = Union[StdioServerConfig, HttpServerConfig]


class ReconnectPlan(str, Enum):
    """What ``connect_to_server`` does with the client it finds for a name."""
    REUSE_CONNECTED = "reuse-connected"
    RECONNECT_EXISTING = "reconnect-existing"
    CREATE_NEW = "create-new"


def plan_reconnect(client: Optional[MCPProtocolClient]) -> ReconnectPlan:
    """Pick the reconnect transition for an existing client (or none).

    Connected clients are reused, disconnected ones are reconnected in place,
    and missing or errored clients are replaced by a new instance.
    """
    if client is None:
        return ReconnectPlan.CREATE_NEW
    if client.connection_status == ConnectionStatus.CONNECTED:
        return ReconnectPlan.REUSE_CONNECTED
    if client.connection_status == ConnectionStatus.DISCONNECTED:
        return ReconnectPlan.RECONNECT_EXISTING
    return ReconnectPlan.CREATE_NEW


class MCPConnectionRegistry:
    """Owns named server configurations, their clients and the tools cache.

    Configuration order is significant: it is the iteration order for
    aggregate listings and the precedence order when two servers advertise
    a tool with the same name.
    """

    def __init__(
        self,
        servers: Optional[Dict[str, ServerConfigType]] = None,
        client_config: Optional[ClientConfig] = None,
        history: Optional[RequestHistory] = None,
        client_log: Optional[ClientLogSink] = None,
        bearer_token: Optional[str] = None,
        header_name: Optional[str] = None,
        on_stderr: Optional[Callable[[str, str], None]] = None,
        on_sampling_request: Optional[SamplingHandler] = None,
        on_elicitation_request: Optional[ElicitationHandler] = None,
        get_roots: Optional[RootsProvider] = None,
        auth_provider: Optional[OAuthClientProvider] = None,
        transport_factory: Optional[TransportFactory] = None,
        health_check: Optional[HealthCheck] = None,
    ):
        self.server_configs: Dict[str, ServerConfigType] = dict(servers or {})
        self.client_config = client_config or ClientConfig()
        self.history = history if history is not None else RequestHistory()
        self.client_log = client_log
        self.bearer_token = bearer_token
        self.header_name = header_name
        self.on_stderr = on_stderr
        self.on_sampling_request = on_sampling_request
        self.on_elicitation_request = on_elicitation_request
        self.get_roots = get_roots
        self.auth_provider = auth_provider
        self.transport_factory = transport_factory
        self.health_check = health_check

        self.clients: Dict[str, MCPProtocolClient] = {}
        self.tools_cache: Dict[str, List[MCPToolInfo]] = {}
        self._refresh_tasks: Dict[str, Set[asyncio.Task]] = {}

    def _log(self, message: str, level: ClientLogLevel = ClientLogLevel.INFO) -> None:
        safe_log(self.client_log, message, level, fallback=logger)

    # Configuration

    def add_server(self, name: str, config: ServerConfigType) -> None:
        """Insert or overwrite a server configuration without connecting."""
        self.server_configs[name] = config

    async def remove_server(self, name: str) -> None:
        await self.disconnect_from_server(name)
        self.server_configs.pop(name, None)
        self.clients.pop(name, None)
        self._clear_tools_cache(name)
        logger.info(f"Removed MCP server: {name}")

    def get_server_names(self) -> List[str]:
        return list(self.server_configs)

    def get_client(self, name: str) -> Optional[MCPProtocolClient]:
        return self.clients.get(name)

    def get_all_connection_info(self) -> List[ServerConnectionInfo]:
        infos = []
        for name, config in self.server_configs.items():
            client = self.clients.get(name)
            infos.append(ServerConnectionInfo(
                name=name,
                config=config,
                client=client,
                connection_status=client.connection_status if client else ConnectionStatus.DISCONNECTED,
                capabilities=client.capabilities if client else None,
            ))
        return infos

    def update_config(self, **changes: Any) -> None:
        """Update client-wide settings. Applies to clients created afterwards."""
        self.client_config = self.client_config.model_copy(update=changes)

    def update_credentials(self, bearer_token: Optional[str] = None, header_name: Optional[str] = None) -> None:
        self.bearer_token = bearer_token
        self.header_name = header_name

    # Connection lifecycle

    def _create_client(self, name: str, config: ServerConfigType) -> MCPProtocolClient:
        return MCPProtocolClient(
            config,
            client_config=self.client_config,
            server_name=name,
            history=self.history,
            client_log=self.client_log,
            bearer_token=self.bearer_token,
            header_name=self.header_name,
            on_stderr=(lambda content: self.on_stderr(name, content)) if self.on_stderr else None,
            on_notification=lambda message: self._on_server_notification(name, message),
            on_sampling_request=self.on_sampling_request,
            on_elicitation_request=self.on_elicitation_request,
            get_roots=self.get_roots,
            auth_provider=self.auth_provider,
            transport_factory=self.transport_factory,
            health_check=self.health_check,
        )

    async def connect_to_server(self, name: str) -> MCPProtocolClient:
        """Connect to a configured server and cache its tools.

        Raises:
            ServerNotFoundError: ``name`` is not configured
            MCPLinkError: The client's own connection failure
        """
        config = self.server_configs.get(name)
        if config is None:
            raise ServerNotFoundError(f"Server {name} not found")

        existing = self.clients.get(name)
        plan = plan_reconnect(existing)
        logger.debug(f"Connecting to {name}: {plan.value}")

        if plan == ReconnectPlan.REUSE_CONNECTED:
            if name not in self.tools_cache:
                await self._cache_tools_for_server(name)
            return existing

        if plan == ReconnectPlan.RECONNECT_EXISTING:
            try:
                await existing.connect()
                await self._cache_tools_for_server(name)
                return existing
            except Exception as e:
                logger.warning(f"Failed to reconnect existing client {name}: {str(e)}")

        client = self._create_client(name, config)
        self.clients[name] = client
        self._clear_tools_cache(name)
        await client.connect()
        await self._cache_tools_for_server(name)
        return client

    async def connect_to_all_servers(self) -> None:
        """Connect to every configured server concurrently.

        Failures are logged per server and never abort the other connections.
        """
        names = list(self.server_configs)
        results = await asyncio.gather(
            *(self.connect_to_server(name) for name in names),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                self._log(f"Failed to connect to server {name}: {str(result)}", ClientLogLevel.ERROR)

    async def disconnect_from_server(self, name: str) -> None:
        self._cancel_refresh_tasks(name)
        client = self.clients.get(name)
        if client is not None:
            await client.disconnect()
        self._clear_tools_cache(name)

    async def disconnect_from_all_servers(self) -> None:
        for name in list(self._refresh_tasks):
            self._cancel_refresh_tasks(name)
        names = list(self.clients)
        results = await asyncio.gather(
            *(self.clients[name].disconnect() for name in names),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to disconnect from server {name}: {str(result)}")
            self._clear_tools_cache(name)

    async def shutdown(self) -> None:
        await self.disconnect_from_all_servers()

    # Tools cache

    async def _cache_tools_for_server(self, name: str) -> None:
        client = self.clients.get(name)
        if client is None or not client.is_connected:
            self._clear_tools_cache(name)
            return
        try:
            tools = [MCPToolInfo.from_mcp(tool, name) for tool in await client.list_tools()]
        except Exception as e:
            logger.error(f"Failed to cache tools for server {name}: {str(e)}")
            tools = []
        if self.clients.get(name) is not client or not client.is_connected:
            # Disconnected or replaced while listing
            self._clear_tools_cache(name)
            return
        self.tools_cache[name] = tools
        logger.info(f"Discovered {len(tools)} tools from server {name}: {[t.name for t in tools]}")

    def _clear_tools_cache(self, name: str) -> None:
        if self.tools_cache.pop(name, None) is not None:
            self._log(f"Cleared tools cache for server {name}", ClientLogLevel.DEBUG)

    async def refresh_tools_cache(self, name: Optional[str] = None) -> None:
        """Re-fetch tool lists for one connected server, or for all of them."""
        names = [name] if name is not None else [
            info.name for info in self.get_all_connection_info()
            if info.connection_status == ConnectionStatus.CONNECTED
        ]
        await asyncio.gather(*(self._cache_tools_for_server(n) for n in names))

    def _on_server_notification(self, name: str, message: Dict[str, Any]) -> None:
        if message.get("method") != "notifications/tools/list_changed":
            return
        task = asyncio.create_task(self.refresh_tools_cache(name))
        tasks = self._refresh_tasks.setdefault(name, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def _cancel_refresh_tasks(self, name: str) -> None:
        for task in self._refresh_tasks.pop(name, set()):
            task.cancel()

    def get_all_tools(self) -> Dict[str, List[MCPToolInfo]]:
        """Cached tools per connected server, in configuration order.

        Never issues a request; disconnected servers are absent.
        """
        all_tools: Dict[str, List[MCPToolInfo]] = {}
        for name in self.server_configs:
            client = self.clients.get(name)
            if client is not None and client.is_connected and name in self.tools_cache:
                all_tools[name] = list(self.tools_cache[name])
        return all_tools

    def get_all_tools_flat(self) -> List[MCPToolInfo]:
        return [tool for tools in self.get_all_tools().values() for tool in tools]

    # Routed operations

    async def _get_connected_client(self, name: str) -> MCPProtocolClient:
        if name not in self.server_configs:
            raise ServerNotFoundError(f"Server {name} not found")
        return await self.connect_to_server(name)

    async def call_tool_on_server(self, name: str, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client = await self._get_connected_client(name)
        return await client.call_tool(tool_name, arguments or {})

    async def read_resource_from_server(self, name: str, uri: str) -> Dict[str, Any]:
        client = await self._get_connected_client(name)
        return await client.read_resource(uri)

    async def get_prompt_from_server(self, name: str, prompt_name: str, arguments: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        client = await self._get_connected_client(name)
        return await client.get_prompt(prompt_name, arguments or {})

    async def get_all_resources(self) -> Dict[str, List[Dict[str, Any]]]:
        """Resources per configured server; a failing server yields an empty list."""
        resources = {}
        for name in list(self.server_configs):
            try:
                client = await self._get_connected_client(name)
                resources[name] = await client.list_resources()
            except Exception as e:
                logger.error(f"Failed to get resources from server {name}: {str(e)}")
                resources[name] = []
        return resources

    async def get_all_prompts(self) -> Dict[str, List[Dict[str, Any]]]:
        """Prompts per configured server; a failing server yields an empty list."""
        prompts = {}
        for name in list(self.server_configs):
            try:
                client = await self._get_connected_client(name)
                prompts[name] = await client.list_prompts()
            except Exception as e:
                logger.error(f"Failed to get prompts from server {name}: {str(e)}")
                prompts[name] = []
        return prompts

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        server_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Call a tool on the first connected server that advertises it.

        Args:
            name: Tool name
            arguments: Tool arguments
            server_name: Restrict the lookup to this server

        Raises:
            ToolNotFoundError: No connected server advertises ``name``
            ServerNotFoundError: ``server_name`` is not configured
        """
        if server_name is not None and server_name not in self.server_configs:
            raise ServerNotFoundError(f"Server {server_name} not found")

        for candidate, tools in self.get_all_tools().items():
            if server_name is not None and candidate != server_name:
                continue
            if any(tool.name == name for tool in tools):
                return await self.call_tool_on_server(candidate, name, arguments or {})

        raise ToolNotFoundError(f"Tool {name} not found on any connected server")

    # Status

    def get_overall_connection_status(self) -> ConnectionStatus:
        """Aggregate status: ``ERROR`` if any server errored, ``CONNECTED`` if all are connected, else ``DISCONNECTED``."""
        connections = self.get_all_connection_info()
        if not connections:
            return ConnectionStatus.DISCONNECTED
        if any(c.connection_status.is_error for c in connections):
            return ConnectionStatus.ERROR
        if all(c.connection_status == ConnectionStatus.CONNECTED for c in connections):
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.DISCONNECTED

    def _connected_remote_servers(self) -> List[str]:
        return [
            name for name, client in self.clients.items()
            if name in self.server_configs
            and self.server_configs[name].is_remote
            and client.is_connected
        ]

    def has_connected_remote_server(self) -> bool:
        return bool(self._connected_remote_servers())

    def get_connected_remote_server_name(self) -> Optional[str]:
        remote = self._connected_remote_servers()
        return remote[0] if remote else None
