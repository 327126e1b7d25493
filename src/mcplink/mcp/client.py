"""MCP protocol client.

One ``MCPProtocolClient`` owns one server connection routed through the MCP
proxy. It speaks JSON-RPC over an ``MCPTransport``, keeps the connection
status and server capabilities, records every outbound message in a
``RequestHistory`` and answers the few requests a server may send back.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from mcplink.core.config.client_config import ClientConfig
from mcplink.core.config.server_config import HttpServerConfig, StdioServerConfig
from mcplink.core.exceptions import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    AuthenticationRequiredError,
    ConnectionFailedError,
    MCPError,
    ProxyUnavailableError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from mcplink.core.history import RequestHistory
from mcplink.core.logger import ClientLogLevel, ClientLogSink, safe_log
from mcplink.mcp.auth import AuthResult, OAuthClientProvider
from mcplink.mcp.base import ConnectionStatus, RequestOptions
from mcplink.mcp.transport import MCPTransport, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[
    [str, Union[StdioServerConfig, HttpServerConfig], Dict[str, str]], MCPTransport
]
HealthCheck = Callable[[str, float], Awaitable[bool]]
SamplingHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
ElicitationHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
RootsProvider = Callable[[], List[Dict[str, Any]]]
NotificationListener = Callable[[Dict[str, Any]], None]

_SERVER_LOG_LEVELS = {
    "debug": ClientLogLevel.DEBUG,
    "info": ClientLogLevel.INFO,
    "notice": ClientLogLevel.INFO,
    "warning": ClientLogLevel.WARN,
}


async def check_proxy_health(proxy_address: str, timeout: float) -> bool:
    """Return True when ``GET {proxy}/health`` answers ``{"status": "ok"}``."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(f"{proxy_address}/health") as response:
                payload = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.debug(f"Proxy health check against {proxy_address} failed: {str(e)}")
        return False
    return isinstance(payload, dict) and payload.get("status") == "ok"


def is_unauthorized_error(error: BaseException) -> bool:
    if isinstance(error, TransportError) and error.is_unauthorized:
        return True
    if isinstance(error, TransportError) and error.status is not None:
        return False
    message = str(error)
    return "HTTP 401" in message or "Unauthorized" in message


@dataclass
class _PendingRequest:
    future: asyncio.Future
    progress: asyncio.Event = field(default_factory=asyncio.Event)
    on_progress: Optional[Callable[[Dict[str, Any]], None]] = None


class MCPProtocolClient:
    """Client for a single MCP server reached through the proxy."""

    def __init__(
        self,
        server_config: Union[StdioServerConfig, HttpServerConfig],
        client_config: Optional[ClientConfig] = None,
        server_name: str = "",
        history: Optional[RequestHistory] = None,
        client_log: Optional[ClientLogSink] = None,
        bearer_token: Optional[str] = None,
        header_name: Optional[str] = None,
        on_stderr: Optional[Callable[[str], None]] = None,
        on_notification: Optional[NotificationListener] = None,
        on_sampling_request: Optional[SamplingHandler] = None,
        on_elicitation_request: Optional[ElicitationHandler] = None,
        get_roots: Optional[RootsProvider] = None,
        auth_provider: Optional[OAuthClientProvider] = None,
        transport_factory: Optional[TransportFactory] = None,
        health_check: Optional[HealthCheck] = None,
    ):
        self.server_config = server_config
        self.client_config = client_config or ClientConfig()
        self.server_name = server_name
        self.history = history if history is not None else RequestHistory()
        self.client_log = client_log
        self.bearer_token = bearer_token
        self.header_name = header_name or "Authorization"
        self.on_stderr = on_stderr
        self.on_notification = on_notification
        self.on_sampling_request = on_sampling_request
        self.on_elicitation_request = on_elicitation_request
        self.get_roots = get_roots
        self.auth_provider = auth_provider
        self.transport_factory = transport_factory or create_transport
        self.health_check = health_check or check_proxy_health

        self.connection_status = ConnectionStatus.DISCONNECTED
        self.capabilities: Optional[Dict[str, Any]] = None
        self.server_info: Optional[Dict[str, Any]] = None
        self.instructions: Optional[str] = None
        self.completions_supported = True
        self.headers: Dict[str, str] = {}

        self._transport: Optional[MCPTransport] = None
        self._request_id_counter = 0
        self._pending_requests: Dict[int, _PendingRequest] = {}
        self._server_request_tasks: Dict[Any, asyncio.Task] = {}

    def _log(self, message: str, level: ClientLogLevel = ClientLogLevel.INFO) -> None:
        safe_log(self.client_log, message, level, fallback=logger)

    @property
    def is_remote(self) -> bool:
        return isinstance(self.server_config, HttpServerConfig)

    @property
    def server_url(self) -> Optional[str]:
        return self.server_config.url if self.is_remote else None

    @property
    def is_connected(self) -> bool:
        return self.connection_status == ConnectionStatus.CONNECTED

    # Connection lifecycle

    async def connect(self, retry_budget: int = 1) -> None:
        """Connect to the server through the proxy.

        Args:
            retry_budget: How many OAuth-authorized retries a 401 may trigger

        Raises:
            ProxyUnavailableError: The proxy health check failed
            AuthenticationRequiredError: Authorization needs an external redirect
            ConnectionFailedError: The transport or handshake failed
        """
        proxy_address = self.client_config.proxy_address
        self._log("Checking MCP proxy server health", ClientLogLevel.DEBUG)
        try:
            healthy = await self.health_check(proxy_address, self.client_config.health_check_timeout)
        except Exception as e:
            self._log(f"Failed to connect to MCP Proxy Server: {str(e)}", ClientLogLevel.ERROR)
            healthy = False
        if not healthy:
            self._set_status(ConnectionStatus.ERROR_CONNECTING_TO_PROXY)
            self._log("Failed to connect to proxy server", ClientLogLevel.ERROR)
            raise ProxyUnavailableError(f"MCP proxy at {proxy_address} is not healthy")

        await self._close_transport()
        self.headers = await self._build_headers()

        try:
            init_result = await self._open_and_initialize()
        except Exception as e:
            await self._close_transport()
            self._log(f"Failed to connect to MCP server '{self.server_name}': {str(e)}", ClientLogLevel.ERROR)
            await self._handle_connect_failure(e, retry_budget)
            return

        self.capabilities = dict(init_result.get("capabilities") or {})
        self.server_info = init_result.get("serverInfo")
        self.instructions = init_result.get("instructions")
        self.history.append(
            {"method": "initialize"},
            response={
                "capabilities": self.capabilities,
                "serverInfo": self.server_info,
                "instructions": self.instructions,
            },
        )
        self.completions_supported = True
        self.connection_status = ConnectionStatus.CONNECTED
        self._log(f"Connected to MCP server '{self.server_name}'")

    async def _handle_connect_failure(self, error: Exception, retry_budget: int) -> None:
        if is_unauthorized_error(error) and self.is_remote:
            if retry_budget > 0 and self.auth_provider is not None:
                self._log("Authentication error detected, attempting OAuth flow", ClientLogLevel.WARN)
                result = await self.auth_provider.authorize(self.server_url)
                if result == AuthResult.AUTHORIZED:
                    self._log("OAuth authentication successful")
                    await self.connect(retry_budget - 1)
                    return
                if result == AuthResult.REDIRECT:
                    self._log("OAuth authorization requires a redirect", ClientLogLevel.WARN)
                    raise AuthenticationRequiredError(
                        f"Authorization required for {self.server_url}"
                    ) from error
                self._log("OAuth authentication failed", ClientLogLevel.ERROR)
            self._set_status(ConnectionStatus.ERROR)
            raise ConnectionFailedError(f"Authentication failed for '{self.server_name}': {str(error)}") from error

        self._set_status(ConnectionStatus.ERROR)
        raise ConnectionFailedError(f"Failed to connect to '{self.server_name}': {str(error)}") from error

    async def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.is_remote:
            headers.update(self.server_config.headers)
        token = self.bearer_token
        if not token and self.is_remote and self.auth_provider is not None:
            token = await self.auth_provider.access_token(self.server_url)
        if token:
            headers[self.header_name] = f"Bearer {token}"
            self._log("Bearer token configured for authentication", ClientLogLevel.DEBUG)
        elif self.is_remote:
            self._log("No bearer token available for authentication", ClientLogLevel.DEBUG)
        return headers

    async def _open_and_initialize(self) -> Dict[str, Any]:
        transport = self.transport_factory(
            self.client_config.proxy_address, self.server_config, self.headers
        )
        transport.on_message = self._handle_message
        transport.on_close = self._handle_transport_closed
        self._transport = transport
        self._log(f"Connecting to MCP server via {transport.url}", ClientLogLevel.DEBUG)
        await transport.start()

        init_result = await self._request(
            "initialize",
            {
                "protocolVersion": self.client_config.protocol_version,
                "capabilities": {"sampling": {}, "elicitation": {}, "roots": {"listChanged": True}},
                "clientInfo": {
                    "name": self.client_config.client_name,
                    "version": self.client_config.client_version,
                },
            },
            RequestOptions(),
        )
        await transport.send({"jsonrpc": "2.0", "method": "notifications/initialized"})
        return init_result

    async def disconnect(self) -> None:
        """Close the connection. Calling it again is a no-op.

        Stored OAuth credentials are cleared only when an open connection
        is closed.
        """
        was_open = self._transport is not None
        if not was_open and self.connection_status == ConnectionStatus.DISCONNECTED:
            return
        if was_open:
            self._log(f"Disconnecting from MCP server '{self.server_name}'")
        await self._close_transport()
        if was_open and self.is_remote and self.auth_provider is not None:
            self.auth_provider.clear(self.server_url)
        self.connection_status = ConnectionStatus.DISCONNECTED
        self.capabilities = None

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"Error closing transport for '{self.server_name}': {str(e)}")
        self._fail_pending(TransportError("Connection closed"))
        for task in self._server_request_tasks.values():
            task.cancel()
        self._server_request_tasks.clear()

    def _fail_pending(self, error: Exception) -> None:
        for pending in self._pending_requests.values():
            if not pending.future.done():
                pending.future.set_exception(error)
        self._pending_requests.clear()

    def _handle_transport_closed(self) -> None:
        if self._pending_requests:
            logger.warning(f"Transport for '{self.server_name}' closed with requests in flight")
        self._fail_pending(TransportError("Connection closed"))

    def _set_status(self, status: ConnectionStatus) -> None:
        self.connection_status = status
        if status != ConnectionStatus.CONNECTED:
            self.capabilities = None

    # Outbound messages

    def _next_request_id(self) -> int:
        self._request_id_counter += 1
        return self._request_id_counter

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> Dict[str, Any]:
        """Send a request and wait for its result.

        Exactly one history entry is recorded per call.

        Raises:
            MCPError: The server answered with a JSON-RPC error
            RequestTimeoutError: No response within the timeout budget
            RequestCancelledError: ``options.cancel_event`` was set
            TransportError: The transport failed or is not connected
        """
        request = {"method": method}
        if params is not None:
            request["params"] = params
        self._log(f"Making MCP request: {method}", ClientLogLevel.DEBUG)

        started = time.monotonic()
        try:
            result = await self._request(method, params, options or RequestOptions())
        except (Exception, asyncio.CancelledError) as e:
            latency_ms = (time.monotonic() - started) * 1000
            self.history.append(request, error=str(e) or type(e).__name__, latency_ms=latency_ms)
            self._log(f"MCP request failed: {method} - {str(e)}", ClientLogLevel.ERROR)
            raise

        latency_ms = (time.monotonic() - started) * 1000
        self.history.append(request, response=result, latency_ms=latency_ms)
        self._log(f"MCP request successful: {method}", ClientLogLevel.DEBUG)
        return result

    async def _request(
        self,
        method: str,
        params: Optional[Dict[str, Any]],
        options: RequestOptions,
    ) -> Dict[str, Any]:
        if self._transport is None:
            raise TransportError(f"Not connected to MCP server '{self.server_name}'")

        timeout = options.timeout
        if timeout is None:
            timeout = self.server_config.timeout or self.client_config.request_timeout
        max_total = options.max_total_timeout or self.client_config.max_total_timeout
        reset_on_progress = options.reset_timeout_on_progress
        if reset_on_progress is None:
            reset_on_progress = self.client_config.reset_timeout_on_progress
        cancel_event = options.cancel_event

        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError(f"Request {method} was cancelled")

        request_id = self._next_request_id()
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        message_params = dict(params or {})
        if reset_on_progress or options.on_progress is not None:
            meta = dict(message_params.get("_meta") or {})
            meta["progressToken"] = request_id
            message_params["_meta"] = meta
        if message_params:
            message["params"] = message_params

        pending = _PendingRequest(
            future=asyncio.get_running_loop().create_future(),
            on_progress=options.on_progress,
        )
        self._pending_requests[request_id] = pending
        try:
            await self._transport.send(message)
            return await self._wait_for_response(
                method, request_id, pending, timeout, max_total, reset_on_progress, cancel_event
            )
        except asyncio.CancelledError:
            await self._send_cancelled(request_id, "Request cancelled by client")
            raise
        finally:
            self._pending_requests.pop(request_id, None)

    async def _wait_for_response(
        self,
        method: str,
        request_id: int,
        pending: _PendingRequest,
        timeout: float,
        max_total: float,
        reset_on_progress: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        total_deadline = started + max_total
        deadline = min(started + timeout, total_deadline)

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                await self._send_cancelled(request_id, "Request timed out")
                raise RequestTimeoutError(f"Request {method} timed out after {timeout}s")

            waiters = {pending.future, asyncio.ensure_future(pending.progress.wait())}
            if cancel_event is not None:
                waiters.add(asyncio.ensure_future(cancel_event.wait()))
            try:
                await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    if waiter is not pending.future and not waiter.done():
                        waiter.cancel()

            if pending.future.done():
                return pending.future.result()

            if cancel_event is not None and cancel_event.is_set():
                await self._send_cancelled(request_id, "Request cancelled by client")
                raise RequestCancelledError(f"Request {method} was cancelled")

            if pending.progress.is_set():
                pending.progress.clear()
                if reset_on_progress:
                    deadline = min(loop.time() + timeout, total_deadline)

    async def _send_cancelled(self, request_id: int, reason: str) -> None:
        if self._transport is None:
            return
        try:
            await self._transport.send({
                "jsonrpc": "2.0",
                "method": "notifications/cancelled",
                "params": {"requestId": request_id, "reason": reason},
            })
        except Exception as e:
            logger.debug(f"Failed to send cancellation for request {request_id}: {str(e)}")

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification. Failures are recorded in history and re-raised."""
        notification: Dict[str, Any] = {"method": method}
        if params is not None:
            notification["params"] = params
        try:
            if self._transport is None:
                raise TransportError(f"Not connected to MCP server '{self.server_name}'")
            await self._transport.send({"jsonrpc": "2.0", **notification})
        except Exception as e:
            self.history.append(notification, error=str(e))
            self._log(f"Failed to send notification: {method} - {str(e)}", ClientLogLevel.ERROR)
            raise
        self.history.append(notification)
        self._log(f"Notification sent: {method}", ClientLogLevel.DEBUG)

    async def completion(
        self,
        ref: Dict[str, Any],
        arg_name: str,
        value: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[str]:
        """Ask the server for argument completions.

        A server without ``completion/complete`` disables completions for the
        rest of the connection; later calls return ``[]`` without a request.
        """
        if not self.completions_supported:
            return []
        try:
            result = await self.request(
                "completion/complete",
                {"argument": {"name": arg_name, "value": value}, "ref": ref},
                RequestOptions(cancel_event=cancel_event),
            )
        except MCPError as e:
            if e.is_method_not_found:
                self.completions_supported = False
                self._log("Completions disabled - server does not support them", ClientLogLevel.WARN)
                return []
            raise
        return list((result.get("completion") or {}).get("values") or [])

    # Typed helpers

    async def list_tools(self, cursor: Optional[str] = None) -> List[Dict[str, Any]]:
        """List every tool, following pagination cursors."""
        tools: List[Dict[str, Any]] = []
        while True:
            result = await self.request("tools/list", {"cursor": cursor} if cursor else {})
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> Dict[str, Any]:
        return await self.request(
            "tools/call", {"name": name, "arguments": arguments or {}}, options
        )

    async def list_resources(self) -> List[Dict[str, Any]]:
        result = await self.request("resources/list", {})
        return result.get("resources", [])

    async def list_resource_templates(self) -> List[Dict[str, Any]]:
        result = await self.request("resources/templates/list", {})
        return result.get("resourceTemplates", [])

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        return await self.request("resources/read", {"uri": uri})

    async def subscribe_resource(self, uri: str) -> Dict[str, Any]:
        return await self.request("resources/subscribe", {"uri": uri})

    async def unsubscribe_resource(self, uri: str) -> Dict[str, Any]:
        return await self.request("resources/unsubscribe", {"uri": uri})

    async def list_prompts(self) -> List[Dict[str, Any]]:
        result = await self.request("prompts/list", {})
        return result.get("prompts", [])

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return await self.request("prompts/get", {"name": name, "arguments": arguments or {}})

    async def ping(self) -> Dict[str, Any]:
        return await self.request("ping")

    async def set_logging_level(self, level: str) -> Dict[str, Any]:
        return await self.request("logging/setLevel", {"level": level})

    async def send_roots_list_changed(self) -> None:
        await self.notify("notifications/roots/list_changed")

    # Inbound messages

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        if "method" not in message:
            self._handle_response(message)
        elif "id" in message:
            task = asyncio.create_task(self._handle_server_request(message))
            request_id = message["id"]
            self._server_request_tasks[request_id] = task
            task.add_done_callback(lambda _: self._server_request_tasks.pop(request_id, None))
        else:
            self._handle_notification(message)

    def _handle_response(self, message: Dict[str, Any]) -> None:
        pending = self._pending_requests.get(message.get("id"))
        if pending is None or pending.future.done():
            logger.debug(f"Dropping response for unknown request id {message.get('id')}")
            return
        if "error" in message:
            error = message["error"] or {}
            pending.future.set_exception(
                MCPError(error.get("code", INTERNAL_ERROR), error.get("message", ""), error.get("data"))
            )
        else:
            pending.future.set_result(message.get("result") or {})

    def _handle_notification(self, message: Dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}

        if method == "notifications/progress":
            pending = self._pending_requests.get(params.get("progressToken"))
            if pending is not None:
                pending.progress.set()
                if pending.on_progress is not None:
                    try:
                        pending.on_progress(params)
                    except Exception as e:
                        logger.warning(f"Progress callback failed: {str(e)}")
            self._log("Progress notification received", ClientLogLevel.DEBUG)
        elif method == "notifications/cancelled":
            task = self._server_request_tasks.pop(params.get("requestId"), None)
            if task is not None:
                task.cancel()
        elif method == "notifications/stderr":
            content = params.get("content", "")
            if self.on_stderr is not None:
                try:
                    self.on_stderr(content)
                except Exception as e:
                    logger.warning(f"stderr handler failed: {str(e)}")
            else:
                self._log(f"[{self.server_name} stderr] {content}", ClientLogLevel.DEBUG)
        elif method == "notifications/message":
            level = _SERVER_LOG_LEVELS.get(params.get("level", "info"), ClientLogLevel.ERROR)
            data = params.get("data")
            text = data if isinstance(data, str) else json.dumps(data)
            self._log(f"[{self.server_name}] {text}", level)
        elif method in (
            "notifications/resources/list_changed",
            "notifications/tools/list_changed",
            "notifications/prompts/list_changed",
            "notifications/resources/updated",
        ):
            self._log(f"Server '{self.server_name}' sent {method}", ClientLogLevel.DEBUG)
        else:
            logger.debug(f"Unhandled notification {method} from '{self.server_name}'")

        if self.on_notification is not None:
            try:
                self.on_notification(message)
            except Exception as e:
                logger.warning(f"Notification listener failed: {str(e)}")

    async def _handle_server_request(self, message: Dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}
        reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}

        try:
            if method == "ping":
                reply["result"] = {}
            elif method == "roots/list":
                roots = self.get_roots() if self.get_roots is not None else []
                reply["result"] = {"roots": list(roots)}
            elif method == "sampling/createMessage" and self.on_sampling_request is not None:
                reply["result"] = await self.on_sampling_request(params)
            elif method == "elicitation/create" and self.on_elicitation_request is not None:
                reply["result"] = await self.on_elicitation_request(params)
            else:
                reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log(f"Error handling server request {method}: {str(e)}", ClientLogLevel.ERROR)
            reply.pop("result", None)
            reply["error"] = {"code": INTERNAL_ERROR, "message": str(e)}

        if self._transport is None:
            return
        try:
            await self._transport.send(reply)
        except Exception as e:
            logger.error(f"Failed to answer server request {method}: {str(e)}")
