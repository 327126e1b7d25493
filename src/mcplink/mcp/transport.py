"""MCP transports.

Every transport talks to the MCP proxy rather than to the server itself:
stdio servers are exposed by the proxy as an SSE stream, remote servers are
relayed over SSE or streamable HTTP.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlencode, urljoin, urlparse

import aiohttp

from mcplink.core.config.server_config import (
    TRANSPORT_SSE,
    TRANSPORT_STDIO,
    TRANSPORT_STREAMABLE_HTTP,
    HttpServerConfig,
    StdioServerConfig,
)
from mcplink.core.exceptions import TransportError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]
CloseHandler = Callable[[], None]

SESSION_ID_HEADER = "mcp-session-id"
LAST_EVENT_ID_HEADER = "last-event-id"
ENDPOINT_TIMEOUT = 30.0


@dataclass(frozen=True)
class SSEEvent:
    """A single Server-Sent Event."""
    event: str
    data: str
    id: Optional[str] = None


async def iter_sse_events(lines: AsyncIterable[bytes]) -> AsyncIterator[SSEEvent]:
    """Parse a byte line stream into SSE events.

    Args:
        lines: Raw lines as produced by ``aiohttp.StreamReader`` iteration

    Yields:
        Parsed events; comment lines and events without data are dropped
    """
    event_name = "message"
    data_lines = []
    event_id = None

    async for raw in lines:
        line = raw.decode("utf-8").rstrip("\r\n")

        if not line:
            if data_lines:
                yield SSEEvent(event=event_name, data="\n".join(data_lines), id=event_id)
            event_name = "message"
            data_lines = []
            continue

        if line.startswith(":"):
            continue

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field_name == "event":
            event_name = value
        elif field_name == "data":
            data_lines.append(value)
        elif field_name == "id":
            event_id = value

    if data_lines:
        yield SSEEvent(event=event_name, data="\n".join(data_lines), id=event_id)


@dataclass(frozen=True)
class ReconnectionOptions:
    """Backoff policy for re-opening a streamable HTTP event stream."""
    initial_delay: float = 1.0
    grow_factor: float = 1.5
    max_delay: float = 30.0
    max_retries: int = 2

    def delay_for(self, attempt: int) -> float:
        return min(self.initial_delay * (self.grow_factor ** attempt), self.max_delay)


DEFAULT_RECONNECTION_OPTIONS = ReconnectionOptions()


def build_proxy_url(
    proxy_address: str,
    server_config: Union[StdioServerConfig, HttpServerConfig],
) -> str:
    """Build the proxy endpoint URL for a server configuration."""
    base = proxy_address.rstrip("/")
    if isinstance(server_config, StdioServerConfig):
        query = urlencode({
            "command": server_config.command,
            "args": " ".join(server_config.args),
            "env": json.dumps(server_config.env),
            "transportType": TRANSPORT_STDIO,
        })
        return f"{base}/stdio?{query}"

    if server_config.transport_type == TRANSPORT_SSE:
        query = urlencode({"url": server_config.url, "transportType": TRANSPORT_SSE})
        return f"{base}/sse?{query}"

    query = urlencode({"url": server_config.url, "transportType": TRANSPORT_STREAMABLE_HTTP})
    return f"{base}/mcp?{query}"


def _parse_json_messages(body: str) -> list:
    payload = json.loads(body)
    if isinstance(payload, list):
        return payload
    return [payload]


class MCPTransport(ABC):
    """Bidirectional JSON-RPC message channel."""

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.headers: Dict[str, str] = dict(headers or {})
        self.on_message: Optional[MessageHandler] = None
        self.on_close: Optional[CloseHandler] = None

    @abstractmethod
    async def start(self) -> None:
        """Open the channel. Raises ``TransportError`` on failure."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Send one JSON-RPC message."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""

    @property
    def session_id(self) -> Optional[str]:
        return None

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        if self.on_message is None:
            logger.debug(f"Dropping message with no handler: {message}")
            return
        try:
            await self.on_message(message)
        except Exception as e:
            logger.error(f"Error handling message from {self.url}: {str(e)}")

    async def _dispatch_body(self, body: str) -> None:
        try:
            messages = _parse_json_messages(body)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing message from {self.url}: {str(e)}")
            return
        for message in messages:
            await self._dispatch(message)

    def _notify_closed(self) -> None:
        if self.on_close is not None:
            try:
                self.on_close()
            except Exception as e:
                logger.warning(f"Transport close handler failed: {str(e)}")


class SSETransport(MCPTransport):
    """Legacy HTTP+SSE transport.

    Server messages arrive on a long-lived GET stream; the first ``endpoint``
    event names the URL that client messages are POSTed to.
    """

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(url, headers)
        self.session: Optional[aiohttp.ClientSession] = None
        self.endpoint: Optional[str] = None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._event_source_task: Optional[asyncio.Task] = None
        self._endpoint_ready: Optional[asyncio.Future] = None

    async def start(self) -> None:
        self.session = aiohttp.ClientSession()
        self._endpoint_ready = asyncio.get_running_loop().create_future()

        try:
            self._response = await self.session.get(
                self.url,
                headers={**self.headers, "Accept": "text/event-stream"},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=ENDPOINT_TIMEOUT),
            )
        except aiohttp.ClientError as e:
            await self.close()
            raise TransportError(f"SSE connection failed: {str(e)}") from e

        if self._response.status != 200:
            status = self._response.status
            await self.close()
            raise TransportError(f"SSE error: HTTP {status} from {self.url}", status=status)

        self._event_source_task = asyncio.create_task(self._listen_events(self._response))

        try:
            self.endpoint = await asyncio.wait_for(
                asyncio.shield(self._endpoint_ready), timeout=ENDPOINT_TIMEOUT
            )
        except asyncio.TimeoutError as e:
            await self.close()
            raise TransportError("Timed out waiting for SSE endpoint event") from e
        except TransportError:
            await self.close()
            raise

    async def _listen_events(self, response: aiohttp.ClientResponse) -> None:
        try:
            async for event in iter_sse_events(response.content):
                if event.event == "endpoint":
                    self._set_endpoint(event.data)
                elif event.event == "message":
                    await self._dispatch_body(event.data)
                else:
                    logger.debug(f"Ignoring SSE event '{event.event}' from {self.url}")
        except asyncio.CancelledError:
            logger.debug("SSE event listener cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in SSE event listener: {str(e)}")
            if self._endpoint_ready is not None and not self._endpoint_ready.done():
                self._endpoint_ready.set_exception(TransportError(f"SSE stream failed: {str(e)}"))
        finally:
            if self._endpoint_ready is not None and not self._endpoint_ready.done():
                self._endpoint_ready.set_exception(TransportError("SSE stream closed before endpoint event"))
            self._notify_closed()

    def _set_endpoint(self, data: str) -> None:
        endpoint = urljoin(self.url, data)
        if urlparse(endpoint).netloc != urlparse(self.url).netloc:
            error = TransportError(f"Endpoint origin does not match connection origin: {endpoint}")
            if not self._endpoint_ready.done():
                self._endpoint_ready.set_exception(error)
            return
        if not self._endpoint_ready.done():
            self._endpoint_ready.set_result(endpoint)

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.session or not self.endpoint:
            raise TransportError("SSE transport is not connected")

        try:
            async with self.session.post(
                self.endpoint,
                json=message,
                headers={**self.headers, "Content-Type": "application/json"},
            ) as response:
                if response.status >= 300:
                    text = await response.text()
                    raise TransportError(
                        f"Error POSTing to endpoint (HTTP {response.status}): {text}",
                        status=response.status,
                    )
        except aiohttp.ClientError as e:
            raise TransportError(f"Error POSTing to endpoint: {str(e)}") from e

    async def close(self) -> None:
        if self._event_source_task:
            self._event_source_task.cancel()
            try:
                await self._event_source_task
            except asyncio.CancelledError:
                pass
            self._event_source_task = None

        if self._response is not None:
            self._response.close()
            self._response = None

        if self.session:
            await self.session.close()
            self.session = None

        self.endpoint = None


class StreamableHTTPTransport(MCPTransport):
    """Streamable HTTP transport.

    Each client message is a POST whose response carries either JSON or an
    SSE stream of replies. After initialization a standalone GET stream
    delivers server-initiated messages and is re-opened with bounded backoff.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        reconnection_options: ReconnectionOptions = DEFAULT_RECONNECTION_OPTIONS,
    ):
        super().__init__(url, headers)
        self.reconnection_options = reconnection_options
        self.session: Optional[aiohttp.ClientSession] = None
        self._session_id: Optional[str] = None
        self._last_event_id: Optional[str] = None
        self._stream_tasks: set = set()
        self._standalone_task: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def _common_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self._session_id:
            headers[SESSION_ID_HEADER] = self._session_id
        return headers

    async def start(self) -> None:
        if self.session is not None:
            raise TransportError("Streamable HTTP transport already started")
        self.session = aiohttp.ClientSession()

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.session:
            raise TransportError("Streamable HTTP transport is not started")

        headers = {
            **self._common_headers(),
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        try:
            response = await self.session.post(self.url, json=message, headers=headers)
        except aiohttp.ClientError as e:
            raise TransportError(f"Error POSTing to endpoint: {str(e)}") from e

        session_id = response.headers.get(SESSION_ID_HEADER)
        if session_id:
            self._session_id = session_id

        if response.status == 202:
            response.release()
            if message.get("method") == "notifications/initialized":
                self._start_standalone_stream()
            return

        if response.status >= 300:
            text = await response.text()
            response.release()
            raise TransportError(
                f"Error POSTing to endpoint (HTTP {response.status}): {text}",
                status=response.status,
            )

        content_type = response.headers.get("Content-Type", "")
        if "text/event-stream" in content_type:
            task = asyncio.create_task(self._consume_response_stream(response))
            self._stream_tasks.add(task)
            task.add_done_callback(self._stream_tasks.discard)
        elif "application/json" in content_type:
            body = await response.text()
            response.release()
            await self._dispatch_body(body)
        else:
            response.release()
            if "id" in message and "method" in message:
                raise TransportError(f"Unexpected content type: {content_type}")

    async def _consume_stream(self, response: aiohttp.ClientResponse) -> None:
        try:
            async for event in iter_sse_events(response.content):
                if event.id:
                    self._last_event_id = event.id
                if event.event == "message":
                    await self._dispatch_body(event.data)
        finally:
            response.release()

    async def _consume_response_stream(self, response: aiohttp.ClientResponse) -> None:
        try:
            await self._consume_stream(response)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading response stream from {self.url}: {str(e)}")

    def _start_standalone_stream(self) -> None:
        if self._standalone_task is None or self._standalone_task.done():
            self._standalone_task = asyncio.create_task(self._run_standalone_stream())

    async def _run_standalone_stream(self) -> None:
        attempt = 0
        options = self.reconnection_options
        while self.session is not None:
            headers = {**self._common_headers(), "Accept": "text/event-stream"}
            if self._last_event_id:
                headers[LAST_EVENT_ID_HEADER] = self._last_event_id
            try:
                response = await self.session.get(
                    self.url,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=None),
                )
                if response.status == 405:
                    # Server does not offer a standalone stream
                    response.release()
                    return
                if response.status != 200:
                    response.release()
                    raise TransportError(
                        f"Failed to open SSE stream: HTTP {response.status}",
                        status=response.status,
                    )
                attempt = 0
                await self._consume_stream(response)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"SSE stream to {self.url} dropped: {str(e)}")

            if attempt >= options.max_retries:
                logger.error(
                    f"Maximum reconnection attempts ({options.max_retries}) exceeded for {self.url}"
                )
                self._notify_closed()
                return
            delay = options.delay_for(attempt)
            attempt += 1
            logger.info(f"Reconnecting SSE stream in {delay:.1f}s (attempt {attempt}/{options.max_retries})")
            await asyncio.sleep(delay)

    async def close(self) -> None:
        tasks = list(self._stream_tasks)
        if self._standalone_task is not None:
            tasks.append(self._standalone_task)
            self._standalone_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Stream task ended with error during close: {str(e)}")
        self._stream_tasks.clear()

        if self.session:
            await self.session.close()
            self.session = None


def create_transport(
    proxy_address: str,
    server_config: Union[StdioServerConfig, HttpServerConfig],
    headers: Optional[Dict[str, str]] = None,
) -> MCPTransport:
    """Create the proxy-routed transport matching a server configuration."""
    url = build_proxy_url(proxy_address, server_config)
    if isinstance(server_config, StdioServerConfig) or server_config.transport_type == TRANSPORT_SSE:
        return SSETransport(url, headers)
    return StreamableHTTPTransport(url, headers, reconnection_options=DEFAULT_RECONNECTION_OPTIONS)
