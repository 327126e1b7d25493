"""Tests for MCPProtocolClient against an in-process fake server."""

import asyncio

import pytest

from conftest import FakeMCPServer, healthy_proxy, unhealthy_proxy
from mcplink.core.approvals import ApprovalQueue, QueueElicitationHandler, QueueSamplingHandler
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
from mcplink.mcp.auth import AuthResult, OAuthClientProvider, OAuthTokens, OAuthTokenStore
from mcplink.mcp.base import ConnectionStatus, RequestOptions
from mcplink.mcp.client import MCPProtocolClient, is_unauthorized_error

STDIO_CONFIG = StdioServerConfig(command="npx", args=["@modelcontextprotocol/server-everything"])
HTTP_CONFIG = HttpServerConfig(url="https://mcp.example.com/mcp")


class FakeAuthProvider:
    def __init__(self, result: AuthResult, token: str = "oauth-token"):
        self.result = result
        self.token = token
        self.authorized = False
        self.authorize_calls = []
        self.cleared = []

    async def access_token(self, url):
        return self.token if self.authorized else None

    async def authorize(self, url):
        self.authorize_calls.append(url)
        if self.result == AuthResult.AUTHORIZED:
            self.authorized = True
        return self.result

    def clear(self, url):
        self.cleared.append(url)
        self.authorized = False


def make_client(server, config=STDIO_CONFIG, client_config=None, **kwargs):
    kwargs.setdefault("health_check", healthy_proxy)
    return MCPProtocolClient(
        config,
        client_config=client_config,
        server_name="everything",
        transport_factory=server.factory,
        **kwargs,
    )


class TestConnect:
    """Connection lifecycle, status and capabilities."""

    @pytest.mark.asyncio
    async def test_connect_captures_capabilities(self, client_config):
        server = FakeMCPServer(capabilities={"tools": {}})
        client = make_client(server, client_config=client_config)

        await client.connect()

        assert client.connection_status == ConnectionStatus.CONNECTED
        assert client.capabilities == {"tools": {}}
        assert client.server_info == {"name": "fake-server", "version": "1.0.0"}
        assert server.transport.started
        assert server.requests("initialize")[0]["params"]["capabilities"] == {
            "sampling": {},
            "roots": {"listChanged": True},
        }
        assert len(server.notifications("notifications/initialized")) == 1

    @pytest.mark.asyncio
    async def test_status_and_capabilities_stay_consistent(self, client_config):
        server = FakeMCPServer()
        client = make_client(server, client_config=client_config)

        for _ in range(2):
            await client.connect()
            assert client.is_connected and client.capabilities is not None
            await client.disconnect()
            assert client.connection_status == ConnectionStatus.DISCONNECTED
            assert client.capabilities is None

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, client_config):
        server = FakeMCPServer()
        client = make_client(server, client_config=client_config)
        await client.connect()

        await client.disconnect()
        await client.disconnect()

        assert server.transport.closed
        assert client.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_unhealthy_proxy_skips_handshake(self, client_config):
        server = FakeMCPServer()
        client = make_client(server, client_config=client_config, health_check=unhealthy_proxy)

        with pytest.raises(ProxyUnavailableError):
            await client.connect()

        assert client.connection_status == ConnectionStatus.ERROR_CONNECTING_TO_PROXY
        assert client.capabilities is None
        assert server.transports == []

    @pytest.mark.asyncio
    async def test_transport_failure_sets_error(self, client_config):
        server = FakeMCPServer(start_errors=[TransportError("connection refused")])
        client = make_client(server, client_config=client_config)

        with pytest.raises(ConnectionFailedError):
            await client.connect()

        assert client.connection_status == ConnectionStatus.ERROR
        assert client.capabilities is None

    @pytest.mark.asyncio
    async def test_connect_records_initialize_history_entry(self, client_config):
        history = RequestHistory()
        client = make_client(FakeMCPServer(), client_config=client_config, history=history)

        await client.connect()

        assert len(history) == 1
        assert history.entries[0].request == {"method": "initialize"}
        assert history.entries[0].response["capabilities"] == {"tools": {}}

    @pytest.mark.asyncio
    async def test_explicit_bearer_token_is_sent(self, client_config):
        server = FakeMCPServer()
        client = make_client(
            server, client_config=client_config, bearer_token="secret", header_name="X-Api-Key"
        )

        await client.connect()

        assert server.transport.headers == {"X-Api-Key": "Bearer secret"}


class TestAuthentication:
    """401 handling and the OAuth retry budget."""

    @pytest.mark.asyncio
    async def test_authorized_retry_reconnects_with_token(self, client_config):
        server = FakeMCPServer(start_errors=[TransportError("Unauthorized", status=401)])
        auth = FakeAuthProvider(AuthResult.AUTHORIZED)
        client = make_client(server, HTTP_CONFIG, client_config=client_config, auth_provider=auth)

        await client.connect()

        assert client.is_connected
        assert auth.authorize_calls == [HTTP_CONFIG.url]
        assert server.transport.headers["Authorization"] == "Bearer oauth-token"

    @pytest.mark.asyncio
    async def test_redirect_keeps_status_out_of_error(self, client_config):
        server = FakeMCPServer(start_errors=[TransportError("Unauthorized", status=401)])
        auth = FakeAuthProvider(AuthResult.REDIRECT)
        client = make_client(server, HTTP_CONFIG, client_config=client_config, auth_provider=auth)

        with pytest.raises(AuthenticationRequiredError):
            await client.connect()

        assert client.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_retry_budget_is_bounded(self, client_config):
        server = FakeMCPServer(start_errors=[
            TransportError("Unauthorized", status=401),
            TransportError("Unauthorized", status=401),
        ])
        auth = FakeAuthProvider(AuthResult.AUTHORIZED)
        client = make_client(server, HTTP_CONFIG, client_config=client_config, auth_provider=auth)

        with pytest.raises(ConnectionFailedError):
            await client.connect()

        assert len(auth.authorize_calls) == 1
        assert client.connection_status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_stdio_never_runs_oauth(self, client_config):
        server = FakeMCPServer(start_errors=[TransportError("Unauthorized", status=401)])
        auth = FakeAuthProvider(AuthResult.AUTHORIZED)
        client = make_client(server, STDIO_CONFIG, client_config=client_config, auth_provider=auth)

        with pytest.raises(ConnectionFailedError):
            await client.connect()

        assert auth.authorize_calls == []
        assert client.connection_status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_disconnect_clears_remote_credentials(self, client_config):
        auth = FakeAuthProvider(AuthResult.AUTHORIZED)
        client = make_client(FakeMCPServer(), HTTP_CONFIG, client_config=client_config, auth_provider=auth)
        await client.connect()

        await client.disconnect()
        await client.disconnect()

        assert auth.cleared == [HTTP_CONFIG.url]

    @pytest.mark.asyncio
    async def test_disconnect_without_open_connection_keeps_stored_tokens(self, client_config):
        store = OAuthTokenStore()
        store.save_tokens(HTTP_CONFIG.url, OAuthTokens(access_token="stored"))
        client = make_client(
            FakeMCPServer(), HTTP_CONFIG, client_config=client_config, auth_provider=OAuthClientProvider(store=store)
        )

        await client.disconnect()
        await client.disconnect()

        assert store.get_tokens(HTTP_CONFIG.url).access_token == "stored"
        assert client.connection_status == ConnectionStatus.DISCONNECTED

    def test_unauthorized_detection(self):
        assert is_unauthorized_error(TransportError("boom", status=401))
        assert is_unauthorized_error(RuntimeError("HTTP 401 Unauthorized"))
        assert not is_unauthorized_error(TransportError("boom", status=500))
        assert not is_unauthorized_error(TransportError("HTTP 401 from upstream", status=502))
        assert not is_unauthorized_error(RuntimeError("Cannot connect to localhost:4010"))


class TestRequests:
    """Request dispatch, history, timeouts and cancellation."""

    @pytest.mark.asyncio
    async def test_each_request_appends_one_history_entry(self, client_config):
        history = RequestHistory()
        server = FakeMCPServer(tools=[{"name": "echo", "inputSchema": {"type": "object"}}])
        client = make_client(server, client_config=client_config, history=history)
        await client.connect()

        result = await client.call_tool("echo", {"message": "hi"})
        with pytest.raises(MCPError):
            await client.call_tool("missing")

        assert result["content"][0]["text"] == "echo ok"
        entries = history.entries
        assert len(entries) == 3
        assert entries[1].request["method"] == "tools/call"
        assert entries[1].response == result
        assert entries[1].latency_ms is not None
        assert entries[2].error is not None and entries[2].response is None

    @pytest.mark.asyncio
    async def test_list_tools_follows_cursors(self, client_config):
        pages = {
            None: {"tools": [{"name": "a"}], "nextCursor": "page-2"},
            "page-2": {"tools": [{"name": "b"}]},
        }
        server = FakeMCPServer(handlers={"tools/list": lambda params: pages[params.get("cursor")]})
        client = make_client(server, client_config=client_config)
        await client.connect()

        tools = await client.list_tools()

        assert [tool["name"] for tool in tools] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_timeout_sends_cancelled_notification(self, client_config):
        server = FakeMCPServer(handlers={"slow/op": lambda params: None})
        client = make_client(server, client_config=client_config)
        await client.connect()

        with pytest.raises(RequestTimeoutError):
            await client.request("slow/op", {}, RequestOptions(timeout=0.05))

        request_id = server.requests("slow/op")[0]["id"]
        cancelled = server.notifications("notifications/cancelled")
        assert cancelled[0]["params"]["requestId"] == request_id

    @pytest.mark.asyncio
    async def test_progress_resets_request_timeout(self, client_config):
        server = FakeMCPServer(handlers={"slow/op": lambda params: None})
        client = make_client(server, client_config=client_config)
        await client.connect()

        task = asyncio.create_task(
            client.request("slow/op", {}, RequestOptions(timeout=0.15, max_total_timeout=5.0))
        )
        await asyncio.sleep(0.01)
        message = server.requests("slow/op")[0]
        token = message["params"]["_meta"]["progressToken"]
        for progress in range(4):
            await asyncio.sleep(0.08)
            await server.transport.deliver({
                "method": "notifications/progress",
                "params": {"progressToken": token, "progress": progress},
            })
        await server.transport.deliver({"id": message["id"], "result": {"done": True}})

        assert await task == {"done": True}

    @pytest.mark.asyncio
    async def test_progress_never_extends_past_total_timeout(self, client_config):
        server = FakeMCPServer(handlers={"slow/op": lambda params: None})
        client = make_client(server, client_config=client_config)
        await client.connect()

        async def keep_reporting_progress():
            await asyncio.sleep(0.01)
            token = server.requests("slow/op")[0]["params"]["_meta"]["progressToken"]
            while True:
                await asyncio.sleep(0.03)
                await server.transport.deliver({
                    "method": "notifications/progress",
                    "params": {"progressToken": token, "progress": 1},
                })

        reporter = asyncio.create_task(keep_reporting_progress())
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            with pytest.raises(RequestTimeoutError):
                await client.request("slow/op", {}, RequestOptions(timeout=0.1, max_total_timeout=0.3))
        finally:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)

        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_cancelled_caller_is_recorded_and_notified(self, client_config):
        history = RequestHistory()
        server = FakeMCPServer(handlers={"slow/op": lambda params: None})
        client = make_client(server, client_config=client_config, history=history)
        await client.connect()
        entries_before = len(history)

        task = asyncio.create_task(client.request("slow/op", {}))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(history) == entries_before + 1
        assert history.entries[-1].request["method"] == "slow/op"
        assert history.entries[-1].error
        request_id = server.requests("slow/op")[0]["id"]
        assert server.notifications("notifications/cancelled")[0]["params"]["requestId"] == request_id

    @pytest.mark.asyncio
    async def test_cancel_event_aborts_request(self, client_config):
        history = RequestHistory()
        server = FakeMCPServer(handlers={"slow/op": lambda params: None})
        client = make_client(server, client_config=client_config, history=history)
        await client.connect()
        cancel_event = asyncio.Event()

        asyncio.get_running_loop().call_later(0.02, cancel_event.set)
        with pytest.raises(RequestCancelledError):
            await client.request("slow/op", {}, RequestOptions(timeout=5.0, cancel_event=cancel_event))

        assert len(server.notifications("notifications/cancelled")) == 1
        assert history.entries[-1].error is not None

    @pytest.mark.asyncio
    async def test_request_without_connection_fails(self, client_config):
        client = make_client(FakeMCPServer(), client_config=client_config)

        with pytest.raises(TransportError):
            await client.ping()

    @pytest.mark.asyncio
    async def test_notify_records_history(self, client_config):
        history = RequestHistory()
        server = FakeMCPServer()
        client = make_client(server, client_config=client_config, history=history)
        await client.connect()

        await client.send_roots_list_changed()

        assert history.entries[-1].request == {"method": "notifications/roots/list_changed"}
        assert len(server.notifications("notifications/roots/list_changed")) == 1

    @pytest.mark.asyncio
    async def test_notify_failure_is_recorded_and_raised(self, client_config):
        history = RequestHistory()
        client = make_client(FakeMCPServer(), client_config=client_config, history=history)

        with pytest.raises(TransportError):
            await client.notify("notifications/roots/list_changed")

        assert history.entries[-1].error is not None


class TestCompletion:
    @pytest.mark.asyncio
    async def test_completion_returns_values(self, client_config):
        server = FakeMCPServer(handlers={
            "completion/complete": lambda params: {"completion": {"values": ["alpha", "beta"]}},
        })
        client = make_client(server, client_config=client_config)
        await client.connect()

        values = await client.completion({"type": "ref/prompt", "name": "greet"}, "name", "a")

        assert values == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_method_not_found_disables_completions(self, client_config):
        def not_supported(params):
            raise MCPError(METHOD_NOT_FOUND, "Method not found")

        server = FakeMCPServer(handlers={"completion/complete": not_supported})
        client = make_client(server, client_config=client_config)
        await client.connect()
        ref = {"type": "ref/prompt", "name": "greet"}

        assert await client.completion(ref, "name", "a") == []
        assert await client.completion(ref, "name", "b") == []

        assert client.completions_supported is False
        assert len(server.requests("completion/complete")) == 1

    @pytest.mark.asyncio
    async def test_other_completion_errors_propagate(self, client_config):
        def broken(params):
            raise MCPError(INTERNAL_ERROR, "boom")

        server = FakeMCPServer(handlers={"completion/complete": broken})
        client = make_client(server, client_config=client_config)
        await client.connect()

        with pytest.raises(MCPError):
            await client.completion({"type": "ref/prompt", "name": "greet"}, "name", "a")

        assert client.completions_supported is True


class TestServerRequests:
    """Requests and notifications initiated by the server."""

    @pytest.mark.asyncio
    async def test_roots_list_is_answered_from_provider(self, client_config):
        server = FakeMCPServer()
        roots = [{"uri": "file:///workspace", "name": "workspace"}]
        client = make_client(server, client_config=client_config, get_roots=lambda: roots)
        await client.connect()

        await server.transport.deliver({"id": "srv-1", "method": "roots/list"})
        await asyncio.sleep(0.01)

        assert server.replies()[-1] == {"jsonrpc": "2.0", "id": "srv-1", "result": {"roots": roots}}

    @pytest.mark.asyncio
    async def test_unknown_server_request_gets_method_not_found(self, client_config):
        server = FakeMCPServer()
        client = make_client(server, client_config=client_config)
        await client.connect()

        await server.transport.deliver({"id": 7, "method": "resources/unknown"})
        await asyncio.sleep(0.01)

        assert server.replies()[-1]["error"]["code"] == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_elicitation_request_is_answered_by_operator(self, client_config):
        server = FakeMCPServer()
        queue = ApprovalQueue()
        client = make_client(
            server, client_config=client_config, on_elicitation_request=QueueElicitationHandler(queue)
        )
        await client.connect()
        assert "elicitation" in server.requests("initialize")[0]["params"]["capabilities"]

        params = {"message": "Your name?", "requestedSchema": {"type": "object", "properties": {"name": {"type": "string"}}}}
        await server.transport.deliver({"id": 21, "method": "elicitation/create", "params": params})
        await asyncio.sleep(0.01)
        pending = queue.pending[0]
        assert pending.kind == "elicitation" and pending.input == params

        queue.approve(pending.id, {"name": "Ada"})
        await asyncio.sleep(0.01)
        assert server.replies()[-1] == {
            "jsonrpc": "2.0",
            "id": 21,
            "result": {"action": "accept", "content": {"name": "Ada"}},
        }

        await server.transport.deliver({"id": 22, "method": "elicitation/create", "params": params})
        await asyncio.sleep(0.01)
        queue.reject(queue.pending[0].id)
        await asyncio.sleep(0.01)
        assert server.replies()[-1] == {"jsonrpc": "2.0", "id": 22, "result": {"action": "decline"}}

    @pytest.mark.asyncio
    async def test_sampling_request_waits_for_approval(self, client_config):
        server = FakeMCPServer()
        queue = ApprovalQueue()
        client = make_client(
            server, client_config=client_config, on_sampling_request=QueueSamplingHandler(queue)
        )
        await client.connect()

        await server.transport.deliver({
            "id": 11,
            "method": "sampling/createMessage",
            "params": {"messages": [], "maxTokens": 10},
        })
        await asyncio.sleep(0.01)
        assert len(queue) == 1
        assert server.replies() == []

        answer = {"role": "assistant", "content": {"type": "text", "text": "hi"}, "model": "m"}
        queue.approve(queue.pending[0].id, answer)
        await asyncio.sleep(0.01)

        assert server.replies()[-1] == {"jsonrpc": "2.0", "id": 11, "result": answer}

    @pytest.mark.asyncio
    async def test_rejected_sampling_request_returns_error(self, client_config):
        server = FakeMCPServer()
        queue = ApprovalQueue()
        client = make_client(
            server, client_config=client_config, on_sampling_request=QueueSamplingHandler(queue)
        )
        await client.connect()

        await server.transport.deliver({"id": 12, "method": "sampling/createMessage", "params": {}})
        await asyncio.sleep(0.01)
        queue.reject(queue.pending[0].id)
        await asyncio.sleep(0.01)

        assert server.replies()[-1]["error"]["code"] == INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_stderr_and_list_changed_notifications(self, client_config):
        server = FakeMCPServer()
        stderr_lines = []
        notifications = []
        client = make_client(
            server,
            client_config=client_config,
            on_stderr=stderr_lines.append,
            on_notification=lambda message: notifications.append(message["method"]),
        )
        await client.connect()

        await server.transport.deliver({"method": "notifications/stderr", "params": {"content": "warming up"}})
        await server.transport.deliver({"method": "notifications/tools/list_changed"})

        assert stderr_lines == ["warming up"]
        assert notifications == ["notifications/stderr", "notifications/tools/list_changed"]
