"""
Shared fixtures.

FakeRemoteServer and FakeLocalClient replace the SDK transports with anyio
memory streams carrying SessionMessage objects, the same shape the SDK's
sse_client, websocket_client and stdio_server produce.
"""

from contextlib import asynccontextmanager
from typing import Any

import anyio
import pytest
from mcp.shared.message import SessionMessage
from mcp.types import (
    LATEST_PROTOCOL_VERSION,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)

from mcp_bridge.bridge import Bridge
from mcp_bridge.params import BridgeKind, ConnectionParameters
from mcp_bridge.transport import TransportAdapter

INITIALIZE_RESULT = {
    "protocolVersion": LATEST_PROTOCOL_VERSION,
    "capabilities": {
        "tools": {"listChanged": True},
        "resources": {"subscribe": True, "listChanged": True},
    },
    "serverInfo": {"name": "fake-remote", "version": "1.0.0"},
    "instructions": "Use the tools.",
}


def make_request(method: str, params: dict[str, Any] | None = None, request_id=1) -> JSONRPCMessage:
    return JSONRPCMessage(
        JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
    )


def make_notification(method: str, params: dict[str, Any] | None = None) -> JSONRPCMessage:
    return JSONRPCMessage(JSONRPCNotification(jsonrpc="2.0", method=method, params=params))


class FakeRemoteServer:
    """In-memory MCP server on the far side of the transport adapter."""

    def __init__(self):
        self.requests: list[JSONRPCRequest] = []
        self.notifications: list[JSONRPCNotification] = []
        self.responses: list[JSONRPCResponse | JSONRPCError] = []
        self.results: dict[str, dict[str, Any]] = {}
        self.errors: dict[str, ErrorData] = {}
        self.gates: dict[str, anyio.Event] = {}
        self.connect_error: Exception | None = None
        self.connected = False
        self._to_bridge = None

    def requests_for(self, method: str) -> list[JSONRPCRequest]:
        return [r for r in self.requests if r.method == method]

    @asynccontextmanager
    async def client(self, params: ConnectionParameters):
        if self.connect_error is not None:
            raise self.connect_error
        to_bridge_send, to_bridge_receive = anyio.create_memory_object_stream(100)
        from_bridge_send, from_bridge_receive = anyio.create_memory_object_stream(100)
        self._to_bridge = to_bridge_send
        self.connected = True
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._serve, from_bridge_receive, tg)
            try:
                yield to_bridge_receive, from_bridge_send
            finally:
                self.connected = False
                to_bridge_send.close()
                from_bridge_receive.close()
                tg.cancel_scope.cancel()

    async def _serve(self, stream, tg) -> None:
        async for session_message in stream:
            message = session_message.message.root
            if isinstance(message, JSONRPCRequest):
                self.requests.append(message)
                tg.start_soon(self._answer, message)
            elif isinstance(message, JSONRPCNotification):
                self.notifications.append(message)
            else:
                self.responses.append(message)

    async def _answer(self, request: JSONRPCRequest) -> None:
        gate = self.gates.get(request.method)
        if gate is not None:
            await gate.wait()
        if request.method in self.errors:
            reply = JSONRPCError(jsonrpc="2.0", id=request.id, error=self.errors[request.method])
        elif request.method == "initialize":
            reply = JSONRPCResponse(jsonrpc="2.0", id=request.id, result=INITIALIZE_RESULT)
        else:
            result = self.results.get(request.method, {"echo": request.params or {}})
            reply = JSONRPCResponse(jsonrpc="2.0", id=request.id, result=result)
        await self._to_bridge.send(SessionMessage(JSONRPCMessage(reply)))

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._to_bridge.send(SessionMessage(make_notification(method, params)))

    async def send_request(self, method: str, params: dict[str, Any] | None = None, request_id=1) -> None:
        """Send a server-to-client request towards the bridge."""
        await self._to_bridge.send(SessionMessage(make_request(method, params, request_id)))

    async def fail(self, error: Exception) -> None:
        """Push a transport fault the way the SDK reports one."""
        await self._to_bridge.send(error)

    def disconnect(self) -> None:
        self._to_bridge.close()


class FakeLocalClient:
    """Stands in for the stdio channel a local MCP client talks over."""

    def __init__(self):
        self.open_error: Exception | None = None
        self.opened = False
        self.closed = False
        self.ready = anyio.Event()
        self.notifications: list[JSONRPCNotification] = []
        self._responses: dict[Any, Any] = {}
        self._to_bridge = None
        self._from_bridge = None

    @asynccontextmanager
    async def channel(self):
        if self.open_error is not None:
            raise self.open_error
        to_bridge_send, to_bridge_receive = anyio.create_memory_object_stream(100)
        from_bridge_send, from_bridge_receive = anyio.create_memory_object_stream(100)
        self._to_bridge = to_bridge_send
        self._from_bridge = from_bridge_receive
        self.opened = True
        self.ready.set()
        try:
            yield to_bridge_receive, from_bridge_send
        finally:
            self.closed = True
            from_bridge_send.close()

    async def send(self, message: JSONRPCMessage) -> None:
        await self._to_bridge.send(SessionMessage(message))

    async def _receive(self) -> None:
        message = (await self._from_bridge.receive()).message.root
        if isinstance(message, JSONRPCNotification):
            self.notifications.append(message)
        else:
            self._responses[message.id] = message

    async def response(self, request_id):
        while request_id not in self._responses:
            await self._receive()
        return self._responses.pop(request_id)

    async def request(self, method: str, params: dict[str, Any] | None = None, request_id=1):
        await self.send(make_request(method, params, request_id))
        return await self.response(request_id)

    async def notification(self) -> JSONRPCNotification:
        while not self.notifications:
            await self._receive()
        return self.notifications.pop(0)

    def close_input(self) -> None:
        self._to_bridge.close()


@asynccontextmanager
async def running(bridge: Bridge):
    """Run ``bridge`` for the duration of the block, then stop it."""
    async with anyio.create_task_group() as tg:
        await tg.start(bridge.run)
        try:
            yield bridge
        finally:
            await bridge.stop()


@pytest.fixture
def remote():
    return FakeRemoteServer()


@pytest.fixture
def local():
    return FakeLocalClient()


@pytest.fixture
def sse_params():
    return ConnectionParameters(kind=BridgeKind.SSE, url="http://h/ep")


@pytest.fixture
def adapter(remote, sse_params):
    return TransportAdapter(sse_params, client_factory=remote.client)


@pytest.fixture
def bridge(adapter, local):
    return Bridge(adapter, local_channel=local.channel, connect_timeout=2, shutdown_timeout=2)
