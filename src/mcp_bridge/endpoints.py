"""
The two JSON-RPC endpoints the bridge sits between.

RemoteEndpoint plays the client role towards the real server, over a
TransportAdapter. LocalEndpoint plays the server role on the local stdio
channel. Both move ``mcp.types`` messages as they are; requests keep the id
they arrived with so responses correlate end to end.
"""

import itertools
import logging
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

import anyio
from anyio.abc import TaskGroup
from mcp.shared.message import SessionMessage
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    ClientCapabilities,
    ErrorData,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)
from pydantic import ValidationError

from mcp_bridge.errors import BridgeConnectionError, BridgeStateError, ForwardingError, SendError
from mcp_bridge.stdio import stdio_channel
from mcp_bridge.transport import TransportAdapter

NotificationHandler = Callable[[JSONRPCNotification], Awaitable[None]]
RequestHandler = Callable[[JSONRPCRequest], Awaitable[dict[str, Any]]]
ChannelFactory = Callable[[], AbstractAsyncContextManager[tuple[Any, Any]]]


class RemoteEndpoint:
    """Client-role endpoint talking to the real server through the adapter."""

    def __init__(
        self,
        adapter: TransportAdapter,
        *,
        on_notification: NotificationHandler,
        logger: logging.Logger | None = None,
    ):
        self._adapter = adapter
        self._on_notification = on_notification
        self._logger = logger or logging.getLogger(__name__)
        self._response_streams: dict[str | int, Any] = {}
        self._request_ids = itertools.count(1)
        self._finished = False
        self.initialize_result: InitializeResult | None = None

    async def request(self, request: JSONRPCRequest) -> dict[str, Any]:
        """Send ``request`` as-is and wait for the response carrying its id."""
        if self._finished:
            raise BridgeConnectionError("Remote connection is closed")
        if request.id in self._response_streams:
            raise ForwardingError(
                ErrorData(
                    code=INVALID_REQUEST,
                    message=f"Request id {request.id!r} is already in flight",
                )
            )

        send_stream, receive_stream = anyio.create_memory_object_stream(1)
        self._response_streams[request.id] = send_stream
        try:
            await self._adapter.send(JSONRPCMessage(request))
            try:
                response = await receive_stream.receive()
            except anyio.EndOfStream:
                raise BridgeConnectionError(
                    f"Remote connection closed before answering {request.method}"
                ) from None
        finally:
            self._response_streams.pop(request.id, None)
            send_stream.close()
            receive_stream.close()

        if isinstance(response, JSONRPCError):
            raise ForwardingError(response.error)
        return response.result

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Issue a request of the bridge's own, with a bridge-scoped id."""
        request_id = f"bridge-{next(self._request_ids)}"
        return await self.request(
            JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
        )

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._adapter.send(
            JSONRPCMessage(JSONRPCNotification(jsonrpc="2.0", method=method, params=params))
        )

    async def initialize(
        self,
        client_info: Implementation,
        capabilities: ClientCapabilities | None = None,
    ) -> InitializeResult:
        """Run the MCP initialize handshake with the remote server."""
        params = InitializeRequestParams(
            protocolVersion=LATEST_PROTOCOL_VERSION,
            capabilities=capabilities or ClientCapabilities(),
            clientInfo=client_info,
        )
        try:
            result = await self.call(
                "initialize", params.model_dump(by_alias=True, mode="json", exclude_none=True)
            )
        except ForwardingError as exc:
            raise BridgeConnectionError(f"Remote server rejected initialize: {exc}") from exc

        try:
            self.initialize_result = InitializeResult.model_validate(result)
        except ValidationError as exc:
            raise BridgeConnectionError(
                f"Remote server sent an invalid initialize result: {exc}"
            ) from exc

        if self.initialize_result.protocolVersion not in SUPPORTED_PROTOCOL_VERSIONS:
            self._logger.warning(
                "Remote server negotiated unsupported protocol version %s",
                self.initialize_result.protocolVersion,
            )
        await self.notify("notifications/initialized")
        return self.initialize_result

    async def serve(self) -> None:
        """Dispatch inbound messages until the connection ends.

        Raises BridgeConnectionError on a transport fault. Requests still
        waiting for a response are released either way.
        """
        try:
            async for message in self._adapter:
                await self._dispatch(message.root)
        finally:
            self._finished = True
            for stream in list(self._response_streams.values()):
                stream.close()

    async def _dispatch(self, message: Any) -> None:
        if isinstance(message, (JSONRPCResponse, JSONRPCError)):
            stream = self._response_streams.get(message.id)
            if stream is None:
                self._logger.warning("Dropping response for unknown request id %r", message.id)
                return
            try:
                stream.send_nowait(message)
            except (anyio.WouldBlock, anyio.BrokenResourceError, anyio.ClosedResourceError):
                self._logger.debug("Dropping late response for request id %r", message.id)
        elif isinstance(message, JSONRPCNotification):
            await self._on_notification(message)
        elif isinstance(message, JSONRPCRequest):
            await self._answer_server_request(message)

    async def _answer_server_request(self, request: JSONRPCRequest) -> None:
        if request.method == "ping":
            reply = JSONRPCResponse(jsonrpc="2.0", id=request.id, result={})
        else:
            self._logger.warning("Remote server sent unsupported request %s", request.method)
            reply = JSONRPCError(
                jsonrpc="2.0",
                id=request.id,
                error=ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )
        try:
            await self._adapter.send(JSONRPCMessage(reply))
        except SendError as exc:
            self._logger.error("Could not answer remote %s request: %s", request.method, exc)


class LocalEndpoint:
    """Server-role endpoint presenting the bridge on the local channel."""

    def __init__(
        self,
        *,
        on_request: RequestHandler,
        on_notification: NotificationHandler,
        on_close: Callable[[Exception | None], None],
        channel_factory: ChannelFactory = stdio_channel,
        logger: logging.Logger | None = None,
    ):
        self._on_request = on_request
        self._on_notification = on_notification
        self._on_close = on_close
        self._channel_factory = channel_factory
        self._logger = logger or logging.getLogger(__name__)
        self._write_stream = None
        self._scope: anyio.CancelScope | None = None
        self._opened = False
        self._closed = anyio.Event()

    @property
    def is_open(self) -> bool:
        return self._write_stream is not None

    async def open(self, task_group: TaskGroup) -> None:
        """Open the local channel and serve it; request handlers run in ``task_group``."""
        if self._opened:
            raise BridgeStateError("Local channel was already opened")
        self._opened = True
        try:
            await task_group.start(self._run, task_group)
        except Exception as exc:
            self._closed.set()
            raise BridgeConnectionError(f"Could not open local channel: {exc}") from exc

    async def _run(self, task_group: TaskGroup, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        started = False
        error: Exception | None = None
        with anyio.CancelScope() as scope:
            self._scope = scope
            try:
                async with self._channel_factory() as (read_stream, write_stream):
                    self._write_stream = write_stream
                    started = True
                    task_status.started()
                    await self._serve(read_stream, task_group)
            except Exception as exc:
                if not started:
                    raise
                self._logger.error("Local channel failed: %s", exc)
                error = exc
            finally:
                self._write_stream = None
                self._closed.set()
        if not scope.cancel_called:
            self._on_close(error)

    async def _serve(self, read_stream, task_group: TaskGroup) -> None:
        async for item in read_stream:
            if isinstance(item, Exception):
                self._logger.warning("Discarding unreadable local message: %s", item)
                continue
            message = item.message.root
            if isinstance(message, JSONRPCRequest):
                task_group.start_soon(self._handle_request, message)
            elif isinstance(message, JSONRPCNotification):
                await self._on_notification(message)
            else:
                self._logger.debug("Ignoring local response for id %r", message.id)
        self._logger.info("Local channel reached end of input")

    async def _handle_request(self, request: JSONRPCRequest) -> None:
        try:
            result = await self._on_request(request)
        except ForwardingError as exc:
            reply = JSONRPCError(jsonrpc="2.0", id=request.id, error=exc.error)
        except Exception as exc:
            self._logger.error("Request %s (id=%r) failed: %s", request.method, request.id, exc)
            reply = JSONRPCError(
                jsonrpc="2.0",
                id=request.id,
                error=ErrorData(code=INTERNAL_ERROR, message=str(exc)),
            )
        else:
            reply = JSONRPCResponse(jsonrpc="2.0", id=request.id, result=result)

        try:
            await self.send(JSONRPCMessage(reply))
        except SendError as exc:
            self._logger.error("Could not answer %s (id=%r): %s", request.method, request.id, exc)

    async def send(self, message: JSONRPCMessage) -> None:
        if self._write_stream is None:
            raise SendError("Local channel is not open")
        try:
            await self._write_stream.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            raise SendError("Local channel is closed") from exc

    async def close(self) -> None:
        """Stop serving the local channel. Closing twice is a no-op."""
        if not self._opened or self._closed.is_set():
            return
        self._scope.cancel()
        await self._closed.wait()
