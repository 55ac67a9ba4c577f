"""
Transport adapter for the remote side of the bridge.

Wraps the MCP SDK client transports (SSE and WebSocket) behind one surface:
``start`` / ``send`` / ``close`` plus async iteration over inbound messages.
The SDK context is entered and exited inside a task of its own, so the
adapter can be closed from any task.
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

import anyio
from anyio.abc import TaskGroup
from mcp.client.sse import sse_client
from mcp.client.websocket import websocket_client
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage

from mcp_bridge.errors import BridgeConnectionError, BridgeStateError, SendError, TeardownError
from mcp_bridge.params import BridgeKind, ConnectionParameters

ClientFactory = Callable[[ConnectionParameters], AbstractAsyncContextManager[tuple[Any, Any]]]


def _open_sse(params: ConnectionParameters) -> AbstractAsyncContextManager[tuple[Any, Any]]:
    return sse_client(
        params.url,
        headers=params.headers,
        timeout=params.timeout,
        sse_read_timeout=params.sse_read_timeout,
    )


def _open_websocket(params: ConnectionParameters) -> AbstractAsyncContextManager[tuple[Any, Any]]:
    return websocket_client(params.url)


CLIENT_FACTORIES: dict[BridgeKind, ClientFactory] = {
    BridgeKind.SSE: _open_sse,
    BridgeKind.WEBSOCKET: _open_websocket,
}


class TransportAdapter:
    """Uniform start/send/close surface over one SDK client transport."""

    def __init__(
        self,
        params: ConnectionParameters,
        *,
        client_factory: ClientFactory | None = None,
        logger: logging.Logger | None = None,
    ):
        self.params = params
        self._client_factory = client_factory or CLIENT_FACTORIES[params.kind]
        self._logger = logger or logging.getLogger(__name__)
        self._read_stream = None
        self._write_stream = None
        self._started = False
        self._faulted = False
        self._close_requested = anyio.Event()
        self._closed = anyio.Event()
        self._close_error: Exception | None = None

    @property
    def is_open(self) -> bool:
        return (
            self._write_stream is not None
            and not self._faulted
            and not self._close_requested.is_set()
        )

    async def start(self, task_group: TaskGroup) -> None:
        """Open the connection; the SDK client runs as a task in ``task_group``."""
        if self._started:
            raise BridgeStateError("Transport adapter was already started")
        self._started = True
        self._logger.debug("Starting %s transport to %s", self.params.kind.value, self.params.url)
        try:
            await task_group.start(self._run_client)
        except Exception as exc:
            self._closed.set()
            self._logger.error(
                "Failed to start %s transport to %s: %s",
                self.params.kind.value,
                self.params.url,
                exc,
            )
            raise BridgeConnectionError(
                f"Could not connect to {self.params.url}: {exc}"
            ) from exc
        self._logger.debug("%s transport started", self.params.kind.value)

    async def _run_client(self, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        connected = False
        try:
            async with self._client_factory(self.params) as (read_stream, write_stream):
                self._read_stream, self._write_stream = read_stream, write_stream
                connected = True
                task_status.started()
                await self._close_requested.wait()
        except Exception as exc:
            if not connected:
                raise
            self._close_error = exc
        finally:
            self._write_stream = None
            self._closed.set()

    async def send(self, message: JSONRPCMessage) -> None:
        if not self.is_open:
            raise SendError(f"{self.params.kind.value} connection is not open")
        self._logger.debug("Sending message: %s", message.root)
        try:
            await self._write_stream.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            raise SendError(f"{self.params.kind.value} connection is closed") from exc

    async def close(self) -> None:
        """Close the connection. Closing twice is a no-op."""
        if not self._started or self._close_requested.is_set():
            return
        self._logger.debug("Closing %s transport", self.params.kind.value)
        self._close_requested.set()
        await self._closed.wait()
        if self._close_error is not None:
            self._logger.error("Failed to close transport: %s", self._close_error)
            raise TeardownError(
                f"Error while closing {self.params.kind.value} transport: {self._close_error}"
            ) from self._close_error
        self._logger.debug("%s transport closed", self.params.kind.value)

    def __aiter__(self) -> AsyncIterator[JSONRPCMessage]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[JSONRPCMessage]:
        """Yield inbound messages in arrival order until the connection ends.

        Raises BridgeConnectionError when the SDK reports a transport fault;
        the adapter is unusable afterwards.
        """
        if self._read_stream is None:
            raise BridgeStateError("Transport adapter is not started")
        try:
            async for item in self._read_stream:
                if isinstance(item, Exception):
                    self._faulted = True
                    self._logger.error("Transport error: %s", item)
                    raise BridgeConnectionError(
                        f"{self.params.kind.value} connection failed: {item}"
                    ) from item
                self._logger.debug("Received message: %s", item.message.root)
                yield item.message
        except anyio.ClosedResourceError:
            pass
        self._logger.debug("%s transport stream ended", self.params.kind.value)
