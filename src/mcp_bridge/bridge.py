"""
Bridge orchestrator.

Owns one RemoteEndpoint (client role, over the transport adapter) and one
LocalEndpoint (server role, over stdio). Local requests are forwarded to the
remote server with their original id; remote notifications are relayed back
to the local client. Resource subscriptions are tracked so shutdown can
release them.
"""

import logging
from enum import Enum
from typing import Any

import anyio
from anyio.abc import TaskGroup
from mcp.types import (
    METHOD_NOT_FOUND,
    ErrorData,
    Implementation,
    InitializeResult,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    PromptsCapability,
    ResourcesCapability,
    ServerCapabilities,
    ToolsCapability,
)

from mcp_bridge import __version__
from mcp_bridge.endpoints import ChannelFactory, LocalEndpoint, RemoteEndpoint, RequestHandler
from mcp_bridge.errors import (
    BridgeConnectionError,
    BridgeStateError,
    ForwardingError,
    NotificationForwardingError,
    TeardownError,
)
from mcp_bridge.subscriptions import SubscriptionRegistry
from mcp_bridge.translate import (
    RESOURCE_SUBSCRIBE_METHODS,
    remote_uri,
    translate_incoming,
    translate_outgoing,
)
from mcp_bridge.transport import TransportAdapter

BRIDGE_INFO = Implementation(name="mcp-bridge", version=__version__)

BRIDGE_CAPABILITIES = ServerCapabilities(
    tools=ToolsCapability(listChanged=True),
    resources=ResourcesCapability(subscribe=True, listChanged=True),
    prompts=PromptsCapability(listChanged=True),
)

FORWARDED_REQUESTS = (
    "tools/call",
    "tools/list",
    "resources/list",
    "resources/read",
    "resources/subscribe",
    "resources/unsubscribe",
    "resources/templates/list",
    "prompts/list",
    "prompts/get",
    "completion/complete",
    "resource/read",
    "resource/subscribe",
)

RESOURCE_UNSUBSCRIBE_METHODS = frozenset({"resources/unsubscribe"})

RELAYED_NOTIFICATIONS = (
    "notifications/resources/updated",
    "notifications/resources/list_changed",
    "notifications/tools/list_changed",
    "notifications/prompts/list_changed",
    "resource/updated",
)


class BridgeState(Enum):
    CONSTRUCTED = "constructed"
    STARTED = "started"
    STOPPED = "stopped"


class Bridge:
    """Relay between a local stdio MCP client and a remote MCP server.

    ``run()`` is the usual entry point: it starts both sides, serves until
    ``stop()`` is called, the local channel ends or the remote connection
    fails, then tears everything down in the same task. A remote failure is
    re-raised from ``run()`` as BridgeConnectionError once teardown is done.
    """

    def __init__(
        self,
        adapter: TransportAdapter,
        *,
        server_info: Implementation | None = None,
        capabilities: ServerCapabilities | None = None,
        local_channel: ChannelFactory | None = None,
        connect_timeout: float = 30.0,
        shutdown_timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ):
        self._adapter = adapter
        self._server_info = server_info or BRIDGE_INFO
        self._capabilities = capabilities or BRIDGE_CAPABILITIES
        self._connect_timeout = connect_timeout
        self._shutdown_timeout = shutdown_timeout
        self._logger = logger or logging.getLogger(__name__)

        self.registry = SubscriptionRegistry()
        self.state = BridgeState.CONSTRUCTED
        self._start_called = False
        self._fault: BridgeConnectionError | None = None
        self._stop_requested = anyio.Event()
        self._done = anyio.Event()

        self._remote = RemoteEndpoint(
            adapter, on_notification=self._handle_remote_notification, logger=self._logger
        )
        local_kwargs = {"channel_factory": local_channel} if local_channel else {}
        self._local = LocalEndpoint(
            on_request=self._handle_local_request,
            on_notification=self._handle_local_notification,
            on_close=self._local_closed,
            logger=self._logger,
            **local_kwargs,
        )

        self._request_handlers: dict[str, RequestHandler] = {
            "initialize": self._initialize_local,
            "ping": self._ping,
        }
        for method in FORWARDED_REQUESTS:
            if method in RESOURCE_SUBSCRIBE_METHODS:
                self._request_handlers[method] = self._forward_subscribe
            elif method in RESOURCE_UNSUBSCRIBE_METHODS:
                self._request_handlers[method] = self._forward_unsubscribe
            else:
                self._request_handlers[method] = self._forward
        self._notification_handlers = {
            method: self._relay_notification for method in RELAYED_NOTIFICATIONS
        }

    @property
    def remote_info(self) -> InitializeResult | None:
        return self._remote.initialize_result

    # === Lifecycle ===

    async def start(self, task_group: TaskGroup) -> InitializeResult:
        """Connect the remote side, then open the local side.

        The local channel is never opened unless the remote handshake
        succeeded. Raises BridgeConnectionError on either failure.
        """
        if self._start_called:
            raise BridgeStateError(f"Bridge cannot be started again (state: {self.state.value})")
        self._start_called = True

        params = self._adapter.params
        self._logger.info("Connecting to %s server at %s", params.kind.value, params.url)
        await self._adapter.start(task_group)
        task_group.start_soon(self._watch_remote)
        try:
            with anyio.fail_after(self._connect_timeout):
                result = await self._remote.initialize(self._server_info)
        except TimeoutError:
            raise BridgeConnectionError(
                f"Remote server did not finish initialize within {self._connect_timeout}s"
            ) from None
        self._logger.info(
            "Connected to %s %s", result.serverInfo.name, result.serverInfo.version
        )

        await self._local.open(task_group)
        self.state = BridgeState.STARTED
        self._logger.info("Local stdio channel open")
        self._logger.info(
            "Remote server capabilities: %s",
            result.capabilities.model_dump(by_alias=True, exclude_none=True),
        )
        return result

    async def run(self, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        if self._start_called or self.state is not BridgeState.CONSTRUCTED:
            raise BridgeStateError(f"Bridge cannot be started again (state: {self.state.value})")
        try:
            async with anyio.create_task_group() as tg:
                try:
                    await self.start(tg)
                except BridgeConnectionError as exc:
                    self._logger.error("Failed to start bridge: %s", exc)
                    self._request_stop(exc)
                else:
                    task_status.started()
                    await self._stop_requested.wait()
                finally:
                    with anyio.CancelScope(shield=True):
                        await self._shutdown()
                    tg.cancel_scope.cancel()
        finally:
            self.state = BridgeState.STOPPED
            self._done.set()
        if self._fault is not None:
            raise self._fault

    async def stop(self) -> None:
        """Stop the bridge and wait for teardown. Stopping twice is a no-op."""
        if self.state is BridgeState.STOPPED:
            return
        if not self._start_called:
            self.state = BridgeState.STOPPED
            self._done.set()
            return
        self._stop_requested.set()
        # teardown runs up to three bounded phases
        with anyio.move_on_after(self._shutdown_timeout * 3):
            await self._done.wait()

    def _request_stop(self, fault: BridgeConnectionError | None = None) -> None:
        if fault is not None and self._fault is None:
            self._fault = fault
        self._stop_requested.set()

    async def _watch_remote(self) -> None:
        try:
            await self._remote.serve()
        except BridgeConnectionError as exc:
            fault = exc
        else:
            fault = BridgeConnectionError("Remote connection closed")
        if self._stop_requested.is_set():
            return
        self._logger.error("Remote connection lost: %s", fault)
        self._request_stop(fault)

    def _local_closed(self, error: Exception | None) -> None:
        if error is None:
            self._logger.info("Local client disconnected; stopping bridge")
        self._request_stop()

    async def _shutdown(self) -> None:
        """Release subscriptions, then close the remote and local sides.

        Each step is bounded by the shutdown timeout and a failing step never
        prevents the next one.
        """
        self._logger.info("Stopping bridge")
        with anyio.move_on_after(self._shutdown_timeout) as scope:
            for uri in self.registry.all_entries():
                try:
                    await self._remote.call("resources/unsubscribe", {"uri": remote_uri(uri)})
                    self._logger.debug("Unsubscribed from resource: %s", uri)
                except Exception as exc:
                    error = TeardownError(f"Failed to unsubscribe from {uri}: {exc}")
                    self._logger.error("%s", error)
        if scope.cancelled_caught:
            self._logger.warning("Timed out releasing subscriptions")
        self.registry.clear()

        for name, close in (("remote", self._adapter.close), ("local", self._local.close)):
            with anyio.move_on_after(self._shutdown_timeout) as scope:
                try:
                    await close()
                except Exception as exc:
                    self._logger.error("Error closing %s side: %s", name, exc)
            if scope.cancelled_caught:
                self._logger.warning("Timed out closing %s side", name)
        self._logger.info("Bridge stopped")

    # === Request path (local -> remote) ===

    async def _handle_local_request(self, request: JSONRPCRequest) -> dict[str, Any]:
        handler = self._request_handlers.get(request.method)
        if handler is None:
            self._logger.warning("Unsupported local request %s", request.method)
            raise ForwardingError(
                ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}")
            )
        return await handler(request)

    async def _forward(self, request: JSONRPCRequest) -> dict[str, Any]:
        outgoing = translate_outgoing(JSONRPCMessage(request)).root
        self._logger.debug("Forwarding %s (id=%r)", request.method, request.id)
        try:
            return await self._remote.request(outgoing)
        except ForwardingError as exc:
            self._logger.error("%s request failed: %s", request.method, exc)
            raise

    async def _forward_subscribe(self, request: JSONRPCRequest) -> dict[str, Any]:
        result = await self._forward(request)
        uri = (request.params or {}).get("uri")
        if isinstance(uri, str):
            self.registry.record(uri)
            self._logger.debug("Resource subscribed: %s", uri)
        return result

    async def _forward_unsubscribe(self, request: JSONRPCRequest) -> dict[str, Any]:
        result = await self._forward(request)
        uri = (request.params or {}).get("uri")
        if isinstance(uri, str):
            self.registry.forget(uri)
            self._logger.debug("Resource unsubscribed: %s", uri)
        return result

    async def _initialize_local(self, request: JSONRPCRequest) -> dict[str, Any]:
        remote = self._remote.initialize_result
        client = (request.params or {}).get("clientInfo") or {}
        self._logger.info("Local client %s connected", client.get("name", "<unknown>"))
        result = InitializeResult(
            protocolVersion=remote.protocolVersion,
            capabilities=self._capabilities,
            serverInfo=self._server_info,
            instructions=remote.instructions,
        )
        return result.model_dump(by_alias=True, mode="json", exclude_none=True)

    async def _ping(self, request: JSONRPCRequest) -> dict[str, Any]:
        return {}

    async def _handle_local_notification(self, notification: JSONRPCNotification) -> None:
        self._logger.debug("Local notification %s", notification.method)

    # === Notification path (remote -> local) ===

    async def _handle_remote_notification(self, notification: JSONRPCNotification) -> None:
        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            self._logger.debug("Dropping remote notification %s", notification.method)
            return
        await handler(notification)

    async def _relay_notification(self, notification: JSONRPCNotification) -> None:
        incoming = translate_incoming(JSONRPCMessage(notification))
        try:
            await self._local.send(incoming)
        except Exception as exc:
            error = NotificationForwardingError(
                f"Failed to relay {notification.method} notification: {exc}"
            )
            self._logger.error("%s", error)
