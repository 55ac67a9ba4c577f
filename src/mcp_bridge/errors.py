"""
mcp-bridge exceptions.

Request-path errors reach the local requester; notification and teardown
errors are logged and absorbed; connection errors after startup end the
process.
"""

from mcp.types import ErrorData


class BridgeError(Exception):
    """Base exception for all bridge errors."""
    pass


class ConstructionError(BridgeError, ValueError):
    """Raised when connection parameters are missing or invalid."""
    pass


class BridgeConnectionError(BridgeError, ConnectionError):
    """Raised when a transport cannot establish or keep its connection."""
    pass


class SendError(BridgeConnectionError):
    """Raised when sending on a connection that is not open."""
    pass


class BridgeStateError(BridgeError, RuntimeError):
    """Raised on lifecycle misuse, such as starting a bridge twice."""
    pass


class ForwardingError(BridgeError):
    """A forwarded request failed; ``error`` is relayed to the requester as-is."""

    def __init__(self, error: ErrorData):
        self.error = error
        super().__init__(f"[{error.code}] {error.message}")


class NotificationForwardingError(BridgeError):
    """Raised when a remote notification could not be re-emitted locally."""
    pass


class TeardownError(BridgeError):
    """Raised when one unsubscribe or close step fails during shutdown."""
    pass
