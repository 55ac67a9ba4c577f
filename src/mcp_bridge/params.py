import json
from enum import Enum
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from mcp_bridge.errors import ConstructionError


class BridgeKind(str, Enum):
    SSE = "SSE"
    WEBSOCKET = "WEBSOCKET"


_URL_SCHEMES = {
    BridgeKind.SSE: ("http", "https"),
    BridgeKind.WEBSOCKET: ("ws", "wss"),
}


class ConnectionParameters(BaseModel):
    """Which transport backs the remote side, and where it connects."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    kind: BridgeKind
    url: str
    # SSE only
    headers: dict[str, str] | None = None
    timeout: float = 5.0
    sse_read_timeout: float = 300.0

    @model_validator(mode="after")
    def _check_url(self) -> "ConnectionParameters":
        schemes = _URL_SCHEMES[self.kind]
        parts = urlsplit(self.url)
        if parts.scheme not in schemes:
            raise ValueError(
                f"{self.kind.value} bridge needs a {' or '.join(schemes)} url, "
                f"got {self.url!r}"
            )
        if not parts.hostname:
            raise ValueError(f"url {self.url!r} has no host")
        if self.kind is BridgeKind.WEBSOCKET and self.headers:
            raise ValueError("headers are only supported by the SSE bridge")
        return self

    @classmethod
    def from_cli(cls, kind: str, raw_params: str) -> "ConnectionParameters":
        """Build parameters from the bridge kind token and its JSON argument."""
        try:
            bridge_kind = BridgeKind[kind]
        except KeyError:
            names = " or ".join(k.value for k in BridgeKind)
            raise ConstructionError(
                f"Invalid bridge type {kind!r}. Must be {names}"
            ) from None

        try:
            data = json.loads(raw_params)
        except json.JSONDecodeError as exc:
            raise ConstructionError(f"Bridge arguments are not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConstructionError("Bridge arguments must be a JSON object")
        if data.get("url") is None:
            raise ConstructionError(
                f"Invalid arguments. Must provide a URL for the {bridge_kind.value} bridge."
            )

        try:
            return cls.model_validate({**data, "kind": bridge_kind})
        except ValidationError as exc:
            messages = "; ".join(err["msg"] for err in exc.errors())
            raise ConstructionError(f"Invalid bridge arguments: {messages}") from exc
