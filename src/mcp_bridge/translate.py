"""
Field-level rewrites applied to messages as they cross the bridge.

Outgoing resource reads and subscribes get their ``uri`` percent-encoded;
incoming resource-updated notifications get a text ``content`` base64-encoded.
Every other message passes through as the same object. A rewrite builds a new
message from shallow copies and never touches the input.
"""

import base64
from collections.abc import Callable
from urllib.parse import quote

from mcp.types import JSONRPCMessage, JSONRPCNotification, JSONRPCRequest

# Current protocol names plus the older singular spellings still sent by some
# servers and clients.
RESOURCE_READ_METHODS = frozenset({"resources/read", "resource/read"})
RESOURCE_SUBSCRIBE_METHODS = frozenset({"resources/subscribe", "resource/subscribe"})
RESOURCE_UPDATED_METHODS = frozenset({"notifications/resources/updated", "resource/updated"})

# Same reserved set as ECMAScript encodeURI; "%" is not in it.
URI_SAFE_CHARACTERS = ";,/?:@&=+$-_.!~*'()#"


def encode_uri(uri: str) -> str:
    return quote(uri, safe=URI_SAFE_CHARACTERS)


def remote_uri(uri: str) -> str:
    """The form of ``uri`` the remote server received on read or subscribe."""
    try:
        return encode_uri(uri)
    except UnicodeEncodeError:
        return uri


def encode_content(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


def _rewrite_param(
    message: JSONRPCMessage, key: str, transform: Callable[[str], str]
) -> JSONRPCMessage:
    root = message.root
    params = root.params
    if not params or not isinstance(params.get(key), str):
        return message
    try:
        value = transform(params[key])
    except UnicodeEncodeError:
        # lone surrogates cannot be encoded; relay untouched
        return message
    return JSONRPCMessage(root.model_copy(update={"params": {**params, key: value}}))


def translate_outgoing(message: JSONRPCMessage) -> JSONRPCMessage:
    """Rewrite a message headed for the remote server."""
    root = message.root
    if isinstance(root, JSONRPCRequest) and (
        root.method in RESOURCE_READ_METHODS or root.method in RESOURCE_SUBSCRIBE_METHODS
    ):
        return _rewrite_param(message, "uri", encode_uri)
    return message


def translate_incoming(message: JSONRPCMessage) -> JSONRPCMessage:
    """Rewrite a message arriving from the remote server."""
    root = message.root
    if isinstance(root, JSONRPCNotification) and root.method in RESOURCE_UPDATED_METHODS:
        return _rewrite_param(message, "content", encode_content)
    return message
