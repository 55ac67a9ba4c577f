"""Bridge a local stdio MCP client to a remote MCP server over SSE or WebSocket."""

__version__ = "0.1.0"
