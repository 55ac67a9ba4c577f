"""
Local stdio channel.

The SDK's ``stdio_server`` reads stdin through ``anyio.wrap_file``, whose
blocking ``readline`` runs on a worker thread that cannot be abandoned; an
idle but open stdin then holds shutdown until the next line arrives.
StdinLines feeds ``stdio_server`` from a daemon thread instead, so a pending
read is dropped on cancellation and never delays interpreter exit.
"""

import codecs
import logging
import os
import queue
import sys
import threading
from contextlib import asynccontextmanager

import anyio
from mcp.server.stdio import stdio_server

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


class StdinLines:
    """Async iterator over the UTF-8 lines of a file descriptor."""

    def __init__(self, fd: int):
        self._fd = fd
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._thread = threading.Thread(target=self._pump, name="mcp-bridge-stdin", daemon=True)
        self._started = False
        self._exhausted = False

    def __aiter__(self) -> "StdinLines":
        return self

    async def __anext__(self) -> str:
        if self._exhausted:
            raise StopAsyncIteration
        if not self._started:
            self._started = True
            self._thread.start()
        line = await anyio.to_thread.run_sync(self._lines.get, abandon_on_cancel=True)
        if line is None:
            self._exhausted = True
            raise StopAsyncIteration
        return line

    def close(self) -> None:
        """End the iteration and release a worker still waiting for a line."""
        self._exhausted = True
        self._lines.put(None)

    def _pump(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        try:
            while chunk := os.read(self._fd, READ_CHUNK_SIZE):
                pending += decoder.decode(chunk)
                *lines, pending = pending.split("\n")
                for line in lines:
                    self._lines.put(line + "\n")
            pending += decoder.decode(b"", final=True)
            if pending:
                self._lines.put(pending)
        except OSError as exc:
            logger.error("Reading stdin failed: %s", exc)
        finally:
            self._lines.put(None)


@asynccontextmanager
async def stdio_channel(stdin_fd: int | None = None, stdout: anyio.AsyncFile[str] | None = None):
    """``stdio_server`` streams over the process stdin, or over ``stdin_fd``."""
    lines = StdinLines(sys.stdin.fileno() if stdin_fd is None else stdin_fd)
    try:
        async with stdio_server(stdin=lines, stdout=stdout) as streams:
            yield streams
    finally:
        lines.close()
