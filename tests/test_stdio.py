import io
import json
import os

import anyio
import pytest

from mcp_bridge.bridge import Bridge, BridgeState
from mcp_bridge.stdio import StdinLines, stdio_channel


class Pipe:
    """An os.pipe standing in for the stdin of the bridge process."""

    def __init__(self):
        self.read_fd, self.write_fd = os.pipe()
        self._open = {self.read_fd, self.write_fd}

    def write(self, data: bytes) -> None:
        os.write(self.write_fd, data)

    def close_writer(self) -> None:
        self._close(self.write_fd)

    def close(self) -> None:
        # writer first, so a reader thread still blocked on the pipe sees EOF
        self._close(self.write_fd)
        self._close(self.read_fd)

    def _close(self, fd: int) -> None:
        if fd in self._open:
            self._open.discard(fd)
            os.close(fd)


@pytest.fixture
def stdin_pipe():
    pipe = Pipe()
    yield pipe
    pipe.close()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_lines_are_split_across_reads(stdin_pipe):
    lines = StdinLines(stdin_pipe.read_fd)
    stdin_pipe.write(b'{"a":1}\n{"b":"\xc3')
    stdin_pipe.write(b'\xbc"}\ntail')
    stdin_pipe.close_writer()

    with anyio.fail_after(5):
        received = [line async for line in lines]

    assert received == ['{"a":1}\n', '{"b":"ü"}\n', "tail"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pending_read_is_abandoned_on_cancel(stdin_pipe):
    lines = StdinLines(stdin_pipe.read_fd)

    with anyio.fail_after(2):
        with anyio.move_on_after(0.1) as scope:
            await lines.__anext__()
    lines.close()

    assert scope.cancelled_caught
    assert [line async for line in lines] == []


def real_stdio_bridge(adapter, read_fd, stdout):
    return Bridge(
        adapter,
        local_channel=lambda: stdio_channel(read_fd, anyio.wrap_file(stdout)),
        connect_timeout=2,
        shutdown_timeout=0.3,
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stop_returns_while_stdin_stays_open(adapter, remote, stdin_pipe):
    stdout = io.StringIO()
    bridge = real_stdio_bridge(adapter, stdin_pipe.read_fd, stdout)

    with anyio.fail_after(3):
        async with anyio.create_task_group() as tg:
            await tg.start(bridge.run)
            stdin_pipe.write(b'{"jsonrpc": "2.0", "id": 1, "method": "ping"}\n')
            while not stdout.getvalue():
                await anyio.sleep(0.01)
            await bridge.stop()

    assert json.loads(stdout.getvalue().splitlines()[0]) == {"jsonrpc": "2.0", "id": 1, "result": {}}
    assert bridge.state is BridgeState.STOPPED
    assert not remote.connected


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stdin_eof_stops_bridge(adapter, remote, stdin_pipe):
    bridge = real_stdio_bridge(adapter, stdin_pipe.read_fd, io.StringIO())

    with anyio.fail_after(3):
        async with anyio.create_task_group() as tg:
            await tg.start(bridge.run)
            stdin_pipe.close_writer()

    assert bridge.state is BridgeState.STOPPED
    assert not remote.connected
