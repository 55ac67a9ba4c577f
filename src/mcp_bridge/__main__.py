"""
mcp-bridge command line entry point.

    mcp-bridge SSE '{"url": "http://localhost:8002/sse"}'
    mcp-bridge WEBSOCKET '{"url": "ws://localhost:8002/ws"}'

stdout carries the local MCP traffic, so diagnostics only go to stderr and
the optional log file.
"""

import argparse
import logging
import signal
import sys
from collections.abc import Sequence

import anyio
from mcp.types import Implementation

from mcp_bridge import __version__
from mcp_bridge.bridge import Bridge
from mcp_bridge.errors import BridgeConnectionError, ConstructionError
from mcp_bridge.logs import setup_logging
from mcp_bridge.params import BridgeKind, ConnectionParameters
from mcp_bridge.settings import settings
from mcp_bridge.transport import TransportAdapter

logger = logging.getLogger("mcp_bridge")


class ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors as ConstructionError instead of exiting with status 2."""

    def error(self, message):
        raise ConstructionError(f"{message}\n{self.format_usage().strip()}")


def build_parser() -> argparse.ArgumentParser:
    kinds = "|".join(k.value for k in BridgeKind)
    parser = ArgumentParser(
        prog="mcp-bridge",
        usage=f"%(prog)s [{kinds}] [json-stringified-args]",
        description="Expose a remote SSE or WebSocket MCP server as a local stdio server.",
    )
    parser.add_argument("kind", nargs="?", help=f"bridge type: {kinds}")
    parser.add_argument("params", nargs="?", help="connection parameters as a JSON object")
    return parser


def parse_params(argv: Sequence[str] | None = None) -> ConnectionParameters:
    """Parse the command line; raises ConstructionError on invalid input."""
    parser = build_parser()
    # anything after the two positionals is ignored
    args, _ = parser.parse_known_args(argv)
    if args.kind is None:
        raise ConstructionError(parser.format_usage().strip())
    if args.params is None:
        raise ConstructionError(
            "Invalid arguments. Must provide bridge type and arguments as a JSON string."
        )
    return ConnectionParameters.from_cli(args.kind, args.params)


async def _watch_signals(bridge: Bridge) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.info("Received %s signal", signal.Signals(signum).name)
            await bridge.stop()
            return


async def serve(bridge: Bridge) -> int:
    """Run ``bridge`` until it stops and return the process exit code."""
    exit_code = 0
    async with anyio.create_task_group() as tg:
        if sys.platform != "win32":
            tg.start_soon(_watch_signals, bridge)
        try:
            await bridge.run()
        except BridgeConnectionError as exc:
            logger.error("Bridge terminated: %s", exc)
            exit_code = 1
        except Exception:
            logger.exception("Uncaught exception in bridge")
            await bridge.stop()
            exit_code = 1
        tg.cancel_scope.cancel()
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    try:
        params = parse_params(argv)
    except ConstructionError as exc:
        print(f"mcp-bridge: {exc}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, settings.log_file)
    logger.info("Bridging to %s %s", params.kind.value, params.url)

    adapter = TransportAdapter(params)
    bridge = Bridge(
        adapter,
        server_info=Implementation(
            name=settings.server_name,
            version=settings.server_version or __version__,
        ),
        connect_timeout=settings.connect_timeout,
        shutdown_timeout=settings.shutdown_timeout,
    )
    return anyio.run(serve, bridge)


if __name__ == "__main__":
    sys.exit(main())
