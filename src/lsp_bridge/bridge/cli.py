# src/lsp_bridge/bridge/cli.py

"""Command line entry point: `lsp-bridge [--host H] [--port P] [--log-level L]`."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from aiohttp import web

from lsp_bridge.bridge.server import create_app
from lsp_bridge.bridge.session import SessionBridge
from lsp_bridge.config.loader import get_setting

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
LOG_FORMAT = "%(levelname)s: [%(name)s] %(message)s"


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from None
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range (1-65535): {port}")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lsp-bridge",
        description="HTTP bridge exposing one language analyzer session at a time.",
    )
    parser.add_argument(
        "--host",
        default=get_setting("bridge", "host", DEFAULT_HOST),
        help="Interface to listen on (default: %(default)s)",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=_port,
        default=get_setting("bridge", "port", DEFAULT_PORT),
        help="HTTP port (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=str(get_setting("logging", "level", "INFO")).upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Logging level (default: %(default)s)",
    )
    return parser


async def serve(host: str, port: int) -> None:
    """Runs the bridge until SIGINT or SIGTERM is received."""
    app = create_app(SessionBridge())
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"LSP Bridge Server listening on {host}:{port}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            pass

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await runner.cleanup()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, force=True)
    try:
        asyncio.run(serve(args.host, args.port))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    except OSError as e:
        logger.error(f"Could not start server on {args.host}:{args.port}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
