"""Command-line interface for termlink.

Runs the signaling server, shares this machine's shell as a host, or
attaches to a host's shell as a viewer.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="termlink",
        description="Remote terminal sharing over a direct peer connection",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/termlink.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    server_parser = subparsers.add_parser("server", help="Run the signaling and relay server")
    server_parser.add_argument("--host", type=str, default=None, help="Bind address")
    server_parser.add_argument("--port", type=int, default=None, help="Listen port")

    host_parser = subparsers.add_parser("host", help="Share this machine's shell")
    host_parser.add_argument("--server", type=str, default=None, help="Relay server URL")

    viewer_parser = subparsers.add_parser("viewer", help="Attach to a shared shell")
    viewer_parser.add_argument("--server", type=str, default=None, help="Relay server URL")
    viewer_parser.add_argument(
        "--code", type=str, default=None,
        help="Pairing code shown by the host (not needed when logged in)",
    )

    return parser.parse_args(argv)


async def _run_host(settings) -> None:
    from termlink.client.host import HostSession

    session = HostSession(settings, on_status=lambda text: print(f"[termlink] {text}", flush=True))
    try:
        await session.run()
    finally:
        await session.close()


async def _run_viewer(settings, code: str | None) -> None:
    from termlink.client.console import Console
    from termlink.client.viewer import ViewerSession

    detached = asyncio.Event()
    session: ViewerSession | None = None

    def on_input(data: str) -> None:
        if session is not None:
            session.send_input(data)

    def on_resize(cols: int, rows: int) -> None:
        if session is not None:
            session.resize(cols, rows)

    console = Console(on_input=on_input, on_resize=on_resize, on_detach=detached.set)
    session = ViewerSession(
        settings,
        code=code,
        output=console.write,
        size=console.size(),
        on_status=console.status,
    )

    console.start()
    relay_task = asyncio.create_task(session.run())
    detach_task = asyncio.create_task(detached.wait())
    try:
        await asyncio.wait({relay_task, detach_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        console.stop()
        await session.close()
        for task in (relay_task, detach_task):
            task.cancel()
    print("\nDetached.")


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the termlink CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from termlink.config.settings import load_settings
    from termlink.utils.logging import setup_logging

    settings = load_settings(args.config)

    setup_logging(settings.logging, verbose=args.verbose)

    if getattr(args, "server", None):
        settings.client.server_url = args.server

    try:
        if args.command == "server":
            if args.host:
                settings.server.host = args.host
            if args.port:
                settings.server.port = args.port
            logger.info("Starting signaling server on %s:%d", settings.server.host, settings.server.port)
            from termlink.server.app import main as run_server

            run_server(settings)

        elif args.command == "host":
            logger.info("Starting host, relay %s", settings.client.server_url)
            asyncio.run(_run_host(settings))

        elif args.command == "viewer":
            logger.info("Starting viewer, relay %s", settings.client.server_url)
            asyncio.run(_run_viewer(settings, args.code))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
