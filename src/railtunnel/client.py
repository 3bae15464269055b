from __future__ import annotations

import argparse
import asyncio
import logging
import platform
import signal
import sys
import threading
from typing import Any

from . import __version__
from .config import (
    CONNECT_TIMEOUT_SECONDS,
    LOCAL_REQUEST_TIMEOUT_SECONDS,
    REMOTE_URL_ENV,
    TunnelConfig,
    default_remote_url,
)
from .errors import TunnelError
from .forwarder import LocalForwarder
from .reporter import SessionReporter
from .session import ConnectionInfo, TunnelSession

logger = logging.getLogger("railtunnel")


class Tunnel:
    """
    Long-lived rail tunnel running its session on a background event loop.
    """

    def __init__(
        self,
        local_port: int,
        remote_url: str,
        local_host: str = "localhost",
        request_timeout_seconds: float = LOCAL_REQUEST_TIMEOUT_SECONDS,
        reporter: SessionReporter | None = None,
    ) -> None:
        self.config = TunnelConfig.for_port(local_port, remote_url, local_host)
        self.request_timeout_seconds = request_timeout_seconds
        self.reporter = reporter

        self.session: TunnelSession | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._startup_error: BaseException | None = None

    @property
    def connection_info(self) -> ConnectionInfo | None:
        if self.session is None:
            return None
        return self.session.connection_info

    @property
    def public_url(self) -> str | None:
        info = self.connection_info
        return info.public_url if info else None

    def start(self) -> "Tunnel":
        if self._thread is not None and self._thread.is_alive():
            return self
        self._started.clear()
        self._startup_error = None
        self._thread = threading.Thread(
            target=self._run_in_thread, name="railtunnel", daemon=True
        )
        self._thread.start()
        self._started.wait(timeout=CONNECT_TIMEOUT_SECONDS + 5)
        if self._startup_error:
            raise self._startup_error
        if self.connection_info is None:
            raise RuntimeError("rail tunnel failed to start")
        return self

    def close(self, timeout: float = 5.0) -> None:
        """Ask the session to close and wait up to ``timeout`` for the loop to stop."""
        loop, session = self._loop, self.session
        if loop is not None and session is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(session.close)
            except RuntimeError:
                logger.debug("tunnel loop already stopped")
        if (
            self._thread is not None
            and self._thread.is_alive()
            and self._thread is not threading.current_thread()
        ):
            self._thread.join(timeout=timeout)

    def wait(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def __enter__(self) -> "Tunnel":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def _run_in_thread(self) -> None:
        try:
            asyncio.run(self._run())
        except Exception as exc:
            self._startup_error = exc
            self._started.set()

    async def _run(self) -> None:
        self.session = TunnelSession(
            self.config,
            reporter=self.reporter,
            forwarder=LocalForwarder(
                self.config, timeout_seconds=self.request_timeout_seconds
            ),
        )
        self._loop = asyncio.get_running_loop()
        await self.session.start()
        self._started.set()
        await self.session.wait_closed()


def expose(
    port: int,
    remote_url: str,
    local_host: str = "localhost",
    request_timeout_seconds: float = LOCAL_REQUEST_TIMEOUT_SECONDS,
) -> Tunnel:
    """
    One-line entrypoint:
        tunnel = railtunnel.expose(3000, "https://my-tunnel.example.com")
    """
    tunnel = Tunnel(
        local_port=port,
        remote_url=remote_url,
        local_host=local_host,
        request_timeout_seconds=request_timeout_seconds,
    )
    return tunnel.start()


def port_type(value: str) -> int:
    """argparse converter accepting only TCP ports 1-65535."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port number: {value!r}")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535, got {port}")
    return port


EPILOG = """\
Examples:
  rail-tunnel tunnel --port 3000 --remote https://my-app.railway.app
  rail-tunnel tunnel --port 8080 --remote https://my-api.railway.app
  rail-tunnel info

Each relay deployment handles one tunnel. Deploy multiple times for multiple tunnels.
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rail-tunnel",
        description="Rail Tunnel - expose a local service to the internet through a relay.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    subparsers = parser.add_subparsers(dest="command")

    tunnel_parser = subparsers.add_parser(
        "tunnel", help="Create a tunnel to expose a local service to the internet"
    )
    tunnel_parser.add_argument(
        "--port",
        "-p",
        type=port_type,
        required=True,
        help="Local port to tunnel (e.g. 3000, 8080)",
    )
    remote_default = default_remote_url()
    tunnel_parser.add_argument(
        "--remote",
        "-r",
        default=remote_default,
        required=remote_default is None,
        help=f"Rail Tunnel relay URL (default: ${REMOTE_URL_ENV})",
    )
    tunnel_parser.add_argument(
        "--host", default="localhost", help="Local service host (default: localhost)"
    )
    tunnel_parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers.add_parser("info", help="Show system information")
    return parser


def _print_info() -> None:
    print("Rail Tunnel CLI Info")
    print(f"  railtunnel: {__version__}")
    print(f"  Python:       {platform.python_version()}")
    print(f"  Platform:     {sys.platform}")
    print(f"  Architecture: {platform.machine()}")
    print("CLI is working!")


def run_cli(argv: list[str] | None = None) -> None:
    """
    CLI entrypoint for: python -m railtunnel tunnel --port 3000 --remote URL
    or: rail-tunnel tunnel -p 3000 -r URL
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "info":
        _print_info()
        return
    if args.command is None:
        parser.print_help()
        return

    logging.basicConfig(
        format="%(asctime)s [railtunnel] %(message)s",
        datefmt="%H:%M:%S",
        level=logging.DEBUG if args.verbose else logging.INFO,
        stream=sys.stderr,
    )

    print("\n  Rail Tunnel")
    print(f"  Tunneling {args.host}:{args.port} -> {args.remote}\n")

    try:
        tunnel = expose(port=args.port, remote_url=args.remote, local_host=args.host)
    except TunnelError:
        sys.exit(1)
    except RuntimeError as exc:
        print(f"  Error: {exc}")
        sys.exit(1)

    def _shutdown(sig: int, frame: Any) -> None:
        print("\n  Shutting down tunnel...")
        tunnel.close()
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    if sys.platform != "win32":
        signal.signal(signal.SIGTERM, _shutdown)

    try:
        signal.pause()
    except AttributeError:
        tunnel.wait()
