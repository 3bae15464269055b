from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from .errors import RelayReportedError
    from .session import ConnectionInfo

RULE = "-" * 50


class SessionReporter:
    """
    Human-readable session status for the terminal.

    Purely a sink: nothing the reporter does feeds back into the session.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream

    def _print(self, text: str = "") -> None:
        print(text, file=self.stream or sys.stdout, flush=True)

    def connecting(self, url: str) -> None:
        self._print(f"  Connecting to: {url}")

    def connected(self, info: ConnectionInfo) -> None:
        self._print("\n  Rail Tunnel active")
        self._print(f"  {RULE}")
        self._print(f"  Local URL:   {info.local_url}")
        self._print(f"  Public URL:  {info.public_url}")
        self._print(f"  {RULE}")
        self._print("\n  Press Ctrl+C to stop tunnel.\n")

    def disconnected(self) -> None:
        self._print("  Tunnel connection closed")

    def reconnect_scheduled(self, delay: float) -> None:
        self._print(f"  Reconnecting in {delay:.0f}s...")

    def reconnecting(self) -> None:
        self._print("  Attempting to reconnect...")

    def reconnected(self) -> None:
        self._print("  Reconnected successfully!")

    def reconnect_failed(self, exc: BaseException, retry_in: float) -> None:
        self._print(f"  Reconnection failed ({exc}), retrying in {retry_in:.0f} seconds...")

    def relay_error(self, error: RelayReportedError) -> None:
        self._print(f"  Server error: {error}")

    def failed(self, exc: BaseException) -> None:
        self._print(f"  Failed: {exc}")

    def closed(self) -> None:
        self._print("  Tunnel closed successfully")
