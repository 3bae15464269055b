"""Error types raised by the tunnel session engine."""

from __future__ import annotations


class TunnelError(Exception):
    """Base error for tunnel client failures."""


class DecodeError(TunnelError):
    """A control-connection frame could not be decoded.

    ``request_id`` is set when the frame was an ``http_request`` whose id could
    still be read, so the relay can be answered.
    """

    def __init__(self, message: str, request_id: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class ConnectTimeout(TunnelError):
    """The control connection was not established in time."""


class TransportError(TunnelError):
    """The control connection failed at the socket or handshake level."""


class LocalForwardFailure(TunnelError):
    """The local service could not be reached."""

    def __init__(self, method: str, url: str, cause: BaseException) -> None:
        super().__init__(f"{method} {url} failed: {cause}")
        self.method = method
        self.url = url
        self.cause = cause


class RelayReportedError(TunnelError):
    """The relay sent an ``error`` message. Informational only."""
