"""WebSocket control connection surfaced as a stream of events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import MAX_FRAME_BYTES
from .errors import TransportError

logger = logging.getLogger("railtunnel")


class TransportEventKind(Enum):
    MESSAGE = "message"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class TransportEvent:
    kind: TransportEventKind
    data: bytes | str | None = None
    error: BaseException | None = None


class Transport(Protocol):
    """What the session needs from a control connection."""

    async def connect(self, url: str) -> None: ...

    async def send(self, data: bytes) -> None: ...

    def events(self) -> AsyncIterator[TransportEvent]: ...

    def close_soon(self) -> None: ...


class WebSocketTransport:
    """
    One WebSocket connection to the relay.

    ``events()`` yields every inbound frame as a MESSAGE event and ends with
    exactly one CLOSED or ERROR event.
    """

    def __init__(self, **connect_kwargs: Any) -> None:
        self._connect_kwargs = {
            "max_size": MAX_FRAME_BYTES,
            "ping_interval": 20,
            "ping_timeout": 20,
            "close_timeout": 3,
            "open_timeout": None,
            **connect_kwargs,
        }
        self._ws: Any = None
        self._connecting: asyncio.Future[Any] | None = None
        self._abandoned = False
        self._close_task: asyncio.Task[Any] | None = None

    async def connect(self, url: str) -> None:
        self._connecting = asyncio.ensure_future(
            websockets.connect(url, **self._connect_kwargs)
        )
        try:
            self._ws = await self._connecting
        except asyncio.CancelledError:
            if not self._abandoned:
                raise
            raise TransportError(f"connect to {url} abandoned") from None
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"cannot connect to {url}: {exc}") from exc
        finally:
            self._connecting = None

    async def send(self, data: bytes) -> None:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        try:
            await self._ws.send(data.decode("utf-8"))
        except ConnectionClosed as exc:
            raise TransportError(f"send on closed connection: {exc}") from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def events(self) -> AsyncIterator[TransportEvent]:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        try:
            async for raw in self._ws:
                yield TransportEvent(TransportEventKind.MESSAGE, data=raw)
        except (OSError, WebSocketException) as exc:
            yield TransportEvent(TransportEventKind.ERROR, error=exc)
            return
        yield TransportEvent(TransportEventKind.CLOSED)

    def close_soon(self) -> None:
        """Ask the connection to close without waiting for the handshake.

        A connect still in progress is abandoned and raises TransportError.
        """
        if self._ws is None:
            if self._connecting is not None and not self._connecting.done():
                self._abandoned = True
                self._connecting.cancel()
            return
        if self._close_task is not None:
            return
        self._close_task = asyncio.ensure_future(self._ws.close())
        self._close_task.add_done_callback(_log_close_result)


def _log_close_result(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("websocket close failed: %s", exc)
