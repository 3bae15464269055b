from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from . import protocol
from .config import (
    CONNECT_TIMEOUT_SECONDS,
    CONTROL_PATH,
    FIRST_RETRY_DELAY_SECONDS,
    KEEPALIVE_INTERVAL_SECONDS,
    RETRY_INTERVAL_SECONDS,
    TunnelConfig,
)
from .errors import (
    ConnectTimeout,
    DecodeError,
    RelayReportedError,
    TransportError,
    TunnelError,
)
from .forwarder import LocalForwarder, bad_gateway
from .protocol import (
    ErrorMessage,
    HttpRequestMessage,
    PingMessage,
    PongMessage,
    UnknownMessage,
    WireMessage,
    now_ms,
)
from .reporter import SessionReporter
from .transport import Transport, TransportEventKind, WebSocketTransport

logger = logging.getLogger("railtunnel")

CLOSE_DRAIN_SECONDS = 5.0


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


_SHUTTING_DOWN = (SessionState.CLOSING, SessionState.CLOSED)


@dataclass
class ConnectionInfo:
    public_url: str
    local_url: str
    local_port: int
    connected: bool = True


def control_url(relay_url: str, local_port: int) -> str:
    """Map the relay's HTTP(S) URL onto its WebSocket control endpoint."""
    relay_url = relay_url.rstrip("/")
    if relay_url.startswith("https://"):
        base = "wss://" + relay_url[len("https://") :]
    elif relay_url.startswith("http://"):
        base = "ws://" + relay_url[len("http://") :]
    elif relay_url.startswith(("ws://", "wss://")):
        base = relay_url
    else:
        base = "ws://" + relay_url
    return f"{base}{CONTROL_PATH}?port={local_port}"


class TunnelSession:
    """
    One tunnel session: the control connection to the relay and everything
    that runs on top of it.

    All state transitions happen on the event loop that called :meth:`start`.
    The session re-establishes its connection on loss until :meth:`close`.
    """

    def __init__(
        self,
        config: TunnelConfig,
        *,
        reporter: SessionReporter | None = None,
        forwarder: LocalForwarder | None = None,
        transport_factory: Callable[[], Transport] | None = None,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
        first_retry_delay: float = FIRST_RETRY_DELAY_SECONDS,
        retry_interval: float = RETRY_INTERVAL_SECONDS,
    ) -> None:
        self.config = config
        self.reporter = reporter or SessionReporter()
        self.forwarder = forwarder or LocalForwarder(config)
        self._transport_factory = transport_factory or WebSocketTransport
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.first_retry_delay = first_retry_delay
        self.retry_interval = retry_interval

        self._state = SessionState.DISCONNECTED
        self._connection_info: ConnectionInfo | None = None
        self._transport: Transport | None = None
        self._connecting_transport: Transport | None = None
        self._outbound: asyncio.Queue[bytes] | None = None

        self._writer_task: asyncio.Task[Any] | None = None
        self._keepalive_task: asyncio.Task[Any] | None = None
        self._dispatch_task: asyncio.Task[Any] | None = None
        self._reconnect_task: asyncio.Task[Any] | None = None
        self._forward_tasks: set[asyncio.Task[Any]] = set()
        self._closed = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connection_info(self) -> ConnectionInfo | None:
        return self._connection_info

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def control_url(self) -> str:
        return control_url(self.config.relay_url, self.config.local_port)

    def _set_state(self, state: SessionState) -> None:
        if self._state is not state:
            logger.debug("session state %s -> %s", self._state.value, state.value)
            self._state = state

    async def start(self) -> ConnectionInfo:
        """Open the control connection.

        The first attempt is not retried: a failure is reported and raised.
        """
        if self._state in _SHUTTING_DOWN:
            raise TunnelError("session is closed")
        if self._state is SessionState.CONNECTED and self._connection_info:
            return self._connection_info
        if self._state is SessionState.CONNECTING or (
            self._reconnect_task is not None and not self._reconnect_task.done()
        ):
            raise TunnelError("a connect attempt is already in progress")

        self.reporter.connecting(self.control_url)
        try:
            info = await self._connect()
        except TunnelError as exc:
            if self._state not in _SHUTTING_DOWN:
                self.reporter.failed(exc)
            raise
        self.reporter.connected(info)
        return info

    def close(self) -> None:
        """Shut the session down.

        Idempotent and non-blocking, so it can run from a signal handler
        scheduled on the session's loop. The transport is asked to close on
        every call.
        """
        already_closed = self._state in _SHUTTING_DOWN
        if not already_closed:
            self._set_state(SessionState.CLOSING)

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
        self._cancel_connection_tasks()
        for task in list(self._forward_tasks):
            task.cancel()
        if self._transport is not None:
            self._transport.close_soon()
        if self._connecting_transport is not None:
            self._connecting_transport.close_soon()
        if self._connection_info is not None:
            self._connection_info.connected = False

        self._set_state(SessionState.CLOSED)
        if already_closed:
            return
        self._closed.set()
        logger.info("tunnel closed")
        self.reporter.closed()

    async def wait_closed(self) -> None:
        """Wait for :meth:`close`, then for the dispatch loop and forwards to drain."""
        await self._closed.wait()
        pending = {t for t in (self._dispatch_task, *self._forward_tasks) if t}
        if pending:
            await asyncio.wait(pending, timeout=CLOSE_DRAIN_SECONDS)

    async def __aenter__(self) -> "TunnelSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
        await self.wait_closed()

    def send(self, message: WireMessage) -> bool:
        """Queue ``message`` on the current connection without waiting.

        Frames go out in call order. Returns False, dropping the message,
        when the session is not connected.
        """
        if self._state is not SessionState.CONNECTED or self._outbound is None:
            logger.debug(
                "dropping %s: session is %s", type(message).__name__, self._state.value
            )
            return False
        self._outbound.put_nowait(protocol.encode(message))
        return True

    async def _connect(self) -> ConnectionInfo:
        url = self.control_url
        self._set_state(SessionState.CONNECTING)
        transport = self._transport_factory()
        self._connecting_transport = transport
        logger.info("connecting tunnel ws %s", url)
        try:
            await asyncio.wait_for(transport.connect(url), timeout=self.connect_timeout)
        except asyncio.TimeoutError as exc:
            transport.close_soon()
            self._connect_failed()
            raise ConnectTimeout(
                "Connection timeout - check server URL and network"
            ) from exc
        except TransportError:
            self._connect_failed()
            raise
        except asyncio.CancelledError:
            transport.close_soon()
            self._connect_failed()
            raise
        finally:
            self._connecting_transport = None

        if self._state is not SessionState.CONNECTING:
            transport.close_soon()
            raise TransportError("session closed while connecting")
        return self._on_connected(transport)

    def _connect_failed(self) -> None:
        if self._state is SessionState.CONNECTING:
            self._set_state(SessionState.DISCONNECTED)

    def _on_connected(self, transport: Transport) -> ConnectionInfo:
        self._transport = transport
        self._outbound = asyncio.Queue()
        self._connection_info = ConnectionInfo(
            public_url=self.config.relay_url,
            local_url=self.config.local_base_url,
            local_port=self.config.local_port,
        )
        self._set_state(SessionState.CONNECTED)
        logger.info(
            "tunnel ws connected, forwarding %s", self.config.local_base_url
        )

        self._writer_task = asyncio.create_task(
            self._writer_loop(transport, self._outbound)
        )
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(transport))
        return self._connection_info

    def _cancel_connection_tasks(self) -> None:
        for task in (self._keepalive_task, self._writer_task):
            if task is not None:
                task.cancel()
        self._keepalive_task = None
        self._writer_task = None
        self._outbound = None

    async def _writer_loop(self, transport: Transport, queue: asyncio.Queue[bytes]) -> None:
        while True:
            data = await queue.get()
            try:
                await transport.send(data)
            except TransportError as exc:
                logger.warning("tunnel ws send failed: %s", exc)
                break
            except Exception as exc:
                logger.error("tunnel ws send failed unexpectedly: %r", exc)
                break
        # The dispatch loop sees the close and runs the disconnect path.
        transport.close_soon()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            if self.send(PingMessage(timestamp=now_ms())):
                logger.debug("sent keepalive ping")

    async def _dispatch_loop(self, transport: Transport) -> None:
        reason: BaseException | None = None
        try:
            async for event in transport.events():
                if event.kind is TransportEventKind.MESSAGE:
                    self._handle_frame(event.data)
                    continue
                reason = event.error
                break
        except TransportError as exc:
            reason = exc
        finally:
            self._on_disconnect(transport, reason)

    def _handle_frame(self, raw: Any) -> None:
        try:
            message = protocol.decode(raw)
        except DecodeError as exc:
            if exc.request_id is None:
                logger.warning("dropping malformed frame: %s", exc)
                return
            logger.warning("malformed request req=%s: %s", exc.request_id, exc)
            self.send(bad_gateway(exc.request_id))
            return

        if isinstance(message, HttpRequestMessage):
            task = asyncio.create_task(self._forward(message))
            self._forward_tasks.add(task)
            task.add_done_callback(self._forward_tasks.discard)
        elif isinstance(message, PingMessage):
            timestamp = message.timestamp if message.timestamp is not None else now_ms()
            self.send(PongMessage(timestamp=timestamp))
        elif isinstance(message, PongMessage):
            logger.debug("pong timestamp=%s", message.timestamp)
        elif isinstance(message, ErrorMessage):
            error = RelayReportedError(message.message)
            logger.warning("relay error: %s", error)
            self.reporter.relay_error(error)
        elif isinstance(message, UnknownMessage):
            logger.info("unknown message type %r ignored", message.type_name)
        else:
            logger.debug("ignoring inbound %s", type(message).__name__)

    async def _forward(self, request: HttpRequestMessage) -> None:
        try:
            response = await self.forwarder.forward(request)
        except Exception as exc:
            logger.error("forward req=%s failed: %s", request.request_id, exc)
            response = bad_gateway(request.request_id)
        if not self.send(response):
            logger.warning(
                "response req=%s dropped: session is %s",
                request.request_id,
                self._state.value,
            )

    def _on_disconnect(
        self, transport: Transport, reason: BaseException | None
    ) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self._cancel_connection_tasks()
        if self._connection_info is not None:
            self._connection_info.connected = False
        if self._state in _SHUTTING_DOWN:
            return
        transport.close_soon()

        if reason is not None:
            logger.warning("tunnel ws lost: %s", reason)
        else:
            logger.info("tunnel ws closed by relay")
        self._set_state(SessionState.DISCONNECTED)
        self.reporter.disconnected()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._state in _SHUTTING_DOWN:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = self.first_retry_delay
        self.reporter.reconnect_scheduled(delay)
        while self._state not in _SHUTTING_DOWN:
            logger.info("reconnecting tunnel ws in %.0fs...", delay)
            await asyncio.sleep(delay)
            if self._state in _SHUTTING_DOWN:
                return
            self.reporter.reconnecting()
            try:
                await self._connect()
            except TunnelError as exc:
                logger.error("reconnect failed: %s", exc)
                self.reporter.reconnect_failed(exc, self.retry_interval)
                delay = self.retry_interval
                continue
            self.reporter.reconnected()
            return
