"""
transport/channel.py — WebSocket Transport Channel

Duplex channel between the assistant panel and the remote assistant
service, one instance per connection. Connection, reading and sending all
run as tasks on the controller's event loop; results come back only as
events through the sink the channel was built with:

    TransportOpened       — handshake completed
    TransportMessage(raw) — one inbound frame, untouched
    TransportFailed       — connect / handshake failure
    TransportClosed(code) — always last; 1000 on a clean close

No connect timeout and no automatic reconnect: recovery is the user's
explicit retry, which builds a fresh channel.

Usage:
    channel = WebSocketChannel(sink)
    channel.open("ws://localhost:8000/ws/client_3f9a1c07b")
    channel.send(VoiceInput(message="show me your projects"))
    channel.close()
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import InvalidHandshake, InvalidURI
from websockets.uri import parse_uri

from assistant.events import TransportClosed, TransportFailed, TransportMessage, TransportOpened
from assistant.ports import EventSink
from exceptions import TransportConnectError, TransportError, TransportNotConnectedError
from observability.logger import get_logger
from transport.protocol import CLOSE_ABNORMAL, VoiceInput, encode_voice_input

log = get_logger(__name__)


class WebSocketChannel:
    """
    Single-use WebSocket channel.

    open() may be called once; close() any number of times, before, during
    or after the connection exists.
    """

    def __init__(self, emit: EventSink, *, max_size: int = 2**20) -> None:
        self._emit = emit
        self._max_size = max_size
        self._address: Optional[str] = None
        self._ws: Optional[ClientConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._background: set[asyncio.Task] = set()   # sends and graceful close

    @classmethod
    def factory(cls, max_size: int = 2**20) -> Callable[[EventSink], "WebSocketChannel"]:
        """A TransportFactory for the controller."""
        return lambda emit: cls(emit, max_size=max_size)

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def open(self, address: str) -> None:
        """Start connecting. Raises TransportConnectError for unusable addresses."""
        if self._task is not None:
            raise TransportError("channel already opened; build a new one to reconnect")
        try:
            parse_uri(address)
        except InvalidURI as e:
            raise TransportConnectError(address, str(e)) from e
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise TransportConnectError(address, "no running event loop") from e

        self._address = address
        self._task = loop.create_task(self._run(address))
        log.debug("transport.opening", address=address)

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._ws is not None:
            self._track(self._ws.close())
            log.debug("transport.closing", address=self._address)
        elif self._task is not None and not self._task.done():
            # Still connecting: abandon the handshake
            self._task.cancel()
            log.debug("transport.connect_abandoned", address=self._address)

    # ── Outbound ──────────────────────────────────────────────────────────────

    def send(self, payload: VoiceInput) -> None:
        if not self.is_open:
            raise TransportNotConnectedError("transport is not connected")
        data = encode_voice_input(payload)
        self._track(self._send(data))

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("transport.background_failed", error=str(exc),
                        error_type=type(exc).__name__)

    async def _send(self, data: str) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(data)
            log.debug("transport.sent", size=len(data))
        except websockets.ConnectionClosed:
            # The reader sees the same close and reports it
            log.debug("transport.send_after_close")

    # ── Reader ────────────────────────────────────────────────────────────────

    async def _run(self, address: str) -> None:
        code: Optional[int] = CLOSE_ABNORMAL
        try:
            async with connect(address, max_size=self._max_size, open_timeout=None) as ws:
                self._ws = ws
                if self._closing:
                    await ws.close()
                else:
                    log.info("transport.opened", address=address)
                    self._emit(TransportOpened())
                try:
                    async for raw in ws:
                        self._emit(TransportMessage(raw))
                except websockets.ConnectionClosedError as e:
                    log.warning("transport.connection_dropped", error=str(e))
                code = ws.close_code
        except asyncio.CancelledError:
            self._ws = None
            log.debug("transport.cancelled", address=address)
            raise
        except (OSError, InvalidHandshake, InvalidURI, TimeoutError) as e:
            log.warning("transport.connect_failed", address=address,
                        error=str(e), error_type=type(e).__name__)
            self._emit(TransportFailed(str(e)))
        finally:
            self._ws = None

        code = CLOSE_ABNORMAL if code is None else code
        log.info("transport.closed", address=address, code=code)
        self._emit(TransportClosed(code))
