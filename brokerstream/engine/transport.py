"""WebSocket transport owning exactly one socket to the brokerage endpoint."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from brokerstream.engine.config import StreamConfig


@dataclass(slots=True)
class Transport:
    """Send and receive opaque text frames over one websocket.

    No retry logic lives here: a failed connect or a dropped socket is just
    reported through ``onClose`` and the owner decides what happens next.
    Frames sent while the socket isn't open are dropped.
    """

    url: str

    pingInterval: float | None = 20
    pingTimeout: float | None = 20
    openTimeout: float = 10
    closeTimeout: float = 2

    onOpen: Callable[[], None] | None = None
    onMessage: Callable[[str], None] | None = None
    onClose: Callable[[], None] | None = None
    onError: Callable[[str], None] | None = None

    # active websocket connection (if any)
    activeWS: Any | None = None

    # counts successful opens over the transport lifetime
    opened: int = 0

    _outbox: asyncio.Queue[str] = field(default_factory=asyncio.Queue, init=False)
    _reader: asyncio.Task | None = field(default=None, init=False)
    _writer: asyncio.Task | None = field(default=None, init=False)
    _closing: bool = field(default=False, init=False)

    @classmethod
    def fromConfig(cls, config: StreamConfig) -> Transport:
        return cls(
            url=config.endpoint,
            pingInterval=config.pingInterval,
            pingTimeout=config.pingTimeout,
            openTimeout=config.openTimeout,
            closeTimeout=config.closeTimeout,
        )

    @property
    def isOpen(self) -> bool:
        return self.activeWS is not None and not self._closing

    async def open(self) -> None:
        if self.activeWS is not None:
            logger.warning("[transport :: {}] Already open, ignoring open()", self.url)
            return

        self._closing = False
        logger.info("[transport] Connecting to: {}", self.url)

        try:
            ws = await websockets.connect(
                self.url,
                ping_interval=self.pingInterval,
                ping_timeout=self.pingTimeout,
                open_timeout=self.openTimeout,
                close_timeout=self.closeTimeout,
                user_agent_header=None,
            )
        except (
            TimeoutError,
            OSError,
            InvalidHandshake,
            InvalidURI,
        ) as e:
            # Don't print full network exceptions for just connection errors
            logger.error("[transport :: {}] Connect failed: {}", self.url, str(e))
            self._emitError(f"Connection error: {e}")
            self._emitClose()
            return

        self.activeWS = ws
        self.opened += 1

        # fresh outbox per connection so nothing queued for a dead socket leaks over
        self._outbox = asyncio.Queue()
        self._writer = asyncio.create_task(self._writeLoop(ws, self._outbox))
        self._reader = asyncio.create_task(self._readLoop(ws))

        logger.info("[transport :: {}] Connected!", self.url)
        if self.onOpen:
            self.onOpen()

    async def close(self) -> None:
        """Close the socket. ``onClose`` fires once the reader has wound down."""
        ws = self.activeWS
        if ws is None:
            return

        self._closing = True
        await ws.close()

        reader = self._reader
        if reader and reader is not asyncio.current_task():
            await reader

    def send(self, text: str) -> bool:
        """Queue one frame for the writer. Returns False if the frame was dropped."""
        if not self.isOpen:
            logger.debug("[transport :: {}] Not open, dropping frame: {}", self.url, text)
            return False

        logger.trace("[transport] >> {}", text)
        self._outbox.put_nowait(text)
        return True

    async def _writeLoop(self, ws, outbox: asyncio.Queue[str]) -> None:
        # single writer keeps frames in the order send() was called
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed:
                logger.warning("[transport :: {}] Closed while sending, frame lost", self.url)
                return

    async def _readLoop(self, ws) -> None:
        try:
            async for msg in ws:
                logger.trace("[transport] << {}", msg)
                if not self.onMessage:
                    continue

                try:
                    self.onMessage(msg)
                except Exception:
                    # one bad frame handler must not take the socket down
                    logger.exception("[transport :: {}] Message handler failed", self.url)
        except ConnectionClosed as e:
            if not self._closing:
                logger.error(
                    "[transport :: {}] Connection dropped: {}", self.url, str(e)
                )
        finally:
            if self._writer:
                self._writer.cancel()

            self._writer = None
            self._reader = None
            self.activeWS = None
            self._emitClose()

    def _emitError(self, message: str) -> None:
        if self.onError:
            self.onError(message)

    def _emitClose(self) -> None:
        if self.onClose:
            self.onClose()
