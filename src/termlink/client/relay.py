"""Client side of the relay WebSocket.

``RelayConnection`` keeps one control connection to the signaling server
open, reconnecting with capped exponential backoff. Outgoing envelopes go
through a single queue drained by one writer task, so they leave in the
order ``send()`` was called. Sending is best-effort: while disconnected,
envelopes are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable
from urllib.parse import urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from termlink.domain.messages import (
    SUPERSEDED_CLOSE_CODE,
    Message,
    encode_envelope,
    parse_envelope,
)

logger = logging.getLogger(__name__)


def relay_url(server_url: str) -> str:
    """Turn ``http(s)://host[:port]`` into the control WebSocket URL."""
    parts = urlsplit(server_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme or "ws")
    path = parts.path.rstrip("/")
    if not path.endswith("/ws"):
        path += "/ws"
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


class RelayConnection:
    """Reconnecting WebSocket connection to the signaling server.

    Args:
        server_url: Base URL of the server (http, https, ws or wss).
        on_connect: Called each time a connection is established.
        on_message: Called with every decoded inbound envelope.
        on_disconnect: Called each time an established connection ends.
        reconnect_delay: First retry delay in seconds.
        reconnect_max_delay: Upper bound on the retry delay.
    """

    def __init__(
        self,
        server_url: str,
        on_connect: Callable[[], None] | None = None,
        on_message: Callable[[Message], None] | None = None,
        on_disconnect: Callable[[], None] | None = None,
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 5.0,
    ) -> None:
        self._url = relay_url(server_url)
        self.on_connect = on_connect
        self.on_message = on_message
        self.on_disconnect = on_disconnect
        self._reconnect_delay = reconnect_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._outbox: asyncio.Queue[str] | None = None
        self._ws: websockets.ClientConnection | None = None
        self._stopped = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def send(self, message: Message) -> bool:
        """Queue an envelope for the current connection.

        Returns False (and drops the envelope) when not connected.
        """
        if self._outbox is None:
            logger.debug("Relay not connected, dropping %s", message.event)
            return False
        self._outbox.put_nowait(encode_envelope(message))
        return True

    async def run(self) -> None:
        """Connect and process envelopes until ``close()`` is called."""
        delay = self._reconnect_delay
        while not self._stopped:
            try:
                async with websockets.connect(self._url) as ws:
                    delay = self._reconnect_delay
                    superseded = await self._serve(ws)
                if superseded:
                    logger.warning("Another connection registered this device, not reconnecting")
                    return
            except (OSError, WebSocketException) as e:
                logger.warning("Relay connection to %s failed: %s", self._url, e)
            if self._stopped:
                break
            logger.info("Reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_max_delay)

    async def close(self) -> None:
        self._stopped = True
        if self._ws is not None:
            await self._ws.close()

    async def _serve(self, ws: websockets.ClientConnection) -> bool:
        logger.info("Connected to relay %s", self._url)
        self._ws = ws
        self._outbox = asyncio.Queue()
        writer = asyncio.create_task(self._write_loop(ws, self._outbox))
        try:
            if self.on_connect is not None:
                self.on_connect()
            try:
                async for raw in ws:
                    message = parse_envelope(raw)
                    if message is not None and self.on_message is not None:
                        self.on_message(message)
            except ConnectionClosed as e:
                logger.info("Relay closed the connection: %s", e)
        finally:
            writer.cancel()
            self._ws = None
            self._outbox = None
            logger.info("Disconnected from relay")
            if self.on_disconnect is not None:
                self.on_disconnect()
        return ws.close_code == SUPERSEDED_CLOSE_CODE

    async def _write_loop(self, ws: websockets.ClientConnection, outbox: asyncio.Queue[str]) -> None:
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed as e:
                logger.debug("Relay send dropped: %s", e)
                return
