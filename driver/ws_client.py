from __future__ import annotations
import asyncio
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

import websockets

from shared.errors import DriverConnectionError
from shared.log import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """What the driver needs from a message-oriented, bidirectional channel."""

    async def send(self, text: str) -> None: ...

    def __aiter__(self) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[], Awaitable[Transport]]


class WebSocketTransport:
    """
    DDP transport over a websockets client connection.

    Frame writes from concurrent callers are serialized by a lock so each
    frame goes out whole. Iterating yields inbound text frames until the
    connection closes; a clean close simply ends the iteration while an
    abnormal one raises DriverConnectionError.
    """

    def __init__(
        self,
        url: str,
        *,
        ping_interval: Optional[float] = None,
        ping_timeout: Optional[float] = None,
        open_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout
        self.websocket: Optional[websockets.ClientConnection] = None
        self._send_lock = asyncio.Lock()

    async def connect(self) -> "WebSocketTransport":
        """Open the WebSocket connection"""
        try:
            self.websocket = await websockets.connect(
                self.url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                open_timeout=self.open_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise DriverConnectionError(f"Cannot connect to {self.url}: {e}") from e
        logger.info("Connected to %s", self.url)
        return self

    async def send(self, text: str) -> None:
        if self.websocket is None:
            raise DriverConnectionError("Transport is not connected")
        async with self._send_lock:
            try:
                await self.websocket.send(text)
            except websockets.exceptions.ConnectionClosed as e:
                raise DriverConnectionError(f"Connection closed while sending: {e}") from e

    async def __aiter__(self) -> AsyncIterator[str]:
        if self.websocket is None:
            raise DriverConnectionError("Transport is not connected")
        try:
            async for raw in self.websocket:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                yield raw
        except websockets.exceptions.ConnectionClosedError as e:
            raise DriverConnectionError(f"Connection lost: {e}") from e

    async def close(self) -> None:
        if self.websocket is not None:
            await self.websocket.close(code=1000)
