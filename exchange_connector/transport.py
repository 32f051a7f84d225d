"""
Exchange Connector - WebSocket Transport.

============================================================
PURPOSE
============================================================
Thin text-frame transport under the duplex session.

The session only needs send / receive / close, so tests swap in
an in-memory transport through the factory argument.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import aiohttp


logger = logging.getLogger(__name__)


class TransportClosed(ConnectionError):
    """The underlying connection closed or failed."""


class Transport(ABC):
    """Full-duplex text frame transport."""

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send one text frame. Raises TransportClosed."""

    @abstractmethod
    async def receive(self) -> str:
        """Receive the next text frame. Raises TransportClosed."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Idempotent."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether the connection is closed."""


TransportFactory = Callable[[str], Awaitable[Transport]]


# ============================================================
# AIOHTTP TRANSPORT
# ============================================================

class AiohttpTransport(Transport):
    """Transport over aiohttp.ClientWebSocketResponse."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._ws = ws
        self._session = session

    @classmethod
    async def connect(
        cls,
        url: str,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> "AiohttpTransport":
        """
        Open a WebSocket connection.

        Args:
            url: WebSocket URL
            timeout: Handshake timeout in seconds
            session: Shared ClientSession; one is created (and owned) if None
        """
        owned = session is None
        if owned:
            session = aiohttp.ClientSession()

        try:
            # Heartbeat is text ping/pong at the session layer.
            ws = await asyncio.wait_for(session.ws_connect(url, autoping=True), timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            if owned:
                await session.close()
            raise TransportClosed(f"WebSocket connection failed: {url}: {e}") from e

        logger.info(f"WebSocket connected: {url}")
        return cls(ws, session if owned else None)

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, text: str) -> None:
        if self._ws.closed:
            raise TransportClosed("Not connected")
        try:
            await self._ws.send_str(text)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise TransportClosed(f"WebSocket send failed: {e}") from e

    async def receive(self) -> str:
        while True:
            msg = await self._ws.receive()

            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data

            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")

            if msg.type in (aiohttp.WSMsgType.PING, aiohttp.WSMsgType.PONG):
                continue

            if msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportClosed(f"WebSocket error: {self._ws.exception()}")

            # CLOSE, CLOSING, CLOSED
            raise TransportClosed(f"WebSocket closed: {msg.data}")

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()


def aiohttp_transport_factory(
    timeout: float = 10.0,
    session: Optional[aiohttp.ClientSession] = None,
) -> TransportFactory:
    """Factory binding connect timeout and an optional shared ClientSession."""

    async def factory(url: str) -> Transport:
        return await AiohttpTransport.connect(url, timeout=timeout, session=session)

    return factory
