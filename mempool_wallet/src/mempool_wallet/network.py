"""
Websocket transport primitives.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import aiohttp
from loguru import logger

from mempool_wallet.models import MempoolWalletError


class TransportError(MempoolWalletError):
    """Connect timeout or socket failure on the live channel."""


class WebSocketTransport(ABC):
    @abstractmethod
    async def open(self) -> None:
        pass

    @abstractmethod
    async def send(self, data: str) -> None:
        pass

    @abstractmethod
    async def receive(self) -> str | bytes | None:
        """Return the next frame, or None once the peer closed the connection."""

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    def is_open(self) -> bool:
        pass


class AiohttpWebSocketTransport(WebSocketTransport):
    def __init__(self, url: str, max_message_size: int = 2097152):
        self.url = url
        self.max_message_size = max_message_size
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def open(self) -> None:
        self._session = aiohttp.ClientSession()
        try:
            # heartbeat is handled one level up, autoping only answers server pings
            self._ws = await self._session.ws_connect(
                self.url, autoping=True, max_msg_size=self.max_message_size
            )
        except (aiohttp.ClientError, OSError) as e:
            await self.close()
            raise TransportError(f"Failed to open {self.url}: {e}") from e
        logger.debug(f"Websocket opened: {self.url}")

    async def send(self, data: str) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("Websocket closed")
        try:
            await self._ws.send_str(data)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Send failed: {e}") from e

    async def receive(self) -> str | bytes | None:
        if self._ws is None:
            raise TransportError("Websocket not open")

        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise TransportError(f"Websocket error: {self._ws.exception()}")
        # CLOSE, CLOSING, CLOSED
        logger.debug(f"Websocket closed by peer: {msg.type.name}")
        return None

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        if ws is not None and not ws.closed:
            await ws.close()
        if session is not None and not session.closed:
            await session.close()

    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed
