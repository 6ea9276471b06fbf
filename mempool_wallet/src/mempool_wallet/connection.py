"""
Live channel connection lifecycle.

States:
- OFFLINE: initial state, and the state after any close or failed connect.
- CONNECTING: transport open in progress, bounded by ``connect_timeout``.
- CONNECTED: transport open; frames are read, the outbound queue is flushed
  and messages are written immediately.

Once the first connection succeeds a heartbeat task runs every
``heartbeat_interval`` seconds until ``disconnect()``. Each tick either pings
the server or, when the connection is offline or has been silent for longer
than ``stale_timeout``, tears it down and reconnects.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from loguru import logger

from mempool_wallet.events import EventKind, ObserverRegistry
from mempool_wallet.models import MempoolWalletError, Transaction
from mempool_wallet.network import AiohttpWebSocketTransport, TransportError, WebSocketTransport
from mempool_wallet.protocol import (
    DEFAULT_MAX_FRAME_SIZE,
    AddressTransactions,
    AddressTxEvent,
    MalformedFrame,
    Pong,
    ServerError,
    encode_message,
    parse_frame,
    ping_message,
    track_addresses_message,
)

CONNECTION_EVENTS = (EventKind.CONNECTED, EventKind.DISCONNECTED, EventKind.ERROR)


class ConnectionState(str, Enum):
    OFFLINE = "offline"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionManager:
    """
    Websocket lifecycle state machine for the mempool live channel.

    Two kinds of observers can be registered through ``subscribe``:
    - per-kind address transaction callbacks (``AddressTxEvent``), called
      with ``(address, tx)``
    - connection callbacks (``EventKind.CONNECTED``/``DISCONNECTED`` with no
      arguments, ``EventKind.ERROR`` with the exception)
    """

    def __init__(
        self,
        url: str,
        transport_factory: Callable[[str], WebSocketTransport] | None = None,
        connect_timeout: float = 5.0,
        heartbeat_interval: float = 15.0,
        stale_timeout: float = 180.0,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize ConnectionManager.

        Args:
            url: Websocket URL of the live channel
            transport_factory: Builds a transport for a URL (aiohttp by default)
            connect_timeout: Seconds allowed for the transport to open
            heartbeat_interval: Seconds between heartbeat ticks
            stale_timeout: Seconds without any inbound frame before reconnecting
            max_frame_size: Maximum inbound frame size in bytes
            clock: Monotonic time source
        """
        self.url = url
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self.stale_timeout = stale_timeout
        self.max_frame_size = max_frame_size
        self._clock = clock
        self._transport_factory = transport_factory or (
            lambda ws_url: AiohttpWebSocketTransport(ws_url, max_message_size=max_frame_size)
        )

        self.state = ConnectionState.OFFLINE
        self.last_response_time: float = 0.0
        self.outbound_queue: deque[str] = deque()

        self._transport: WebSocketTransport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        # bumped by disconnect() so an in-flight connect can tell it was cancelled
        self._epoch = 0

        self._tx_observers: ObserverRegistry[AddressTxEvent] = ObserverRegistry()
        self._connection_observers: ObserverRegistry[EventKind] = ObserverRegistry(
            ids=self._tx_observers.ids
        )

    def subscribe(self, kind: AddressTxEvent | EventKind, callback: Callable[..., None]) -> int:
        if isinstance(kind, AddressTxEvent):
            return self._tx_observers.subscribe(kind, callback)
        if kind not in CONNECTION_EVENTS:
            raise ValueError(f"Unsupported connection event: {kind}")
        return self._connection_observers.subscribe(kind, callback)

    def unsubscribe(self, subscription_id: int) -> bool:
        return self._tx_observers.unsubscribe(
            subscription_id
        ) or self._connection_observers.unsubscribe(subscription_id)

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def connect(self) -> None:
        """
        Open the live channel.

        A ``disconnect()`` issued while the transport is opening wins: the
        freshly opened transport is closed and the connection stays offline.

        Raises:
            TransportError: If the transport fails, does not open in time, or
                the connection was closed while opening
        """
        async with self._connect_lock:
            if self.state == ConnectionState.CONNECTED:
                return

            epoch = self._epoch
            self.state = ConnectionState.CONNECTING
            logger.info(f"Connecting to {self.url}")
            transport = self._transport_factory(self.url)
            try:
                await asyncio.wait_for(transport.open(), timeout=self.connect_timeout)
            except asyncio.CancelledError:
                self.state = ConnectionState.OFFLINE
                await self._close_transport(transport)
                raise
            except Exception as e:
                self.state = ConnectionState.OFFLINE
                await self._close_transport(transport)
                if isinstance(e, TimeoutError):
                    error = TransportError(
                        f"Connection to {self.url} timed out after {self.connect_timeout}s"
                    )
                elif isinstance(e, TransportError):
                    error = e
                else:
                    error = TransportError(f"Connection to {self.url} failed: {e}")
                logger.warning(f"Failed to connect to {self.url}: {error}")
                self._connection_observers.notify(EventKind.ERROR, error)
                if error is e:
                    raise
                raise error from e

            if epoch != self._epoch:
                self.state = ConnectionState.OFFLINE
                await self._close_transport(transport)
                logger.info(f"Connection to {self.url} closed while opening")
                raise TransportError(f"Disconnected while connecting to {self.url}")

            await self._handle_open(transport)

    async def disconnect(self) -> None:
        """Close the live channel and stop reconnecting."""
        self._epoch += 1
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat is not None and heartbeat is not asyncio.current_task():
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        was_connected = self.state == ConnectionState.CONNECTED
        await self._teardown()
        self.outbound_queue.clear()
        logger.info(f"Disconnected from {self.url}")
        if was_connected:
            self._connection_observers.notify(EventKind.DISCONNECTED)

    async def send(self, message: dict[str, Any] | str) -> None:
        """Write a message now if connected, otherwise queue it for the next connect."""
        data = message if isinstance(message, str) else encode_message(message)
        if self.state == ConnectionState.CONNECTED and self._transport is not None:
            try:
                await self._transport.send(data)
                return
            except TransportError as e:
                logger.warning(f"Send failed, queueing message: {e}")
        self.outbound_queue.append(data)

    async def track_addresses(self, addresses: list[str]) -> None:
        logger.debug(f"Tracking {len(addresses)} addresses")
        await self.send(track_addresses_message(addresses))

    async def _handle_open(self, transport: WebSocketTransport) -> None:
        self._transport = transport
        self.state = ConnectionState.CONNECTED
        self.last_response_time = self._clock()
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._reader_task = asyncio.create_task(self._read_loop(transport))

        while self.outbound_queue and self.state == ConnectionState.CONNECTED:
            data = self.outbound_queue.popleft()
            try:
                await transport.send(data)
            except TransportError as e:
                logger.warning(f"Failed to flush outbound queue: {e}")
                self.outbound_queue.appendleft(data)
                break

        logger.info(f"Connected to {self.url}")
        self._connection_observers.notify(EventKind.CONNECTED)

    async def _read_loop(self, transport: WebSocketTransport) -> None:
        error: TransportError | None = None
        while True:
            try:
                data = await transport.receive()
            except TransportError as e:
                error = e
                break
            except Exception as e:
                error = TransportError(f"Receive failed: {e}")
                break
            if data is None:
                break
            try:
                self._handle_frame(data)
            except Exception as e:
                # one bad frame must not take the channel down
                logger.exception(f"Failed to handle frame: {e}")
                self._connection_observers.notify(EventKind.ERROR, e)

        if transport is self._transport:
            await self._handle_close(transport, error)

    async def _handle_close(
        self, transport: WebSocketTransport, error: TransportError | None = None
    ) -> None:
        self._transport = None
        self._reader_task = None
        self.state = ConnectionState.OFFLINE
        await self._close_transport(transport)

        if error is not None:
            logger.warning(f"Connection to {self.url} lost: {error}")
            self._connection_observers.notify(EventKind.ERROR, error)
        else:
            logger.info(f"Connection to {self.url} closed")
        self._connection_observers.notify(EventKind.DISCONNECTED)

    def _handle_frame(self, data: str | bytes) -> None:
        self.last_response_time = self._clock()
        try:
            message = parse_frame(data, max_frame_size=self.max_frame_size)
        except MalformedFrame as e:
            logger.warning(f"Dropping malformed frame: {e}")
            self._connection_observers.notify(EventKind.ERROR, e)
            return

        if isinstance(message, AddressTransactions):
            for kind, address, tx in message.iter_events():
                logger.debug(f"{kind.value} event for {address}: {tx.txid}")
                self._dispatch(kind, address, tx)
        elif isinstance(message, ServerError):
            logger.warning(f"Server reported an error: {message.message}")
            self._connection_observers.notify(
                EventKind.ERROR, MempoolWalletError(f"Server error: {message.message}")
            )
        elif isinstance(message, Pong):
            logger.debug("Received pong")

    def _dispatch(self, kind: AddressTxEvent, address: str, tx: Transaction) -> None:
        self._tx_observers.notify(kind, address, tx)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._heartbeat()
            except Exception as e:
                logger.error(f"Heartbeat failed: {e}")

    async def _heartbeat(self) -> None:
        silence = self._clock() - self.last_response_time
        if self.state == ConnectionState.CONNECTING:
            return
        if self.state == ConnectionState.OFFLINE or silence > self.stale_timeout:
            if self.state == ConnectionState.CONNECTED:
                logger.warning(f"No response from {self.url} for {silence:.0f}s, reconnecting")
            await self._reconnect()
        else:
            await self.send(ping_message())

    async def _reconnect(self) -> None:
        was_connected = self.state == ConnectionState.CONNECTED
        await self._teardown()
        if was_connected:
            self._connection_observers.notify(EventKind.DISCONNECTED)
        try:
            await self.connect()
        except TransportError as e:
            # already reported on the error channel; the next tick retries
            logger.debug(f"Reconnect to {self.url} failed: {e}")

    async def _teardown(self) -> None:
        """Drop the current transport without emitting notifications."""
        reader, self._reader_task = self._reader_task, None
        transport, self._transport = self._transport, None
        self.state = ConnectionState.OFFLINE
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if transport is not None:
            await self._close_transport(transport)

    async def _close_transport(self, transport: WebSocketTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")
