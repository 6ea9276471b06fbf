"""
Test fixtures and fakes for mempool_wallet tests.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio

from mempool_wallet.backlog import BacklogFetcher
from mempool_wallet.connection import ConnectionManager
from mempool_wallet.models import Transaction
from mempool_wallet.network import TransportError, WebSocketTransport
from mempool_wallet.wallet import WalletOrchestrator

ADDRESS = "bc1qtrackedaddress0000000000000000000000000"
OTHER_ADDRESS = "bc1qotheraddress00000000000000000000000000"
FOREIGN_ADDRESS = "bc1qforeignaddress000000000000000000000000"


def make_tx(
    txid: str,
    outputs: list[tuple[str | None, int | None]] | None = None,
    inputs: list[tuple[str, int, str | None, int | None]] | None = None,
    confirmed: bool = False,
    block_height: int | None = None,
) -> Transaction:
    """
    Build an esplora-shaped transaction.

    outputs: (address, value) per vout index
    inputs: (prev_txid, prev_vout, prevout_address, prevout_value)
    """
    status: dict[str, Any] = {"confirmed": confirmed}
    if confirmed:
        status["block_height"] = block_height if block_height is not None else 800000
    return Transaction.model_validate(
        {
            "txid": txid,
            "version": 2,
            "locktime": 0,
            "vin": [
                {
                    "txid": prev_txid,
                    "vout": prev_vout,
                    "is_coinbase": False,
                    "prevout": {"scriptpubkey_address": address, "value": value},
                }
                for prev_txid, prev_vout, address, value in (inputs or [])
            ],
            "vout": [
                {"scriptpubkey_address": address, "value": value}
                for address, value in (outputs or [])
            ],
            "status": status,
        }
    )


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(WebSocketTransport):
    """In-memory websocket: frames are fed by the test, sent messages recorded."""

    def __init__(
        self, url: str, fail: bool = False, hang: bool = False, open_delay: float = 0.0
    ) -> None:
        self.url = url
        self.fail = fail
        self.hang = hang
        self.open_delay = open_delay
        self.opened = False
        self.closed = False
        self.sent: list[dict[str, Any]] = []
        self.frames: asyncio.Queue[str | None] = asyncio.Queue()

    async def open(self) -> None:
        if self.hang:
            await asyncio.Event().wait()
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail:
            raise TransportError("connection refused")
        self.opened = True

    async def send(self, data: str) -> None:
        if self.closed:
            raise TransportError("closed")
        self.sent.append(json.loads(data))

    async def receive(self) -> str | None:
        return await self.frames.get()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.frames.put_nowait(None)

    def is_open(self) -> bool:
        return self.opened and not self.closed

    def feed(self, payload: dict[str, Any] | str) -> None:
        self.frames.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self.frames.put_nowait(None)


class TransportFactory:
    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.fail_next = 0
        self.hang = False
        self.open_delay = 0.0

    def __call__(self, url: str) -> FakeTransport:
        transport = FakeTransport(
            url, fail=self.fail_next > 0, hang=self.hang, open_delay=self.open_delay
        )
        if self.fail_next:
            self.fail_next -= 1
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


class FakeBacklog(BacklogFetcher):
    def __init__(self) -> None:
        self.history: dict[str, list[Transaction]] = {}
        self.calls: list[tuple[str, str | None, int | None]] = []
        self.before_return: dict[str, Callable[[], Awaitable[None]]] = {}
        self.errors: dict[str, Exception] = {}
        self.closed = False

    async def fetch(
        self,
        address: str,
        resume_txid: str | None = None,
        resume_height: int | None = None,
    ) -> list[Transaction]:
        self.calls.append((address, resume_txid, resume_height))
        hook = self.before_return.get(address)
        if hook is not None:
            await hook()
        if address in self.errors:
            raise self.errors.pop(address)
        return list(self.history.get(address, []))

    def fetched_addresses(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def close(self) -> None:
        self.closed = True


def address_frame(address: str, **kinds: list[Transaction]) -> dict[str, Any]:
    """Build a multi-address-transactions frame for one address."""
    return {
        "multi-address-transactions": {
            address: {
                kind: [tx.model_dump(mode="json") for tx in txs] for kind, txs in kinds.items()
            }
        }
    }


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transports() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def backlog() -> FakeBacklog:
    return FakeBacklog()


@pytest_asyncio.fixture
async def connection(
    transports: TransportFactory, clock: FakeClock
) -> AsyncGenerator[ConnectionManager]:
    manager = ConnectionManager(
        "wss://mempool.test/api/v1/ws",
        transport_factory=transports,
        connect_timeout=0.5,
        heartbeat_interval=3600.0,
        clock=clock,
    )
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def wallet(
    backlog: FakeBacklog, connection: ConnectionManager
) -> AsyncGenerator[WalletOrchestrator]:
    orchestrator = WalletOrchestrator(backlog, connection)
    yield orchestrator
    await orchestrator.close()
