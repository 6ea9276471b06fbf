"""
Wallet orchestration: address ledgers, backlog resync and live event routing.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import Any

from loguru import logger

from mempool_wallet.backlog import BacklogError, BacklogFetcher, MempoolBacklogFetcher
from mempool_wallet.config import Settings, get_settings
from mempool_wallet.connection import ConnectionManager
from mempool_wallet.events import (
    AddressReadyEvent,
    EventKind,
    ObserverRegistry,
    TransactionEvent,
)
from mempool_wallet.ledger import AddressLedger
from mempool_wallet.models import AddressState, Balance, Transaction, Utxo, WalletState
from mempool_wallet.protocol import AddressTxEvent


def find_resume_point(transactions: list[Transaction]) -> tuple[str | None, int | None]:
    """
    Pick where an incremental backlog fetch can stop.

    Returns (txid, block_height - 1) of the highest confirmed transaction, or
    (None, None) when nothing is confirmed yet.
    """
    latest: Transaction | None = None
    for tx in transactions:
        height = tx.status.block_height
        if not tx.status.confirmed or height is None:
            continue
        if latest is None or height > (latest.status.block_height or 0):
            latest = tx
    if latest is None or latest.status.block_height is None:
        return None, None
    return latest.txid, latest.status.block_height - 1


class WalletOrchestrator:
    """
    Keeps one AddressLedger per tracked address in sync with the backlog and
    the live channel, and notifies observers of transaction events.

    Observer kinds (see ``EventKind``):
    - added / confirmed / removed / changed: ``TransactionEvent``
    - address_ready: ``AddressReadyEvent``
    - connected / disconnected: no arguments
    - error: the exception
    """

    def __init__(
        self,
        backlog: BacklogFetcher,
        connection: ConnectionManager,
        retry_delay: float | None = None,
    ) -> None:
        self.backlog = backlog
        self.connection = connection
        # addresses whose backlog fetch failed are retried on this cadence
        self.retry_delay = (
            retry_delay if retry_delay is not None else connection.heartbeat_interval
        )

        self._ledgers: dict[str, AddressLedger] = {}
        self._observers: ObserverRegistry[EventKind] = ObserverRegistry()

        self._resync_lock = asyncio.Lock()
        self._resync_task: asyncio.Task[None] | None = None
        self._resync_again = False
        # set when the last resync stopped early because the connection dropped
        self._interrupted = False
        self._retry_task: asyncio.Task[None] | None = None

        self._connection_subscriptions = [
            connection.subscribe(AddressTxEvent.MEMPOOL, self._on_live_unconfirmed),
            connection.subscribe(AddressTxEvent.CONFIRMED, self._on_live_confirmed),
            connection.subscribe(AddressTxEvent.REMOVED, self._on_live_removed),
            connection.subscribe(EventKind.CONNECTED, self._on_connected),
            connection.subscribe(EventKind.DISCONNECTED, self._on_disconnected),
            connection.subscribe(EventKind.ERROR, self._on_error),
        ]

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> WalletOrchestrator:
        settings = settings or get_settings()
        backlog = MempoolBacklogFetcher(settings.api_url, timeout=settings.request_timeout)
        connection = ConnectionManager(
            settings.ws_url,
            connect_timeout=settings.connect_timeout,
            heartbeat_interval=settings.heartbeat_interval,
            stale_timeout=settings.stale_timeout,
            max_frame_size=settings.max_frame_size,
        )
        return cls(backlog, connection)

    # -- observers -----------------------------------------------------------

    def subscribe(self, kind: EventKind | str, callback: Callable[..., None]) -> int:
        """Register a callback for an event kind; returns the subscription id."""
        return self._observers.subscribe(EventKind(kind), callback)

    def unsubscribe(self, subscription_id: int) -> bool:
        return self._observers.unsubscribe(subscription_id)

    def _emit(self, kind: EventKind, address: str, tx: Transaction) -> None:
        event = TransactionEvent(event=kind, address=address, tx=tx)
        self._observers.notify(kind, event)
        self._observers.notify(EventKind.CHANGED, event)

    def _ledger_callback(self, address: str) -> Callable[[EventKind, Transaction], None]:
        def on_change(kind: EventKind, tx: Transaction) -> None:
            self._emit(kind, address, tx)

        return on_change

    def _new_ledger(self, address: str) -> AddressLedger:
        return AddressLedger(address, on_change=self._ledger_callback(address))

    # -- connection lifecycle ------------------------------------------------

    async def connect(self) -> None:
        """Open the live channel and wait for the resync it triggers."""
        await self.connection.connect()
        task = self._resync_task
        if task is not None:
            await asyncio.shield(task)

    async def close(self) -> None:
        for subscription_id in self._connection_subscriptions:
            self.connection.unsubscribe(subscription_id)
        self._connection_subscriptions.clear()

        for task in (self._resync_task, self._retry_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._resync_task = None
        self._retry_task = None

        await self.connection.disconnect()
        await self.backlog.close()
        self._observers.clear()

    def _on_connected(self) -> None:
        self._observers.notify(EventKind.CONNECTED)
        if self._resync_task is not None and not self._resync_task.done():
            # coalesce reconnect storms into one rerun after the current loop
            self._resync_again = True
            return
        self._resync_task = asyncio.create_task(self._resync_on_connect())

    def _on_disconnected(self) -> None:
        self._observers.notify(EventKind.DISCONNECTED)

    def _on_error(self, error: Exception) -> None:
        self._observers.notify(EventKind.ERROR, error)

    async def _resync_on_connect(self) -> None:
        while True:
            self._resync_again = False
            if self._interrupted:
                targets = [a for a, ledger in self._ledgers.items() if ledger.loading]
            else:
                targets = list(self._ledgers)
            await self._resync(targets)
            if not self._resync_again or not self.connection.is_connected():
                return

    # -- live events ---------------------------------------------------------

    def _on_live_unconfirmed(self, address: str, tx: Transaction) -> None:
        ledger = self._ledgers.get(address)
        if ledger is not None:
            ledger.add_transaction(tx, live=True)

    def _on_live_confirmed(self, address: str, tx: Transaction) -> None:
        ledger = self._ledgers.get(address)
        if ledger is not None:
            ledger.add_transaction(tx, live=True)

    def _on_live_removed(self, address: str, tx: Transaction) -> None:
        ledger = self._ledgers.get(address)
        if ledger is not None:
            ledger.remove_transaction(tx.txid, live=True)

    # -- tracking ------------------------------------------------------------

    async def track_addresses(self, addresses: list[str]) -> None:
        """
        Start tracking addresses.

        Returns once every new address finished its first resync, or right
        away when offline (the next connect syncs them).
        """
        new_addresses = [a for a in dict.fromkeys(addresses) if a not in self._ledgers]
        if not new_addresses:
            return

        for address in new_addresses:
            self._ledgers[address] = self._new_ledger(address)
        logger.info(f"Tracking {len(new_addresses)} new addresses ({len(self._ledgers)} total)")

        if self.connection.is_connected():
            await self._resync(new_addresses)

    async def untrack_addresses(self, addresses: list[str]) -> None:
        removed = [a for a in addresses if self._ledgers.pop(a, None) is not None]
        if removed:
            logger.info(f"Untracked {len(removed)} addresses ({len(self._ledgers)} left)")
            await self.connection.track_addresses(list(self._ledgers))

    # -- state ---------------------------------------------------------------

    def get_address_state(self, address: str) -> AddressState | None:
        ledger = self._ledgers.get(address)
        if ledger is None:
            return None
        return ledger.get_state()

    def get_wallet_state(self) -> WalletState:
        addresses: dict[str, AddressState] = {}
        transactions: dict[str, Transaction] = {}
        balance = Balance()
        utxos: list[Utxo] = []

        for address, ledger in self._ledgers.items():
            state = ledger.get_state()
            addresses[address] = state
            balance = balance + state.balance
            for tx in state.transactions:
                transactions[tx.txid] = tx
            utxos.extend(state.utxos)

        return WalletState(
            balance=balance,
            transactions=list(transactions.values()),
            utxos=utxos,
            addresses=addresses,
            ready=all(state.ready for state in addresses.values()),
        )

    async def restore(self, snapshot: WalletState | dict[str, Any]) -> None:
        """Replace all ledgers with a snapshot, then resync to catch up."""
        if not isinstance(snapshot, WalletState):
            snapshot = WalletState.model_validate(snapshot)

        self._ledgers = {
            address: AddressLedger.from_snapshot(state, on_change=self._ledger_callback(address))
            for address, state in snapshot.addresses.items()
        }
        logger.info(f"Restored {len(self._ledgers)} addresses from snapshot")
        await self.resync()

    # -- resync --------------------------------------------------------------

    async def resync(self) -> None:
        """Reload the backlog of every tracked address."""
        await self._resync(list(self._ledgers))

    async def _resync(self, addresses: list[str]) -> None:
        # one loop at a time; concurrent callers wait their turn
        async with self._resync_lock:
            addresses = [a for a in addresses if a in self._ledgers]
            for address in addresses:
                self._ledgers[address].on_load_start()
            await self.connection.track_addresses(list(self._ledgers))

            logger.info(f"Resyncing {len(addresses)} addresses")
            self._interrupted = False
            failed = 0
            for index, address in enumerate(addresses):
                if not self.connection.is_connected():
                    logger.warning(
                        f"Connection lost, resync stopped with "
                        f"{len(addresses) - index} addresses pending"
                    )
                    self._interrupted = True
                    return

                ledger = self._ledgers.get(address)
                if ledger is None:
                    continue

                try:
                    await self._sync_address(address, ledger)
                except BacklogError as e:
                    logger.error(f"Resync of {address} failed, will retry: {e}")
                    self._observers.notify(EventKind.ERROR, e)
                    failed += 1

            if failed:
                logger.info(f"Resync complete, {failed} addresses left loading")
                self._schedule_retry()
            else:
                logger.info("Resync complete")

    def _schedule_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(self._retry_failed_addresses())

    async def _retry_failed_addresses(self) -> None:
        while True:
            await asyncio.sleep(self.retry_delay)
            loading = [a for a, ledger in self._ledgers.items() if ledger.loading]
            if not loading:
                return
            if not self.connection.is_connected():
                # the next connect resyncs them
                return
            logger.info(f"Retrying resync of {len(loading)} addresses")
            await self._resync(loading)

    async def _sync_address(self, address: str, ledger: AddressLedger) -> None:
        previous = ledger.get_state()
        resume_txid, resume_height = find_resume_point(previous.transactions)
        logger.debug(
            f"Fetching backlog for {address} (resume_txid={resume_txid}, "
            f"resume_height={resume_height})"
        )
        transactions = await self.backlog.fetch(address, resume_txid, resume_height)

        if self._ledgers.get(address) is not ledger:
            logger.debug(f"{address} was untracked during resync")
            return

        fetched = {tx.txid for tx in transactions}
        for known in previous.transactions:
            if known.txid in fetched:
                continue
            height = known.status.block_height
            if (
                resume_height is not None
                and known.status.confirmed
                and (height is None or height < resume_height)
            ):
                # below the refreshed window, not re-verified
                continue
            logger.info(f"Transaction {known.txid} vanished from the backlog of {address}")
            ledger.remove_transaction(known.txid)

        for tx in transactions:
            ledger.add_transaction(tx)

        state = ledger.on_load_end()
        logger.info(
            f"{address} ready: {len(state.transactions)} transactions, "
            f"balance {state.balance.total} sats"
        )
        self._observers.notify(EventKind.ADDRESS_READY, AddressReadyEvent(address, state))
