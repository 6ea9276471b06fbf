"""
Per-address transaction and UTXO accounting.

The ledger is driven by idempotent "add" and "remove" transaction events
coming from two sources: the REST backlog and the live websocket channel.
Events may arrive duplicated or out of order; the ledger never double-counts
an output regardless of delivery order.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from mempool_wallet.events import EventKind
from mempool_wallet.models import AddressState, Balance, Transaction, TxInput, TxOutput, Utxo


@dataclass(frozen=True)
class PendingEvent:
    """Live event withheld while the backlog is loading."""

    action: Literal["add", "remove"]
    txid: str
    tx: Transaction | None = None


class AddressLedger:
    """
    Transaction, UTXO and balance state for a single address.

    While ``loading`` is set, live events are queued and only applied once
    the backlog has been processed (``on_load_end``).

    ``on_change`` is called with ``(EventKind, tx)`` whenever an applied event
    adds a transaction, confirms it, or removes it. Buffered live events are
    reported when they are drained, not when they arrive.
    """

    def __init__(
        self,
        address: str,
        on_change: Callable[[EventKind, Transaction], None] | None = None,
    ) -> None:
        self.address = address
        self.on_change = on_change
        self.transactions: dict[str, Transaction] = {}
        self.utxos: dict[str, Utxo] = {}
        # outpoints seen spent before the transaction creating them
        self.spent: set[str] = set()
        self.balance = Balance()
        self.loading = True
        self.pending: deque[PendingEvent] = deque()

    @classmethod
    def from_snapshot(
        cls,
        state: AddressState,
        on_change: Callable[[EventKind, Transaction], None] | None = None,
    ) -> AddressLedger:
        """Rehydrate a ledger from a snapshot, trusting it verbatim."""
        ledger = cls(state.address, on_change=on_change)
        for tx in state.transactions:
            ledger.transactions[tx.txid] = tx
        for utxo in state.utxos:
            ledger.utxos[utxo.outpoint] = utxo
        ledger.balance = state.balance.model_copy()
        return ledger

    def get_state(self) -> AddressState:
        return AddressState(
            address=self.address,
            ready=not self.loading,
            transactions=list(self.transactions.values()),
            balance=self.balance.model_copy(),
            utxos=list(self.utxos.values()),
        )

    def has_transaction(self, txid: str) -> bool:
        return txid in self.transactions

    def get_transaction(self, txid: str) -> Transaction | None:
        return self.transactions.get(txid)

    def _notify(self, kind: EventKind, tx: Transaction) -> None:
        if self.on_change is not None:
            self.on_change(kind, tx)

    def _owned_value(self, output: TxOutput | None) -> int | None:
        """Value of an output paying this address, or None if it does not (or is malformed)."""
        if output is None or output.scriptpubkey_address != self.address:
            return None
        if output.value is None or output.value < 0:
            return None
        return output.value

    def _owned_inputs(self, tx: Transaction) -> list[tuple[TxInput, int]]:
        owned = []
        for vin in tx.vin:
            value = self._owned_value(vin.prevout)
            if value is not None:
                owned.append((vin, value))
        return owned

    def add_transaction(self, tx: Transaction, live: bool = False) -> None:
        """
        Apply the effect of a transaction.

        Idempotent: a transaction that is already known is undone first, so
        the most recently applied version (and confirmation status) wins.

        Notifies ``added`` for a new txid and ``confirmed`` when a stored
        unconfirmed version becomes confirmed. A live confirmed event for a
        new txid is reported as both; a backlog entry only as ``added``.
        """
        if self.loading and live:
            self.pending.append(PendingEvent(action="add", txid=tx.txid, tx=tx))
            return
        self._apply(tx, live)

    def remove_transaction(self, txid: str, live: bool = False) -> None:
        """Undo the effect of a previously added transaction, notifying ``removed``."""
        if self.loading and live:
            self.pending.append(PendingEvent(action="remove", txid=txid))
            return
        tx = self._undo(txid)
        if tx is not None:
            self._notify(EventKind.REMOVED, tx)

    def _apply(self, tx: Transaction, live: bool) -> None:
        previous = self._undo(tx.txid)

        for vin, _value in self._owned_inputs(tx):
            key = vin.outpoint
            utxo = self.utxos.pop(key, None)
            if utxo is not None:
                self.balance.debit(utxo.value, utxo.confirmed)
            else:
                self.spent.add(key)

        for index, vout in enumerate(tx.vout):
            value = self._owned_value(vout)
            if value is None:
                continue
            key = f"{tx.txid}:{index}"
            if key in self.spent:
                self.spent.discard(key)
                continue
            self.utxos[key] = Utxo(
                txid=tx.txid, vout=index, value=value, confirmed=tx.status.confirmed
            )
            self.balance.credit(value, tx.status.confirmed)

        self.transactions[tx.txid] = tx

        if previous is None:
            self._notify(EventKind.ADDED, tx)
            if live and tx.confirmed:
                self._notify(EventKind.CONFIRMED, tx)
        elif tx.confirmed and not previous.confirmed:
            self._notify(EventKind.CONFIRMED, tx)

    def _undo(self, txid: str) -> Transaction | None:
        tx = self.transactions.pop(txid, None)
        if tx is None:
            return None

        for vin, value in self._owned_inputs(tx):
            key = vin.outpoint
            prev_tx = self.transactions.get(vin.txid)
            if prev_tx is not None:
                self.utxos[key] = Utxo(
                    txid=vin.txid, vout=vin.vout, value=value, confirmed=prev_tx.status.confirmed
                )
                self.balance.credit(value, prev_tx.status.confirmed)
            self.spent.discard(key)

        for index, vout in enumerate(tx.vout):
            if self._owned_value(vout) is None:
                continue
            key = f"{tx.txid}:{index}"
            utxo = self.utxos.pop(key, None)
            if utxo is not None:
                self.balance.debit(utxo.value, utxo.confirmed)
            else:
                # already spent downstream; keep a later re-add from re-crediting it
                self.spent.add(key)
        return tx

    def on_load_start(self) -> None:
        self.loading = True

    def on_load_end(self) -> AddressState:
        """Mark the backlog as loaded and drain withheld live events in arrival order."""
        self.loading = False
        drained = len(self.pending)
        while self.pending:
            event = self.pending.popleft()
            if event.action == "remove":
                self.remove_transaction(event.txid)
            elif event.tx is not None:
                self._apply(event.tx, live=True)
        if drained:
            logger.debug(f"Applied {drained} buffered live events for {self.address}")
        self.verify_balance()
        return self.get_state()

    def verify_balance(self) -> bool:
        """Check the balance invariants; a failure means a reconciliation bug."""
        utxo_total = sum(utxo.value for utxo in self.utxos.values())
        ok = (
            self.balance.total == self.balance.confirmed + self.balance.mempool
            and utxo_total == self.balance.total
            and all(utxo.value >= 0 for utxo in self.utxos.values())
        )
        if not ok:
            logger.error(
                f"Balance invariant violated for {self.address}: balance={self.balance}, "
                f"utxo_total={utxo_total}"
            )
        return ok
