"""
Observer registry and wallet event payloads.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Hashable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from loguru import logger

from mempool_wallet.models import AddressState, Transaction

K = TypeVar("K", bound=Hashable)


class EventKind(str, Enum):
    ADDED = "added"
    CONFIRMED = "confirmed"
    REMOVED = "removed"
    # catch-all for added/confirmed/removed
    CHANGED = "changed"
    ADDRESS_READY = "address_ready"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class TransactionEvent:
    event: EventKind
    address: str
    tx: Transaction


@dataclass(frozen=True)
class AddressReadyEvent:
    address: str
    state: AddressState


class ObserverRegistry(Generic[K]):
    """
    Multiple callbacks per event kind, each keyed by an opaque subscription id.

    Callbacks run synchronously in subscription order. Unsubscribing from
    inside a callback takes effect immediately, including for the
    notification currently being delivered.
    """

    def __init__(self, ids: Iterator[int] | None = None) -> None:
        # registries sharing an id source never hand out the same id
        self.ids = ids if ids is not None else itertools.count(1)
        self._observers: dict[K, dict[int, Callable[..., None]]] = {}
        self._kind_by_id: dict[int, K] = {}

    def subscribe(self, kind: K, callback: Callable[..., None]) -> int:
        subscription_id = next(self.ids)
        self._observers.setdefault(kind, {})[subscription_id] = callback
        self._kind_by_id[subscription_id] = kind
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> bool:
        kind = self._kind_by_id.pop(subscription_id, None)
        if kind is None:
            return False
        del self._observers[kind][subscription_id]
        return True

    def count(self, kind: K) -> int:
        return len(self._observers.get(kind, {}))

    def clear(self) -> None:
        self._observers.clear()
        self._kind_by_id.clear()

    def notify(self, kind: K, *args: Any) -> None:
        observers = self._observers.get(kind)
        if not observers:
            return
        for subscription_id, callback in list(observers.items()):
            if subscription_id not in observers:
                continue
            try:
                callback(*args)
            except Exception as e:
                logger.exception(f"Observer {subscription_id} for {kind} failed: {e}")
