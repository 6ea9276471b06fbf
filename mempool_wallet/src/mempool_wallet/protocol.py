"""
Live channel wire protocol for the mempool.space websocket API.

Outbound messages
=================
- ``{"track-addresses": [addr, ...]}`` replaces the full subscription set.
- ``{"action": "ping"}`` is the heartbeat ping.

Inbound frames
==============
Every inbound frame is a JSON object and is parsed into one of a closed set
of variants:

- ``Pong``: ``{"pong": true}``, the ack for a ping.
- ``AddressTransactions``: carries ``multi-address-transactions``, a mapping
  of address -> ``{"mempool": [...], "confirmed": [...], "removed": [...]}``.
- ``ServerError``: ``{"error": "..."}``.

Anything else raises ``MalformedFrame``.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from mempool_wallet.models import MempoolWalletError, Transaction

TRACK_ADDRESSES_KEY = "track-addresses"
MULTI_ADDRESS_TRANSACTIONS_KEY = "multi-address-transactions"

DEFAULT_MAX_FRAME_SIZE = 2097152  # 2MB
# frame -> multi-address-transactions -> address -> kind -> list -> tx -> vin -> input -> prevout
MAX_JSON_NESTING_DEPTH = 12


class MalformedFrame(MempoolWalletError):
    """Inbound frame that could not be parsed into a known message variant."""


class AddressTxEvent(str, Enum):
    MEMPOOL = "mempool"
    CONFIRMED = "confirmed"
    REMOVED = "removed"


@dataclass(frozen=True)
class Pong:
    pass


@dataclass(frozen=True)
class ServerError:
    message: str


@dataclass(frozen=True)
class AddressTransactions:
    """Per-address transaction events, in the order the server listed them."""

    events: dict[str, dict[AddressTxEvent, list[Transaction]]] = field(default_factory=dict)

    def iter_events(self) -> Iterator[tuple[AddressTxEvent, str, Transaction]]:
        """Yield (kind, address, tx) tuples, address by address then kind by kind."""
        for address, by_kind in self.events.items():
            for kind in AddressTxEvent:
                for tx in by_kind.get(kind, []):
                    yield kind, address, tx


InboundMessage = Pong | ServerError | AddressTransactions


def track_addresses_message(addresses: list[str]) -> dict[str, Any]:
    return {TRACK_ADDRESSES_KEY: list(addresses)}


def ping_message() -> dict[str, Any]:
    return {"action": "ping"}


def encode_message(message: dict[str, Any]) -> str:
    return json.dumps(message)


def validate_json_nesting_depth(obj: Any, max_depth: int = MAX_JSON_NESTING_DEPTH) -> None:
    """
    Validate that a decoded JSON value does not exceed a maximum nesting depth.

    Raises:
        MalformedFrame: If nesting depth exceeds max_depth
    """
    stack: list[tuple[Any, int]] = [(obj, 0)]
    while stack:
        value, depth = stack.pop()
        if depth > max_depth:
            raise MalformedFrame(f"JSON nesting depth exceeds maximum of {max_depth}")
        if isinstance(value, dict):
            stack.extend((v, depth + 1) for v in value.values())
        elif isinstance(value, list):
            stack.extend((v, depth + 1) for v in value)


def _parse_address_transactions(payload: Any) -> AddressTransactions:
    if not isinstance(payload, dict):
        raise MalformedFrame(f"{MULTI_ADDRESS_TRANSACTIONS_KEY} must be an object")

    events: dict[str, dict[AddressTxEvent, list[Transaction]]] = {}
    for address, by_kind in payload.items():
        if not isinstance(by_kind, dict):
            raise MalformedFrame(f"Events for {address} must be an object")
        parsed: dict[AddressTxEvent, list[Transaction]] = {}
        for kind in AddressTxEvent:
            raw_txs = by_kind.get(kind.value) or []
            if not isinstance(raw_txs, list):
                raise MalformedFrame(f"{kind.value} events for {address} must be a list")
            try:
                parsed[kind] = [Transaction.model_validate(tx) for tx in raw_txs]
            except ValidationError as e:
                raise MalformedFrame(f"Invalid {kind.value} transaction for {address}: {e}") from e
        events[address] = parsed
    return AddressTransactions(events=events)


def parse_frame(
    data: str | bytes,
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
    max_json_nesting_depth: int = MAX_JSON_NESTING_DEPTH,
) -> InboundMessage:
    """
    Parse an inbound websocket frame with security limits.

    Args:
        data: Raw frame payload
        max_frame_size: Maximum allowed frame size in bytes
        max_json_nesting_depth: Maximum JSON nesting depth

    Returns:
        The parsed message variant

    Raises:
        MalformedFrame: If the frame is oversize, not JSON, or of unknown shape
    """
    raw = data.encode("utf-8") if isinstance(data, str) else data
    if len(raw) > max_frame_size:
        raise MalformedFrame(f"Frame size {len(raw)} exceeds maximum of {max_frame_size} bytes")

    try:
        obj = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
        raise MalformedFrame(f"Invalid JSON frame: {e}") from e

    if not isinstance(obj, dict):
        raise MalformedFrame(f"Expected a JSON object, got {type(obj).__name__}")

    validate_json_nesting_depth(obj, max_json_nesting_depth)

    if MULTI_ADDRESS_TRANSACTIONS_KEY in obj:
        return _parse_address_transactions(obj[MULTI_ADDRESS_TRANSACTIONS_KEY])
    if "error" in obj:
        return ServerError(message=str(obj["error"]))
    if obj.get("pong") is True:
        return Pong()

    raise MalformedFrame(f"Unknown frame with keys: {sorted(obj)[:5]}")
