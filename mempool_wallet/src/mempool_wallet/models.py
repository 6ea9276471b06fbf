"""
Data models using Pydantic for validation and serialization.

Transaction shapes follow the esplora/mempool.space REST and websocket
payloads. Unknown fields are kept so snapshots round-trip the full payload.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class MempoolWalletError(Exception):
    """Base class for errors raised by mempool_wallet."""


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"


class TxOutput(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    scriptpubkey_address: str | None = None
    # None when the backend omits it; such outputs never count towards a balance
    value: int | None = None


class TxInput(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    txid: str
    vout: int
    prevout: TxOutput | None = None
    is_coinbase: bool = False

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


class TxStatus(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    confirmed: bool = False
    block_height: int | None = None
    block_hash: str | None = None
    block_time: int | None = None


class Transaction(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    txid: str = Field(..., min_length=1)
    vin: list[TxInput] = Field(default_factory=list)
    vout: list[TxOutput] = Field(default_factory=list)
    status: TxStatus = Field(default_factory=TxStatus)

    @property
    def confirmed(self) -> bool:
        return self.status.confirmed


class Utxo(BaseModel):
    model_config = ConfigDict(frozen=True)

    txid: str
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    confirmed: bool

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


class Balance(BaseModel):
    """Satoshi balance split by confirmation status.

    Invariant: total == confirmed + mempool.
    """

    total: int = 0
    confirmed: int = 0
    mempool: int = 0

    def credit(self, value: int, confirmed: bool) -> None:
        if confirmed:
            self.confirmed += value
        else:
            self.mempool += value
        self.total += value

    def debit(self, value: int, confirmed: bool) -> None:
        self.credit(-value, confirmed)

    def __add__(self, other: Balance) -> Balance:
        return Balance(
            total=self.total + other.total,
            confirmed=self.confirmed + other.confirmed,
            mempool=self.mempool + other.mempool,
        )


class AddressState(BaseModel):
    address: str
    ready: bool = False
    transactions: list[Transaction] = Field(default_factory=list)
    balance: Balance = Field(default_factory=Balance)
    utxos: list[Utxo] = Field(default_factory=list)


class WalletState(BaseModel):
    balance: Balance = Field(default_factory=Balance)
    transactions: list[Transaction] = Field(default_factory=list)
    utxos: list[Utxo] = Field(default_factory=list)
    addresses: dict[str, AddressState] = Field(default_factory=dict)
    ready: bool = True
