"""
mempool_wallet - Address watching wallet for mempool.space style backends

Reconciles the REST transaction backlog and the live websocket channel into
a per-address transaction, UTXO and balance ledger.
"""

__version__ = "0.1.0"

from mempool_wallet.backlog import BacklogError, BacklogFetcher, MempoolBacklogFetcher
from mempool_wallet.config import Settings, get_settings
from mempool_wallet.connection import ConnectionManager, ConnectionState
from mempool_wallet.events import (
    AddressReadyEvent,
    EventKind,
    ObserverRegistry,
    TransactionEvent,
)
from mempool_wallet.ledger import AddressLedger
from mempool_wallet.models import (
    AddressState,
    Balance,
    MempoolWalletError,
    NetworkType,
    Transaction,
    TxInput,
    TxOutput,
    TxStatus,
    Utxo,
    WalletState,
)
from mempool_wallet.network import AiohttpWebSocketTransport, TransportError, WebSocketTransport
from mempool_wallet.protocol import AddressTxEvent, MalformedFrame
from mempool_wallet.wallet import WalletOrchestrator

__all__ = [
    "AddressLedger",
    "AddressReadyEvent",
    "AddressState",
    "AddressTxEvent",
    "AiohttpWebSocketTransport",
    "BacklogError",
    "BacklogFetcher",
    "Balance",
    "ConnectionManager",
    "ConnectionState",
    "EventKind",
    "MalformedFrame",
    "MempoolBacklogFetcher",
    "MempoolWalletError",
    "NetworkType",
    "ObserverRegistry",
    "Settings",
    "Transaction",
    "TransactionEvent",
    "TransportError",
    "TxInput",
    "TxOutput",
    "TxStatus",
    "Utxo",
    "WalletOrchestrator",
    "WalletState",
    "WebSocketTransport",
    "get_settings",
]
