"""Custody storage layer -- async SQLite database and Pydantic models."""

from chain_custody.storage.database import (
    Database,
    SQLiteTransactionStore,
    SQLiteWalletStore,
    TransactionStore,
    WalletStore,
    get_database,
)
from chain_custody.storage.models import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    TransactionRecord,
    TxState,
    WalletRecord,
)

__all__ = [
    "Database",
    "SQLiteTransactionStore",
    "SQLiteWalletStore",
    "TransactionStore",
    "WalletStore",
    "get_database",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "TransactionRecord",
    "TxState",
    "WalletRecord",
]
