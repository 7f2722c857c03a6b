"""Async SQLite database layer for the custody core.

Uses ``aiosqlite`` for non-blocking database access with WAL mode and
dictionary-style row results.  :class:`WalletStore` and
:class:`TransactionStore` are the seams the service depends on, so another
relational backend can be substituted.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional, Protocol

import aiosqlite

from chain_custody.storage.models import TransactionRecord, WalletRecord


class Database:
    """Thin async wrapper around an SQLite database.

    Parameters
    ----------
    db_path:
        Filesystem path to the SQLite database file.  The file (and any
        intermediate directories) will be created automatically on
        :meth:`connect` if they do not already exist.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database connection, enable WAL mode, and run migrations."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA foreign_keys=ON;")
        await self._migrate()

    async def close(self) -> None:
        """Close the database connection gracefully."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement and commit."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        """Execute a query and return the first row as a dict, or ``None``."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a query and return all rows as a list of dicts."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def _migrate(self) -> None:
        """Create all required tables if they do not already exist."""
        assert self._conn is not None

        await self._conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS wallets (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                chain TEXT NOT NULL CHECK (chain IN ('ETH', 'BSC', 'SOLANA')),
                address TEXT NOT NULL,
                encrypted_private_key TEXT NOT NULL,
                derivation_index INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_wallets_user_chain
                ON wallets (user_id, chain);
            CREATE INDEX IF NOT EXISTS idx_wallets_address
                ON wallets (address);

            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                wallet_id TEXT,
                chain TEXT NOT NULL,
                from_address TEXT NOT NULL,
                to_address TEXT NOT NULL,
                amount TEXT NOT NULL,
                token_address TEXT,
                token_symbol TEXT,
                state TEXT NOT NULL DEFAULT 'built',
                tx_hash TEXT,
                endpoint TEXT,
                error TEXT,
                sequence TEXT,
                last_valid_block_height INTEGER,
                fee TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (wallet_id) REFERENCES wallets(id)
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_wallet
                ON transactions (wallet_id);
            CREATE INDEX IF NOT EXISTS idx_transactions_hash
                ON transactions (tx_hash);
            """
        )
        await self._conn.commit()


# ---------------------------------------------------------------------------
# Store protocols
# ---------------------------------------------------------------------------


class WalletStore(Protocol):
    async def add_wallet(self, record: WalletRecord) -> None: ...

    async def get_wallet(self, wallet_id: str) -> Optional[WalletRecord]: ...

    async def list_wallets(
        self, user_id: str, chain: Optional[str] = None
    ) -> list[WalletRecord]: ...


class TransactionStore(Protocol):
    async def save_transaction(self, record: TransactionRecord) -> None: ...

    async def get_transaction(self, tx_id: str) -> Optional[TransactionRecord]: ...


# ---------------------------------------------------------------------------
# SQLite implementations
# ---------------------------------------------------------------------------


class SQLiteWalletStore:
    """Wallet rows.  Wallets are never updated once inserted."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def add_wallet(self, record: WalletRecord) -> None:
        await self.db.execute(
            "INSERT INTO wallets "
            "(id, user_id, chain, address, encrypted_private_key, derivation_index, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.user_id,
                record.chain,
                record.address,
                record.encrypted_private_key,
                record.derivation_index,
                record.created_at.isoformat(),
            ),
        )

    async def get_wallet(self, wallet_id: str) -> Optional[WalletRecord]:
        row = await self.db.fetch_one("SELECT * FROM wallets WHERE id = ?", (wallet_id,))
        return WalletRecord.model_validate(row) if row else None

    async def list_wallets(
        self, user_id: str, chain: Optional[str] = None
    ) -> list[WalletRecord]:
        if chain:
            rows = await self.db.fetch_all(
                "SELECT * FROM wallets WHERE user_id = ? AND chain = ? "
                "ORDER BY derivation_index, created_at",
                (user_id, chain),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM wallets WHERE user_id = ? ORDER BY chain, derivation_index, created_at",
                (user_id,),
            )
        return [WalletRecord.model_validate(r) for r in rows]

    async def find_by_address(self, chain: str, address: str) -> Optional[WalletRecord]:
        row = await self.db.fetch_one(
            "SELECT * FROM wallets WHERE chain = ? AND address = ?", (chain, address)
        )
        return WalletRecord.model_validate(row) if row else None


class SQLiteTransactionStore:
    """Upserts one row per transfer attempt on every state transition."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def save_transaction(self, record: TransactionRecord) -> None:
        await self.db.execute(
            "INSERT INTO transactions "
            "(id, wallet_id, chain, from_address, to_address, amount, token_address, "
            "token_symbol, state, tx_hash, endpoint, error, sequence, last_valid_block_height, "
            "fee, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET "
            "state = excluded.state, tx_hash = excluded.tx_hash, "
            "endpoint = excluded.endpoint, error = excluded.error, "
            "sequence = excluded.sequence, "
            "last_valid_block_height = excluded.last_valid_block_height, "
            "fee = excluded.fee, "
            "updated_at = excluded.updated_at",
            (
                record.id,
                record.wallet_id,
                record.chain,
                record.from_address,
                record.to_address,
                str(record.amount),
                record.token_address,
                record.token_symbol,
                record.state.value,
                record.tx_hash,
                record.endpoint,
                record.error,
                record.sequence,
                record.last_valid_block_height,
                None if record.fee is None else str(record.fee),
                record.created_at.isoformat(),
                record.updated_at.isoformat(),
            ),
        )

    async def get_transaction(self, tx_id: str) -> Optional[TransactionRecord]:
        row = await self.db.fetch_one("SELECT * FROM transactions WHERE id = ?", (tx_id,))
        return TransactionRecord.model_validate(row) if row else None

    async def list_for_wallet(self, wallet_id: str) -> list[TransactionRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM transactions WHERE wallet_id = ? ORDER BY created_at DESC",
            (wallet_id,),
        )
        return [TransactionRecord.model_validate(r) for r in rows]


def get_database(path: "str | Path") -> Database:
    """Return a :class:`Database` for *path*; call :meth:`Database.connect` before use."""
    return Database(Path(path))
