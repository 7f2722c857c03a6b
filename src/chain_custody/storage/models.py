"""Pydantic models mapping to the custody database tables."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TxState(str, Enum):
    BUILT = "built"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"


VALID_TRANSITIONS: dict[TxState, frozenset[TxState]] = {
    TxState.BUILT: frozenset({TxState.SIGNED, TxState.FAILED}),
    TxState.SIGNED: frozenset({TxState.SUBMITTED, TxState.FAILED}),
    TxState.SUBMITTED: frozenset({TxState.CONFIRMED, TxState.FAILED, TxState.AMBIGUOUS}),
    TxState.AMBIGUOUS: frozenset({TxState.SUBMITTED, TxState.CONFIRMED, TxState.FAILED}),
    TxState.CONFIRMED: frozenset(),
    TxState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({TxState.CONFIRMED, TxState.FAILED})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    """Generate a short hex ID (12 characters)."""
    return uuid.uuid4().hex[:12]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class WalletRecord(BaseModel):
    """Maps to the ``wallets`` table.

    ``encrypted_private_key`` is the hex blob ``nonce || ciphertext || tag``;
    plaintext key material never reaches this model.
    """

    id: str = Field(default_factory=_new_id)
    user_id: str
    chain: str
    address: str
    encrypted_private_key: str = Field(repr=False)
    derivation_index: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def new_id(cls) -> str:
        return _new_id()

    def public_view(self) -> dict[str, Any]:
        """Everything but the encrypted key, for API responses."""
        return self.model_dump(mode="json", exclude={"encrypted_private_key"})


class TransactionRecord(BaseModel):
    """Maps to the ``transactions`` table.

    One record per transfer attempt.  ``amount`` is the integer amount in the
    smallest unit; it is stored as decimal text because SQLite integers
    cannot hold every uint256.
    """

    id: str = Field(default_factory=_new_id)
    wallet_id: Optional[str] = None
    chain: str
    from_address: str
    to_address: str
    amount: int
    token_address: Optional[str] = None
    token_symbol: Optional[str] = None
    state: TxState = TxState.BUILT
    tx_hash: Optional[str] = None
    endpoint: Optional[str] = None
    error: Optional[str] = None
    sequence: Optional[str] = None   # EVM nonce or Solana blockhash
    last_valid_block_height: Optional[int] = None   # Solana only
    fee: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def new_id(cls) -> str:
        return _new_id()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: TxState, **changes: Any) -> None:
        """Move to *new_state*, applying any field *changes* alongside.

        Raises ``ValueError`` for a transition the state machine forbids,
        including any change to a Confirmed or Failed record.
        """
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise ValueError(
                f"Transaction {self.id}: illegal transition "
                f"{self.state.value} -> {new_state.value}"
            )
        for key, value in changes.items():
            setattr(self, key, value)
        self.state = new_state
        self.updated_at = _utcnow()
