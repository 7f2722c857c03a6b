"""Capability set every chain family implements, and the values it exchanges.

Providers are independent classes that satisfy :class:`ChainProvider`
structurally; there is no shared base class.  Dispatch by chain family lives
in :mod:`chain_custody.providers`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from chain_custody.wallet.chains import Chain, ChainFamily
from chain_custody.wallet.keystore import KeyMaterial
from chain_custody.wallet.tokens import TokenInfo


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    DROPPED = "dropped"      # Solana: blockhash expired and signature unknown


class FeeOverrides(BaseModel):
    """Caller-supplied fee knobs.  Fields irrelevant to a chain are ignored."""

    gas_limit: Optional[int] = Field(None, gt=0)
    gas_price: Optional[int] = Field(None, ge=0)                 # legacy, wei
    max_fee_per_gas: Optional[int] = Field(None, ge=0)           # EIP-1559, wei
    max_priority_fee_per_gas: Optional[int] = Field(None, ge=0)  # EIP-1559, wei
    compute_unit_limit: Optional[int] = Field(None, gt=0)        # Solana
    compute_unit_price: Optional[int] = Field(None, ge=0)        # Solana, micro-lamports


@dataclass(frozen=True)
class FeeEstimate:
    """Fee parameters and the worst-case total in native smallest units.

    For EVM ``limit`` is gas and ``price`` the legacy gas price or the
    EIP-1559 max fee; for Solana ``limit`` is compute units and ``price`` is
    micro-lamports per unit.
    """

    limit: int
    price: int
    total: int
    eip1559: bool = False
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


@dataclass
class UnsignedTransfer:
    """A transfer built but not yet sequenced or signed."""

    chain: Chain
    sender: str
    recipient: str
    amount: int
    token: Optional[TokenInfo] = None
    fee: Optional[FeeEstimate] = None
    # EVM nonce, or the Solana blockhash string.
    sequence: Optional[Any] = None
    sequence_resolved_at: Optional[float] = None
    # Solana: last block height at which the blockhash is still accepted.
    last_valid_block_height: Optional[int] = None
    # Chain-specific payload: EVM call data, Solana instruction list.
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_token(self) -> bool:
        return self.token is not None


@dataclass(frozen=True)
class SignedTransaction:
    """Serialized signed transaction with its locally computed id."""

    chain: Chain
    tx_id: str
    raw: bytes
    sequence: Optional[Any] = None
    last_valid_block_height: Optional[int] = None

    def __repr__(self) -> str:
        return f"SignedTransaction({self.chain.tag}, tx_id={self.tx_id!r})"


@dataclass(frozen=True)
class SubmitResult:
    tx_id: str
    endpoint: str


class ChainProvider(Protocol):
    """Operations a chain family exposes to the transaction engine."""

    chain: Chain

    @property
    def family(self) -> ChainFamily: ...

    def derive_address(self, seed: bytes, derivation_index: int) -> str: ...

    def address_from_key(self, key: KeyMaterial) -> str: ...

    def validate_address(self, address: str) -> bool: ...

    async def build_transfer(
        self,
        sender: str,
        recipient: str,
        amount: int,
        token: Optional[str] = None,
    ) -> UnsignedTransfer: ...

    async def estimate_fee(
        self, unsigned: UnsignedTransfer, overrides: Optional[FeeOverrides] = None
    ) -> FeeEstimate: ...

    async def resolve_sequence(self, unsigned: UnsignedTransfer) -> UnsignedTransfer: ...

    def sign(self, unsigned: UnsignedTransfer, key: KeyMaterial) -> SignedTransaction: ...

    async def submit(self, signed: SignedTransaction) -> SubmitResult: ...

    async def query_balance(self, address: str, token: Optional[str] = None) -> int: ...

    async def get_status(self, signed: SignedTransaction) -> TxStatus: ...
