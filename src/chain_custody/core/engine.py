"""Transaction engine: validate, fund-check, sequence, sign, submit, track.

A transfer moves through ``built -> signed -> submitted`` and ends
``confirmed``, ``failed`` or ``ambiguous``.  Fetching the sequence number,
signing, submitting and any unknown-outcome polling happen under the
sending wallet's lock, so two transfers from one wallet never share a nonce.
A submission whose outcome is unknown is never resent: its status is polled
by the locally computed hash and, if still unknown, surfaced as
:class:`~chain_custody.errors.AmbiguousSubmission`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from chain_custody.config import EngineConfig
from chain_custody.core.locks import KeyedLocks
from chain_custody.errors import (
    AmbiguousSubmission,
    CustodyError,
    InsufficientFunds,
    SubmissionOutcomeUnknown,
    UnsupportedChain,
)
from chain_custody.providers.base import (
    ChainProvider,
    FeeEstimate,
    FeeOverrides,
    SignedTransaction,
    TxStatus,
    UnsignedTransfer,
)
from chain_custody.storage.database import TransactionStore
from chain_custody.storage.models import TransactionRecord, TxState, WalletRecord
from chain_custody.wallet.chains import get_chain
from chain_custody.wallet.keystore import KeyVault, wallet_binding
from chain_custody.wallet.tokens import format_units

logger = logging.getLogger("chain_custody.engine")


@dataclass
class TransferRequest:
    """One transfer out of a custodied wallet.  ``amount`` is in the smallest unit."""

    wallet: WalletRecord
    recipient: str
    amount: int
    token: Optional[str] = None
    fee_overrides: Optional[FeeOverrides] = None


@dataclass
class TransferOutcome:
    """Result for one recipient of a batch: a record, an error, or both."""

    recipient: str
    amount: int
    record: Optional[TransactionRecord] = None
    error: Optional[CustodyError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"recipient": self.recipient, "amount": str(self.amount)}
        if self.record is not None:
            body["id"] = self.record.id
            body["hash"] = self.record.tx_hash
            body["status"] = self.record.state.value
        if self.error is not None:
            body.update(self.error.to_dict())
        return body


class TransactionEngine:
    """Runs transfers end-to-end against the configured chain providers.

    Parameters
    ----------
    providers:
        Chain tag to provider.  A chain without a provider is not configured.
    vault:
        Decrypts wallet keys for the duration of one signature.
    store:
        Optional persistence; every state transition is saved through it.
    config:
        Polling budget and intervals.
    sleep:
        Awaitable used between polls, injectable for tests.
    """

    def __init__(
        self,
        providers: Mapping[str, ChainProvider],
        vault: KeyVault,
        store: Optional[TransactionStore] = None,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._providers = {get_chain(tag).tag: p for tag, p in providers.items()}
        self.vault = vault
        self.store = store
        self.config = config or EngineConfig()
        self._sleep = sleep
        self._locks = KeyedLocks()

    def provider(self, chain: str) -> ChainProvider:
        tag = get_chain(chain).tag
        if tag not in self._providers:
            raise UnsupportedChain(f"{tag} is not configured for this network")
        return self._providers[tag]

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    async def _persist(self, record: TransactionRecord) -> None:
        if self.store is not None:
            await self.store.save_transaction(record)

    async def _advance(self, record: TransactionRecord, state: TxState, **changes: Any) -> None:
        record.transition(state, **changes)
        await self._persist(record)

    async def _fail(self, record: TransactionRecord, reason: str) -> None:
        if not record.is_terminal:
            await self._advance(record, TxState.FAILED, error=reason)
        logger.info("Transfer %s failed: %s", record.id, reason)

    # ------------------------------------------------------------------
    # Fees and funds
    # ------------------------------------------------------------------

    async def estimate_fee(
        self, request: TransferRequest
    ) -> tuple[UnsignedTransfer, FeeEstimate]:
        provider = self.provider(request.wallet.chain)
        unsigned = await provider.build_transfer(
            request.wallet.address, request.recipient, request.amount, request.token
        )
        fee = await provider.estimate_fee(unsigned, request.fee_overrides)
        return unsigned, fee

    async def _check_funds(
        self,
        provider: ChainProvider,
        unsigned: UnsignedTransfer,
        overrides: Optional[FeeOverrides],
    ) -> FeeEstimate:
        chain = unsigned.chain
        if unsigned.token is not None:
            token = unsigned.token
            held = await provider.query_balance(unsigned.sender, token.address)
            if held < unsigned.amount:
                raise InsufficientFunds(
                    f"{token.symbol} balance {format_units(held, token.decimals)} is below "
                    f"{format_units(unsigned.amount, token.decimals)}"
                )

        fee = await provider.estimate_fee(unsigned, overrides)
        native = await provider.query_balance(unsigned.sender)
        required = fee.total if unsigned.token is not None else unsigned.amount + fee.total
        if native < required:
            raise InsufficientFunds(
                f"{chain.native_symbol} balance {format_units(native, chain.native_decimals)} "
                f"does not cover {format_units(required, chain.native_decimals)} "
                "including fees"
            )
        return fee

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def transfer(self, request: TransferRequest) -> TransactionRecord:
        """Execute one transfer and return its record.

        Validation errors (address, amount, token) are raised before any
        record exists.  Afterwards, a failure before submission leaves the
        record Failed and re-raises.  A record that came back Failed from
        status polling (reverted or dropped) is returned, not raised.

        Raises
        ------
        AmbiguousSubmission
            The submission outcome is still unknown after the poll budget.
        """
        wallet = request.wallet
        provider = self.provider(wallet.chain)
        unsigned = await provider.build_transfer(
            wallet.address, request.recipient, request.amount, request.token
        )

        record = TransactionRecord(
            wallet_id=wallet.id,
            chain=unsigned.chain.tag,
            from_address=unsigned.sender,
            to_address=unsigned.recipient,
            amount=unsigned.amount,
            token_address=unsigned.token.address if unsigned.token else None,
            token_symbol=unsigned.token.symbol if unsigned.token else None,
        )
        await self._persist(record)

        try:
            fee = await self._check_funds(provider, unsigned, request.fee_overrides)
            record.fee = fee.total

            # Nonces and blockhashes belong to the on-chain account, which
            # several wallet rows may share.
            lock = self._locks.get((unsigned.chain.tag, unsigned.sender))
            async with lock:
                await provider.resolve_sequence(unsigned)
                with self.vault.unsealed(
                    wallet.encrypted_private_key,
                    wallet.chain,
                    wallet_binding(wallet.chain, wallet.address),
                ) as key:
                    signed = provider.sign(unsigned, key)
                await self._advance(
                    record,
                    TxState.SIGNED,
                    tx_hash=signed.tx_id,
                    fee=unsigned.fee.total,
                    sequence=str(signed.sequence),
                    last_valid_block_height=signed.last_valid_block_height,
                )
                await self._submit(provider, record, signed)
        except asyncio.CancelledError:
            if record.state in (TxState.BUILT, TxState.SIGNED):
                await self._fail(record, "cancelled")
            raise
        except Exception as exc:
            if record.state in (TxState.BUILT, TxState.SIGNED):
                reason = exc.message if isinstance(exc, CustodyError) else str(exc)
                await self._fail(record, reason)
            raise

        if record.state is TxState.SUBMITTED and self.config.confirmation_polls:
            await self._await_confirmation(provider, record, signed)
        return record

    async def _submit(
        self, provider: ChainProvider, record: TransactionRecord, signed: SignedTransaction
    ) -> None:
        try:
            result = await provider.submit(signed)
        except SubmissionOutcomeUnknown as exc:
            logger.warning(
                "Submission of %s %s has unknown outcome (%s); polling status",
                record.chain, signed.tx_id, exc.detail,
            )
            await self._advance(record, TxState.SUBMITTED, endpoint=exc.url)
            await self._resolve_unknown(provider, record, signed)
            return

        await self._advance(record, TxState.SUBMITTED, endpoint=result.endpoint)
        logger.info("Transfer %s submitted: %s %s", record.id, record.chain, signed.tx_id)

    async def _poll_status(
        self, provider: ChainProvider, signed: SignedTransaction
    ) -> Optional[TxStatus]:
        try:
            return await asyncio.wait_for(
                provider.get_status(signed), timeout=self.config.status_poll_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Status query for %s timed out", signed.tx_id)
        except CustodyError as exc:
            logger.warning("Status query for %s failed: %s", signed.tx_id, exc.message)
        return None

    async def _apply_status(self, record: TransactionRecord, status: Optional[TxStatus]) -> bool:
        """Record a decisive status; return whether polling can stop."""
        if status is TxStatus.CONFIRMED:
            await self._advance(record, TxState.CONFIRMED, error=None)
            logger.info("Transfer %s confirmed: %s", record.id, record.tx_hash)
            return True
        if status is TxStatus.FAILED:
            await self._fail(record, "transaction failed on chain")
            return True
        if status is TxStatus.DROPPED:
            await self._fail(record, "dropped: blockhash expired before inclusion")
            return True
        return False

    async def _resolve_unknown(
        self, provider: ChainProvider, record: TransactionRecord, signed: SignedTransaction
    ) -> None:
        for _ in range(self.config.status_poll_attempts):
            await self._sleep(self.config.status_poll_interval)
            status = await self._poll_status(provider, signed)
            if await self._apply_status(record, status):
                return
            if status is TxStatus.PENDING:
                return

        await self._advance(
            record,
            TxState.AMBIGUOUS,
            error="submission outcome unknown after status polling",
        )
        logger.error(
            "Transfer %s is ambiguous: %s %s not found after %d status polls",
            record.id, record.chain, signed.tx_id, self.config.status_poll_attempts,
        )
        raise AmbiguousSubmission(
            f"Outcome of {record.chain} transaction {signed.tx_id} is unknown; "
            "do not resend before reconciling",
            record,
        )

    async def _await_confirmation(
        self, provider: ChainProvider, record: TransactionRecord, signed: SignedTransaction
    ) -> None:
        for _ in range(self.config.confirmation_polls):
            await self._sleep(self.config.status_poll_interval)
            if await self._apply_status(record, await self._poll_status(provider, signed)):
                return

    async def batch_transfer(self, requests: Iterable[TransferRequest]) -> list[TransferOutcome]:
        """Run each transfer independently; one outcome per request, in order."""
        outcomes: list[TransferOutcome] = []
        for request in requests:
            outcome = TransferOutcome(recipient=request.recipient, amount=request.amount)
            try:
                outcome.record = await self.transfer(request)
            except AmbiguousSubmission as exc:
                outcome.record = exc.record
                outcome.error = exc
            except CustodyError as exc:
                outcome.error = exc
            outcomes.append(outcome)
        failed = sum(1 for o in outcomes if not o.ok)
        logger.info("Batch finished: %d transfer(s), %d failed", len(outcomes), failed)
        return outcomes

    async def refresh(self, record: TransactionRecord) -> TransactionRecord:
        """Re-check a Submitted or Ambiguous record against the chain."""
        if record.state not in (TxState.SUBMITTED, TxState.AMBIGUOUS) or not record.tx_hash:
            return record

        provider = self.provider(record.chain)
        signed = SignedTransaction(
            chain=get_chain(record.chain),
            tx_id=record.tx_hash,
            raw=b"",
            sequence=record.sequence,
            last_valid_block_height=record.last_valid_block_height,
        )
        status = await provider.get_status(signed)
        if await self._apply_status(record, status):
            return record
        if status is TxStatus.PENDING and record.state is TxState.AMBIGUOUS:
            await self._advance(record, TxState.SUBMITTED, error=None)
        return record
