"""Solana chain provider.

Messages and signatures come from ``solders``; SPL Token instructions from
``spl.token`` (the ``solana`` distribution).  JSON-RPC traffic goes through
the failover manager rather than ``solana.rpc`` clients so every call shares
the same endpoint health tracking.
"""

from __future__ import annotations

import base64
import logging
import statistics
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Optional

import base58
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from chain_custody.config import EngineConfig
from chain_custody.errors import (
    InsufficientFunds,
    InvalidAddress,
    InvalidAmount,
    JsonRpcError,
    ProviderUnavailable,
    TransactionRejected,
)
from chain_custody.providers.base import (
    FeeEstimate,
    FeeOverrides,
    SignedTransaction,
    SubmitResult,
    TxStatus,
    UnsignedTransfer,
)
from chain_custody.providers.evm import check_amount
from chain_custody.rpc.manager import RpcFailoverManager
from chain_custody.wallet.chains import Chain, ChainFamily, NetworkMode
from chain_custody.wallet.derivation import derive_private_key
from chain_custody.wallet.keystore import KeyMaterial
from chain_custody.wallet.tokens import TokenRegistry

logger = logging.getLogger("chain_custody.providers.solana")

LAMPORTS_PER_SIGNATURE = 5_000
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000
TOKEN_ACCOUNT_SIZE = 165
MAX_U64 = 2**64 - 1

_COMMITMENT = {"commitment": "confirmed"}
_ALREADY_PROCESSED = ("already been processed", "alreadyprocessed")
_INSUFFICIENT = ("insufficient funds", "insufficient lamports", "insufficientfundsforfee")
# Blockhashes whose issued signatures are remembered.
_ISSUED_BLOCKHASHES = 32


def _priority(price: int, limit: int) -> int:
    """Priority fee in lamports, rounded up."""
    return -(-price * limit // MICRO_LAMPORTS_PER_LAMPORT)


def _value(result: Any) -> Any:
    """Unwrap the ``{"context": ..., "value": ...}`` envelope."""
    if isinstance(result, dict) and "value" in result:
        return result["value"]
    return result


class SolanaProvider:
    """Solana provider.

    Sequencing is a recent blockhash rather than a nonce.  Blockhashes are
    cached per provider and refreshed once older than
    ``EngineConfig.solana_blockhash_ttl`` seconds; a signed transaction
    remembers the blockhash's last valid block height so a lost submission
    can be recognised as dropped.
    """

    family = ChainFamily.SOLANA

    def __init__(
        self,
        chain: Chain,
        rpc: RpcFailoverManager,
        tokens: TokenRegistry,
        network: NetworkMode = NetworkMode.MAINNET,
        engine: Optional[EngineConfig] = None,
        clock=time.monotonic,
    ) -> None:
        if chain.family is not ChainFamily.SOLANA:
            raise ValueError(f"{chain.tag} is not a Solana chain")
        self.chain = chain
        self.rpc = rpc
        self.tokens = tokens
        self.network = network
        self.engine = engine or EngineConfig()
        self._clock = clock
        self._blockhash: Optional[tuple[str, int, float]] = None
        self._issued: "OrderedDict[str, set[str]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def derive_address(self, seed: bytes, derivation_index: int) -> str:
        key = derive_private_key(seed, ChainFamily.SOLANA, derivation_index)
        return str(Keypair.from_seed(key).pubkey())

    def address_from_key(self, key: KeyMaterial) -> str:
        return str(Keypair.from_seed(key.secret).pubkey())

    def validate_address(self, address: str) -> bool:
        """Base58 text decoding to exactly 32 bytes."""
        if not isinstance(address, str) or not 32 <= len(address) <= 44:
            return False
        try:
            return len(base58.b58decode(address)) == 32
        except ValueError:
            return False

    def _require_pubkey(self, address: str) -> Pubkey:
        if not self.validate_address(address):
            raise InvalidAddress(f"Invalid {self.chain.tag} address: {address!r}")
        return Pubkey.from_string(address)

    # ------------------------------------------------------------------
    # Building and fees
    # ------------------------------------------------------------------

    async def _account_exists(self, address: Pubkey) -> bool:
        info = await self._read("getAccountInfo", [str(address), {"encoding": "base64", **_COMMITMENT}])
        return _value(info) is not None

    async def build_transfer(
        self,
        sender: str,
        recipient: str,
        amount: int,
        token: Optional[str] = None,
    ) -> UnsignedTransfer:
        owner = self._require_pubkey(sender)
        dest = self._require_pubkey(recipient)
        check_amount(amount)
        if amount > MAX_U64:
            raise InvalidAmount("Amount exceeds the u64 range Solana supports")

        payload: dict[str, Any] = {"creates_token_account": False}
        if not token:
            info = None
            payload["instructions"] = [
                transfer(TransferParams(from_pubkey=owner, to_pubkey=dest, lamports=amount))
            ]
        else:
            info = self.tokens.resolve(self.chain.tag, token)
            mint = Pubkey.from_string(info.address)
            source_ata = get_associated_token_address(owner, mint)
            dest_ata = get_associated_token_address(dest, mint)

            instructions = []
            if not await self._account_exists(dest_ata):
                instructions.append(create_idempotent_associated_token_account(owner, dest, mint))
                payload["creates_token_account"] = True
            instructions.append(
                transfer_checked(
                    TransferCheckedParams(
                        program_id=TOKEN_PROGRAM_ID,
                        source=source_ata,
                        mint=mint,
                        dest=dest_ata,
                        owner=owner,
                        amount=amount,
                        decimals=info.decimals,
                    )
                )
            )
            payload["instructions"] = instructions
            payload["writable"] = [str(source_ata), str(dest_ata)]

        return UnsignedTransfer(
            chain=self.chain,
            sender=str(owner),
            recipient=str(dest),
            amount=amount,
            token=info,
            payload=payload,
        )

    async def _priority_price(self, unsigned: UnsignedTransfer) -> int:
        """Median recent prioritization fee for the accounts this transfer writes."""
        accounts = [unsigned.sender] + unsigned.payload.get("writable", [unsigned.recipient])
        try:
            samples = await self.rpc.call(self.chain.tag, "getRecentPrioritizationFees", [accounts])
        except JsonRpcError as exc:
            logger.debug("getRecentPrioritizationFees unavailable: %s", exc.message)
            return 0
        fees = [int(s.get("prioritizationFee", 0)) for s in samples or []]
        if not fees:
            return 0
        return int(statistics.median(fees))

    async def estimate_fee(
        self, unsigned: UnsignedTransfer, overrides: Optional[FeeOverrides] = None
    ) -> FeeEstimate:
        """Base signature fee plus priority fee.

        When the recipient's token account has to be created, its
        rent-exempt deposit is included in ``total`` since the sender pays it.
        """
        overrides = overrides or FeeOverrides()
        if overrides.compute_unit_limit is not None:
            limit = overrides.compute_unit_limit
        elif unsigned.is_token:
            limit = self.engine.solana_token_compute_units
        else:
            limit = self.engine.solana_native_compute_units

        price = overrides.compute_unit_price
        if price is None:
            price = await self._priority_price(unsigned)

        total = LAMPORTS_PER_SIGNATURE + _priority(price, limit)
        if unsigned.payload.get("creates_token_account"):
            total += int(await self._read("getMinimumBalanceForRentExemption", [TOKEN_ACCOUNT_SIZE]))

        fee = FeeEstimate(limit=limit, price=price, total=total)
        unsigned.fee = fee
        return fee

    async def _latest_blockhash(self) -> tuple[str, int, float]:
        now = self._clock()
        cached = self._blockhash
        if cached is not None and now - cached[2] < self.engine.solana_blockhash_ttl:
            return cached
        value = _value(await self._read("getLatestBlockhash", [_COMMITMENT]))
        try:
            fresh = (value["blockhash"], int(value["lastValidBlockHeight"]), now)
        except (KeyError, TypeError) as exc:
            raise ProviderUnavailable("Malformed getLatestBlockhash response") from exc
        self._blockhash = fresh
        return fresh

    async def resolve_sequence(self, unsigned: UnsignedTransfer) -> UnsignedTransfer:
        blockhash, last_valid, fetched_at = await self._latest_blockhash()
        unsigned.sequence = blockhash
        unsigned.last_valid_block_height = last_valid
        unsigned.sequence_resolved_at = fetched_at
        return unsigned

    # ------------------------------------------------------------------
    # Signing and submission
    # ------------------------------------------------------------------

    def _transaction(self, unsigned: UnsignedTransfer, keypair: Keypair, limit: int) -> Transaction:
        instructions = [set_compute_unit_limit(limit)]
        if unsigned.fee.price:
            instructions.append(set_compute_unit_price(unsigned.fee.price))
        instructions.extend(unsigned.payload["instructions"])

        blockhash = Hash.from_string(unsigned.sequence)
        message = Message.new_with_blockhash(instructions, keypair.pubkey(), blockhash)
        return Transaction([keypair], message, blockhash)

    def sign(self, unsigned: UnsignedTransfer, key: KeyMaterial) -> SignedTransaction:
        """Sign locally; the first signature is the transaction id."""
        if unsigned.sequence is None or unsigned.fee is None:
            raise ValueError("Transfer must have a blockhash and fee before signing")

        keypair = Keypair.from_seed(key.secret)
        if str(keypair.pubkey()) != unsigned.sender:
            raise ValueError("Key material does not belong to the sending address")

        # Identical transfers under one blockhash would sign to the same
        # signature and the node would keep only one of them.  Raise the
        # compute unit limit until the message is new.
        issued = self._issued.setdefault(unsigned.sequence, set())
        self._issued.move_to_end(unsigned.sequence)
        while len(self._issued) > _ISSUED_BLOCKHASHES:
            self._issued.popitem(last=False)

        fee = unsigned.fee
        limit = fee.limit
        while True:
            tx = self._transaction(unsigned, keypair, limit)
            tx_id = str(tx.signatures[0])
            if tx_id not in issued:
                break
            limit += 1
        issued.add(tx_id)

        if limit != fee.limit:
            logger.info(
                "Repeated transfer under blockhash %s; compute unit limit %d -> %d",
                unsigned.sequence, fee.limit, limit,
            )
            extra = _priority(fee.price, limit) - _priority(fee.price, fee.limit)
            unsigned.fee = replace(fee, limit=limit, total=fee.total + extra)
        return SignedTransaction(
            chain=self.chain,
            tx_id=tx_id,
            raw=bytes(tx),
            sequence=unsigned.sequence,
            last_valid_block_height=unsigned.last_valid_block_height,
        )

    async def submit(self, signed: SignedTransaction) -> SubmitResult:
        encoded = base64.b64encode(signed.raw).decode("ascii")
        options = {"encoding": "base64", "preflightCommitment": "confirmed"}
        try:
            response = await self.rpc.request(
                self.chain.tag, "sendTransaction", [encoded, options], idempotent=False
            )
        except JsonRpcError as exc:
            message = exc.message.lower()
            if any(marker in message for marker in _ALREADY_PROCESSED):
                if signed.tx_id not in self._issued.get(signed.sequence, ()):
                    raise TransactionRejected(
                        f"Solana tx {signed.tx_id} was already processed but not signed here"
                    ) from exc
                logger.info("Solana tx %s already processed", signed.tx_id)
                return SubmitResult(tx_id=signed.tx_id, endpoint=exc.url)
            if any(marker in message for marker in _INSUFFICIENT):
                raise InsufficientFunds() from exc
            raise TransactionRejected(f"Solana node rejected tx: {exc.message}") from exc

        if isinstance(response.result, str) and response.result != signed.tx_id:
            logger.warning("Node returned signature %s for locally computed %s", response.result, signed.tx_id)
        logger.info("Solana tx %s submitted via %s", signed.tx_id, response.endpoint)
        return SubmitResult(tx_id=signed.tx_id, endpoint=response.endpoint)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(self, method: str, params: Optional[list] = None) -> Any:
        try:
            return await self.rpc.call(self.chain.tag, method, params)
        except JsonRpcError as exc:
            raise ProviderUnavailable(f"Solana {method} failed: {exc.message}") from exc

    async def query_balance(self, address: str, token: Optional[str] = None) -> int:
        """Lamports, or the token balance a transfer can spend.

        Transfers debit the owner's associated token account, so only that
        account is read; tokens held in other accounts for the mint are not
        counted.
        """
        owner = self._require_pubkey(address)
        if not token:
            return int(_value(await self._read("getBalance", [str(owner), _COMMITMENT])) or 0)

        info = self.tokens.resolve(self.chain.tag, token)
        ata = get_associated_token_address(owner, Pubkey.from_string(info.address))
        account = _value(
            await self._read("getAccountInfo", [str(ata), {"encoding": "jsonParsed", **_COMMITMENT}])
        )
        if account is None:
            return 0
        try:
            return int(account["data"]["parsed"]["info"]["tokenAmount"]["amount"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderUnavailable("Malformed token account in balance response") from exc

    async def get_status(self, signed: SignedTransaction) -> TxStatus:
        statuses = _value(
            await self._read(
                "getSignatureStatuses", [[signed.tx_id], {"searchTransactionHistory": True}]
            )
        )
        status = statuses[0] if statuses else None
        if status:
            if status.get("err"):
                return TxStatus.FAILED
            if status.get("confirmationStatus") in ("confirmed", "finalized"):
                return TxStatus.CONFIRMED
            return TxStatus.PENDING

        if signed.last_valid_block_height is not None:
            height = int(await self._read("getBlockHeight", [_COMMITMENT]))
            if height > signed.last_valid_block_height:
                return TxStatus.DROPPED
        return TxStatus.NOT_FOUND
