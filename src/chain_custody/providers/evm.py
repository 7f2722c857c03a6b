"""EVM chain provider (Ethereum, BSC).

Transactions are built as plain dicts and signed locally with
``eth_account``; every network call goes through the failover manager, so no
``Web3`` instance or HTTP provider is ever created here.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from eth_abi import encode
from eth_account import Account
from web3 import Web3

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
from chain_custody.rpc.manager import RpcFailoverManager
from chain_custody.wallet.chains import Chain, ChainFamily, NetworkMode
from chain_custody.wallet.derivation import derive_private_key
from chain_custody.wallet.keystore import KeyMaterial
from chain_custody.wallet.tokens import TokenRegistry

logger = logging.getLogger("chain_custody.providers.evm")

ERC20_TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")   # transfer(address,uint256)
ERC20_BALANCE_OF_SELECTOR = bytes.fromhex("70a08231")  # balanceOf(address)

_ALREADY_KNOWN = ("already known", "known transaction", "already imported")


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if not value or value == "0x":
        return 0
    return int(value, 16)


def encode_erc20_transfer(recipient: str, amount: int) -> bytes:
    """Call data for ``transfer(address,uint256)``."""
    return ERC20_TRANSFER_SELECTOR + encode(
        ["address", "uint256"], [Web3.to_checksum_address(recipient), amount]
    )


def encode_erc20_balance_of(owner: str) -> bytes:
    return ERC20_BALANCE_OF_SELECTOR + encode(["address"], [Web3.to_checksum_address(owner)])


def check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Amount must be an integer number of the smallest unit")
    if amount <= 0:
        raise InvalidAmount()
    return amount


class EvmProvider:
    """Ethereum-compatible provider.

    The nonce is the account's *pending* transaction count, fetched by
    :meth:`resolve_sequence` immediately before signing.  Fees use EIP-1559
    when the chain reports a base fee (or the caller supplies 1559 fields)
    and fall back to a legacy gas price otherwise.
    """

    family = ChainFamily.EVM

    def __init__(
        self,
        chain: Chain,
        rpc: RpcFailoverManager,
        tokens: TokenRegistry,
        network: NetworkMode = NetworkMode.MAINNET,
        engine: Optional[EngineConfig] = None,
    ) -> None:
        if chain.family is not ChainFamily.EVM:
            raise ValueError(f"{chain.tag} is not an EVM chain")
        self.chain = chain
        self.rpc = rpc
        self.tokens = tokens
        self.network = network
        self.engine = engine or EngineConfig()
        self.chain_id = chain.chain_id(network)

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def derive_address(self, seed: bytes, derivation_index: int) -> str:
        key = derive_private_key(seed, ChainFamily.EVM, derivation_index)
        return Account.from_key(key).address

    def address_from_key(self, key: KeyMaterial) -> str:
        return Account.from_key(key.secret).address

    def validate_address(self, address: str) -> bool:
        """0x-prefixed, 20 bytes of hex, and a valid EIP-55 checksum if mixed-case."""
        if not isinstance(address, str) or len(address) != 42:
            return False
        if not address.startswith("0x") or not Web3.is_address(address):
            return False
        digits = address[2:]
        if digits.islower() or digits.isupper():
            return True
        return Web3.is_checksum_address(address)

    def _require_address(self, address: str) -> str:
        if not self.validate_address(address):
            raise InvalidAddress(f"Invalid {self.chain.tag} address: {address!r}")
        return Web3.to_checksum_address(address)

    # ------------------------------------------------------------------
    # Building and fees
    # ------------------------------------------------------------------

    async def build_transfer(
        self,
        sender: str,
        recipient: str,
        amount: int,
        token: Optional[str] = None,
    ) -> UnsignedTransfer:
        sender = self._require_address(sender)
        recipient = self._require_address(recipient)
        check_amount(amount)

        if token:
            info = self.tokens.resolve(self.chain.tag, token)
            payload = {
                "to": Web3.to_checksum_address(info.address),
                "value": 0,
                "data": encode_erc20_transfer(recipient, amount),
            }
        else:
            info = None
            payload = {"to": recipient, "value": amount, "data": b""}

        return UnsignedTransfer(
            chain=self.chain,
            sender=sender,
            recipient=recipient,
            amount=amount,
            token=info,
            payload=payload,
        )

    def _call_object(self, unsigned: UnsignedTransfer) -> dict[str, str]:
        payload = unsigned.payload
        return {
            "from": unsigned.sender,
            "to": payload["to"],
            "value": hex(payload["value"]),
            "data": Web3.to_hex(payload["data"]),
        }

    async def _estimate_gas(self, unsigned: UnsignedTransfer) -> int:
        try:
            gas = _to_int(
                await self.rpc.call(self.chain.tag, "eth_estimateGas", [self._call_object(unsigned)])
            )
        except JsonRpcError as exc:
            if "insufficient funds" in exc.message.lower():
                raise InsufficientFunds() from exc
            raise TransactionRejected(
                f"{self.chain.tag} transfer would fail: {exc.message}"
            ) from exc
        if unsigned.is_token:
            gas = gas * (100 + self.engine.evm_gas_buffer_percent) // 100
        return gas

    async def _priority_fee(self) -> int:
        try:
            return _to_int(await self.rpc.call(self.chain.tag, "eth_maxPriorityFeePerGas"))
        except JsonRpcError:
            logger.debug("%s has no eth_maxPriorityFeePerGas; using default tip", self.chain.tag)
            return self.engine.evm_default_priority_fee_wei

    async def estimate_fee(
        self, unsigned: UnsignedTransfer, overrides: Optional[FeeOverrides] = None
    ) -> FeeEstimate:
        overrides = overrides or FeeOverrides()
        gas = overrides.gas_limit or await self._estimate_gas(unsigned)

        if overrides.gas_price is not None:
            fee = FeeEstimate(limit=gas, price=overrides.gas_price, total=gas * overrides.gas_price)
            unsigned.fee = fee
            return fee

        base_fee: Optional[int] = None
        if overrides.max_fee_per_gas is None:
            block = await self._read("eth_getBlockByNumber", ["latest", False])
            if block and block.get("baseFeePerGas") is not None:
                base_fee = _to_int(block["baseFeePerGas"])

        if overrides.max_fee_per_gas is not None or base_fee is not None:
            priority = overrides.max_priority_fee_per_gas
            if priority is None:
                priority = await self._priority_fee()
            max_fee = overrides.max_fee_per_gas
            if max_fee is None:
                max_fee = base_fee * 2 + priority
            priority = min(priority, max_fee)
            fee = FeeEstimate(
                limit=gas,
                price=max_fee,
                total=gas * max_fee,
                eip1559=True,
                max_fee_per_gas=max_fee,
                max_priority_fee_per_gas=priority,
            )
        else:
            gas_price = _to_int(await self._read("eth_gasPrice"))
            fee = FeeEstimate(limit=gas, price=gas_price, total=gas * gas_price)

        unsigned.fee = fee
        return fee

    async def resolve_sequence(self, unsigned: UnsignedTransfer) -> UnsignedTransfer:
        """Fetch the pending nonce.  Must run under the wallet's lock."""
        nonce = _to_int(
            await self._read("eth_getTransactionCount", [unsigned.sender, "pending"])
        )
        unsigned.sequence = nonce
        unsigned.sequence_resolved_at = time.monotonic()
        return unsigned

    # ------------------------------------------------------------------
    # Signing and submission
    # ------------------------------------------------------------------

    def sign(self, unsigned: UnsignedTransfer, key: KeyMaterial) -> SignedTransaction:
        """Sign locally; the hash is known before anything is sent."""
        if unsigned.sequence is None or unsigned.fee is None:
            raise ValueError("Transfer must have a nonce and fee before signing")

        secret = key.secret
        if Account.from_key(secret).address != unsigned.sender:
            raise ValueError("Key material does not belong to the sending address")

        payload = unsigned.payload
        tx: dict[str, Any] = {
            "chainId": self.chain_id,
            "nonce": unsigned.sequence,
            "to": payload["to"],
            "value": payload["value"],
            "data": payload["data"],
            "gas": unsigned.fee.limit,
        }
        if unsigned.fee.eip1559:
            tx["type"] = 2
            tx["maxFeePerGas"] = unsigned.fee.max_fee_per_gas
            tx["maxPriorityFeePerGas"] = unsigned.fee.max_priority_fee_per_gas
        else:
            tx["gasPrice"] = unsigned.fee.price

        signed = Account.sign_transaction(tx, secret)
        return SignedTransaction(
            chain=self.chain,
            tx_id=Web3.to_hex(signed.hash),
            raw=bytes(signed.raw_transaction),
            sequence=unsigned.sequence,
        )

    async def submit(self, signed: SignedTransaction) -> SubmitResult:
        try:
            response = await self.rpc.request(
                self.chain.tag,
                "eth_sendRawTransaction",
                [Web3.to_hex(signed.raw)],
                idempotent=False,
            )
        except JsonRpcError as exc:
            message = exc.message.lower()
            if any(marker in message for marker in _ALREADY_KNOWN):
                logger.info("%s tx %s already in mempool", self.chain.tag, signed.tx_id)
                return SubmitResult(tx_id=signed.tx_id, endpoint=exc.url)
            if "insufficient funds" in message:
                raise InsufficientFunds() from exc
            raise TransactionRejected(f"{self.chain.tag} node rejected tx: {exc.message}") from exc

        returned = response.result
        if isinstance(returned, str) and returned.lower() != signed.tx_id.lower():
            logger.warning(
                "%s node returned hash %s for locally computed %s",
                self.chain.tag, returned, signed.tx_id,
            )
        logger.info("%s tx %s submitted via %s", self.chain.tag, signed.tx_id, response.endpoint)
        return SubmitResult(tx_id=signed.tx_id, endpoint=response.endpoint)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(self, method: str, params: Optional[list] = None) -> Any:
        try:
            return await self.rpc.call(self.chain.tag, method, params)
        except JsonRpcError as exc:
            raise ProviderUnavailable(f"{self.chain.tag} {method} failed: {exc.message}") from exc

    async def query_balance(self, address: str, token: Optional[str] = None) -> int:
        """Balance in the smallest unit: wei, or the token's base unit."""
        address = self._require_address(address)
        if not token:
            return _to_int(await self._read("eth_getBalance", [address, "latest"]))

        info = self.tokens.resolve(self.chain.tag, token)
        call = {
            "to": Web3.to_checksum_address(info.address),
            "data": Web3.to_hex(encode_erc20_balance_of(address)),
        }
        return _to_int(await self._read("eth_call", [call, "latest"]))

    async def get_status(self, signed: SignedTransaction) -> TxStatus:
        receipt = await self._read("eth_getTransactionReceipt", [signed.tx_id])
        if receipt:
            if _to_int(receipt.get("status")) == 1:
                return TxStatus.CONFIRMED
            return TxStatus.FAILED
        tx = await self._read("eth_getTransactionByHash", [signed.tx_id])
        if tx:
            return TxStatus.PENDING
        return TxStatus.NOT_FOUND
