"""High-level wallet service consumed by the API layer and CLI."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from chain_custody.config import CustodyConfig
from chain_custody.core.engine import TransactionEngine, TransferRequest
from chain_custody.errors import ConfigError, TransactionNotFound, WalletNotFound
from chain_custody.providers import create_provider
from chain_custody.providers.base import FeeOverrides
from chain_custody.rpc.manager import RpcFailoverManager
from chain_custody.rpc.transport import JsonRpcTransport
from chain_custody.storage.database import (
    Database,
    SQLiteTransactionStore,
    SQLiteWalletStore,
    TransactionStore,
    WalletStore,
)
from chain_custody.storage.models import TransactionRecord, WalletRecord
from chain_custody.wallet.chains import explorer_tx_url, get_chain
from chain_custody.wallet.keystore import KeyVault, MasterKey, wallet_binding
from chain_custody.wallet.tokens import TokenRegistry, format_units

logger = logging.getLogger("chain_custody.wallet.manager")


class WalletService:
    """Orchestrates the key vault, chain providers, engine and stores."""

    def __init__(
        self,
        config: CustodyConfig,
        vault: KeyVault,
        engine: TransactionEngine,
        wallets: WalletStore,
        transactions: Optional[TransactionStore] = None,
        tokens: Optional[TokenRegistry] = None,
    ) -> None:
        self.config = config
        self.vault = vault
        self.engine = engine
        self.wallets = wallets
        self.transactions = transactions
        self.tokens = tokens or config.build_token_registry()

    @classmethod
    def from_config(
        cls,
        config: CustodyConfig,
        master_key: MasterKey,
        db: Database,
        transport: JsonRpcTransport,
    ) -> "WalletService":
        """Wire every collaborator for the configured network."""
        rpc = RpcFailoverManager.from_config(config, transport)
        tokens = config.build_token_registry()
        providers = {
            chain: create_provider(chain, rpc, tokens, network=config.network, engine=config.engine)
            for chain in rpc.chains()
        }
        vault = KeyVault(master_key)
        transactions = SQLiteTransactionStore(db)
        engine = TransactionEngine(providers, vault, store=transactions, config=config.engine)
        return cls(
            config,
            vault,
            engine,
            wallets=SQLiteWalletStore(db),
            transactions=transactions,
            tokens=tokens,
        )

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    async def _store_key(self, user_id: str, chain: str, secret: str, index: int) -> WalletRecord:
        provider = self.engine.provider(chain)
        with self.vault.derive_key(secret, chain, index) as key:
            address = provider.address_from_key(key)
            encrypted = self.vault.encrypt(key, wallet_binding(chain, address))
            index = key.derivation_index
        record = WalletRecord(
            user_id=user_id,
            chain=get_chain(chain).tag,
            address=address,
            encrypted_private_key=encrypted.to_blob(),
            derivation_index=index,
        )
        await self.wallets.add_wallet(record)
        return record

    async def generate_wallet(
        self, user_id: str, chain: str, derivation_index: int = 0
    ) -> dict[str, Any]:
        """Create a wallet from a fresh 24-word mnemonic.

        The mnemonic is in the returned dict and nowhere else: it is not
        stored, so this is the caller's only chance to show it to the user.
        """
        mnemonic = self.vault.generate_mnemonic()
        record = await self._store_key(user_id, chain, mnemonic, derivation_index)
        logger.info("Wallet %s generated on %s: %s", record.id, record.chain, record.address)
        return {
            "id": record.id,
            "address": record.address,
            "chain": record.chain,
            "derivation_index": record.derivation_index,
            "mnemonic": mnemonic,
        }

    async def import_wallet(
        self, user_id: str, chain: str, secret: str, derivation_index: int = 0
    ) -> dict[str, Any]:
        """Import from a mnemonic or raw private key.  Raw keys are always index 0."""
        record = await self._store_key(user_id, chain, secret, derivation_index)
        logger.info("Wallet %s imported on %s: %s", record.id, record.chain, record.address)
        return {
            "id": record.id,
            "address": record.address,
            "chain": record.chain,
            "derivation_index": record.derivation_index,
        }

    async def get_wallet(self, wallet_id: str) -> WalletRecord:
        record = await self.wallets.get_wallet(wallet_id)
        if record is None:
            raise WalletNotFound(f"Wallet {wallet_id} not found")
        return record

    async def list_wallets(self, user_id: str, chain: Optional[str] = None) -> list[dict[str, Any]]:
        tag = get_chain(chain).tag if chain else None
        return [w.public_view() for w in await self.wallets.list_wallets(user_id, tag)]

    async def verify_wallet(self, wallet_id: str) -> bool:
        """Re-derive the address from the decrypted key and compare to the stored one."""
        wallet = await self.get_wallet(wallet_id)
        provider = self.engine.provider(wallet.chain)
        with self.vault.unsealed(
            wallet.encrypted_private_key,
            wallet.chain,
            wallet_binding(wallet.chain, wallet.address),
        ) as key:
            derived = provider.address_from_key(key)
        if derived != wallet.address:
            logger.error("Wallet %s address mismatch: stored %s, key gives %s",
                         wallet.id, wallet.address, derived)
            return False
        return True

    # ------------------------------------------------------------------
    # Balances and fees
    # ------------------------------------------------------------------

    async def get_balance(self, wallet_id: str, token: Optional[str] = None) -> dict[str, Any]:
        wallet = await self.get_wallet(wallet_id)
        chain = get_chain(wallet.chain)
        amount = await self.engine.provider(chain.tag).query_balance(wallet.address, token)
        if token:
            info = self.tokens.resolve(chain.tag, token)
            symbol, decimals = info.symbol, info.decimals
        else:
            symbol, decimals = chain.native_symbol, chain.native_decimals
        return {
            "wallet_id": wallet.id,
            "chain": chain.tag,
            "address": wallet.address,
            "amount": str(amount),
            "formatted": format_units(amount, decimals),
            "symbol": symbol,
            "decimals": decimals,
        }

    async def estimate_fee(
        self,
        wallet_id: str,
        to: str,
        amount: int,
        token: Optional[str] = None,
        fee_overrides: Optional[FeeOverrides] = None,
    ) -> dict[str, Any]:
        wallet = await self.get_wallet(wallet_id)
        chain = get_chain(wallet.chain)
        _, fee = await self.engine.estimate_fee(
            TransferRequest(wallet, to, amount, token, fee_overrides)
        )
        return {
            "chain": chain.tag,
            "limit": fee.limit,
            "price": fee.price,
            "total": str(fee.total),
            "formatted": format_units(fee.total, chain.native_decimals),
            "symbol": chain.native_symbol,
            "eip1559": fee.eip1559,
        }

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def explorer_url(self, chain: str, tx_hash: str) -> str:
        return explorer_tx_url(self.config.explorer_url(chain), tx_hash)

    def _describe(self, record: TransactionRecord) -> dict[str, Any]:
        return {
            "id": record.id,
            "hash": record.tx_hash,
            "status": record.state.value,
            "explorer_url": self.explorer_url(record.chain, record.tx_hash) if record.tx_hash else None,
        }

    async def transfer(
        self,
        wallet_id: str,
        to: str,
        amount: int,
        token: Optional[str] = None,
        fee_overrides: Optional[FeeOverrides] = None,
    ) -> dict[str, Any]:
        """Send *amount* (smallest unit) to *to*.

        ``AmbiguousSubmission`` propagates: the caller must reconcile the
        returned record with :meth:`refresh_transaction` rather than retry.
        """
        wallet = await self.get_wallet(wallet_id)
        record = await self.engine.transfer(
            TransferRequest(wallet, to, amount, token, fee_overrides)
        )
        return self._describe(record)

    async def batch_transfer(
        self,
        wallet_id: str,
        transfers: Iterable[tuple[str, int]],
        token: Optional[str] = None,
        fee_overrides: Optional[FeeOverrides] = None,
    ) -> list[dict[str, Any]]:
        """One outcome per ``(recipient, amount)`` pair, failures included."""
        wallet = await self.get_wallet(wallet_id)
        requests = [
            TransferRequest(wallet, to, amount, token, fee_overrides) for to, amount in transfers
        ]
        outcomes = await self.engine.batch_transfer(requests)
        results = []
        for outcome in outcomes:
            body = outcome.to_dict()
            if outcome.record is not None and outcome.record.tx_hash:
                body["explorer_url"] = self.explorer_url(outcome.record.chain, outcome.record.tx_hash)
            results.append(body)
        return results

    async def refresh_transaction(self, record: "TransactionRecord | str") -> TransactionRecord:
        """Re-check a submitted or ambiguous transaction, by record or id."""
        if isinstance(record, str):
            if self.transactions is None:
                raise ConfigError("No transaction store configured")
            found = await self.transactions.get_transaction(record)
            if found is None:
                raise TransactionNotFound(f"Transaction {record} not found")
            record = found
        return await self.engine.refresh(record)
