"""Shared fixtures: a scripted JSON-RPC transport, a fake clock, and wallets."""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Optional

import pytest

from chain_custody.config import EngineConfig, FailoverPolicy
from chain_custody.providers.evm import EvmProvider
from chain_custody.providers.solana import SolanaProvider
from chain_custody.rpc.manager import RpcFailoverManager
from chain_custody.storage.models import TransactionRecord, WalletRecord
from chain_custody.wallet.chains import CHAINS
from chain_custody.wallet.keystore import KeyVault, MasterKey, wallet_binding
from chain_custody.wallet.tokens import TokenRegistry

HARDHAT_MNEMONIC = "test test test test test test test test test test test junk"
HARDHAT_ADDRESS_0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
HARDHAT_ADDRESS_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
HARDHAT_KEY_0 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

ETH_URLS = ["https://eth-a.test", "https://eth-b.test", "https://eth-c.test"]
SOL_URLS = ["https://sol-a.test", "https://sol-b.test"]

# Never answers; the manager's per-attempt timeout fires instead.
HANG = object()


class FakeTransport:
    """Scripted JSON-RPC transport.

    Per-URL scripts are consumed first, in order; otherwise the per-method
    handler answers.  An outcome may be a value, an exception instance to
    raise, ``HANG``, or a callable taking ``params`` (sync or async).
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, list]] = []
        self._scripts: dict[str, list[Any]] = defaultdict(list)
        self._handlers: dict[str, Any] = {}

    def script(self, url: str, *outcomes: Any) -> None:
        self._scripts[url].extend(outcomes)

    def on(self, method: str, outcome: Any) -> None:
        self._handlers[method] = outcome

    def calls_to(self, method: str) -> list[tuple[str, str, list]]:
        return [c for c in self.calls if c[1] == method]

    async def request(self, url: str, method: str, params: list, timeout: Optional[float] = None) -> Any:
        self.calls.append((url, method, params))
        if self._scripts[url]:
            outcome = self._scripts[url].pop(0)
        elif method in self._handlers:
            outcome = self._handlers[method]
        else:
            raise AssertionError(f"Unexpected RPC call {method} to {url}")

        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            outcome = outcome(params)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        return outcome


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryTransactionStore:
    """Keeps a snapshot of every save so tests can inspect the state history."""

    def __init__(self) -> None:
        self.records: dict[str, TransactionRecord] = {}
        self.history: list[tuple[str, str]] = []

    async def save_transaction(self, record: TransactionRecord) -> None:
        self.records[record.id] = record.model_copy()
        self.history.append((record.id, record.state.value))

    async def get_transaction(self, tx_id: str) -> Optional[TransactionRecord]:
        return self.records.get(tx_id)


async def no_sleep(_: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def master_key() -> MasterKey:
    return MasterKey(bytes(range(32)))


@pytest.fixture
def vault(master_key: MasterKey) -> KeyVault:
    return KeyVault(master_key)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> FailoverPolicy:
    return FailoverPolicy(request_timeout=0.05, probe_timeout=0.05)


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(status_poll_attempts=3, status_poll_interval=0, status_poll_timeout=0.5)


@pytest.fixture
def rpc(transport: FakeTransport, policy: FailoverPolicy, clock: FakeClock) -> RpcFailoverManager:
    return RpcFailoverManager(
        transport, {"ETH": ETH_URLS, "SOLANA": SOL_URLS}, policy=policy, clock=clock
    )


@pytest.fixture
def tokens() -> TokenRegistry:
    return TokenRegistry()


@pytest.fixture
def evm(rpc: RpcFailoverManager, tokens: TokenRegistry, engine_config: EngineConfig) -> EvmProvider:
    return EvmProvider(CHAINS["ETH"], rpc, tokens, engine=engine_config)


@pytest.fixture
def sol(
    rpc: RpcFailoverManager, tokens: TokenRegistry, engine_config: EngineConfig, clock: FakeClock
) -> SolanaProvider:
    return SolanaProvider(CHAINS["SOLANA"], rpc, tokens, engine=engine_config, clock=clock)


def make_wallet(
    vault: KeyVault,
    provider: Any,
    secret: str,
    chain: str,
    index: int = 0,
    wallet_id: str = "wallet000001",
) -> WalletRecord:
    with vault.derive_key(secret, chain, index) as key:
        address = provider.address_from_key(key)
        blob = vault.encrypt(key, wallet_binding(chain, address)).to_blob()
    return WalletRecord(
        id=wallet_id,
        user_id="user-1",
        chain=chain,
        address=address,
        encrypted_private_key=blob,
        derivation_index=index,
    )


@pytest.fixture
def eth_wallet(vault: KeyVault, evm: EvmProvider) -> WalletRecord:
    return make_wallet(vault, evm, HARDHAT_MNEMONIC, "ETH")
