"""Chain providers, one per chain family, dispatched by family tag."""

from __future__ import annotations

from typing import Optional

from chain_custody.config import EngineConfig
from chain_custody.providers.base import (
    ChainProvider,
    FeeEstimate,
    FeeOverrides,
    SignedTransaction,
    SubmitResult,
    TxStatus,
    UnsignedTransfer,
)
from chain_custody.providers.evm import EvmProvider
from chain_custody.providers.solana import SolanaProvider
from chain_custody.rpc.manager import RpcFailoverManager
from chain_custody.wallet.chains import Chain, ChainFamily, NetworkMode, get_chain
from chain_custody.wallet.tokens import TokenRegistry

PROVIDER_CLASSES = {
    ChainFamily.EVM: EvmProvider,
    ChainFamily.SOLANA: SolanaProvider,
}


def create_provider(
    chain: "str | Chain",
    rpc: RpcFailoverManager,
    tokens: TokenRegistry,
    network: NetworkMode = NetworkMode.MAINNET,
    engine: Optional[EngineConfig] = None,
) -> ChainProvider:
    """Instantiate the provider for *chain*'s family."""
    info = get_chain(chain)
    return PROVIDER_CLASSES[info.family](info, rpc, tokens, network=network, engine=engine)


__all__ = [
    "ChainProvider",
    "EvmProvider",
    "FeeEstimate",
    "FeeOverrides",
    "PROVIDER_CLASSES",
    "SignedTransaction",
    "SolanaProvider",
    "SubmitResult",
    "TxStatus",
    "UnsignedTransfer",
    "create_provider",
]
