"""Chain definitions for the supported networks."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from chain_custody.errors import UnsupportedChain


class ChainFamily(str, Enum):
    EVM = "evm"
    SOLANA = "solana"


class NetworkMode(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


@dataclass(frozen=True)
class Chain:
    """A supported blockchain network in both its mainnet and testnet form."""

    tag: str
    name: str
    family: ChainFamily
    native_symbol: str
    native_decimals: int
    coin_type: int
    mainnet_explorer_url: str
    testnet_explorer_url: str
    mainnet_chain_id: Optional[int] = None
    testnet_chain_id: Optional[int] = None

    def chain_id(self, network: NetworkMode) -> Optional[int]:
        if network is NetworkMode.TESTNET:
            return self.testnet_chain_id
        return self.mainnet_chain_id

    def explorer_url(self, network: NetworkMode) -> str:
        if network is NetworkMode.TESTNET:
            return self.testnet_explorer_url
        return self.mainnet_explorer_url

    def tx_explorer_url(self, network: NetworkMode, tx_hash: str) -> str:
        return explorer_tx_url(self.explorer_url(network), tx_hash)


def explorer_tx_url(base: str, tx_hash: str) -> str:
    """Transaction page under an explorer base URL, keeping any query (e.g. ``?cluster=devnet``)."""
    if "?" in base:
        path, query = base.split("?", 1)
        return f"{path.rstrip('/')}/tx/{tx_hash}?{query}"
    return f"{base.rstrip('/')}/tx/{tx_hash}"


CHAINS: dict[str, Chain] = {
    "ETH": Chain(
        tag="ETH",
        name="ethereum",
        family=ChainFamily.EVM,
        native_symbol="ETH",
        native_decimals=18,
        coin_type=60,
        mainnet_chain_id=1,
        testnet_chain_id=11155111,  # Sepolia
        mainnet_explorer_url="https://etherscan.io",
        testnet_explorer_url="https://sepolia.etherscan.io",
    ),
    "BSC": Chain(
        tag="BSC",
        name="bsc",
        family=ChainFamily.EVM,
        native_symbol="BNB",
        native_decimals=18,
        coin_type=60,
        mainnet_chain_id=56,
        testnet_chain_id=97,
        mainnet_explorer_url="https://bscscan.com",
        testnet_explorer_url="https://testnet.bscscan.com",
    ),
    "SOLANA": Chain(
        tag="SOLANA",
        name="solana",
        family=ChainFamily.SOLANA,
        native_symbol="SOL",
        native_decimals=9,
        coin_type=501,
        mainnet_explorer_url="https://explorer.solana.com",
        testnet_explorer_url="https://explorer.solana.com/?cluster=devnet",
    ),
}

_ALIASES: dict[str, str] = {
    "ETHEREUM": "ETH",
    "BNB": "BSC",
    "SOL": "SOLANA",
}


def get_chain(name: "str | Chain") -> Chain:
    """Get a chain by tag or alias. Raises ``UnsupportedChain`` if unknown."""
    if isinstance(name, Chain):
        return name
    key = (name or "").strip().upper()
    key = _ALIASES.get(key, key)
    if key not in CHAINS:
        raise UnsupportedChain(
            f"Unknown chain '{name}'. Available: {list_chain_names()}"
        )
    return CHAINS[key]


def list_chain_names() -> list[str]:
    """Return the tags of all supported chains."""
    return list(CHAINS.keys())
