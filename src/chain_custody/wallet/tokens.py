"""Token registry: chain + symbol/contract to decimals and metadata."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Iterable, Optional

from chain_custody.errors import InvalidAmount, UnsupportedToken
from chain_custody.wallet.chains import ChainFamily, get_chain

logger = logging.getLogger("chain_custody.tokens")

# Enough precision for any uint256 value plus its fractional digits.
_UINT256_DIGITS = 100


@dataclass(frozen=True)
class TokenInfo:
    """A fungible token deployed on one chain."""

    chain: str
    symbol: str
    decimals: int
    address: str
    name: str = ""


_DEFAULT_TOKENS: list[TokenInfo] = [
    # Ethereum mainnet
    TokenInfo("ETH", "USDT", 6, "0xdAC17F958D2ee523a2206206994597C13D831ec7", "Tether USD"),
    TokenInfo("ETH", "USDC", 6, "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "USD Coin"),
    TokenInfo("ETH", "WETH", 18, "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "Wrapped Ether"),
    TokenInfo("ETH", "DAI", 18, "0x6B175474E89094C44Da98b954EedeAC495271d0F", "Dai Stablecoin"),
    TokenInfo("ETH", "WBTC", 8, "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", "Wrapped BTC"),
    TokenInfo("ETH", "LINK", 18, "0x514910771AF9Ca656af840dff83E8264EcF986CA", "Chainlink"),
    TokenInfo("ETH", "UNI", 18, "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", "Uniswap"),
    TokenInfo("ETH", "AAVE", 18, "0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9", "Aave"),
    # BSC mainnet
    TokenInfo("BSC", "USDT", 18, "0x55d398326f99059fF775485246999027B3197955", "Binance-Peg BSC-USD"),
    TokenInfo("BSC", "USDC", 18, "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", "Binance-Peg USD Coin"),
    TokenInfo("BSC", "BUSD", 18, "0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56", "Binance-Peg BUSD"),
    TokenInfo("BSC", "WBNB", 18, "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", "Wrapped BNB"),
    # Solana mainnet
    TokenInfo("SOLANA", "USDC", 6, "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", "USD Coin"),
    TokenInfo("SOLANA", "USDT", 6, "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", "Tether USD"),
    TokenInfo("SOLANA", "WSOL", 9, "So11111111111111111111111111111111111111112", "Wrapped SOL"),
    TokenInfo("SOLANA", "RAY", 6, "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R", "Raydium"),
    TokenInfo("SOLANA", "ORCA", 6, "orcaEKTdK7LKz57vaAYr9QeNsVEPfiu6QeMU1kektZE", "Orca"),
    TokenInfo("SOLANA", "SAMO", 9, "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU", "Samoyed Coin"),
]


class TokenRegistry:
    """Lookup table of supported tokens, keyed per chain.

    EVM contract addresses compare case-insensitively; Solana mint
    addresses are base58 and compare exactly.
    """

    def __init__(self, tokens: Optional[Iterable[TokenInfo]] = None) -> None:
        self._by_symbol: dict[tuple[str, str], TokenInfo] = {}
        self._by_address: dict[tuple[str, str], TokenInfo] = {}
        for token in _DEFAULT_TOKENS if tokens is None else tokens:
            self.register(token)

    @staticmethod
    def _address_key(chain: str, address: str) -> tuple[str, str]:
        if get_chain(chain).family is ChainFamily.EVM:
            return chain, address.lower()
        return chain, address

    def register(self, token: TokenInfo) -> None:
        """Add or replace a token definition."""
        chain = get_chain(token.chain).tag
        if token.decimals < 0 or token.decimals > 36:
            raise ValueError(f"Unreasonable decimals for {token.symbol}: {token.decimals}")
        token = TokenInfo(chain, token.symbol.upper(), token.decimals, token.address, token.name)
        previous = self._by_symbol.get((chain, token.symbol))
        if previous is not None:
            logger.info("Replacing %s token definition for %s", chain, token.symbol)
            self._by_address.pop(self._address_key(chain, previous.address), None)
        self._by_symbol[(chain, token.symbol)] = token
        self._by_address[self._address_key(chain, token.address)] = token

    def get_by_symbol(self, chain: str, symbol: str) -> Optional[TokenInfo]:
        return self._by_symbol.get((get_chain(chain).tag, symbol.strip().upper()))

    def get_by_address(self, chain: str, address: str) -> Optional[TokenInfo]:
        tag = get_chain(chain).tag
        return self._by_address.get(self._address_key(tag, address.strip()))

    def resolve(self, chain: str, token: str) -> TokenInfo:
        """Find a token by symbol or contract/mint address.

        Raises
        ------
        UnsupportedToken
            If the token is not registered for *chain*.
        """
        found = self.get_by_address(chain, token) or self.get_by_symbol(chain, token)
        if found is None:
            raise UnsupportedToken(
                f"Token '{token}' is not supported on {get_chain(chain).tag}"
            )
        return found

    def tokens_for(self, chain: str) -> list[TokenInfo]:
        tag = get_chain(chain).tag
        return sorted(
            (t for (c, _), t in self._by_symbol.items() if c == tag),
            key=lambda t: t.symbol,
        )


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------


def to_base_units(amount: "str | Decimal | int", decimals: int) -> int:
    """Convert decimal text such as ``"1.5"`` to integer smallest units.

    Raises ``InvalidAmount`` for non-numeric input, for more fractional
    digits than *decimals* allows, and for values that are not positive.
    """
    with localcontext() as ctx:
        ctx.prec = _UINT256_DIGITS
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(f"Not a number: {amount!r}") from exc
        if not value.is_finite():
            raise InvalidAmount(f"Not a finite number: {amount!r}")
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"{amount} has more than {decimals} decimal places"
            )
        units = int(scaled)
    if units <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return units


def from_base_units(units: int, decimals: int) -> Decimal:
    """Convert integer smallest units to a ``Decimal`` in whole tokens."""
    with localcontext() as ctx:
        ctx.prec = _UINT256_DIGITS
        return Decimal(units).scaleb(-decimals)


def format_units(units: int, decimals: int) -> str:
    """Render smallest units as plain decimal text, e.g. ``"1.5"``."""
    text = format(from_base_units(units, decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
