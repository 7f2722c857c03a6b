"""Token registry lookups and decimal/base-unit conversion."""

from decimal import Decimal

import pytest

from chain_custody.errors import InvalidAmount, UnsupportedChain, UnsupportedToken
from chain_custody.wallet.chains import get_chain
from chain_custody.wallet.tokens import (
    TokenInfo,
    TokenRegistry,
    format_units,
    from_base_units,
    to_base_units,
)


class TestRegistry:
    def test_symbol_lookup_is_per_chain(self, tokens):
        assert tokens.resolve("ETH", "usdt").decimals == 6
        assert tokens.resolve("BSC", "USDT").decimals == 18

    def test_evm_address_lookup_ignores_case(self, tokens):
        usdc = tokens.resolve("ETH", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48")
        assert usdc.symbol == "USDC"

    def test_solana_mint_lookup_is_exact(self, tokens):
        mint = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
        assert tokens.resolve("SOLANA", mint).symbol == "USDC"
        with pytest.raises(UnsupportedToken):
            tokens.resolve("SOLANA", mint.lower())

    def test_unknown_token(self, tokens):
        with pytest.raises(UnsupportedToken):
            tokens.resolve("BSC", "DAI")

    def test_unknown_chain(self, tokens):
        with pytest.raises(UnsupportedChain):
            tokens.resolve("DOGE", "USDT")

    def test_replacing_symbol_drops_old_address(self):
        registry = TokenRegistry([])
        registry.register(TokenInfo("ETH", "TST", 6, "0x" + "11" * 20))
        registry.register(TokenInfo("ETH", "tst", 8, "0x" + "22" * 20))
        assert registry.get_by_address("ETH", "0x" + "11" * 20) is None
        assert registry.resolve("ETH", "TST").decimals == 8

    def test_tokens_for_sorted(self, tokens):
        symbols = [t.symbol for t in tokens.tokens_for("SOLANA")]
        assert symbols == sorted(symbols)
        assert "USDC" in symbols


class TestUnits:
    def test_fractional_wei(self):
        assert to_base_units("0.000000000000000001", 18) == 1
        assert to_base_units("1.5", 6) == 1_500_000

    def test_uint256_scale_is_exact(self):
        huge = "115792089237316195423570985008687907853269984665640564039457.584007913129639935"
        assert to_base_units(huge, 18) == 2**256 - 1

    @pytest.mark.parametrize("value", ["0", "-1", "abc", "NaN", "Infinity", "0.0000001"])
    def test_invalid(self, value):
        with pytest.raises(InvalidAmount):
            to_base_units(value, 6)

    def test_format_strips_trailing_zeros(self):
        assert format_units(1_500_000_000_000_000_000, 18) == "1.5"
        assert format_units(2 * 10**9, 9) == "2"
        assert format_units(1, 18) == "0.000000000000000001"

    def test_from_base_units(self):
        assert from_base_units(12345, 2) == Decimal("123.45")

    def test_native_decimals(self):
        assert get_chain("SOLANA").native_decimals == 9
        assert get_chain("BNB").native_symbol == "BNB"
