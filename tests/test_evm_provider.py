"""EVM provider: addresses, ERC-20 call data, fees, signing and status."""

import pytest
from eth_account import Account
from web3 import Web3

from chain_custody.errors import (
    InsufficientFunds,
    InvalidAddress,
    InvalidAmount,
    JsonRpcError,
    TransactionRejected,
    UnsupportedToken,
)
from chain_custody.providers.base import FeeOverrides, SignedTransaction, TxStatus
from chain_custody.providers.evm import encode_erc20_transfer
from chain_custody.wallet.chains import CHAINS
from chain_custody.wallet.derivation import mnemonic_to_seed

from conftest import HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, HARDHAT_MNEMONIC

GWEI = 10**9
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


def _fee_market(transport, base_fee=10 * GWEI, tip=GWEI, gas=21_000):
    transport.on("eth_estimateGas", hex(gas))
    transport.on("eth_getBlockByNumber", {"number": "0x10", "baseFeePerGas": hex(base_fee)})
    transport.on("eth_maxPriorityFeePerGas", hex(tip))


class TestAddresses:
    def test_golden_derivation(self, evm):
        seed = mnemonic_to_seed(HARDHAT_MNEMONIC)
        assert evm.derive_address(seed, 0) == HARDHAT_ADDRESS_0
        assert evm.derive_address(seed, 1) == HARDHAT_ADDRESS_1

    @pytest.mark.parametrize(
        "address, ok",
        [
            (HARDHAT_ADDRESS_0, True),
            (HARDHAT_ADDRESS_0.lower(), True),
            ("0x" + HARDHAT_ADDRESS_0[2:].upper(), True),
            ("0xF39Fd6e51aad88F6F4ce6aB8827279cffFb92266", False),  # bad checksum
            (HARDHAT_ADDRESS_0[2:], False),
            (HARDHAT_ADDRESS_0 + "00", False),
            ("0x" + "zz" * 20, False),
            ("", False),
        ],
    )
    def test_validate(self, evm, address, ok):
        assert evm.validate_address(address) is ok


class TestBuild:
    async def test_native(self, evm):
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1.lower(), 10**18)
        assert unsigned.payload == {"to": HARDHAT_ADDRESS_1, "value": 10**18, "data": b""}
        assert not unsigned.is_token

    async def test_erc20_call_data(self, evm):
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1_000_000, "USDT")
        data = unsigned.payload["data"]
        assert unsigned.payload["to"] == USDT
        assert unsigned.payload["value"] == 0
        assert data[:4].hex() == "a9059cbb"
        assert data[4:36] == bytes(12) + bytes.fromhex(HARDHAT_ADDRESS_1[2:])
        assert int.from_bytes(data[36:68], "big") == 1_000_000
        assert data == encode_erc20_transfer(HARDHAT_ADDRESS_1, 1_000_000)

    async def test_bad_recipient(self, evm, transport):
        with pytest.raises(InvalidAddress):
            await evm.build_transfer(HARDHAT_ADDRESS_0, "0x1234", 1)
        assert transport.calls == []

    async def test_mistyped_checksum_is_rejected(self, evm, transport):
        typo = HARDHAT_ADDRESS_1[:-2] + HARDHAT_ADDRESS_1[-2:].swapcase()
        with pytest.raises(InvalidAddress):
            await evm.build_transfer(HARDHAT_ADDRESS_0, typo, 1)
        assert transport.calls == []

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    async def test_bad_amount(self, evm, amount):
        with pytest.raises(InvalidAmount):
            await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, amount)

    async def test_unknown_token(self, evm):
        with pytest.raises(UnsupportedToken):
            await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1, "NOPE")


class TestFees:
    async def test_eip1559(self, evm, transport):
        _fee_market(transport)
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1)

        fee = await evm.estimate_fee(unsigned)

        assert fee.eip1559
        assert fee.limit == 21_000
        assert fee.max_fee_per_gas == 21 * GWEI
        assert fee.max_priority_fee_per_gas == GWEI
        assert fee.total == 21_000 * 21 * GWEI
        assert unsigned.fee is fee

    async def test_legacy_when_no_base_fee(self, evm, transport):
        transport.on("eth_estimateGas", hex(21_000))
        transport.on("eth_getBlockByNumber", {"number": "0x10"})
        transport.on("eth_gasPrice", hex(5 * GWEI))
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1)

        fee = await evm.estimate_fee(unsigned)

        assert not fee.eip1559
        assert fee.price == 5 * GWEI
        assert fee.total == 21_000 * 5 * GWEI

    async def test_token_gas_gets_buffer(self, evm, transport):
        _fee_market(transport, gas=50_000)
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1, "USDT")
        fee = await evm.estimate_fee(unsigned)
        assert fee.limit == 60_000

    async def test_default_tip_when_method_missing(self, evm, transport):
        _fee_market(transport)
        transport.on("eth_maxPriorityFeePerGas", JsonRpcError(-32601, "method not found"))
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1)

        fee = await evm.estimate_fee(unsigned)

        assert fee.max_priority_fee_per_gas == 1_500_000_000
        assert fee.max_fee_per_gas == 20 * GWEI + 1_500_000_000

    async def test_overrides_skip_the_network(self, evm, transport):
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1)
        fee = await evm.estimate_fee(
            unsigned, FeeOverrides(gas_limit=30_000, max_fee_per_gas=50 * GWEI, max_priority_fee_per_gas=2 * GWEI)
        )
        assert fee.total == 30_000 * 50 * GWEI
        assert fee.max_priority_fee_per_gas == 2 * GWEI
        assert transport.calls == []

    async def test_legacy_override(self, evm, transport):
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1)
        fee = await evm.estimate_fee(unsigned, FeeOverrides(gas_limit=21_000, gas_price=3 * GWEI))
        assert not fee.eip1559
        assert fee.total == 63_000 * GWEI

    async def test_revert_is_rejection(self, evm, transport):
        transport.on("eth_estimateGas", JsonRpcError(3, "execution reverted"))
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1, "USDT")
        with pytest.raises(TransactionRejected):
            await evm.estimate_fee(unsigned)

    async def test_estimate_insufficient_funds(self, evm, transport):
        transport.on("eth_estimateGas", JsonRpcError(-32000, "insufficient funds for gas * price + value"))
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 10**30)
        with pytest.raises(InsufficientFunds):
            await evm.estimate_fee(unsigned)


class TestSigning:
    async def _ready(self, evm, transport, nonce=7):
        _fee_market(transport)
        transport.on("eth_getTransactionCount", hex(nonce))
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 10**15)
        await evm.estimate_fee(unsigned)
        await evm.resolve_sequence(unsigned)
        return unsigned

    async def test_hash_is_keccak_of_raw(self, evm, transport, vault):
        unsigned = await self._ready(evm, transport)
        with vault.derive_key(HARDHAT_MNEMONIC, "ETH", 0) as key:
            signed = evm.sign(unsigned, key)

        assert signed.sequence == 7
        assert signed.tx_id == Web3.to_hex(Web3.keccak(signed.raw))
        assert signed.raw[0] == 2  # EIP-1559 envelope
        assert Account.recover_transaction(signed.raw) == HARDHAT_ADDRESS_0
        assert transport.calls_to("eth_getTransactionCount")[0][2] == [HARDHAT_ADDRESS_0, "pending"]

    async def test_wrong_key_refused(self, evm, transport, vault):
        unsigned = await self._ready(evm, transport)
        with vault.derive_key(HARDHAT_MNEMONIC, "ETH", 1) as key:
            with pytest.raises(ValueError):
                evm.sign(unsigned, key)

    async def test_unsequenced_refused(self, evm, transport, vault):
        _fee_market(transport)
        unsigned = await evm.build_transfer(HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, 1)
        await evm.estimate_fee(unsigned)
        with vault.derive_key(HARDHAT_MNEMONIC, "ETH", 0) as key:
            with pytest.raises(ValueError):
                evm.sign(unsigned, key)


def _signed(tx_id="0x" + "ab" * 32):
    return SignedTransaction(chain=CHAINS["ETH"], tx_id=tx_id, raw=b"\x02\x01")


class TestSubmitAndStatus:
    async def test_submit(self, evm, transport):
        transport.on("eth_sendRawTransaction", "0x" + "ab" * 32)
        result = await evm.submit(_signed())
        assert result.endpoint == "https://eth-a.test"
        assert transport.calls_to("eth_sendRawTransaction")[0][2] == ["0x0201"]

    async def test_already_known_is_success(self, evm, transport):
        transport.on("eth_sendRawTransaction", JsonRpcError(-32000, "already known"))
        result = await evm.submit(_signed())
        assert result.tx_id == "0x" + "ab" * 32

    async def test_insufficient_funds(self, evm, transport):
        transport.on("eth_sendRawTransaction", JsonRpcError(-32000, "insufficient funds for gas"))
        with pytest.raises(InsufficientFunds):
            await evm.submit(_signed())

    async def test_other_rejection(self, evm, transport):
        transport.on("eth_sendRawTransaction", JsonRpcError(-32000, "nonce too low"))
        with pytest.raises(TransactionRejected):
            await evm.submit(_signed())

    @pytest.mark.parametrize(
        "receipt, tx, expected",
        [
            ({"status": "0x1"}, None, TxStatus.CONFIRMED),
            ({"status": "0x0"}, None, TxStatus.FAILED),
            (None, {"hash": "0xab"}, TxStatus.PENDING),
            (None, None, TxStatus.NOT_FOUND),
        ],
    )
    async def test_status(self, evm, transport, receipt, tx, expected):
        transport.on("eth_getTransactionReceipt", receipt)
        transport.on("eth_getTransactionByHash", tx)
        assert await evm.get_status(_signed()) is expected

    async def test_native_balance(self, evm, transport):
        transport.on("eth_getBalance", hex(3 * 10**18))
        assert await evm.query_balance(HARDHAT_ADDRESS_0) == 3 * 10**18

    async def test_token_balance(self, evm, transport):
        transport.on("eth_call", "0x" + (123_456).to_bytes(32, "big").hex())
        assert await evm.query_balance(HARDHAT_ADDRESS_0, "USDT") == 123_456
        call, block = transport.calls_to("eth_call")[0][2]
        assert call["to"] == USDT
        assert call["data"].startswith("0x70a08231")
        assert block == "latest"
