"""Tests for building, signing and submitting the flash loan transaction."""

from unittest.mock import AsyncMock, Mock

import pytest
from eth_abi import decode
from web3 import Web3

from flashloop.abi_loader import ABILoadError, encode_function_call, get_function_by_name, load_abi
from flashloop.executor import ExecutionError, FlashLoanExecutor
from flashloop.gas import GasOptions

from .conftest import BCT, BORROW_AMOUNT, KLIMA, MCO2, USDC

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"
FLASHLOAN = "0x5555555555555555555555555555555555555555"
GETIT_TYPES = ["address", "uint256", "address[]", "address[]", "uint8", "uint8"]
GWEI = 10**9

SELL_PATH = (USDC, BCT, KLIMA)
BUY_PATH = (KLIMA, MCO2, USDC)


def make_network(status=1):
    return Mock(
        chain_id=137,
        get_nonce=AsyncMock(return_value=7),
        get_gas_price=AsyncMock(return_value=40 * GWEI),
        send_raw_transaction=AsyncMock(return_value="0xabc123"),
        wait_for_transaction_receipt=AsyncMock(
            return_value={"status": status, "blockNumber": 42, "gasUsed": 410_000}
        ),
        get_balance=AsyncMock(return_value=10**18),
    )


@pytest.fixture
def network():
    return make_network()


@pytest.fixture
def executor(network):
    return FlashLoanExecutor(network, FLASHLOAN, TEST_KEY, tx_timeout=30)


def decode_getit(data):
    selector = Web3.keccak(text="getit(address,uint256,address[],address[],uint8,uint8)")[:4]
    assert data[:4] == bytes(selector)
    return decode(GETIT_TYPES, data[4:])


class TestAbi:

    def test_flashloan_abi_has_getit(self):
        entry = get_function_by_name(load_abi("flashloan"), "getit")
        assert [i["type"] for i in entry["inputs"]] == GETIT_TYPES

    def test_unknown_function(self):
        with pytest.raises(ABILoadError):
            encode_function_call(load_abi("flashloan"), "withdraw", [])

    def test_missing_abi_file(self):
        with pytest.raises(ABILoadError):
            load_abi("does_not_exist")


class TestEncode:

    def test_argument_order(self, executor):
        data = executor.encode_call(USDC, BORROW_AMOUNT, BUY_PATH, SELL_PATH, 1, 0)
        asset, amount, path0, path1, path0_router, path1_router = decode_getit(data)

        assert asset.lower() == USDC
        assert amount == BORROW_AMOUNT
        # path0 is the sell leg, path1 the reversed buy leg
        assert [a.lower() for a in path0] == list(SELL_PATH)
        assert [a.lower() for a in path1] == list(BUY_PATH)
        assert path0_router == 0
        assert path1_router == 1


class TestSubmit:

    def test_account_from_key(self, executor):
        assert executor.address == TEST_ADDRESS

    def test_key_without_prefix(self, network):
        executor = FlashLoanExecutor(network, FLASHLOAN, TEST_KEY[2:])
        assert executor.address == TEST_ADDRESS

    @pytest.mark.asyncio
    async def test_eip1559_transaction(self, executor, network):
        gas = GasOptions(650_000, 100 * GWEI, 30 * GWEI)

        tx = await executor.build_transaction(USDC, BORROW_AMOUNT, BUY_PATH, SELL_PATH, 1, 0, gas)

        assert tx["to"] == FLASHLOAN
        assert tx["nonce"] == 7
        assert tx["chainId"] == 137
        assert tx["gas"] == 650_000
        assert tx["maxFeePerGas"] == 100 * GWEI
        assert tx["maxPriorityFeePerGas"] == 30 * GWEI
        assert "gasPrice" not in tx
        network.get_nonce.assert_awaited_once_with(TEST_ADDRESS)
        network.get_gas_price.assert_not_called()

    @pytest.mark.asyncio
    async def test_limit_only_uses_node_gas_price(self, executor, network):
        tx = await executor.build_transaction(
            USDC, BORROW_AMOUNT, BUY_PATH, SELL_PATH, 1, 0, GasOptions(650_000)
        )

        assert tx["gasPrice"] == 40 * GWEI
        assert "maxFeePerGas" not in tx

    @pytest.mark.asyncio
    async def test_submit_signs_and_waits(self, executor, network):
        gas = GasOptions(650_000, 100 * GWEI, 30 * GWEI)

        result = await executor.submit(USDC, BORROW_AMOUNT, BUY_PATH, SELL_PATH, 1, 0, gas)

        assert result.tx_hash == "0xabc123"
        assert result.block_number == 42
        assert result.gas_used == 410_000

        (raw_tx,) = network.send_raw_transaction.await_args.args
        assert isinstance(raw_tx, (bytes, bytearray))
        network.wait_for_transaction_receipt.assert_awaited_once_with("0xabc123", timeout=30)
        assert executor.tx_count == 1
        assert executor.success_count == 1

    @pytest.mark.asyncio
    async def test_reverted_transaction_raises(self):
        network = make_network(status=0)
        executor = FlashLoanExecutor(network, FLASHLOAN, TEST_KEY)

        with pytest.raises(ExecutionError, match="reverted"):
            await executor.submit(
                USDC, BORROW_AMOUNT, BUY_PATH, SELL_PATH, 1, 0, GasOptions(650_000)
            )
        assert executor.success_count == 0

    @pytest.mark.asyncio
    async def test_keeper_balance(self, executor, network):
        assert await executor.get_balance() == 10**18
        network.get_balance.assert_awaited_once_with(TEST_ADDRESS)
