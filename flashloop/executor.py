#!/usr/bin/env python3
"""
Flash Loan Executor

Builds, signs and broadcasts the getit() call on the flash loan contract:

    getit(asset, amount, path0, path1, path0Router, path1Router)

path0 is the sell leg (source -> target), path1 the buy leg already
reversed (target -> source). The contract borrows `amount` of `asset`,
runs both swaps and repays the loan within the same transaction.

Gas:
- GasOptions with EIP-1559 fees are used as-is
- GasOptions with only a limit fall back to the node's gas price
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from eth_account import Account
from web3 import Web3

from .abi_loader import FLASHLOAN_ABI, encode_function_call, load_abi
from .gas import GasOptions
from .network import NetworkManager

logger = logging.getLogger(__name__)

TX_TIMEOUT = 120.0


class ExecutionError(Exception):
    """Transaction could not be signed, or was mined but reverted"""
    pass


@dataclass
class SubmissionResult:
    """Mined flash loan transaction"""
    tx_hash: str
    block_number: int = 0
    gas_used: int = 0
    time_sign_ms: float = 0.0
    time_broadcast_ms: float = 0.0
    time_confirm_ms: float = 0.0


class FlashLoanExecutor:
    """
    Flash loan submitter

    Called by the controller at most once per cycle; nonce is always read
    as "pending" from the node right before signing.
    """

    def __init__(
        self,
        network: NetworkManager,
        flashloan_address: str,
        private_key: str,
        tx_timeout: float = TX_TIMEOUT,
    ):
        self.network = network
        self.contract_address = Web3.to_checksum_address(flashloan_address)
        self.tx_timeout = tx_timeout
        self.abi = load_abi(FLASHLOAN_ABI)

        # Load account
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        self.account = Account.from_key(private_key)
        self.address = self.account.address

        # Stats
        self.tx_count = 0
        self.success_count = 0

    def encode_call(
        self,
        asset: str,
        amount: int,
        buy_path: Sequence[str],
        sell_path: Sequence[str],
        buy_router: int,
        sell_router: int,
    ) -> bytes:
        return encode_function_call(
            self.abi,
            "getit",
            [
                Web3.to_checksum_address(asset),
                amount,
                [Web3.to_checksum_address(a) for a in sell_path],
                [Web3.to_checksum_address(a) for a in buy_path],
                sell_router,
                buy_router,
            ],
        )

    async def _gas_params(self, gas: GasOptions) -> Dict[str, Any]:
        params = gas.to_tx_params()
        if not gas.is_eip1559:
            params["gasPrice"] = await self.network.get_gas_price()
        return params

    def _get_raw_tx(self, signed) -> Optional[bytes]:
        """Extract raw transaction bytes (handles both eth-account naming styles)"""
        if hasattr(signed, "raw_transaction"):
            return signed.raw_transaction
        elif hasattr(signed, "rawTransaction"):
            return signed.rawTransaction
        return None

    async def build_transaction(
        self,
        asset: str,
        amount: int,
        buy_path: Sequence[str],
        sell_path: Sequence[str],
        buy_router: int,
        sell_router: int,
        gas: GasOptions,
    ) -> Dict[str, Any]:
        nonce = await self.network.get_nonce(self.address)
        tx = {
            "to": self.contract_address,
            "value": 0,
            "data": self.encode_call(
                asset, amount, buy_path, sell_path, buy_router, sell_router
            ),
            "nonce": nonce,
            "chainId": self.network.chain_id,
        }
        tx.update(await self._gas_params(gas))
        return tx

    async def submit(
        self,
        asset: str,
        amount: int,
        buy_path: Sequence[str],
        sell_path: Sequence[str],
        buy_router: int,
        sell_router: int,
        gas: GasOptions,
    ) -> SubmissionResult:
        """
        Sign, broadcast and wait for the flash loan transaction.

        Raises:
            ExecutionError: signing produced no raw bytes, or the tx reverted
            RPCError: broadcast failed or the receipt did not arrive in time
        """
        tx = await self.build_transaction(
            asset, amount, buy_path, sell_path, buy_router, sell_router, gas
        )

        t_sign_start = time.time()
        signed = self.account.sign_transaction(tx)
        raw_tx = self._get_raw_tx(signed)
        if raw_tx is None:
            raise ExecutionError("Could not extract raw transaction")
        t_sign_ms = (time.time() - t_sign_start) * 1000

        t_broadcast_start = time.time()
        tx_hash = await self.network.send_raw_transaction(raw_tx)
        t_broadcast_ms = (time.time() - t_broadcast_start) * 1000
        self.tx_count += 1
        logger.debug(f"Broadcast {tx_hash} (nonce {tx['nonce']})")

        t_confirm_start = time.time()
        receipt = await self.network.wait_for_transaction_receipt(
            tx_hash, timeout=self.tx_timeout
        )
        t_confirm_ms = (time.time() - t_confirm_start) * 1000

        if receipt["status"] != 1:
            raise ExecutionError(f"Transaction {tx_hash} reverted")

        self.success_count += 1
        return SubmissionResult(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber", 0),
            gas_used=receipt.get("gasUsed", 0),
            time_sign_ms=t_sign_ms,
            time_broadcast_ms=t_broadcast_ms,
            time_confirm_ms=t_confirm_ms,
        )

    async def get_balance(self) -> int:
        """Native balance of the keeper account (wei)"""
        return await self.network.get_balance(self.address)
