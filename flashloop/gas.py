#!/usr/bin/env python3
"""
Gas policy for the flash loan transaction

Strategy:
- No oracle configured -> fixed gas limit only, the node fills in fees
- Oracle configured -> maxFeePerGas = FastGasPrice (clamped to a ceiling),
  maxPriorityFeePerGas = configured tip
- Any oracle failure -> same fallback as "no oracle", never raises
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import aiohttp
from web3 import Web3

from .config_loader import GasConfig, format_units

logger = logging.getLogger(__name__)

ORACLE_TIMEOUT = 5.0


@dataclass(frozen=True)
class GasOptions:
    """Gas parameters for transaction submission"""
    gas_limit: int
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    def to_tx_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"gas": self.gas_limit}
        if self.is_eip1559:
            params["maxFeePerGas"] = self.max_fee_per_gas
            params["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
        return params


def parse_fast_gas_price(payload: Mapping[str, Any]) -> int:
    """
    Extract result.FastGasPrice (decimal gwei string) as wei.

    Raises:
        ValueError: missing field or non-positive price
    """
    try:
        raw = payload["result"]["FastGasPrice"]
    except (KeyError, TypeError):
        raise ValueError(f"No result.FastGasPrice in oracle response: {payload!r}")

    gas_price = Web3.to_wei(Decimal(str(raw)), "gwei")
    if gas_price <= 0:
        raise ValueError(f"Non-positive gas price from oracle: {raw}")
    return int(gas_price)


class GasPolicy:
    """
    Resolves gas options before each submission.

    resolve() never raises; failures fall back to the fixed gas limit.
    """

    def __init__(
        self,
        config: GasConfig,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = ORACLE_TIMEOUT,
    ):
        self.oracle_url = config.oracle_url
        self.gas_limit = config.gas_limit
        self.tip = config.max_priority_fee_wei
        self.ceiling = config.max_fee_ceiling_wei
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def has_oracle(self) -> bool:
        return bool(self.oracle_url)

    def fallback(self) -> GasOptions:
        return GasOptions(gas_limit=self.gas_limit)

    async def _fetch(self) -> Mapping[str, Any]:
        if self._session is not None:
            async with self._session.get(self.oracle_url, timeout=self._timeout) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)

        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(self.oracle_url) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)

    def apply(self, gas_price: int) -> GasOptions:
        """Clamp the oracle price to the ceiling and attach the tip"""
        max_fee = min(gas_price, self.ceiling)
        # maxPriorityFeePerGas may not exceed maxFeePerGas
        tip = min(self.tip, max_fee)
        return GasOptions(
            gas_limit=self.gas_limit,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=tip,
        )

    async def resolve(self) -> GasOptions:
        if not self.has_oracle:
            return self.fallback()

        try:
            payload = await self._fetch()
            gas_price = parse_fast_gas_price(payload)
        except Exception as e:
            logger.warning(f"Failed to get gas price from oracle, tx will use node defaults: {e}")
            return self.fallback()

        return self.apply(gas_price)

    async def report(self) -> GasOptions:
        """Resolve once at startup and log what the oracle returned"""
        options = await self.resolve()
        if not self.has_oracle:
            logger.info("Gas oracle is not configured, transactions use the node gas price")
        elif options.is_eip1559:
            logger.info(
                f"Current gas price: {format_units(options.max_fee_per_gas, 9)} gwei "
                f"(tip {format_units(options.max_priority_fee_per_gas, 9)} gwei, "
                f"limit {options.gas_limit})"
            )
        else:
            logger.warning("Gas oracle unavailable at startup, falling back to the node gas price")
        return options
