"""Shared fixtures: a four-token, three-route catalog and reserve batches for it."""

import pytest

from flashloop.catalog import build_route_catalog
from flashloop.config_loader import PoolConfig, RouterConfig, TokenConfig

USDC = "0x1111111111111111111111111111111111111111"
BCT = "0x2222222222222222222222222222222222222222"
KLIMA = "0x3333333333333333333333333333333333333333"
MCO2 = "0x4444444444444444444444444444444444444444"

POOL_USDC_BCT = "0x0000000000000000000000000000000000000101"
POOL_BCT_KLIMA = "0x0000000000000000000000000000000000000102"
POOL_USDC_MCO2 = "0x0000000000000000000000000000000000000103"
POOL_MCO2_KLIMA = "0x0000000000000000000000000000000000000104"
POOL_USDC_KLIMA = "0x0000000000000000000000000000000000000105"

BORROW_AMOUNT = 1_000 * 10**6  # 1000 USDC

USDC_UNIT = 10**6
KLIMA_UNIT = 10**9
CARBON_UNIT = 10**18


@pytest.fixture
def token_configs():
    return [
        TokenConfig("USDC", USDC, 6, "source"),
        TokenConfig("BCT", BCT, 18, "intermediate"),
        TokenConfig("KLIMA", KLIMA, 9, "target"),
        TokenConfig("MCO2", MCO2, 18, "intermediate"),
    ]


@pytest.fixture
def router_configs():
    return [
        RouterConfig(id=0, name="sushiswap"),
        RouterConfig(id=1, name="quickswap"),
    ]


@pytest.fixture
def pool_configs():
    return [
        PoolConfig("USDC", "BCT", 0, address=POOL_USDC_BCT),
        PoolConfig("BCT", "KLIMA", 0, address=POOL_BCT_KLIMA),
        PoolConfig("USDC", "MCO2", 1, address=POOL_USDC_MCO2),
        PoolConfig("MCO2", "KLIMA", 1, address=POOL_MCO2_KLIMA),
        PoolConfig("USDC", "KLIMA", 0, address=POOL_USDC_KLIMA),
    ]


@pytest.fixture
def catalog(token_configs, pool_configs, router_configs):
    """
    Routes, in order:
        0: USDC -> BCT -> KLIMA   (router 0)
        1: USDC -> MCO2 -> KLIMA  (router 1)
        2: USDC -> KLIMA          (router 0)
    """
    return build_route_catalog(token_configs, pool_configs, router_configs)


@pytest.fixture
def balanced_reserves():
    """Every pool at 1:1 (in whole tokens); no round trip clears the debt."""
    million = 1_000_000
    return [
        (million * USDC_UNIT, million * CARBON_UNIT, 1),   # USDC/BCT
        (million * CARBON_UNIT, million * KLIMA_UNIT, 1),  # BCT/KLIMA
        (million * USDC_UNIT, million * CARBON_UNIT, 1),   # USDC/MCO2
        (million * KLIMA_UNIT, million * CARBON_UNIT, 1),  # MCO2/KLIMA, KLIMA in slot 0
        (million * USDC_UNIT, million * KLIMA_UNIT, 1),    # USDC/KLIMA
    ]


@pytest.fixture
def skewed_reserves():
    """KLIMA is 20% cheaper in the BCT/KLIMA pool; selling via BCT is profitable."""
    million = 1_000_000
    return [
        (million * USDC_UNIT, million * CARBON_UNIT, 1),
        (million * CARBON_UNIT, 1_200_000 * KLIMA_UNIT, 1),
        (million * USDC_UNIT, million * CARBON_UNIT, 1),
        (million * KLIMA_UNIT, million * CARBON_UNIT, 1),
        (million * USDC_UNIT, million * KLIMA_UNIT, 1),
    ]
