"""Tests for the config_loader module."""

import json
from decimal import Decimal

import pytest

from flashloop.config_loader import (
    DEFAULT_GAS_LIMIT,
    DEFAULT_MAX_FEE_CEILING_WEI,
    DEFAULT_MAX_PRIORITY_FEE_WEI,
    ConfigLoader,
    ConfigValidationError,
    format_units,
    parse_units,
)

ENV_KEYS = [
    "NODE_API_URL", "PRIVATE_KEY", "FLASHLOAN_ADDRESS", "BORROWED_AMOUNT",
    "GAS_ORACLE_URL", "GAS_MAX_PRIORITY_FEE_WEI", "GAS_MAX_FEE_CEILING_WEI",
    "GAS_LIMIT", "FLASHLOAN_PREMIUM_BPS", "CYCLE_TIMEOUT", "POLL_INTERVAL",
    "RPC_TIMEOUT", "MAX_RETRIES", "TX_TIMEOUT", "DRY_RUN", "LOG_LEVEL",
    "LOG_FILE", "ARBITRAGE_CONFIG",
]

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
FLASHLOAN = "0x5555555555555555555555555555555555555555"

TOPOLOGY = {
    "chain": {"name": "polygon", "chain_id": 137, "block_time": 2.0},
    "routers": [
        {
            "id": 0,
            "name": "sushiswap",
            "factory": "0xc35dadb65012ec5796536bd9864ed8773abc74c4",
            "init_code_hash": "0xe18a34eb0e04b04f7a0ac29a6e80748dca96319b42c520a5a8b9ee6cd1b2eb60",
        },
        {"id": 1, "name": "quickswap"},
    ],
    "tokens": [
        {"symbol": "USDC", "address": "0x2791bca1f2de4661ed88a30c99a7a9449aa84174", "decimals": 6, "role": "source"},
        {"symbol": "KLIMA", "address": "0x4e78011ce80ee02d2c3e649fb657e45898257815", "decimals": 9, "role": "TARGET"},
    ],
    "pools": [
        {"token0": "USDC", "token1": "KLIMA", "router": 0},
        {"token0": "USDC", "token1": "KLIMA", "router": 1,
         "address": "0x0000000000000000000000000000000000000105", "reverse": True},
    ],
}


@pytest.fixture
def env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("NODE_API_URL", "https://rpc-a.example.org, https://rpc-b.example.org")
    monkeypatch.setenv("PRIVATE_KEY", TEST_KEY)
    monkeypatch.setenv("FLASHLOAN_ADDRESS", FLASHLOAN)
    monkeypatch.setenv("BORROWED_AMOUNT", "10000")
    return monkeypatch


@pytest.fixture
def write_config(tmp_path):
    def _write(data=None):
        path = tmp_path / "arbitrage.json"
        path.write_text(json.dumps(TOPOLOGY if data is None else data))
        return path
    return _write


@pytest.fixture
def load(tmp_path, write_config):
    def _load(data=None):
        path = write_config(data)
        return ConfigLoader(config_path=str(path), env_path=str(tmp_path / "missing.env")).load()
    return _load


class TestLoad:

    def test_valid_config(self, env, load):
        config = load()

        assert config.chain.name == "POLYGON"
        assert config.chain.chain_id == 137
        assert config.chain.rpc_urls == ["https://rpc-a.example.org", "https://rpc-b.example.org"]
        assert config.flashloan_address == FLASHLOAN
        assert config.borrowed_amount == Decimal("10000")
        assert config.premium_bps == 9
        assert config.cycle_timeout == 60.0
        assert config.dry_run is False

        assert config.gas.oracle_url is None
        assert config.gas.gas_limit == DEFAULT_GAS_LIMIT
        assert config.gas.max_priority_fee_wei == DEFAULT_MAX_PRIORITY_FEE_WEI
        assert config.gas.max_fee_ceiling_wei == DEFAULT_MAX_FEE_CEILING_WEI

    def test_tokens_and_pools(self, env, load):
        config = load()

        usdc, klima = config.tokens
        assert usdc.address == "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
        assert klima.role == "target"
        assert [r.id for r in config.routers] == [0, 1]
        assert config.pools[0].address is None
        assert config.pools[0].reverse is None
        assert config.pools[1].reverse is True

    def test_private_key_not_in_repr(self, env, load):
        assert TEST_KEY not in repr(load())

    def test_gas_overrides(self, env, load):
        env.setenv("GAS_ORACLE_URL", "https://gas.example.org/api")
        env.setenv("GAS_MAX_PRIORITY_FEE_WEI", "2000000000")
        env.setenv("GAS_LIMIT", "800000")

        gas = load().gas

        assert gas.oracle_url == "https://gas.example.org/api"
        assert gas.max_priority_fee_wei == 2_000_000_000
        assert gas.gas_limit == 800_000

    def test_dry_run_without_private_key(self, env, load):
        env.delenv("PRIVATE_KEY")
        env.setenv("DRY_RUN", "true")

        config = load()

        assert config.dry_run is True
        assert config.private_key is None

    def test_private_key_required_when_live(self, env, load):
        env.delenv("PRIVATE_KEY")
        with pytest.raises(ConfigValidationError, match="PRIVATE_KEY"):
            load()

    def test_config_path_from_env(self, env, tmp_path, write_config):
        path = write_config()
        env.setenv("ARBITRAGE_CONFIG", str(path))

        loader = ConfigLoader(env_path=str(tmp_path / "missing.env"))

        assert loader.config_file == path
        assert loader.load().chain.chain_id == 137


class TestValidation:

    @pytest.mark.parametrize("key,value", [
        ("NODE_API_URL", "not-a-url"),
        ("FLASHLOAN_ADDRESS", "0x1234"),
        ("BORROWED_AMOUNT", "lots"),
        ("BORROWED_AMOUNT", "-5"),
        ("GAS_ORACLE_URL", "gas.example.org"),
        ("GAS_LIMIT", "many"),
        ("CYCLE_TIMEOUT", "-1"),
        ("FLASHLOAN_PREMIUM_BPS", "20000"),
    ])
    def test_invalid_env(self, env, load, key, value):
        env.setenv(key, value)
        with pytest.raises(ConfigValidationError):
            load()

    @pytest.mark.parametrize("key", ["NODE_API_URL", "FLASHLOAN_ADDRESS", "BORROWED_AMOUNT"])
    def test_missing_env(self, env, load, key):
        env.delenv(key)
        with pytest.raises(ConfigValidationError, match=key):
            load()

    def test_missing_file(self, env, tmp_path):
        with pytest.raises(ConfigValidationError):
            ConfigLoader(config_path=str(tmp_path / "nope.json"), env_path=str(tmp_path / "missing.env"))

    def test_invalid_json(self, env, tmp_path):
        path = tmp_path / "arbitrage.json"
        path.write_text("{not json")
        with pytest.raises(ConfigValidationError):
            ConfigLoader(config_path=str(path), env_path=str(tmp_path / "missing.env"))

    def test_bad_token_address(self, env, load):
        data = json.loads(json.dumps(TOPOLOGY))
        data["tokens"][0]["address"] = "0xnothex"
        with pytest.raises(ConfigValidationError, match="USDC"):
            load(data)

    def test_unknown_role(self, env, load):
        data = json.loads(json.dumps(TOPOLOGY))
        data["tokens"][1]["role"] = "collateral"
        with pytest.raises(ConfigValidationError, match="role"):
            load(data)

    def test_router_id_must_be_uint8(self, env, load):
        data = json.loads(json.dumps(TOPOLOGY))
        data["routers"][1]["id"] = 300
        with pytest.raises(ConfigValidationError, match="uint8"):
            load(data)

    def test_duplicate_router_id(self, env, load):
        data = json.loads(json.dumps(TOPOLOGY))
        data["routers"][1]["id"] = 0
        with pytest.raises(ConfigValidationError):
            load(data)

    def test_bad_init_code_hash(self, env, load):
        data = json.loads(json.dumps(TOPOLOGY))
        data["routers"][0]["init_code_hash"] = "0x1234"
        with pytest.raises(ConfigValidationError, match="init_code_hash"):
            load(data)

    def test_pool_missing_router(self, env, load):
        data = json.loads(json.dumps(TOPOLOGY))
        del data["pools"][0]["router"]
        with pytest.raises(ConfigValidationError, match="router"):
            load(data)

    @pytest.mark.parametrize("key,value", [
        ("chain_id", "polygon"),
        ("chain_id", None),
        ("chain_id", 0),
        ("block_time", "fast"),
        ("block_time", None),
    ])
    def test_bad_chain_field(self, env, load, key, value):
        data = json.loads(json.dumps(TOPOLOGY))
        data["chain"][key] = value
        with pytest.raises(ConfigValidationError, match="chain"):
            load(data)

    def test_missing_chain(self, env, load):
        data = json.loads(json.dumps(TOPOLOGY))
        del data["chain"]
        with pytest.raises(ConfigValidationError, match="chain"):
            load(data)


class TestUnits:

    def test_parse_units(self):
        assert parse_units(Decimal("10000"), 6) == 10_000_000_000
        assert parse_units(Decimal("1.5"), 18) == 1_500_000_000_000_000_000

    def test_parse_units_excess_precision(self):
        with pytest.raises(ConfigValidationError):
            parse_units(Decimal("0.0000001"), 6)

    def test_parse_units_non_positive(self):
        with pytest.raises(ConfigValidationError):
            parse_units(Decimal("0"), 6)

    @pytest.mark.parametrize("value,decimals,expected", [
        (1_500_000, 6, "1.5"),
        (1_000_000_000, 6, "1000"),
        (-250_000, 6, "-0.25"),
        (1, 18, "0.000000000000000001"),
        (0, 6, "0"),
    ])
    def test_format_units(self, value, decimals, expected):
        assert format_units(value, decimals) == expected
