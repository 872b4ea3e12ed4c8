"""
FlashLoop 配置加载器

负责加载和验证路由拓扑配置以及环境变量中的敏感信息。
将静态 JSON 配置（链、路由器、代币、池）与 .env 中的凭证和运行参数结合。

所有验证都在启动时一次性完成，任何错误都是致命的。
"""

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from web3 import Web3


# 代币角色
ROLE_SOURCE = "source"
ROLE_INTERMEDIATE = "intermediate"
ROLE_TARGET = "target"
TOKEN_ROLES = (ROLE_SOURCE, ROLE_INTERMEDIATE, ROLE_TARGET)

# Gas 默认值（wei）
DEFAULT_GAS_LIMIT = 650_000
DEFAULT_MAX_PRIORITY_FEE_WEI = 30_000_000_000       # 30 gwei
DEFAULT_MAX_FEE_CEILING_WEI = 1_300_000_000_000     # 1300 gwei

# Aave v2 闪电贷手续费 0.09%
DEFAULT_PREMIUM_BPS = 9


@dataclass
class GasConfig:
    """交易 Gas 配置"""

    oracle_url: Optional[str] = None
    max_priority_fee_wei: int = DEFAULT_MAX_PRIORITY_FEE_WEI
    max_fee_ceiling_wei: int = DEFAULT_MAX_FEE_CEILING_WEI
    gas_limit: int = DEFAULT_GAS_LIMIT


@dataclass
class ChainConfig:
    """区块链连接配置"""

    name: str
    chain_id: int
    rpc_urls: List[str]
    block_time: float = 2.0

    # 运行时设置
    rpc_timeout: int = 10
    max_retries: int = 3


@dataclass
class RouterConfig:
    """执行路由器（合约中的 router 编号）"""

    id: int
    name: str
    factory: Optional[str] = None
    init_code_hash: Optional[str] = None


@dataclass
class TokenConfig:
    """代币配置"""

    symbol: str
    address: str
    decimals: int
    role: str


@dataclass
class PoolConfig:
    """流动性池配置（地址和 reverse 可省略）"""

    token0: str
    token1: str
    router: int
    address: Optional[str] = None
    reverse: Optional[bool] = None


@dataclass
class BotConfig:
    """机器人的完整配置"""

    chain: ChainConfig
    gas: GasConfig
    routers: List[RouterConfig]
    tokens: List[TokenConfig]
    pools: List[PoolConfig]

    flashloan_address: str
    borrowed_amount: Decimal

    # 敏感信息（从环境变量加载）
    private_key: Optional[str] = field(default=None, repr=False)

    premium_bps: int = DEFAULT_PREMIUM_BPS
    cycle_timeout: float = 60.0
    poll_interval: float = 1.0
    tx_timeout: float = 120.0
    dry_run: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = None


class ConfigValidationError(Exception):
    """配置验证失败时抛出的异常"""
    pass


def is_address(value: Any) -> bool:
    """检查是否为 0x 开头的 40 位十六进制地址"""
    return isinstance(value, str) and Web3.is_address(value)


def _is_hash32(value: Any) -> bool:
    """0x 开头的 32 字节十六进制哈希"""
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 66:
        return False
    try:
        bytes.fromhex(value[2:])
    except ValueError:
        return False
    return True


def is_url(value: str) -> bool:
    """检查是否为 http(s)/ws(s) URL"""
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https", "ws", "wss") and bool(parsed.netloc)


def parse_units(amount: Decimal, decimals: int) -> int:
    """
    将人类可读金额转换为最小单位整数（等价于 ethers parseUnits）

    异常:
        ConfigValidationError: 金额精度超过代币小数位或不为正
    """
    scaled = amount * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        raise ConfigValidationError(
            f"金额 {amount} 超出了 {decimals} 位小数精度"
        )
    value = int(scaled)
    if value <= 0:
        raise ConfigValidationError(f"金额必须为正数: {amount}")
    return value


def format_units(value: int, decimals: int) -> str:
    """将最小单位整数转换为人类可读金额（去掉末尾的 0）"""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10 ** decimals)
    if frac == 0:
        return f"{sign}{whole}"
    frac_text = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_text}"


class ConfigLoader:
    """
    FlashLoop 配置管理器

    从 JSON 文件加载路由拓扑，并与环境变量中的敏感信息结合。

    使用示例:
        >>> loader = ConfigLoader()
        >>> config = loader.load()
        >>> print(config.chain.chain_id)  # 137
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_path: Optional[str] = None
    ) -> None:
        """
        初始化配置加载器

        参数:
            config_path: arbitrage.json 文件路径，默认为 config/arbitrage.json
            env_path: .env 文件路径，默认为项目根目录的 .env
        """
        self._project_root = self._find_project_root()

        # 加载环境变量（已存在的环境变量优先）
        env_file = Path(env_path) if env_path else self._project_root / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        config_file = (
            Path(config_path)
            if config_path
            else Path(os.getenv("ARBITRAGE_CONFIG", self._project_root / "config" / "arbitrage.json"))
        )
        self._config_file = config_file
        self._raw_config = self._load_json_config(config_file)

    def _find_project_root(self) -> Path:
        """
        查找项目根目录

        通过查找常见的项目标记（config 文件夹、.git 等）来定位
        """
        current = Path(__file__).resolve().parent

        for _ in range(5):
            if (current / "config").exists() or (current / ".git").exists():
                return current
            current = current.parent

        return Path(__file__).resolve().parent.parent

    def _load_json_config(self, path: Path) -> Dict[str, Any]:
        """
        加载并验证 JSON 配置文件

        异常:
            ConfigValidationError: 文件不存在或 JSON 格式无效
        """
        if not path.exists():
            raise ConfigValidationError(f"配置文件不存在: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"{path} 中的 JSON 格式无效: {e}")

        if not isinstance(config, dict):
            raise ConfigValidationError("配置必须是一个 JSON 对象")

        return config

    # =====================================================
    # 环境变量
    # =====================================================

    @staticmethod
    def _env(key: str, default: Optional[str] = None) -> Optional[str]:
        """读取环境变量，空字符串视为未设置"""
        value = os.getenv(key)
        if value is None or value.strip() == "":
            return default
        return value.strip()

    def _env_required(self, key: str) -> str:
        value = self._env(key)
        if value is None:
            raise ConfigValidationError(f"缺少必需的环境变量 '{key}'")
        return value

    def _env_int(self, key: str, default: int) -> int:
        value = self._env(key)
        if value is None:
            return default
        try:
            parsed = int(value)
        except ValueError:
            raise ConfigValidationError(f"环境变量 '{key}' 必须是整数: {value}")
        if parsed < 0:
            raise ConfigValidationError(f"环境变量 '{key}' 不能为负数: {value}")
        return parsed

    def _env_float(self, key: str, default: float) -> float:
        value = self._env(key)
        if value is None:
            return default
        try:
            parsed = float(value)
        except ValueError:
            raise ConfigValidationError(f"环境变量 '{key}' 必须是数字: {value}")
        if parsed < 0:
            raise ConfigValidationError(f"环境变量 '{key}' 不能为负数: {value}")
        return parsed

    def _env_bool(self, key: str, default: bool = False) -> bool:
        value = self._env(key)
        if value is None:
            return default
        return value.lower() in ("1", "true", "yes")

    def _get_rpc_urls(self) -> List[str]:
        """
        NODE_API_URL 支持逗号分隔的多个端点（用于故障转移）
        """
        raw = self._env_required("NODE_API_URL")
        urls = [url.strip() for url in raw.split(",") if url.strip()]
        for url in urls:
            if not is_url(url):
                raise ConfigValidationError(f"NODE_API_URL 无效: {url}")
        return urls

    def _parse_gas_config(self) -> GasConfig:
        oracle_url = self._env("GAS_ORACLE_URL")
        if oracle_url is not None and not is_url(oracle_url):
            raise ConfigValidationError(f"GAS_ORACLE_URL 无效: {oracle_url}")

        return GasConfig(
            oracle_url=oracle_url,
            max_priority_fee_wei=self._env_int(
                "GAS_MAX_PRIORITY_FEE_WEI", DEFAULT_MAX_PRIORITY_FEE_WEI
            ),
            max_fee_ceiling_wei=self._env_int(
                "GAS_MAX_FEE_CEILING_WEI", DEFAULT_MAX_FEE_CEILING_WEI
            ),
            gas_limit=self._env_int("GAS_LIMIT", DEFAULT_GAS_LIMIT),
        )

    def _parse_borrowed_amount(self) -> Decimal:
        raw = self._env_required("BORROWED_AMOUNT")
        try:
            amount = Decimal(raw)
        except InvalidOperation:
            raise ConfigValidationError(f"BORROWED_AMOUNT 必须是数字: {raw}")
        if not amount.is_finite() or amount <= 0:
            raise ConfigValidationError(f"BORROWED_AMOUNT 必须为正数: {raw}")
        return amount

    # =====================================================
    # JSON 拓扑
    # =====================================================

    def _parse_chain(self, rpc_urls: List[str]) -> ChainConfig:
        raw = self._raw_config.get("chain")
        if not isinstance(raw, dict):
            raise ConfigValidationError("配置中缺少 'chain' 对象")

        for field_name in ("name", "chain_id"):
            if field_name not in raw:
                raise ConfigValidationError(
                    f"chain 配置中缺少必需字段 '{field_name}'"
                )

        try:
            chain_id = int(raw["chain_id"])
            block_time = float(raw.get("block_time", 2.0))
        except (TypeError, ValueError):
            raise ConfigValidationError(
                f"chain.chain_id 必须是整数、chain.block_time 必须是数字: {raw!r}"
            )
        if chain_id <= 0 or block_time <= 0:
            raise ConfigValidationError(f"chain.chain_id / block_time 必须为正数: {raw!r}")

        return ChainConfig(
            name=str(raw["name"]).upper(),
            chain_id=chain_id,
            rpc_urls=rpc_urls,
            block_time=block_time,
            rpc_timeout=self._env_int("RPC_TIMEOUT", 10),
            max_retries=self._env_int("MAX_RETRIES", 3),
        )

    def _parse_routers(self) -> List[RouterConfig]:
        raw_routers = self._raw_config.get("routers")
        if not isinstance(raw_routers, list) or len(raw_routers) == 0:
            raise ConfigValidationError("必须至少配置一个路由器 (routers)")

        routers = []
        seen = set()
        for i, raw in enumerate(raw_routers):
            if not isinstance(raw, dict) or "id" not in raw:
                raise ConfigValidationError(f"路由器 {i} 缺少 'id'")

            router_id = raw["id"]
            if not isinstance(router_id, int) or not 0 <= router_id <= 255:
                raise ConfigValidationError(
                    f"路由器 {i} 的 id 无效: {router_id}（必须是 uint8）"
                )
            if router_id in seen:
                raise ConfigValidationError(f"路由器 id 重复: {router_id}")
            seen.add(router_id)

            factory = raw.get("factory")
            if factory is not None and not is_address(factory):
                raise ConfigValidationError(
                    f"路由器 {router_id} 的 factory 地址无效: {factory}"
                )

            init_code_hash = raw.get("init_code_hash")
            if init_code_hash is not None and not _is_hash32(init_code_hash):
                raise ConfigValidationError(
                    f"路由器 {router_id} 的 init_code_hash 无效: {init_code_hash}"
                )

            routers.append(RouterConfig(
                id=router_id,
                name=raw.get("name", f"router{router_id}"),
                factory=factory,
                init_code_hash=init_code_hash,
            ))
        return routers

    def _parse_tokens(self) -> List[TokenConfig]:
        raw_tokens = self._raw_config.get("tokens")
        if not isinstance(raw_tokens, list):
            raise ConfigValidationError("配置中缺少 'tokens' 列表")

        tokens = []
        for i, raw in enumerate(raw_tokens):
            if not isinstance(raw, dict):
                raise ConfigValidationError(f"代币 {i} 的配置必须是对象")

            for field_name in ("symbol", "address", "decimals", "role"):
                if field_name not in raw:
                    raise ConfigValidationError(
                        f"代币 {i} 的配置中缺少必需字段 '{field_name}'"
                    )

            if not is_address(raw["address"]):
                raise ConfigValidationError(
                    f"代币 {raw['symbol']} 的地址无效: {raw['address']}"
                )

            role = str(raw["role"]).lower()
            if role not in TOKEN_ROLES:
                raise ConfigValidationError(
                    f"代币 {raw['symbol']} 的 role 无效: {raw['role']}"
                )

            decimals = raw["decimals"]
            if not isinstance(decimals, int) or not 0 <= decimals <= 36:
                raise ConfigValidationError(
                    f"代币 {raw['symbol']} 的 decimals 无效: {decimals}"
                )

            tokens.append(TokenConfig(
                symbol=raw["symbol"],
                address=Web3.to_checksum_address(raw["address"]),
                decimals=decimals,
                role=role,
            ))
        return tokens

    def _parse_pools(self) -> List[PoolConfig]:
        raw_pools = self._raw_config.get("pools")
        if not isinstance(raw_pools, list):
            raise ConfigValidationError("配置中缺少 'pools' 列表")

        pools = []
        for i, raw in enumerate(raw_pools):
            if not isinstance(raw, dict):
                raise ConfigValidationError(f"池 {i} 的配置必须是对象")

            for field_name in ("token0", "token1", "router"):
                if field_name not in raw:
                    raise ConfigValidationError(
                        f"池 {i} 的配置中缺少必需字段 '{field_name}'"
                    )

            address = raw.get("address") or None
            if address is not None and not is_address(address):
                raise ConfigValidationError(f"池 {i} 的地址无效: {address}")

            reverse = raw.get("reverse")
            if reverse is not None and not isinstance(reverse, bool):
                raise ConfigValidationError(f"池 {i} 的 reverse 必须是布尔值")

            pools.append(PoolConfig(
                token0=raw["token0"],
                token1=raw["token1"],
                router=raw["router"],
                address=Web3.to_checksum_address(address) if address else None,
                reverse=reverse,
            ))
        return pools

    def load(self) -> BotConfig:
        """
        加载完整配置

        返回:
            BotConfig 对象

        异常:
            ConfigValidationError: 缺少必需字段或字段无效
        """
        dry_run = self._env_bool("DRY_RUN", False)

        private_key = self._env("PRIVATE_KEY")
        if private_key is None and not dry_run:
            raise ConfigValidationError("缺少必需的环境变量 'PRIVATE_KEY'")

        flashloan_address = self._env_required("FLASHLOAN_ADDRESS")
        if not is_address(flashloan_address):
            raise ConfigValidationError(
                f"FLASHLOAN_ADDRESS 无效: {flashloan_address}"
            )

        premium_bps = self._env_int("FLASHLOAN_PREMIUM_BPS", DEFAULT_PREMIUM_BPS)
        if premium_bps > 10_000:
            raise ConfigValidationError(
                f"FLASHLOAN_PREMIUM_BPS 超出范围: {premium_bps}"
            )

        return BotConfig(
            chain=self._parse_chain(self._get_rpc_urls()),
            gas=self._parse_gas_config(),
            routers=self._parse_routers(),
            tokens=self._parse_tokens(),
            pools=self._parse_pools(),
            flashloan_address=Web3.to_checksum_address(flashloan_address),
            borrowed_amount=self._parse_borrowed_amount(),
            private_key=private_key,
            premium_bps=premium_bps,
            cycle_timeout=self._env_float("CYCLE_TIMEOUT", 60.0),
            poll_interval=self._env_float("POLL_INTERVAL", 1.0),
            tx_timeout=self._env_float("TX_TIMEOUT", 120.0),
            dry_run=dry_run,
            log_level=self._env("LOG_LEVEL", "INFO").upper(),
            log_file=self._env("LOG_FILE"),
        )

    @property
    def config_file(self) -> Path:
        """实际加载的配置文件路径"""
        return self._config_file
