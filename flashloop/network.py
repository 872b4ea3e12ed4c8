"""
FlashLoop 网络层

一个 AsyncWeb3 实例 + 一个共享 aiohttp 会话，支持:
- 多个 RPC 端点按顺序故障转移
- 限速 (429) 时指数退避，不切换端点
- 每个端点的请求数 / 延迟统计（退出时打印）
- 交易广播与收据等待（收据超时不重试）
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.providers import AsyncHTTPProvider

from .config_loader import ChainConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 连续失败多少次后端点被视为不健康
UNHEALTHY_AFTER = 3
BACKOFF_BASE = 0.5
BACKOFF_MAX = 30.0


class RPCError(Exception):
    """RPC 调用失败"""
    pass


class AllRPCsFailedError(RPCError):
    """所有端点、所有重试都失败"""
    pass


class ContractRevertError(RPCError):
    """eth_call 被合约 revert"""
    pass


class NetworkState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class _Retry(Enum):
    BACKOFF = "backoff"      # 同一端点，等待后重试
    FAILOVER = "failover"    # 记一次失败，换下一个端点
    FATAL = "fatal"          # 直接抛出


@dataclass
class EndpointHealth:
    """单个 RPC 端点的统计"""
    url: str
    total_requests: int = 0
    consecutive_failures: int = 0
    avg_latency_ms: float = 0.0

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_failures < UNHEALTHY_AFTER

    def ok(self, latency_ms: float) -> None:
        self.total_requests += 1
        self.consecutive_failures = 0
        # 指数移动平均
        if self.avg_latency_ms:
            self.avg_latency_ms = 0.8 * self.avg_latency_ms + 0.2 * latency_ms
        else:
            self.avg_latency_ms = latency_ms

    def failed(self) -> None:
        self.total_requests += 1
        self.consecutive_failures += 1


def _is_rate_limit(error: Exception) -> bool:
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status == 429
    text = str(error).lower()
    return "429" in text or "rate limit" in text or "too many requests" in text


def _is_revert(error: Exception) -> bool:
    return isinstance(error, ContractLogicError) or "revert" in str(error).lower()


def _is_already_known(error: Exception) -> bool:
    text = str(error).lower()
    return "already known" in text or "known transaction" in text or "already imported" in text


def _as_rpc_error(name: str, error: Exception) -> RPCError:
    """不可重试的错误统一包装成 RPCError（包括 web3 对 JSON-RPC 错误抛出的 ValueError）"""
    if isinstance(error, aiohttp.ClientResponseError):
        return RPCError(f"{name}: HTTP {error.status} {error.message}")
    if _is_revert(error):
        return ContractRevertError(f"{name} reverted: {error}")
    return RPCError(f"{name}: {type(error).__name__}: {error}")


def _classify(error: Exception) -> _Retry:
    if _is_revert(error):
        return _Retry.FATAL
    if _is_rate_limit(error):
        return _Retry.BACKOFF
    if isinstance(error, aiohttp.ClientResponseError):
        # 4xx 不是端点的问题
        return _Retry.FAILOVER if error.status >= 500 else _Retry.FATAL
    if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, OSError, Web3Exception)):
        return _Retry.FAILOVER
    return _Retry.FATAL


class NetworkManager:
    """
    异步 RPC 管理器

    用法:
        >>> async with NetworkManager(config.chain) as network:
        ...     block = await network.get_block_number()
    """

    def __init__(
        self,
        config: ChainConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.chain_id = config.chain_id

        self._urls: List[str] = list(config.rpc_urls)
        self._index = 0
        self._health: Dict[str, EndpointHealth] = {
            url: EndpointHealth(url) for url in self._urls
        }

        self._owns_session = session is None
        self._session = session
        self._web3: Optional[AsyncWeb3] = None

        self._attempts = max(1, config.max_retries) * len(self._urls)
        self._timeout = aiohttp.ClientTimeout(total=config.rpc_timeout)
        self._state = NetworkState.DISCONNECTED
        self._rotate_lock = asyncio.Lock()

    @property
    def current_rpc_url(self) -> str:
        return self._urls[self._index]

    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def w3(self) -> AsyncWeb3:
        if self._web3 is None:
            raise RPCError("尚未连接，请先调用 connect()")
        return self._web3

    @property
    def session(self) -> aiohttp.ClientSession:
        """共享会话（Gas 预言机也用它）"""
        if self._session is None:
            raise RPCError("尚未连接，请先调用 connect()")
        return self._session

    async def __aenter__(self) -> "NetworkManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # =====================================================
    # 连接
    # =====================================================

    async def connect(self) -> None:
        """
        创建会话和 Web3 实例并读取链 ID

        节点不可达时不抛出，状态为 DEGRADED，后续调用照常重试。
        """
        self._state = NetworkState.CONNECTING

        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=aiohttp.TCPConnector(limit_per_host=20, keepalive_timeout=60),
            )
        self._make_web3()

        try:
            remote_chain_id = await self._execute_with_retry(
                lambda: self.w3.eth.chain_id, "chain_id"
            )
        except RPCError as e:
            self._state = NetworkState.DEGRADED
            logger.error(f"无法验证 {self.config.name} 连接: {e}")
            return

        if remote_chain_id != self.chain_id:
            logger.warning(f"链 ID 不一致: 配置 {self.chain_id}，节点 {remote_chain_id}")

        self._state = NetworkState.CONNECTED
        logger.info(f"已连接 {self.config.name} ({self.current_rpc_url})")

    async def disconnect(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        self._web3 = None
        self._state = NetworkState.DISCONNECTED
        logger.info(f"已断开 {self.config.name}")

    def _make_web3(self) -> None:
        self._web3 = AsyncWeb3(
            AsyncHTTPProvider(
                endpoint_uri=self.current_rpc_url,
                request_kwargs={"timeout": self._timeout},
            )
        )

    async def _rotate(self) -> None:
        """切换到下一个健康端点；没有健康端点时清零统计并进入 DEGRADED"""
        async with self._rotate_lock:
            count = len(self._urls)
            if count > 1:
                for step in range(1, count + 1):
                    index = (self._index + step) % count
                    if self._health[self._urls[index]].is_healthy:
                        break
                else:
                    logger.warning("所有 RPC 端点都不健康，重置后继续轮换")
                    for health in self._health.values():
                        health.consecutive_failures = 0
                    index = (self._index + 1) % count
                    self._state = NetworkState.DEGRADED

                self._index = index
                logger.info(f"切换 RPC 到 {self.current_rpc_url}")

            self._make_web3()

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "operation",
    ) -> T:
        """
        执行一次 RPC 操作，按错误类型退避、换端点或直接抛出

        异常:
            RPCError: 不可重试的错误（合约 revert 为 ContractRevertError）
            AllRPCsFailedError: 重试次数用尽
            TimeExhausted: 收据等待超时（由调用方处理）
        """
        last_error: Optional[Exception] = None

        for attempt in range(self._attempts):
            started = time.perf_counter()
            try:
                result = await operation()
            except TimeExhausted:
                raise
            except Exception as e:
                action = _classify(e)
                if action is _Retry.FATAL:
                    if isinstance(e, RPCError):
                        raise
                    raise _as_rpc_error(name, e) from e

                last_error = e
                if action is _Retry.BACKOFF:
                    delay = min(BACKOFF_BASE * 2 ** attempt, BACKOFF_MAX)
                    logger.warning(f"{name} 被限速，{delay:.2f} 秒后重试")
                    await asyncio.sleep(delay)
                else:
                    logger.warning(
                        f"{name} 失败 ({type(e).__name__}: {e})，"
                        f"换端点重试 {attempt + 1}/{self._attempts}"
                    )
                    self._health[self.current_rpc_url].failed()
                    await self._rotate()
                continue

            self._health[self.current_rpc_url].ok((time.perf_counter() - started) * 1000)
            return result

        raise AllRPCsFailedError(f"{name} 重试 {self._attempts} 次均失败: {last_error}")

    # =====================================================
    # 读取
    # =====================================================

    async def get_block_number(self) -> int:
        return await self._execute_with_retry(lambda: self.w3.eth.block_number, "get_block_number")

    async def get_balance(self, address: str) -> int:
        """原生代币余额（wei）"""
        account = AsyncWeb3.to_checksum_address(address)
        return await self._execute_with_retry(
            lambda: self.w3.eth.get_balance(account), "get_balance"
        )

    async def get_nonce(self, address: str) -> int:
        """pending nonce"""
        account = AsyncWeb3.to_checksum_address(address)
        return await self._execute_with_retry(
            lambda: self.w3.eth.get_transaction_count(account, "pending"), "get_nonce"
        )

    async def get_gas_price(self) -> int:
        """节点的 eth_gasPrice（wei）"""
        return await self._execute_with_retry(lambda: self.w3.eth.gas_price, "get_gas_price")

    async def call_contract(
        self,
        contract_address: str,
        data: bytes,
        block_identifier: Union[int, str] = "latest",
    ) -> bytes:
        """eth_call，返回原始字节"""
        tx = {"to": AsyncWeb3.to_checksum_address(contract_address), "data": data}
        return await self._execute_with_retry(
            lambda: self.w3.eth.call(tx, block_identifier), "call_contract"
        )

    # =====================================================
    # 交易
    # =====================================================

    async def send_raw_transaction(self, signed_tx: bytes) -> str:
        """
        广播已签名交易，返回 0x 开头的哈希

        超时后换端点重发时，节点可能已经收到过这笔交易并返回 "already known"，
        此时按成功处理并返回本地计算的哈希。
        """
        local_hash = AsyncWeb3.to_hex(AsyncWeb3.keccak(signed_tx))

        async def _send():
            try:
                return AsyncWeb3.to_hex(await self.w3.eth.send_raw_transaction(signed_tx))
            except Exception as e:
                if not _is_already_known(e):
                    raise
                logger.info(f"交易 {local_hash} 已在节点交易池中")
                return local_hash

        return await self._execute_with_retry(_send, "send_raw_transaction")

    async def wait_for_transaction_receipt(
        self,
        tx_hash: str,
        timeout: float = 120.0,
        poll_latency: float = 0.5,
    ) -> Dict[str, Any]:
        """等待收据；超时抛出 RPCError"""
        try:
            return await self._execute_with_retry(
                lambda: self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=timeout, poll_latency=poll_latency
                ),
                "wait_for_receipt",
            )
        except TimeExhausted as e:
            raise RPCError(f"交易 {tx_hash} 在 {timeout} 秒内未上链") from e

    def get_rpc_health(self) -> Dict[str, EndpointHealth]:
        return dict(self._health)
