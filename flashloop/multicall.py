#!/usr/bin/env python3
"""
Multicall 批量调用辅助模块

功能：
- 使用 Multicall3 合约在一次 RPC 请求中批量读取所有池的 getReserves()
- 同一批次的所有储备来自同一个区块
- 通过 NetworkManager 发送，享有故障转移和重试

Multicall3 地址（所有 EVM 链通用）：0xcA11bde05977b3631167028862bE2a173976CA11

使用示例：
    multicall = Multicall(network)
    reserves = await multicall.get_reserves_batch(catalog.pool_addresses)
"""

import logging
from typing import List, Optional, Sequence, Tuple, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .network import ContractRevertError, NetworkManager, RPCError

logger = logging.getLogger(__name__)

# Multicall3 合约地址（所有 EVM 链通用）
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# aggregate3((address,bool,bytes)[]) 函数选择器
AGGREGATE3_SELECTOR = "0x82ad56cb"
# aggregate((address,bytes)[]) 函数选择器
AGGREGATE_SELECTOR = "0x252dba42"
# getReserves() 函数选择器
GET_RESERVES_SELECTOR = "0x0902f1ac"

# (reserve0, reserve1, blockTimestampLast)
Reserves = Tuple[int, int, int]


def _to_bytes(call_data: Union[bytes, str]) -> bytes:
    if isinstance(call_data, bytes):
        return call_data
    return bytes.fromhex(call_data[2:] if call_data.startswith("0x") else call_data)


def encode_aggregate3(calls: Sequence[Tuple[str, Union[bytes, str]]], allow_failure: bool = True) -> bytes:
    """编码 aggregate3 调用数据"""
    formatted = [
        (Web3.to_checksum_address(target), allow_failure, _to_bytes(call_data))
        for target, call_data in calls
    ]
    return _to_bytes(AGGREGATE3_SELECTOR) + encode(["(address,bool,bytes)[]"], [formatted])


def decode_aggregate3(return_data: bytes) -> List[Tuple[bool, bytes]]:
    """解码 aggregate3 返回值"""
    (results,) = decode(["(bool,bytes)[]"], return_data)
    return [(bool(success), bytes(data)) for success, data in results]


def encode_aggregate(calls: Sequence[Tuple[str, Union[bytes, str]]]) -> bytes:
    """编码 aggregate 调用数据（旧版 Multicall 接口）"""
    formatted = [
        (Web3.to_checksum_address(target), _to_bytes(call_data))
        for target, call_data in calls
    ]
    return _to_bytes(AGGREGATE_SELECTOR) + encode(["(address,bytes)[]"], [formatted])


def decode_reserves(return_data: bytes) -> Optional[Reserves]:
    """
    解码 getReserves 返回数据

    返回：
        (reserve0, reserve1, timestamp) 或 None
    """
    if len(return_data) < 96:  # 3 * 32 bytes
        return None

    try:
        reserve0, reserve1, timestamp = decode(["uint112", "uint112", "uint32"], return_data)
    except DecodingError:
        return None
    return reserve0, reserve1, timestamp


class Multicall:
    """
    Multicall 批量调用辅助类

    在一次 eth_call 中执行多个 view 调用。
    """

    def __init__(self, network: NetworkManager, address: str = MULTICALL3_ADDRESS):
        self.network = network
        self.address = Web3.to_checksum_address(address)

    async def aggregate(
        self,
        calls: Sequence[Tuple[str, Union[bytes, str]]],
        allow_failure: bool = True
    ) -> List[Tuple[bool, bytes]]:
        """
        批量执行多个合约调用

        参数：
            calls: 调用列表，每个元素为 (目标合约地址, 调用数据)
            allow_failure: 是否允许单个调用失败

        返回：
            结果列表，每个元素为 (是否成功, 返回数据)，顺序与 calls 一致
        """
        if not calls:
            return []

        # 只有合约 revert 或返回无法解码时才回退；节点故障（AllRPCsFailedError）直接抛出
        try:
            raw = await self.network.call_contract(
                self.address, encode_aggregate3(calls, allow_failure)
            )
            results = decode_aggregate3(raw)
        except (ContractRevertError, DecodingError) as e:
            logger.warning(f"aggregate3 不可用，回退到 aggregate: {e}")
            return await self._aggregate_fallback(calls)

        if len(results) != len(calls):
            raise RPCError(
                f"Multicall 返回 {len(results)} 个结果，期望 {len(calls)} 个"
            )
        return results

    async def _aggregate_fallback(
        self,
        calls: Sequence[Tuple[str, Union[bytes, str]]]
    ) -> List[Tuple[bool, bytes]]:
        """
        使用简单的 aggregate 函数作为后备方案

        任意一个调用失败都会导致整个批次失败。
        """
        raw = await self.network.call_contract(self.address, encode_aggregate(calls))
        _, return_data = decode(["uint256", "bytes[]"], raw)
        return [(True, bytes(data)) for data in return_data]

    async def get_reserves_batch(
        self,
        pair_addresses: Sequence[str]
    ) -> List[Optional[Reserves]]:
        """
        批量获取多个配对的储备数据

        参数：
            pair_addresses: 配对合约地址列表

        返回：
            储备数据列表（与输入顺序一致），失败的位置为 None
        """
        calls = [create_get_reserves_call(addr) for addr in pair_addresses]
        results = await self.aggregate(calls)

        reserves_list: List[Optional[Reserves]] = []
        for success, return_data in results:
            reserves_list.append(decode_reserves(return_data) if success else None)

        return reserves_list


def create_get_reserves_call(pair_address: str) -> Tuple[str, bytes]:
    """
    创建 getReserves 调用数据

    返回：
        (目标地址, 调用数据) 元组
    """
    return (pair_address, _to_bytes(GET_RESERVES_SELECTOR))
