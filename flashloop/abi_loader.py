"""
FlashLoop ABI 加载器

从包内 abis/ 目录加载并缓存合约 ABI。

⚡ 高性能优化:
- 使用 orjson 进行快速 JSON 解析（如已安装）
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Sequence

from eth_abi import encode
from web3 import Web3

# Try to import orjson for faster JSON parsing
try:
    import orjson
    HAS_ORJSON = True
except ImportError:
    HAS_ORJSON = False


ABIS_DIR = Path(__file__).resolve().parent / "abis"

FLASHLOAN_ABI = "flashloan"


class ABILoadError(Exception):
    """ABI 加载失败时抛出的异常"""
    pass


# 已加载 ABI 的缓存（模块级别）
_abi_cache: Dict[str, List[Dict[str, Any]]] = {}


def _json_load_file(file_path: Path) -> Any:
    """Load JSON from file using fastest available method."""
    if HAS_ORJSON:
        with open(file_path, "rb") as f:
            return orjson.loads(f.read())
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def get_abi_path(file_name: str) -> Path:
    """
    获取 ABI 文件的完整路径（自动补全 .json 扩展名）
    """
    if not file_name.endswith(".json"):
        file_name = f"{file_name}.json"
    return ABIS_DIR / file_name


def load_abi(file_name: str, use_cache: bool = True) -> List[Dict[str, Any]]:
    """
    从 abis 目录加载合约 ABI

    支持原始 ABI 数组和 {"abi": [...]} 包装格式（Hardhat/Foundry 产物）。

    异常:
        ABILoadError: 如果文件不存在或包含无效的 JSON
    """
    abi_path = get_abi_path(file_name)
    key = abi_path.name

    if use_cache and key in _abi_cache:
        return _abi_cache[key]

    if not abi_path.exists():
        raise ABILoadError(f"ABI 文件不存在: {abi_path}")

    try:
        content = _json_load_file(abi_path)
    except ValueError as e:
        # json.JSONDecodeError 和 orjson.JSONDecodeError 都是 ValueError
        raise ABILoadError(f"{abi_path} 中的 JSON 格式无效: {e}")

    if isinstance(content, dict) and "abi" in content:
        abi = content["abi"]
    elif isinstance(content, list):
        abi = content
    else:
        raise ABILoadError(
            f"{key} 中的 ABI 格式无效。期望列表或带有 'abi' 键的字典"
        )

    if use_cache:
        _abi_cache[key] = abi

    return abi


# =====================================================
# 函数编码辅助
# =====================================================

def get_function_by_name(
    abi: List[Dict[str, Any]],
    function_name: str,
) -> Dict[str, Any]:
    """
    通过名称在 ABI 中查找函数定义

    异常:
        ABILoadError: ABI 中没有该函数
    """
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == function_name:
            return entry
    raise ABILoadError(f"ABI 中未找到函数: {function_name}")


def get_input_types(abi_entry: Dict[str, Any]) -> List[str]:
    """返回函数参数的类型列表"""
    return [inp.get("type", "") for inp in abi_entry.get("inputs", [])]


def extract_function_selector(abi_entry: Dict[str, Any]) -> bytes:
    """
    从 ABI 条目中计算 4 字节函数选择器

    返回:
        keccak256(签名) 的前 4 字节
    """
    signature = f"{abi_entry['name']}({','.join(get_input_types(abi_entry))})"
    return bytes(Web3.keccak(text=signature)[:4])


def encode_function_call(
    abi: List[Dict[str, Any]],
    function_name: str,
    args: Sequence[Any],
) -> bytes:
    """
    编码函数调用数据（选择器 + ABI 编码参数）
    """
    entry = get_function_by_name(abi, function_name)
    return extract_function_selector(entry) + encode(get_input_types(entry), list(args))
