"""
FlashLoop: 闪电贷路由套利
每个区块报价所有路由，比较最优/最差路径，有利可图时发起闪电贷
"""

from .config_loader import ConfigLoader, ConfigValidationError
from .controller import BlockWatcher, CycleOutcome, ExecutionController
from .network import NetworkManager

__version__ = "0.1.0"

__all__ = [
    "ConfigLoader",
    "ConfigValidationError",
    "BlockWatcher",
    "CycleOutcome",
    "ExecutionController",
    "NetworkManager",
]
