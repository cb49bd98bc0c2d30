"""行情数据模块（market_data）。

该包聚合：
- 历史 K 线加载（CSV）
- 只读 K 线仓库（回测/扫参共享）
- 周期换算工具
"""

from market_data.loader import HistoricalDataLoader
from market_data.repository import CandleRepository

__all__ = [
    "HistoricalDataLoader",
    "CandleRepository",
]
