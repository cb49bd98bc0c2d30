"""回测/扫参异常类型。"""

from __future__ import annotations

from datetime import datetime


class BacktestError(Exception):
    """回测引擎错误基类。"""


class MissingHistoryError(BacktestError):
    """请求的交易对/周期在区间内没有 K 线（致命，直接终止本次运行）。"""

    def __init__(self, symbol: str, interval: str, start: datetime, end: datetime):
        self.symbol = symbol
        self.interval = interval
        self.start = start
        self.end = end
        super().__init__(
            f"No price history for {symbol} {interval} between "
            f"{start.isoformat()} and {end.isoformat()}"
        )


class RunCancelled(BacktestError):
    """运行被取消（通常是 worker 超时）。"""
