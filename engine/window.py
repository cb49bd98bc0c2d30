"""K 线滑动窗口索引。

每个 (symbol, interval) 维护一个半开区间 `[start, end)`：
- `bars[end - 1]` 是收盘时间不晚于当前模拟时间的最后一根 bar；
- `end - start` 不超过 max_window（实盘单次拉取 K 线的上限）；
- start / end 在一次运行内单调不减；没有新 bar 收盘时 end 保持不变。
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from shared.models.models import Bar


def advance_window(
    bars: Sequence[Bar],
    start: int,
    end: int,
    ts: datetime,
    max_window: int,
) -> tuple[int, int]:
    n = len(bars)
    while end < n and bars[end].close_time <= ts:
        end += 1
    start = max(start, end - max_window)
    return start, end


class WindowIndexer:
    """按 (symbol, interval) 保存窗口索引。"""

    def __init__(self, max_window: int):
        if max_window <= 0:
            raise ValueError("max_window must be > 0")
        self.max_window = int(max_window)
        self._idx: dict[tuple[str, str], tuple[int, int]] = {}

    def advance(self, symbol: str, interval: str, bars: Sequence[Bar], ts: datetime) -> tuple[int, int]:
        key = (symbol, interval)
        start, end = self._idx.get(key, (0, 0))
        start, end = advance_window(bars, start, end, ts, self.max_window)
        self._idx[key] = (start, end)
        return start, end

    def bounds(self, symbol: str, interval: str) -> tuple[int, int]:
        return self._idx.get((symbol, interval), (0, 0))

    def window(self, symbol: str, interval: str, bars: Sequence[Bar]) -> Sequence[Bar]:
        start, end = self.bounds(symbol, interval)
        return bars[start:end]
