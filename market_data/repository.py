"""只读 K 线仓库：一次加载、多次回测共享。

仓库在构建后不再修改（tuple + MappingProxyType），可以安全地在同一进程内的多次回测之间复用，
也可以整体 pickle 给扫参 worker。
"""

from __future__ import annotations

from datetime import datetime
from types import MappingProxyType
from typing import Iterable, Mapping

from engine.errors import MissingHistoryError
from market_data.loader import HistoricalDataLoader
from shared.models.models import Bar
from shared.utils.logging import setup_logger


class CandleRepository:
    def __init__(self, data: Mapping[str, Mapping[str, Iterable[Bar]]]):
        frozen: dict[str, MappingProxyType] = {}
        for symbol, by_interval in data.items():
            frozen[symbol] = MappingProxyType({itv: tuple(bars) for itv, bars in by_interval.items()})
        self._data = MappingProxyType(frozen)

    def __getstate__(self) -> dict:
        return {"data": {s: dict(v) for s, v in self._data.items()}}

    def __setstate__(self, state: dict) -> None:
        self.__init__(state["data"])

    @classmethod
    def build(
        cls,
        loader: HistoricalDataLoader,
        requests: Mapping[str, Iterable[str]],
        start: datetime,
        end: datetime,
    ) -> "CandleRepository":
        """按 {symbol: [intervals]} 加载全部 K 线。

        Raises
        ------
        MissingHistoryError
            任一 symbol/interval 在 [start, end] 区间内没有 K 线。
        """
        logger = setup_logger("data")
        data: dict[str, dict[str, list[Bar]]] = {}
        for symbol, intervals in requests.items():
            data[symbol] = {}
            for interval in intervals:
                bars = loader.load_bars(symbol, interval, end=end)
                in_range = [b for b in bars if b.close_time >= start]
                if not in_range:
                    raise MissingHistoryError(symbol, interval, start, end)
                first, last = bars[0], bars[-1]
                if first.open_time > start:
                    logger.warning(
                        "%s %s data starts at %s, after requested start %s",
                        symbol, interval, first.open_time.isoformat(), start.isoformat(),
                    )
                if last.close_time < end:
                    logger.warning(
                        "%s %s data ends at %s, before requested end %s",
                        symbol, interval, last.close_time.isoformat(), end.isoformat(),
                    )
                data[symbol][interval] = bars
        return cls(data)

    def symbols(self) -> list[str]:
        return list(self._data.keys())

    def intervals(self, symbol: str) -> list[str]:
        return list(self._data.get(symbol, {}).keys())

    def bars(self, symbol: str, interval: str) -> tuple[Bar, ...]:
        try:
            return self._data[symbol][interval]
        except KeyError as exc:
            raise KeyError(f"No bars loaded for {symbol} {interval}") from exc

    def require(self, symbol: str, interval: str, start: datetime, end: datetime) -> tuple[Bar, ...]:
        """取 K 线并校验区间内非空（致命错误）。"""
        bars = self._data.get(symbol, {}).get(interval, ())
        if not any(b.close_time >= start and b.open_time <= end for b in bars):
            raise MissingHistoryError(symbol, interval, start, end)
        return bars
