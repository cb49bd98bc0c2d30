"""均线交叉策略（可选高周期 EMA 趋势过滤 + 百分比止盈止损）。"""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np

from shared.models.models import OrderSide, Trend
from strategy.base import Candles, ExitPlan, Strategy
from strategy.exits import parse_take_profits, percent_exit_plan
from strategy.indicators import closes, ema, last_two, sma


class MACrossStrategy(Strategy):
    """快线上穿慢线做多、下穿做空。

    trend_interval 配置后：高周期收盘价在 EMA(trend_period) 之上只做多，之下只做空。
    """

    def __init__(
        self,
        fast_period: int = 10,
        slow_period: int = 30,
        use_ema: bool = False,
        min_ma_diff_pct: float = 0.0,
        interval: str | None = None,
        trend_interval: str | None = None,
        trend_period: int = 50,
        take_profits: Sequence[Any] | None = ((0.02, 1.0),),
        stop_loss_pct: float | None = 0.01,
    ):
        if int(fast_period) <= 0 or int(slow_period) <= 0:
            raise ValueError("MA periods must be > 0")
        if int(fast_period) >= int(slow_period):
            raise ValueError("fast_period must be < slow_period")
        self.fast_period = int(fast_period)
        self.slow_period = int(slow_period)
        self.use_ema = bool(use_ema)
        self.min_ma_diff_pct = float(min_ma_diff_pct)
        self.interval = interval
        self.trend_interval = trend_interval
        self.trend_period = int(trend_period)
        self.take_profits = parse_take_profits(take_profits)
        self.stop_loss_pct = float(stop_loss_pct) if stop_loss_pct else None

    def _averages(self, candles: Candles) -> tuple[tuple[float, float], tuple[float, float]] | None:
        values = closes(self.bars(candles))
        if len(values) < self.slow_period + 1:
            return None
        avg = ema if self.use_ema else sma
        fast = last_two(avg(values, self.fast_period))
        slow = last_two(avg(values, self.slow_period))
        if fast is None or slow is None:
            return None
        return fast, slow

    def _diff_ok(self, fast: float, slow: float) -> bool:
        return slow > 0 and abs(fast - slow) / slow >= self.min_ma_diff_pct

    def buy(self, candles: Candles) -> bool:
        ma = self._averages(candles)
        if ma is None:
            return False
        (f0, f1), (s0, s1) = ma
        return f0 <= s0 and f1 > s1 and self._diff_ok(f1, s1)

    def sell(self, candles: Candles) -> bool:
        ma = self._averages(candles)
        if ma is None:
            return False
        (f0, f1), (s0, s1) = ma
        return f0 >= s0 and f1 < s1 and self._diff_ok(f1, s1)

    def trend_filter(self, candles: Candles) -> Trend | None:
        if not self.trend_interval:
            return None
        values = closes(self.bars(candles, self.trend_interval))
        if len(values) < self.trend_period:
            return Trend.NEUTRAL
        line = ema(values, self.trend_period)[-1]
        if np.isnan(line):
            return Trend.NEUTRAL
        if values[-1] > line:
            return Trend.LONG
        if values[-1] < line:
            return Trend.SHORT
        return Trend.NEUTRAL

    def exit_plan(self, price: float, candles: Candles, price_precision: int, side: OrderSide) -> ExitPlan:
        return percent_exit_plan(price, side, price_precision, self.take_profits, self.stop_loss_pct)
