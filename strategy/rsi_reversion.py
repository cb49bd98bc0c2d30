"""RSI 均值回归：超卖区向上穿出做多，超买区向下穿出做空。"""

from __future__ import annotations

from typing import Any, Sequence

from shared.models.models import OrderSide
from strategy.base import Candles, ExitPlan, Strategy
from strategy.exits import parse_take_profits, percent_exit_plan
from strategy.indicators import closes, last_two, rsi


class RSIReversionStrategy(Strategy):
    def __init__(
        self,
        rsi_period: int = 14,
        oversold: float = 30.0,
        overbought: float = 70.0,
        interval: str | None = None,
        take_profits: Sequence[Any] | None = ((0.015, 0.5), (0.03, 0.5)),
        stop_loss_pct: float | None = 0.015,
    ):
        if float(oversold) >= float(overbought):
            raise ValueError("oversold must be < overbought")
        self.rsi_period = int(rsi_period)
        self.oversold = float(oversold)
        self.overbought = float(overbought)
        self.interval = interval
        self.take_profits = parse_take_profits(take_profits)
        self.stop_loss_pct = float(stop_loss_pct) if stop_loss_pct else None

    def _rsi(self, candles: Candles) -> tuple[float, float] | None:
        values = closes(self.bars(candles))
        if len(values) < self.rsi_period + 2:
            return None
        return last_two(rsi(values, self.rsi_period))

    def buy(self, candles: Candles) -> bool:
        r = self._rsi(candles)
        return r is not None and r[0] <= self.oversold < r[1]

    def sell(self, candles: Candles) -> bool:
        r = self._rsi(candles)
        return r is not None and r[0] >= self.overbought > r[1]

    def exit_plan(self, price: float, candles: Candles, price_precision: int, side: OrderSide) -> ExitPlan:
        return percent_exit_plan(price, side, price_precision, self.take_profits, self.stop_loss_pct)
