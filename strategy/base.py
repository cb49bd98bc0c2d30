"""策略接口。

策略是一组只读能力：入场信号（buy/sell）、出场计划（止盈/止损）、趋势过滤、仓位计算。
输入是按周期分组的 K 线窗口 `{interval: [Bar, ...]}`，策略内部不得修改它们，也不持有账户状态。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from shared.models.models import Bar, OrderSide, Trend
from sizing.base import RiskContext, RiskManagement
from sizing.pct_equity import position_size_by_percent

Candles = Mapping[str, Sequence[Bar]]


@dataclass(frozen=True)
class TakeProfit:
    price: float
    quantity_percentage: float = 1.0


@dataclass(frozen=True)
class ExitPlan:
    take_profits: tuple[TakeProfit, ...] = field(default_factory=tuple)
    stop_loss: float | None = None


class Strategy(ABC):
    """策略基类。

    Notes
    -----
    `interval` 为 None 时由引擎绑定为该交易对的 loop interval。
    """

    interval: str | None = None
    sizer: RiskManagement = staticmethod(position_size_by_percent)

    def bind(self, loop_interval: str, sizer: RiskManagement | None = None) -> "Strategy":
        if self.interval is None:
            self.interval = loop_interval
        if sizer is not None:
            self.sizer = sizer
        return self

    def bars(self, candles: Candles, interval: str | None = None) -> Sequence[Bar]:
        return candles.get(interval or self.interval or "", ())

    @abstractmethod
    def buy(self, candles: Candles) -> bool:
        ...

    @abstractmethod
    def sell(self, candles: Candles) -> bool:
        ...

    def exit_plan(self, price: float, candles: Candles, price_precision: int, side: OrderSide) -> ExitPlan:
        return ExitPlan()

    def trend_filter(self, candles: Candles) -> Trend | None:
        """None 表示不过滤（多空都允许）。"""
        return None

    def risk_management(self, ctx: RiskContext) -> float:
        return self.sizer(ctx)
