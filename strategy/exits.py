"""按百分比计算止盈/止损价位。"""

from __future__ import annotations

from typing import Iterable, Sequence

from shared.models.models import OrderSide
from shared.utils.precision import decimal_round
from strategy.base import ExitPlan, TakeProfit


def parse_take_profits(raw: Iterable[Sequence[float]] | None) -> tuple[tuple[float, float], ...]:
    """配置写法 `[[0.02, 0.5], [0.04, 0.5]]` -> ((pct, quantity_percentage), ...)。"""
    out = []
    for item in raw or []:
        if isinstance(item, (int, float)):
            out.append((float(item), 1.0))
            continue
        pct, share = float(item[0]), float(item[1]) if len(item) > 1 else 1.0
        out.append((pct, share))
    total = sum(share for _, share in out)
    if out and total > 1.0 + 1e-9:
        raise ValueError("take profit quantity percentages must sum to <= 1")
    return tuple(out)


def percent_exit_plan(
    price: float,
    side: OrderSide,
    price_precision: int,
    take_profits: Iterable[tuple[float, float]],
    stop_loss_pct: float | None,
) -> ExitPlan:
    direction = 1.0 if side is OrderSide.BUY else -1.0
    tps = tuple(
        TakeProfit(
            price=decimal_round(price * (1 + direction * pct), price_precision),
            quantity_percentage=share,
        )
        for pct, share in take_profits
    )
    stop = None
    if stop_loss_pct:
        stop = decimal_round(price * (1 - direction * float(stop_loss_pct)), price_precision)
    return ExitPlan(take_profits=tps, stop_loss=stop)
