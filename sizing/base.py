"""仓位计算（risk management）抽象与构建逻辑。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from shared.utils.precision import decimal_ceil


@dataclass(frozen=True)
class RiskContext:
    """仓位计算输入。

    balance 在允许加仓（pyramiding）时为钱包总额，否则为可用余额。
    """
    symbol: str
    balance: float
    risk: float
    enter_price: float
    leverage: int = 1
    stop_loss_price: float | None = None
    quantity_precision: int = 3
    min_notional: float = 5.0


class RiskManagement(Protocol):
    def __call__(self, ctx: RiskContext) -> float: ...


def min_order_quantity(ctx: RiskContext) -> float:
    """满足交易所最小名义价值（默认 5 USDT）的最小下单量。"""
    if ctx.enter_price <= 0:
        return 0.0
    return decimal_ceil(ctx.min_notional / ctx.enter_price, ctx.quantity_precision)


def apply_min_quantity(quantity: float, ctx: RiskContext) -> float:
    min_qty = min_order_quantity(ctx)
    if quantity > min_qty:
        return decimal_ceil(quantity, ctx.quantity_precision)
    return decimal_ceil(min_qty, ctx.quantity_precision)


def build_risk_management(name: str | None) -> RiskManagement:
    """从配置名构建仓位计算函数。

    - percent: 按余额比例
    - risk: 按止损距离反推（无止损时退化为 percent）
    """
    from sizing.fixed_risk import position_size_by_risk
    from sizing.pct_equity import position_size_by_percent

    mode = str(name or "percent").strip().lower()
    if mode in {"percent", "pct", "pct_equity"}:
        return position_size_by_percent
    if mode in {"risk", "fixed_risk"}:
        return position_size_by_risk
    raise ValueError(f"Unknown risk_management: {name}")
