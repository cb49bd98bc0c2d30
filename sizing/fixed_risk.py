"""按单笔风险下单：止损触发时亏损约为 balance * risk。"""

from __future__ import annotations

from sizing.base import RiskContext, apply_min_quantity
from sizing.pct_equity import position_size_by_percent


def position_size_by_risk(ctx: RiskContext) -> float:
    if not ctx.stop_loss_price:
        return position_size_by_percent(ctx)
    if ctx.enter_price <= 0 or ctx.balance <= 0 or ctx.risk <= 0:
        return 0.0
    delta = abs(ctx.stop_loss_price - ctx.enter_price) / ctx.enter_price
    if delta == 0:
        return position_size_by_percent(ctx)
    quantity = (ctx.balance * ctx.risk / delta / ctx.enter_price) * ctx.leverage
    return apply_min_quantity(quantity, ctx)
