"""按余额比例下单：balance * risk * leverage / price。"""

from __future__ import annotations

from sizing.base import RiskContext, apply_min_quantity


def position_size_by_percent(ctx: RiskContext) -> float:
    if ctx.enter_price <= 0 or ctx.balance <= 0 or ctx.risk <= 0:
        return 0.0
    quantity = ctx.balance * ctx.risk * ctx.leverage / ctx.enter_price
    return apply_min_quantity(quantity, ctx)
