"""强平检查。

维持保证金 `|size * price| * maintenance_rate`；当 `margin + unrealized <= maintenance` 时：
撤销该交易对全部挂单，按当前价市价平仓，成交记录 outcome 记为 "liquidated"。
"""

from __future__ import annotations

from datetime import datetime

from broker.execution.matching import OrderMatchingEngine
from broker.ledger import FillResult, MarginLedger, unrealized_pnl
from shared.utils.logging import setup_logger

DEFAULT_MAINTENANCE_RATE = 0.005


def maintenance_margin(size: float, price: float, rate: float) -> float:
    return abs(size * price) * rate


class LiquidationChecker:
    def __init__(
        self,
        ledger: MarginLedger,
        matching: OrderMatchingEngine,
        maintenance_rate: float = DEFAULT_MAINTENANCE_RATE,
    ):
        if maintenance_rate < 0:
            raise ValueError("maintenance_rate must be >= 0")
        self.ledger = ledger
        self.matching = matching
        self.maintenance_rate = float(maintenance_rate)
        self.logger = setup_logger("backtest")

    def should_liquidate(self, symbol: str, price: float) -> bool:
        pos = self.ledger.position(symbol)
        if pos.is_flat:
            return False
        maint = maintenance_margin(pos.size, price, self.maintenance_rate)
        return pos.margin + unrealized_pnl(pos, price) <= maint

    def check(self, symbol: str, price: float, ts: datetime) -> FillResult | None:
        if not self.should_liquidate(symbol, price):
            return None
        pos = self.ledger.position(symbol)
        self.logger.warning(
            "Liquidation %s: size=%s entry=%.6f price=%.6f margin=%.4f",
            symbol, pos.size, pos.entry_price, price, pos.margin,
        )
        self.matching.cancel_all(symbol)
        return self.ledger.close_position(
            symbol, price, self.matching.taker_fee, ts=ts, outcome="liquidated"
        )
