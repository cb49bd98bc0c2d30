"""持仓与保证金账本（合约语义）。

职责：
- 每个交易对唯一一份 Position，开仓/加仓/减仓/反手都在这里结算；
- 保证金始终由 entry_price 与 size 推导（`|size * entry| / leverage`），不随市价变化；
- 钱包总额只因已实现盈亏与手续费变化：`total += pnl - fee`；
- 可用余额 = 总额 - 占用保证金：开仓扣 `requiredMargin + fee`，平仓返还 `releasedMargin + pnl - fee`。

余额不足属于可预期的拒单：记 warning，不抛异常。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

from analysis.statistics import StatsAggregator
from shared.models.models import OrderSide, OrderType, Position, PositionSide, TradeRecord, Wallet
from shared.utils.logging import setup_logger
from shared.utils.precision import decimal_round

DEFAULT_QUANTITY_PRECISION = 8


@dataclass(frozen=True)
class FillResult:
    status: str  # "filled" / "rejected" / "noop"
    reason: str | None
    symbol: str
    price: float
    quantity: float = 0.0
    fee: float = 0.0
    realized_pnl: float = 0.0
    records: tuple[TradeRecord, ...] = field(default_factory=tuple)

    @property
    def filled(self) -> bool:
        return self.status == "filled"


def unrealized_pnl(position: Position, price: float) -> float:
    """按给定价格计算未实现盈亏（纯函数；空仓为 0）。"""
    if position.size == 0 or position.margin <= 0 or position.entry_price <= 0:
        return 0.0
    entry = position.entry_price
    value = abs(position.size * entry)
    direction = 1.0 if position.size > 0 else -1.0
    return direction * value * (price - entry) / entry


class MarginLedger:
    """钱包与持仓的唯一写入者。

    Parameters
    ----------
    wallet:
        本次回测独占的钱包。
    stats:
        统计聚合器；每次余额变动后同步更新。
    journal:
        成交记录（append-only）。
    quantity_precision:
        {symbol: 数量小数位}，缺省为 8 位。
    """

    def __init__(
        self,
        wallet: Wallet,
        stats: StatsAggregator,
        journal: list[TradeRecord] | None = None,
        quantity_precision: Mapping[str, int] | None = None,
    ):
        self.wallet = wallet
        self.stats = stats
        self.journal: list[TradeRecord] = journal if journal is not None else []
        self._qty_precision = dict(quantity_precision or {})
        self._trade_pnl: dict[str, float] = {}
        self.logger = setup_logger("ledger")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def position(self, symbol: str) -> Position:
        return self.wallet.positions[symbol]

    def round_qty(self, symbol: str, quantity: float) -> float:
        return decimal_round(quantity, self._qty_precision.get(symbol, DEFAULT_QUANTITY_PRECISION))

    def _record(
        self,
        *,
        ts: datetime,
        symbol: str,
        quantity: float,
        order_type: OrderType,
        action: str,
        price: float,
        pnl: float,
        fee: float,
        outcome: str | None,
    ) -> TradeRecord:
        rec = TradeRecord(
            date=ts,
            symbol=symbol,
            side=OrderSide.BUY if quantity > 0 else OrderSide.SELL,
            type=order_type,
            action=action,
            size=quantity,
            price=price,
            pnl=pnl,
            fee=fee,
            balance=self.wallet.total_balance,
            outcome=outcome,
        )
        self.journal.append(rec)
        return rec

    def _refresh_unrealized(self) -> None:
        self.wallet.total_unrealized_profit = sum(p.unrealized_profit for p in self.wallet.positions.values())

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    def open(
        self,
        symbol: str,
        quantity: float,
        price: float,
        fee_rate: float,
        *,
        ts: datetime,
        order_type: OrderType = OrderType.MARKET,
    ) -> FillResult:
        """开仓或同向加仓（quantity 带符号）。"""
        pos = self.position(symbol)
        q = self.round_qty(symbol, quantity)
        if q == 0:
            return FillResult(status="noop", reason="zero_quantity", symbol=symbol, price=price)
        if not pos.is_flat and (pos.size > 0) != (q > 0):
            return FillResult(status="rejected", reason="opposite_side", symbol=symbol, price=price)

        abs_q = abs(q)
        fee = abs_q * price * fee_rate
        required_margin = price * abs_q / pos.leverage
        if self.wallet.available_balance < required_margin + fee:
            self.logger.warning(
                "Insufficient balance for %s %s %s @ %s: need %.4f, available %.4f",
                symbol, order_type.value, q, price, required_margin + fee, self.wallet.available_balance,
            )
            return FillResult(status="rejected", reason="insufficient_balance", symbol=symbol, price=price)

        was_flat = pos.is_flat
        old_abs = abs(pos.size)
        pos.entry_price = (price * abs_q + pos.entry_price * old_abs) / (abs_q + old_abs)
        pos.size = self.round_qty(symbol, pos.size + q)
        pos.side = PositionSide.LONG if pos.size > 0 else PositionSide.SHORT
        pos.margin = abs(pos.size * pos.entry_price) / pos.leverage
        pos.unrealized_profit = unrealized_pnl(pos, price)

        self.wallet.available_balance -= required_margin + fee
        self.wallet.total_balance -= fee
        self._refresh_unrealized()

        if was_flat:
            self._trade_pnl[symbol] = 0.0
            self.stats.record_open(pos.side)
        self.stats.record_fee(fee)
        self.stats.update_balance(self.wallet.total_balance)

        rec = self._record(
            ts=ts, symbol=symbol, quantity=q, order_type=order_type, action="OPEN",
            price=price, pnl=0.0, fee=fee, outcome=None,
        )
        return FillResult(status="filled", reason=None, symbol=symbol, price=price, quantity=q, fee=fee, records=(rec,))

    def reduce(
        self,
        symbol: str,
        quantity: float,
        price: float,
        fee_rate: float,
        *,
        ts: datetime,
        order_type: OrderType = OrderType.MARKET,
        outcome: str | None = None,
    ) -> FillResult:
        """减仓/平仓（quantity 带符号，方向需与持仓相反；超出部分忽略）。"""
        pos = self.position(symbol)
        q = self.round_qty(symbol, quantity)
        if pos.is_flat or q == 0:
            return FillResult(status="noop", reason="nothing_to_close", symbol=symbol, price=price)
        if (pos.size > 0) == (q > 0):
            return FillResult(status="rejected", reason="same_side", symbol=symbol, price=price)

        direction = 1.0 if pos.size > 0 else -1.0
        closed = min(abs(q), abs(pos.size))
        entry = pos.entry_price
        pnl = direction * closed * entry * (price - entry) / entry if entry > 0 else 0.0
        fee = closed * price * fee_rate
        released_margin = closed * entry / pos.leverage
        side = pos.side

        pos.size = self.round_qty(symbol, pos.size - direction * closed)
        self.wallet.available_balance += released_margin + pnl - fee
        self.wallet.total_balance += pnl - fee
        self._trade_pnl[symbol] = self._trade_pnl.get(symbol, 0.0) + pnl

        if pos.is_flat:
            pos.reset()
        else:
            pos.margin = abs(pos.size * pos.entry_price) / pos.leverage
            pos.unrealized_profit = unrealized_pnl(pos, price)
        self._refresh_unrealized()

        self.stats.record_fee(fee)
        if pos.is_flat:
            self.stats.record_close(side, self._trade_pnl.pop(symbol, pnl), liquidated=outcome == "liquidated")
        self.stats.update_balance(self.wallet.total_balance)

        signed_closed = -direction * closed
        rec = self._record(
            ts=ts, symbol=symbol, quantity=signed_closed, order_type=order_type, action="CLOSE",
            price=price, pnl=pnl, fee=fee, outcome=outcome,
        )
        return FillResult(
            status="filled", reason=None, symbol=symbol, price=price,
            quantity=signed_closed, fee=fee, realized_pnl=pnl, records=(rec,),
        )

    def apply_fill(
        self,
        symbol: str,
        quantity: float,
        price: float,
        fee_rate: float,
        *,
        ts: datetime,
        order_type: OrderType = OrderType.MARKET,
        outcome: str | None = None,
    ) -> FillResult:
        """按方向分派：同向开/加仓，反向减仓；穿越 0 时先全平旧方向，再以同价反手开新仓。"""
        pos = self.position(symbol)
        q = self.round_qty(symbol, quantity)
        if q == 0:
            return FillResult(status="noop", reason="zero_quantity", symbol=symbol, price=price)
        if pos.is_flat or (pos.size > 0) == (q > 0):
            return self.open(symbol, q, price, fee_rate, ts=ts, order_type=order_type)

        closing = -pos.size if abs(q) >= abs(pos.size) else q
        res_close = self.reduce(symbol, closing, price, fee_rate, ts=ts, order_type=order_type, outcome=outcome)
        remainder = self.round_qty(symbol, q - closing)
        if remainder == 0:
            return res_close

        res_open = self.open(symbol, remainder, price, fee_rate, ts=ts, order_type=order_type)
        return FillResult(
            status="filled",
            reason=None if res_open.filled else f"flip_open_{res_open.reason}",
            symbol=symbol,
            price=price,
            quantity=res_close.quantity + res_open.quantity,
            fee=res_close.fee + res_open.fee,
            realized_pnl=res_close.realized_pnl,
            records=res_close.records + res_open.records,
        )

    def close_position(
        self,
        symbol: str,
        price: float,
        fee_rate: float,
        *,
        ts: datetime,
        outcome: str | None = None,
    ) -> FillResult:
        pos = self.position(symbol)
        return self.reduce(symbol, -pos.size, price, fee_rate, ts=ts, order_type=OrderType.MARKET, outcome=outcome)

    def mark_to_market(self, symbol: str, price: float) -> float:
        pos = self.position(symbol)
        pos.unrealized_profit = unrealized_pnl(pos, price)
        self._refresh_unrealized()
        return pos.unrealized_profit
