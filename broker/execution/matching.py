"""挂单撮合引擎。

状态机：`PENDING -> FILLED | CANCELED`。

每根 bar：
- 市价单在提交时即按当前价成交（taker 费率）；
- LIMIT/STOP/STOP_MARKET 仅当 `low <= price <= high` 时成交（LIMIT/STOP 用 maker，STOP_MARKET 用 taker）；
- 同一交易对的挂单按 tie-break 策略排序后逐个评估，每单每根 bar 至多评估一次；
- 一旦仓位归零，立即撤销该交易对剩余挂单并停止评估（同一根 bar 内止盈止损不会同时成交）。

同一根 bar 内止盈与止损都可能触发时，成交顺序由 tie-break 决定（默认按价格降序）。
"""

from __future__ import annotations

import itertools
from datetime import datetime
from typing import Callable

from broker.ledger import FillResult, MarginLedger
from shared.models.models import Bar, Order, OrderSide, OrderStatus, OrderType
from shared.utils.logging import setup_logger

_TAKE_PROFIT_TYPES = {OrderType.LIMIT}
_STOP_TYPES = {OrderType.STOP, OrderType.STOP_MARKET}


def _price_desc(orders: list[Order]) -> list[Order]:
    return sorted(orders, key=lambda o: -o.price)


def _price_asc(orders: list[Order]) -> list[Order]:
    return sorted(orders, key=lambda o: o.price)


def _stop_first(orders: list[Order]) -> list[Order]:
    """悲观口径：同 bar 内先止损。"""
    return sorted(orders, key=lambda o: (0 if o.type in _STOP_TYPES else 1, -o.price))


def _take_profit_first(orders: list[Order]) -> list[Order]:
    return sorted(orders, key=lambda o: (0 if o.type in _TAKE_PROFIT_TYPES else 1, -o.price))


TIE_BREAKS: dict[str, Callable[[list[Order]], list[Order]]] = {
    "price_desc": _price_desc,
    "price_asc": _price_asc,
    "stop_first": _stop_first,
    "take_profit_first": _take_profit_first,
}


class OrderMatchingEngine:
    """单次回测独占的挂单簿 + 撮合。"""

    def __init__(
        self,
        ledger: MarginLedger,
        *,
        maker_fee: float,
        taker_fee: float,
        tie_break: str = "price_desc",
    ):
        if tie_break not in TIE_BREAKS:
            raise ValueError(f"Unknown tie_break: {tie_break} (expected one of {sorted(TIE_BREAKS)})")
        self.ledger = ledger
        self.maker_fee = float(maker_fee)
        self.taker_fee = float(taker_fee)
        self.tie_break = tie_break
        self._order_key = TIE_BREAKS[tie_break]
        self._orders: dict[str, list[Order]] = {}
        self._seq = itertools.count(1)
        self.logger = setup_logger("matching")

    def fee_rate(self, order_type: OrderType) -> float:
        if order_type in (OrderType.MARKET, OrderType.STOP_MARKET):
            return self.taker_fee
        return self.maker_fee

    def pending(self, symbol: str | None = None) -> list[Order]:
        if symbol is not None:
            return list(self._orders.get(symbol, []))
        return [o for orders in self._orders.values() for o in orders]

    def new_order(
        self,
        *,
        symbol: str,
        order_type: OrderType,
        quantity: float,
        price: float,
        ts: datetime | None = None,
        reduce_only: bool = False,
    ) -> Order:
        side = OrderSide.BUY if quantity > 0 else OrderSide.SELL
        return Order(
            id=f"{symbol}-{next(self._seq)}",
            symbol=symbol,
            type=order_type,
            side=side,
            price=float(price),
            quantity=float(quantity),
            created_at=ts,
            reduce_only=reduce_only,
        )

    def submit(self, order: Order, *, ts: datetime) -> FillResult | None:
        """提交订单：市价单立即成交并返回 FillResult，其余挂入订单簿返回 None。"""
        if order.type is OrderType.MARKET:
            res = self.ledger.apply_fill(
                order.symbol, order.quantity, order.price, self.taker_fee, ts=ts, order_type=OrderType.MARKET
            )
            order.status = OrderStatus.FILLED if res.filled else OrderStatus.CANCELED
            return res
        if order.type is OrderType.LIMIT and not order.reduce_only and not self.can_place_limit(order):
            self.logger.warning("Limit order rejected, insufficient balance: %s", order)
            order.status = OrderStatus.CANCELED
            return None
        self._orders.setdefault(order.symbol, []).append(order)
        return None

    def can_place_limit(self, order: Order) -> bool:
        """挂限价单前的保证金检查：`|price * qty| / leverage - margin <= available`。"""
        pos = self.ledger.position(order.symbol)
        base_cost = abs(order.price * order.quantity) / pos.leverage - pos.margin
        return self.ledger.wallet.available_balance >= base_cost

    def cancel(self, order_id: str) -> bool:
        for symbol, orders in self._orders.items():
            for o in orders:
                if o.id == order_id:
                    o.status = OrderStatus.CANCELED
                    orders.remove(o)
                    return True
        return False

    def cancel_all(self, symbol: str) -> int:
        orders = self._orders.pop(symbol, [])
        for o in orders:
            o.status = OrderStatus.CANCELED
        return len(orders)

    def match(self, symbol: str, bar: Bar, ts: datetime | None = None) -> list[FillResult]:
        """用一根 bar 撮合该交易对的全部挂单。

        ts 为成交记录的时间（引擎传入当前模拟时刻）；不传时用 bar 的收盘时间。
        """
        book = self._orders.get(symbol)
        if not book:
            return []

        fills: list[FillResult] = []
        ts = ts or bar.close_time
        for order in self._order_key(list(book)):
            if order.status is not OrderStatus.PENDING:
                continue
            if not (bar.low <= order.price <= bar.high):
                continue

            quantity = order.quantity
            pos = self.ledger.position(symbol)
            if order.reduce_only:
                if pos.is_flat or (pos.size > 0) == (quantity > 0):
                    order.status = OrderStatus.CANCELED
                    book.remove(order)
                    continue
                if abs(quantity) > abs(pos.size):
                    quantity = -pos.size

            res = self.ledger.apply_fill(
                symbol, quantity, order.price, self.fee_rate(order.type), ts=ts, order_type=order.type
            )
            book.remove(order)
            if not res.filled:
                order.status = OrderStatus.CANCELED
                continue
            order.status = OrderStatus.FILLED
            fills.append(res)

            if self.ledger.position(symbol).is_flat:
                self.cancel_all(symbol)
                break

        if not self._orders.get(symbol):
            self._orders.pop(symbol, None)
        return fills

    def snapshot(self) -> list[dict]:
        return [
            {
                "id": o.id,
                "symbol": o.symbol,
                "type": o.type.value,
                "side": o.side.value,
                "price": o.price,
                "quantity": o.quantity,
                "reduce_only": o.reduce_only,
            }
            for o in self.pending()
        ]
