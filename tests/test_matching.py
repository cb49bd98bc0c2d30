from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from analysis.statistics import StatsAggregator
from broker.execution.matching import OrderMatchingEngine
from broker.ledger import MarginLedger
from shared.models.models import Bar, OrderStatus, OrderType, Position, Wallet

TS = datetime(2024, 1, 1, tzinfo=timezone.utc)
SYM = "BTCUSDT"


def _bar(low: float, high: float, close: float | None = None) -> Bar:
    close = close if close is not None else (low + high) / 2
    return Bar(SYM, "1h", close, high, low, close, 1.0, TS, TS + timedelta(hours=1))


def _engine(tie_break: str = "price_desc", balance: float = 10_000.0) -> OrderMatchingEngine:
    wallet = Wallet(available_balance=balance, total_balance=balance)
    wallet.positions[SYM] = Position(symbol=SYM)
    ledger = MarginLedger(wallet, StatsAggregator(balance), quantity_precision={SYM: 3})
    return OrderMatchingEngine(ledger, maker_fee=0.0, taker_fee=0.0, tie_break=tie_break)


def _long_with_exits(engine: OrderMatchingEngine) -> None:
    engine.submit(engine.new_order(symbol=SYM, order_type=OrderType.MARKET, quantity=1.0, price=100.0, ts=TS), ts=TS)
    engine.submit(
        engine.new_order(symbol=SYM, order_type=OrderType.LIMIT, quantity=-1.0, price=110.0, ts=TS, reduce_only=True),
        ts=TS,
    )
    engine.submit(
        engine.new_order(symbol=SYM, order_type=OrderType.STOP, quantity=-1.0, price=95.0, ts=TS, reduce_only=True),
        ts=TS,
    )


def test_market_order_fills_immediately():
    engine = _engine()
    order = engine.new_order(symbol=SYM, order_type=OrderType.MARKET, quantity=1.0, price=100.0, ts=TS)
    res = engine.submit(order, ts=TS)
    assert res is not None and res.filled
    assert order.status is OrderStatus.FILLED
    assert engine.pending(SYM) == []


def test_orders_outside_bar_range_stay_pending():
    engine = _engine()
    _long_with_exits(engine)
    fills = engine.match(SYM, _bar(96.0, 109.0))
    assert fills == []
    assert len(engine.pending(SYM)) == 2


def test_bar_touching_order_price_fills():
    engine = _engine()
    _long_with_exits(engine)
    fills = engine.match(SYM, _bar(96.0, 110.0))
    assert len(fills) == 1
    assert abs(fills[0].price - 110.0) < 1e-9


def test_price_desc_fills_take_profit_and_cancels_stop():
    engine = _engine("price_desc")
    _long_with_exits(engine)
    fills = engine.match(SYM, _bar(90.0, 115.0))

    assert len(fills) == 1
    assert abs(fills[0].realized_pnl - 10.0) < 1e-9
    assert engine.ledger.position(SYM).is_flat
    assert engine.pending(SYM) == []


@pytest.mark.parametrize("tie_break", ["stop_first", "price_asc"])
def test_stop_evaluated_first_for_pessimistic_tie_breaks(tie_break):
    engine = _engine(tie_break)
    _long_with_exits(engine)
    fills = engine.match(SYM, _bar(90.0, 115.0))

    assert len(fills) == 1
    assert abs(fills[0].price - 95.0) < 1e-9
    assert abs(fills[0].realized_pnl + 5.0) < 1e-9


def test_no_double_fill_on_same_bar():
    engine = _engine()
    _long_with_exits(engine)
    bar = _bar(90.0, 115.0)
    first = engine.match(SYM, bar)
    second = engine.match(SYM, bar)
    assert len(first) == 1
    assert second == []
    assert len(engine.ledger.journal) == 2


def test_reduce_only_quantity_clamped_to_position():
    engine = _engine()
    engine.submit(engine.new_order(symbol=SYM, order_type=OrderType.MARKET, quantity=1.0, price=100.0, ts=TS), ts=TS)
    engine.submit(
        engine.new_order(symbol=SYM, order_type=OrderType.LIMIT, quantity=-5.0, price=105.0, ts=TS, reduce_only=True),
        ts=TS,
    )
    fills = engine.match(SYM, _bar(100.0, 106.0))
    assert len(fills) == 1
    assert abs(fills[0].quantity + 1.0) < 1e-9
    assert engine.ledger.position(SYM).is_flat


def test_reduce_only_canceled_when_flat():
    engine = _engine()
    order = engine.new_order(symbol=SYM, order_type=OrderType.STOP, quantity=-1.0, price=95.0, ts=TS, reduce_only=True)
    engine.submit(order, ts=TS)
    assert engine.match(SYM, _bar(90.0, 100.0)) == []
    assert order.status is OrderStatus.CANCELED
    assert engine.ledger.journal == []


def test_partial_take_profits_fill_in_price_order():
    engine = _engine()
    engine.submit(engine.new_order(symbol=SYM, order_type=OrderType.MARKET, quantity=2.0, price=100.0, ts=TS), ts=TS)
    for price in (104.0, 108.0):
        engine.submit(
            engine.new_order(symbol=SYM, order_type=OrderType.LIMIT, quantity=-1.0, price=price, ts=TS, reduce_only=True),
            ts=TS,
        )
    fills = engine.match(SYM, _bar(100.0, 110.0))
    assert [f.price for f in fills] == [108.0, 104.0]
    assert engine.ledger.position(SYM).is_flat


def test_fee_rate_by_order_type():
    wallet = Wallet(available_balance=1000.0, total_balance=1000.0)
    wallet.positions[SYM] = Position(symbol=SYM)
    engine = OrderMatchingEngine(MarginLedger(wallet, StatsAggregator(1000.0)), maker_fee=0.0002, taker_fee=0.0004)
    assert engine.fee_rate(OrderType.MARKET) == 0.0004
    assert engine.fee_rate(OrderType.STOP_MARKET) == 0.0004
    assert engine.fee_rate(OrderType.LIMIT) == 0.0002
    assert engine.fee_rate(OrderType.STOP) == 0.0002


def test_limit_entry_rejected_without_margin():
    engine = _engine(balance=50.0)
    order = engine.new_order(symbol=SYM, order_type=OrderType.LIMIT, quantity=1.0, price=100.0, ts=TS)
    assert engine.submit(order, ts=TS) is None
    assert order.status is OrderStatus.CANCELED
    assert engine.pending(SYM) == []


def test_unknown_tie_break_rejected():
    with pytest.raises(ValueError):
        _engine("random")


def test_cancel_all_returns_count():
    engine = _engine()
    _long_with_exits(engine)
    assert engine.cancel_all(SYM) == 2
    assert engine.pending() == []
