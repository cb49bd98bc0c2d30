from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shared.config.schema import StrategyConfig
from shared.models.models import Bar, OrderSide, Trend
from strategy.exits import parse_take_profits, percent_exit_plan
from strategy.ma_cross import MACrossStrategy
from strategy.registry import build_strategy
from strategy.rsi_reversion import RSIReversionStrategy

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _bars(prices: list[float], interval: str = "1h") -> list[Bar]:
    step = timedelta(hours=1 if interval == "1h" else 4)
    return [
        Bar("BTCUSDT", interval, p, p, p, p, 1.0, T0 + step * i, T0 + step * (i + 1))
        for i, p in enumerate(prices)
    ]


def test_ma_cross_buy_on_upward_cross():
    strat = MACrossStrategy(fast_period=2, slow_period=3).bind("1h")
    candles = {"1h": _bars([10, 10, 10, 9, 12])}
    assert strat.buy(candles)
    assert not strat.sell(candles)


def test_ma_cross_sell_on_downward_cross():
    strat = MACrossStrategy(fast_period=2, slow_period=3).bind("1h")
    candles = {"1h": _bars([10, 10, 10, 11, 8])}
    assert strat.sell(candles)
    assert not strat.buy(candles)


def test_ma_cross_needs_enough_history():
    strat = MACrossStrategy(fast_period=2, slow_period=3).bind("1h")
    assert not strat.buy({"1h": _bars([10, 12])})


def test_ma_cross_trend_filter():
    strat = MACrossStrategy(fast_period=2, slow_period=3, trend_interval="4h", trend_period=3).bind("1h")
    assert strat.trend_filter({"1h": [], "4h": _bars([1, 2, 3, 4, 5], "4h")}) is Trend.LONG
    assert strat.trend_filter({"1h": [], "4h": _bars([5, 4, 3, 2, 1], "4h")}) is Trend.SHORT
    assert strat.trend_filter({"1h": [], "4h": _bars([1], "4h")}) is Trend.NEUTRAL
    assert MACrossStrategy().trend_filter({}) is None


def test_ma_cross_rejects_bad_periods():
    with pytest.raises(ValueError):
        MACrossStrategy(fast_period=30, slow_period=10)


def test_rsi_reversion_signals():
    strat = RSIReversionStrategy(rsi_period=3, oversold=30, overbought=70).bind("1h")
    falling_then_up = _bars([10, 9, 8, 7, 6, 9])
    assert strat.buy({"1h": falling_then_up})
    rising_then_down = _bars([6, 7, 8, 9, 10, 7])
    assert strat.sell({"1h": rising_then_down})


def test_percent_exit_plan_long_and_short():
    tps = parse_take_profits([[0.02, 0.5], [0.04, 0.5]])
    long_plan = percent_exit_plan(100.0, OrderSide.BUY, 2, tps, 0.01)
    assert [tp.price for tp in long_plan.take_profits] == [102.0, 104.0]
    assert long_plan.stop_loss == 99.0

    short_plan = percent_exit_plan(100.0, OrderSide.SELL, 2, tps, 0.01)
    assert [tp.price for tp in short_plan.take_profits] == [98.0, 96.0]
    assert short_plan.stop_loss == 101.0


def test_take_profit_shares_must_not_exceed_one():
    with pytest.raises(ValueError):
        parse_take_profits([[0.01, 0.8], [0.02, 0.5]])


def test_registry_builds_from_config_and_ignores_unknown_params():
    strat = build_strategy(StrategyConfig(type="ma_cross", params={"fast_period": 3, "slow_period": 8, "rsi_period": 9}))
    assert isinstance(strat, MACrossStrategy)
    assert strat.fast_period == 3

    rsi = build_strategy({"type": "rsi_reversion", "rsi_period": 7, "fast_period": 3})
    assert isinstance(rsi, RSIReversionStrategy)
    assert rsi.rsi_period == 7

    with pytest.raises(ValueError):
        build_strategy({"type": "does_not_exist"})
