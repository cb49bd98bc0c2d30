from __future__ import annotations

import pytest

from sizing.base import RiskContext, build_risk_management, min_order_quantity
from sizing.fixed_risk import position_size_by_risk
from sizing.pct_equity import position_size_by_percent


def test_percent_sizing():
    ctx = RiskContext(symbol="BTCUSDT", balance=10_000.0, risk=0.1, enter_price=100.0, leverage=2)
    # 10000 * 0.1 * 2 / 100
    assert abs(position_size_by_percent(ctx) - 20.0) < 1e-9


def test_percent_sizing_respects_min_notional():
    ctx = RiskContext(symbol="BTCUSDT", balance=100.0, risk=0.001, enter_price=50_000.0, quantity_precision=3)
    # 最小名义 5 USDT => 0.0001 向上取整到 0.001
    assert abs(min_order_quantity(ctx) - 0.001) < 1e-12
    assert abs(position_size_by_percent(ctx) - 0.001) < 1e-12


def test_risk_sizing_uses_stop_distance():
    ctx = RiskContext(
        symbol="BTCUSDT", balance=10_000.0, risk=0.01, enter_price=100.0, leverage=1, stop_loss_price=95.0
    )
    # 亏损上限 100 USDT，止损距离 5% => 名义 2000 => 20 个
    assert abs(position_size_by_risk(ctx) - 20.0) < 1e-9


def test_risk_sizing_falls_back_to_percent_without_stop():
    ctx = RiskContext(symbol="BTCUSDT", balance=10_000.0, risk=0.01, enter_price=100.0)
    assert position_size_by_risk(ctx) == position_size_by_percent(ctx)


def test_zero_inputs_give_zero():
    ctx = RiskContext(symbol="BTCUSDT", balance=0.0, risk=0.01, enter_price=100.0)
    assert position_size_by_percent(ctx) == 0.0


def test_build_risk_management():
    assert build_risk_management("percent") is position_size_by_percent
    assert build_risk_management("risk") is position_size_by_risk
    assert build_risk_management(None) is position_size_by_percent
    with pytest.raises(ValueError):
        build_risk_management("martingale")
