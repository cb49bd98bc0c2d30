from __future__ import annotations

import csv
from datetime import datetime, timedelta, timezone

import pytest

from engine.errors import MissingHistoryError
from engine.optimization_engine import AdaptiveBatchSizer, OptimizationEngine
from market_data.repository import CandleRepository
from shared.config.schema import BacktestConfig, FeesConfig, HyperParameter, SweepConfig, SymbolConfig
from shared.models.models import Bar
from strategy.base import Candles, Strategy
from strategy.registry import register_strategy

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
SYM = "BTCUSDT"


class HoldStrategy(Strategy):
    """第一根 bar 买入，第四根 bar 卖出。"""

    def __init__(self, qty: float = 1.0):
        if qty > 10:
            raise ValueError("qty too large")
        self.qty = float(qty)

    def buy(self, candles: Candles) -> bool:
        return len(self.bars(candles)) == 1

    def sell(self, candles: Candles) -> bool:
        return len(self.bars(candles)) == 4

    def risk_management(self, ctx) -> float:
        return self.qty


register_strategy("test_hold", HoldStrategy)


def _repo() -> CandleRepository:
    bars = []
    for i, p in enumerate([100.0, 101.0, 102.0, 103.0, 104.0]):
        start = T0 + timedelta(hours=i)
        bars.append(Bar(SYM, "1h", p, p, p, p, 1.0, start, start + timedelta(hours=1)))
    return CandleRepository({SYM: {"1h": bars}})


def _cfg(tmp_path, optimization) -> BacktestConfig:
    return BacktestConfig(
        start=T0 + timedelta(hours=1),
        end=T0 + timedelta(hours=5),
        fees=FeesConfig(maker=0.0, taker=0.0),
        max_window=10,
        warmup_bars=1,
        symbols=[SymbolConfig(asset="BTC", unidirectional=True, strategy={"type": "test_hold"})],
        hyperparameters={"qty": HyperParameter(value=1, optimization=optimization)},
        sweep=SweepConfig(max_workers=1, batch_size=2, output_csv=str(tmp_path / "sweep.csv")),
    )


def test_sweep_selects_best_and_excludes_failures(tmp_path):
    engine = OptimizationEngine(cfg_obj=_cfg(tmp_path, [1, 2, 3, 50]), repository=_repo())
    summary = engine.run().summary

    assert summary["total_combinations"] == 4
    assert summary["tested"] == 3
    assert summary["failed"] == 1
    assert summary["best_params"] == {"qty": 3}
    assert abs(summary["best_report"]["roi"] - 9.0 / 10_000.0) < 1e-9
    assert engine.failures[0].payload == {"qty": 50}
    assert engine.failures[0].status == "error"

    with open(tmp_path / "sweep.csv", newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["qty"] for r in rows] == ["1", "2", "3"]


def test_sweep_range_expansion(tmp_path):
    engine = OptimizationEngine(cfg_obj=_cfg(tmp_path, [1, 2]), repository=_repo())
    summary = engine.run().summary
    assert summary["total_combinations"] == 2
    assert summary["best_params"] == {"qty": 2}


def test_sweep_aborts_on_missing_history(tmp_path):
    engine = OptimizationEngine(cfg_obj=_cfg(tmp_path, [1, 2]), repository=CandleRepository({SYM: {"1h": []}}))
    with pytest.raises(MissingHistoryError):
        engine.run()
    assert engine.results == []
    assert not (tmp_path / "sweep.csv").exists()


def test_adaptive_batch_sizer_bounds():
    sizer = AdaptiveBatchSizer(workers=2, min_size=2, max_size=16, target_batch_secs=10.0, initial=4)
    assert sizer.size == 4
    # 每组 0.5s、2 个 worker：目标 10s 需要 40 组，但单次最多翻倍
    assert sizer.update(4, 1.0) == 8
    assert sizer.update(8, 2.0) == 16
    assert sizer.update(16, 4.0) == 16
    # 变慢时最多减半
    assert sizer.update(16, 200.0) == 8


def test_adaptive_batch_sizer_uses_memory_when_no_initial():
    sizer = AdaptiveBatchSizer(workers=1, min_size=1, max_size=8, memory_per_run_mb=1.0)
    assert 1 <= sizer.size <= 8
