from __future__ import annotations

import csv
import pickle
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd
import pytest

from engine.errors import MissingHistoryError
from market_data.loader import HistoricalDataLoader, bars_from_frame
from market_data.repository import CandleRepository
from market_data.timeframe import count_steps, is_aligned, smallest_timeframe, timeframe_to_minutes

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _write_candles_csv(path: Path, *, symbol: str, prices: list[float]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["symbol", "open", "high", "low", "close", "volume", "start_ts", "end_ts"])
        for i, p in enumerate(prices):
            start = T0 + timedelta(hours=i)
            end = start + timedelta(hours=1)
            w.writerow([symbol, p, p + 1, p - 1, p, 1.0, start.isoformat(), end.isoformat()])


def test_timeframe_helpers():
    assert timeframe_to_minutes("15m") == 15
    assert timeframe_to_minutes("4h") == 240
    assert timeframe_to_minutes("1w") == 10080
    assert smallest_timeframe(["4h", "15m", "1d"]) == "15m"
    assert is_aligned(T0 + timedelta(hours=4), "4h")
    assert not is_aligned(T0 + timedelta(hours=5), "4h")
    # 2024-01-01 是周一
    assert is_aligned(T0, "1w")
    assert count_steps(T0, T0 + timedelta(hours=3), "1h") == 4
    with pytest.raises(ValueError):
        timeframe_to_minutes("1y")


def test_bars_from_frame_with_epoch_ms_and_no_close_column():
    ms = int(T0.timestamp() * 1000)
    df = pd.DataFrame(
        {
            "open_time": [ms + 3_600_000, ms],
            "open": [2.0, 1.0],
            "high": [2.0, 1.0],
            "low": [2.0, 1.0],
            "close": [2.0, 1.0],
            "volume": [1.0, 1.0],
        }
    )
    bars = bars_from_frame(df, "BTCUSDT", "1h")
    assert [b.close for b in bars] == [1.0, 2.0]
    assert bars[0].open_time == T0
    assert bars[0].close_time == T0 + timedelta(hours=1)


def test_bars_from_frame_missing_columns():
    with pytest.raises(ValueError):
        bars_from_frame(pd.DataFrame({"open": [1.0]}), "BTCUSDT", "1h")


def test_loader_reads_csv_and_repository_builds(tmp_path: Path):
    data_dir = tmp_path / "history"
    _write_candles_csv(data_dir / "BTCUSDT_1h.csv", symbol="BTCUSDT", prices=[1, 2, 3, 4])
    loader = HistoricalDataLoader(data_dir)

    bars = loader.load_bars("BTCUSDT", "1h", end=T0 + timedelta(hours=2))
    assert [b.close for b in bars] == [1.0, 2.0, 3.0]

    repo = CandleRepository.build(loader, {"BTCUSDT": ["1h"]}, T0, T0 + timedelta(hours=3))
    assert repo.symbols() == ["BTCUSDT"]
    assert len(repo.bars("BTCUSDT", "1h")) == 4
    assert isinstance(repo.bars("BTCUSDT", "1h"), tuple)


def test_repository_missing_file_is_fatal(tmp_path: Path):
    loader = HistoricalDataLoader(tmp_path)
    with pytest.raises(MissingHistoryError) as exc:
        CandleRepository.build(loader, {"ETHUSDT": ["4h"]}, T0, T0 + timedelta(days=1))
    assert exc.value.symbol == "ETHUSDT"
    assert exc.value.interval == "4h"


def test_repository_data_outside_window_is_fatal(tmp_path: Path):
    data_dir = tmp_path / "history"
    _write_candles_csv(data_dir / "BTCUSDT_1h.csv", symbol="BTCUSDT", prices=[1, 2])
    loader = HistoricalDataLoader(data_dir)
    with pytest.raises(MissingHistoryError):
        CandleRepository.build(loader, {"BTCUSDT": ["1h"]}, T0 + timedelta(days=5), T0 + timedelta(days=6))


def test_repository_is_read_only_and_picklable(tmp_path: Path):
    data_dir = tmp_path / "history"
    _write_candles_csv(data_dir / "BTCUSDT_1h.csv", symbol="BTCUSDT", prices=[1, 2, 3])
    repo = CandleRepository.build(HistoricalDataLoader(data_dir), {"BTCUSDT": ["1h"]}, T0, T0 + timedelta(hours=2))

    with pytest.raises(TypeError):
        repo._data["BTCUSDT"]["1h"] = ()  # type: ignore[index]

    clone = pickle.loads(pickle.dumps(repo))
    assert clone.bars("BTCUSDT", "1h") == repo.bars("BTCUSDT", "1h")
    with pytest.raises(KeyError):
        clone.bars("BTCUSDT", "4h")
