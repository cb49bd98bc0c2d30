from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from engine.window import WindowIndexer, advance_window
from shared.models.models import Bar

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _bars(n: int) -> list[Bar]:
    out = []
    for i in range(n):
        start = T0 + timedelta(hours=i)
        out.append(Bar("BTCUSDT", "1h", 100.0, 101.0, 99.0, 100.0, 1.0, start, start + timedelta(hours=1)))
    return out


def test_window_empty_before_first_close():
    bars = _bars(5)
    assert advance_window(bars, 0, 0, T0 + timedelta(minutes=30), 10) == (0, 0)


def test_window_includes_bar_closing_at_ts():
    bars = _bars(5)
    start, end = advance_window(bars, 0, 0, T0 + timedelta(hours=2), 10)
    assert (start, end) == (0, 2)
    assert bars[end - 1].close_time == T0 + timedelta(hours=2)


def test_window_capped_at_max_window():
    bars = _bars(10)
    start, end = advance_window(bars, 0, 0, T0 + timedelta(hours=8), 3)
    assert (start, end) == (5, 8)


def test_window_monotonic_and_stable_without_new_bar():
    bars = _bars(12)
    idx = WindowIndexer(max_window=4)
    prev = (0, 0)
    ts = T0
    for _ in range(40):
        ts += timedelta(minutes=20)
        cur = idx.advance("BTCUSDT", "1h", bars, ts)
        assert cur[0] >= prev[0] and cur[1] >= prev[1]
        assert cur[1] - cur[0] <= 4
        for b in bars[cur[0]:cur[1]]:
            assert b.close_time <= ts
        prev = cur
    assert prev == (8, 12)
    assert len(idx.window("BTCUSDT", "1h", bars)) == 4


def test_window_indexer_rejects_bad_size():
    with pytest.raises(ValueError):
        WindowIndexer(0)
