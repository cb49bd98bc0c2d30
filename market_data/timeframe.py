"""K 线周期换算（Binance 风格：1m/5m/1h/4h/1d/1w ...）。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

_UNIT_MINUTES = {"m": 1, "h": 60, "d": 60 * 24, "w": 60 * 24 * 7}

# 1970-01-01 是周四；Binance 周线从周一 00:00 UTC 开始
_WEEK_ANCHOR = datetime(1970, 1, 5, tzinfo=timezone.utc)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def timeframe_to_minutes(interval: str) -> int:
    """把 `15m` / `4h` / `1d` / `1w` 转为分钟数。"""
    s = str(interval).strip()
    if len(s) < 2 or s[-1] not in _UNIT_MINUTES:
        raise ValueError(f"Unsupported interval: {interval}")
    try:
        n = int(s[:-1])
    except ValueError as exc:
        raise ValueError(f"Unsupported interval: {interval}") from exc
    if n <= 0:
        raise ValueError(f"Unsupported interval: {interval}")
    return n * _UNIT_MINUTES[s[-1]]


def timeframe_to_timedelta(interval: str) -> timedelta:
    return timedelta(minutes=timeframe_to_minutes(interval))


def smallest_timeframe(intervals: list[str]) -> str:
    if not intervals:
        raise ValueError("intervals must not be empty")
    return min(intervals, key=timeframe_to_minutes)


def is_aligned(ts: datetime, interval: str) -> bool:
    """ts 是否落在该周期的 bar 边界上。"""
    minutes = timeframe_to_minutes(interval)
    anchor = _WEEK_ANCHOR if str(interval).endswith("w") else _EPOCH
    delta = ts.astimezone(timezone.utc) - anchor
    total_seconds = int(delta.total_seconds())
    return total_seconds % (minutes * 60) == 0


def count_steps(start: datetime, end: datetime, interval: str) -> int:
    """从 start 到 end（含端点）按 interval 步进的步数。"""
    if end < start:
        return 0
    step = timeframe_to_timedelta(interval)
    return int((end - start) // step) + 1
