"""交易时段判断。

时段以 UTC 表示，`day` 为 None 时每天生效；`start > end` 视为跨午夜时段。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import Iterable

_WEEKDAYS = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}


def parse_hhmm(value: str) -> time:
    try:
        hh, mm = str(value).strip().split(":", 1)
        return time(int(hh), int(mm))
    except Exception as exc:
        raise ValueError(f"Invalid session time (expected HH:MM): {value}") from exc


@dataclass(frozen=True)
class TradingSession:
    start: time
    end: time
    day: int | None = None

    @classmethod
    def from_config(cls, start: str, end: str, day: str | None = None) -> "TradingSession":
        day_idx = None
        if day is not None:
            key = str(day).strip().lower()[:3]
            if key not in _WEEKDAYS:
                raise ValueError(f"Invalid session day: {day}")
            day_idx = _WEEKDAYS[key]
        return cls(start=parse_hhmm(start), end=parse_hhmm(end), day=day_idx)

    def contains(self, ts: datetime) -> bool:
        if self.day is not None and ts.weekday() != self.day:
            return False
        t = ts.time().replace(tzinfo=None)
        if self.start <= self.end:
            return self.start <= t <= self.end
        return t >= self.start or t <= self.end


def is_on_trading_session(ts: datetime, sessions: Iterable[TradingSession] | None) -> bool:
    """没有配置时段时始终可交易。"""
    sessions = list(sessions or [])
    if not sessions:
        return True
    return any(s.contains(ts) for s in sessions)
