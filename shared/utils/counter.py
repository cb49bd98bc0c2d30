"""倒计时计数器：用于限制单笔持仓的最长持有 bar 数。"""

from __future__ import annotations


class Counter:
    def __init__(self, start: int):
        if int(start) <= 0:
            raise ValueError("Counter start must be > 0")
        self._start = int(start)
        self._value = int(start)

    @property
    def start(self) -> int:
        return self._start

    @property
    def value(self) -> int:
        return self._value

    def decrement(self) -> int:
        if self._value > 0:
            self._value -= 1
        return self._value

    def reset(self) -> None:
        self._value = self._start

    def __repr__(self) -> str:
        return f"Counter(start={self._start}, value={self._value})"
