"""引擎基类。

单次回测与参数扫描共用同一出口：`run()` 返回 EngineResult，
CLI 只读取 summary / artifacts，不关心具体引擎。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果。"""

    summary: dict[str, Any]
    artifacts: dict[str, Any] | None = None


class BaseEngine(ABC):
    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError
