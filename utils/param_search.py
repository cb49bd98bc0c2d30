"""参数搜索：超参数展开、惰性网格、打分与择优。"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from decimal import Decimal
from functools import reduce
from typing import Any, Iterator, Mapping, Sequence

from shared.config.schema import BacktestConfig, HyperParameter, SymbolConfig
from shared.models.models import StrategyReport

# 这些 SymbolConfig 字段允许被同名超参数覆盖；其余超参数进入策略 params
_SYMBOL_OVERRIDABLE = {
    "leverage",
    "risk",
    "allow_pyramiding",
    "max_pyramiding_allocation",
    "unidirectional",
    "can_open_new_position_to_close_last",
    "max_trade_duration",
    "risk_management",
}


@dataclass
class SweepResult:
    """一次参数组合回测的结果。"""
    params: dict
    report: StrategyReport
    score: float


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _numeric_range(lo: float, hi: float, step: float) -> list[Any]:
    """[lo, hi] 含端点按 step 展开；用 Decimal 避免 0.1 步长的累积误差。"""
    d_lo, d_hi, d_step = Decimal(str(lo)), Decimal(str(hi)), Decimal(str(step))
    n = int((d_hi - d_lo) / d_step)
    values = [d_lo + d_step * i for i in range(n + 1)]
    as_int = all(_is_int_like(v) for v in (lo, hi, step))
    return [int(v) if as_int else float(v) for v in values]


def _is_int_like(x: Any) -> bool:
    return isinstance(x, int) or (isinstance(x, float) and x.is_integer() and not isinstance(x, bool))


def expand_hyperparameter(hp: HyperParameter) -> list[Any]:
    """展开一个超参数的候选值。

    - 无 optimization：只有当前值；
    - 两个数值且 `min < max`：按 optimization_step（默认 1）生成闭区间；
    - 其他列表（bool/str/多个数值/`[max, min]`）：原样作为候选集。
    """
    opt = hp.optimization
    if not opt:
        return [hp.value]
    if len(opt) == 2 and all(_is_number(v) for v in opt) and opt[0] < opt[1]:
        step = hp.optimization_step if hp.optimization_step is not None else 1
        lo, hi = opt
        if not all(_is_int_like(v) for v in (lo, hi, step)):
            return _numeric_range(float(lo), float(hi), float(step))
        return _numeric_range(int(lo), int(hi), int(step))
    return list(opt)


class ParameterGrid:
    """超参数笛卡尔积：惰性、有限、可重复迭代（每次 iter 都从头生成）。"""

    def __init__(self, space: Mapping[str, Sequence[Any]]):
        self._keys = list(space.keys())
        self._values = [tuple(space[k]) for k in self._keys]
        for k, vals in zip(self._keys, self._values):
            if not vals:
                raise ValueError(f"Hyperparameter {k} has no candidate values")

    @classmethod
    def from_hyperparameters(cls, hps: Mapping[str, HyperParameter]) -> "ParameterGrid":
        return cls({name: expand_hyperparameter(hp) for name, hp in hps.items()})

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    def __len__(self) -> int:
        return math.prod(len(v) for v in self._values)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return self._generate(0, {})

    def _generate(self, depth: int, current: dict[str, Any]) -> Iterator[dict[str, Any]]:
        if depth == len(self._keys):
            yield dict(current)
            return
        key = self._keys[depth]
        for value in self._values[depth]:
            current[key] = value
            yield from self._generate(depth + 1, current)
        current.pop(key, None)


def current_values(hps: Mapping[str, HyperParameter]) -> dict[str, Any]:
    return {name: hp.value for name, hp in hps.items()}


def apply_hyperparameters(cfg: BacktestConfig, values: Mapping[str, Any]) -> BacktestConfig:
    """把超参数写入每个交易对：同名 SymbolConfig 字段直接覆盖，其余进入策略 params。"""
    if not values:
        return cfg
    symbols = []
    for sym in cfg.symbols:
        data = sym.model_dump()
        params = dict(data["strategy"].get("params") or {})
        for k, v in values.items():
            if k in _SYMBOL_OVERRIDABLE:
                data[k] = v
            else:
                params[k] = v
        data["strategy"] = {"type": data["strategy"]["type"], "params": params}
        symbols.append(SymbolConfig.model_validate(data))
    return cfg.model_copy(update={"symbols": symbols})


def score_report(report: StrategyReport) -> float:
    """风险调整收益：ROI / |最大相对回撤|；无回撤时直接用 ROI。"""
    dd = abs(report.max_relative_drawdown)
    return report.roi / dd if dd else report.roi


def _canonical(params: Mapping[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, default=str)


def is_better(candidate: SweepResult, incumbent: SweepResult | None, roi_dominance_ratio: float = 1.5) -> bool:
    """candidate 是否优于 incumbent。

    ROI 超过对方 roi_dominance_ratio 倍（默认多 50%）时直接胜出；否则比较风险调整得分，
    得分相同按参数的规范化 JSON 排序。

    两条规则叠加后不满足传递性（可能出现 A > B > C > A），
    所以多个结果择优要走 `select_best`，不要按到达顺序逐个比较。
    """
    if incumbent is None:
        return True
    c_roi, i_roi = candidate.report.roi, incumbent.report.roi
    if i_roi > 0 and c_roi > i_roi * roi_dominance_ratio:
        return True
    if c_roi > 0 and i_roi > c_roi * roi_dominance_ratio:
        return False
    if candidate.score != incumbent.score:
        return candidate.score > incumbent.score
    return _canonical(candidate.params) < _canonical(incumbent.params)


def select_best(results: Sequence[SweepResult], roi_dominance_ratio: float = 1.5) -> SweepResult | None:
    """从一组结果中选出最优。

    先按参数的规范化 JSON 排序再归约：同一组结果无论以什么顺序给出，选出的都是同一个。
    """
    ordered = sorted(results, key=lambda r: _canonical(r.params))
    return reduce(
        lambda best, r: r if is_better(r, best, roi_dominance_ratio) else best,
        ordered,
        None,
    )
