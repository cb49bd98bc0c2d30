"""策略注册表：字符串 -> Strategy 实现。

约定：引擎只负责编排，策略实例由配置驱动构建（type + params）。
"""

from __future__ import annotations

import inspect
from typing import Any, Mapping

from shared.config.schema import StrategyConfig
from strategy.base import Strategy
from strategy.ma_cross import MACrossStrategy
from strategy.rsi_reversion import RSIReversionStrategy

_REGISTRY: dict[str, type[Strategy]] = {}


def register_strategy(name: str, cls: type[Strategy]) -> None:
    _REGISTRY[name] = cls


def get_strategy_cls(name: str) -> type[Strategy]:
    if name not in _REGISTRY:
        raise ValueError(f"Unknown strategy: {name} (registered: {sorted(_REGISTRY)})")
    return _REGISTRY[name]


def _filter_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """过滤出 __init__ 支持的参数（超参数会广播给所有交易对，多余字段直接忽略）。"""
    try:
        sig = inspect.signature(cls.__init__)
    except (TypeError, ValueError):
        return dict(params)

    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return dict(params)

    allowed = {name for name in sig.parameters.keys() if name != "self"}
    return {k: v for k, v in params.items() if k in allowed}


def build_strategy(cfg: StrategyConfig | Mapping[str, Any] | None) -> Strategy:
    """从配置构建策略实例。

    支持：
    - StrategyConfig
    - dict（含 type + 参数字段）
    """
    if cfg is None:
        return MACrossStrategy()

    if isinstance(cfg, StrategyConfig):
        name = str(cfg.type or "ma_cross")
        params = dict(cfg.params or {})
    elif isinstance(cfg, Mapping):
        name = str(cfg.get("type") or "ma_cross")
        params = dict(cfg)
        params.pop("type", None)
    else:
        raise ValueError("strategy cfg must be StrategyConfig or dict")

    cls = get_strategy_cls(name)
    kwargs = _filter_init_kwargs(cls, params)
    return cls(**kwargs)  # type: ignore[call-arg]


register_strategy("ma_cross", MACrossStrategy)
register_strategy("rsi_reversion", RSIReversionStrategy)
