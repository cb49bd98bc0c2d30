"""配置 Schema 预校验。

目标：
- 在 pydantic 解析前，对未知字段给出“did you mean”提示（typo 最常见）；
- 对策略参数等“开放字段”保持兼容（由策略模块自行解释）。
"""

from __future__ import annotations

import difflib
from typing import Any, Iterable

from pydantic import BaseModel

from shared.config.schema import (
    BacktestConfig,
    FeesConfig,
    HyperParameter,
    LoggingConfig,
    MainConfig,
    SweepConfig,
    SymbolConfig,
    SymbolInfoConfig,
    TradingSessionConfig,
)


def _suggest_key(key: str, allowed: Iterable[str]) -> str | None:
    matches = difflib.get_close_matches(key, list(allowed), n=1, cutoff=0.75)
    return matches[0] if matches else None


def _ensure_allowed_keys(block: dict[str, Any], *, allowed: set[str], ctx: str) -> None:
    unknown = [k for k in block.keys() if k not in allowed]
    if not unknown:
        return
    parts = []
    for k in sorted(unknown):
        suggestion = _suggest_key(k, allowed)
        if suggestion:
            parts.append(f"{k} (did you mean '{suggestion}'?)")
        else:
            parts.append(k)
    raise ValueError(f"{ctx} contains unknown keys: {', '.join(parts)}")


def _fields(model: type[BaseModel]) -> set[str]:
    return set(model.model_fields.keys())


def _check_block(val: Any, model: type[BaseModel], *, ctx: str) -> dict[str, Any] | None:
    if val is None:
        return None
    if not isinstance(val, dict):
        raise ValueError(f"{ctx} must be a dict")
    _ensure_allowed_keys(val, allowed=_fields(model), ctx=ctx)
    return val


def validate_raw_config(cfg: dict[str, Any]) -> None:
    """校验 raw config dict（来自 YAML + env 展开后）。"""
    if not isinstance(cfg, dict):
        raise ValueError("Config root must be a dict")
    _ensure_allowed_keys(cfg, allowed=_fields(MainConfig), ctx="config")
    _check_block(cfg.get("logging"), LoggingConfig, ctx="config.logging")

    if "backtest" not in cfg:
        raise ValueError("Missing required config key: config.backtest")
    bt = _check_block(cfg["backtest"], BacktestConfig, ctx="config.backtest")
    if bt is None:
        raise ValueError("config.backtest must be a dict")

    _check_block(bt.get("fees"), FeesConfig, ctx="config.backtest.fees")
    _check_block(bt.get("sweep"), SweepConfig, ctx="config.backtest.sweep")

    symbols = bt.get("symbols")
    if symbols is not None:
        if not isinstance(symbols, list):
            raise ValueError("config.backtest.symbols must be a list")
        for i, sym in enumerate(symbols):
            ctx = f"config.backtest.symbols[{i}]"
            block = _check_block(sym, SymbolConfig, ctx=ctx)
            for j, sess in enumerate((block or {}).get("trading_sessions") or []):
                _check_block(sess, TradingSessionConfig, ctx=f"{ctx}.trading_sessions[{j}]")

    infos = bt.get("symbols_info") or {}
    if not isinstance(infos, dict):
        raise ValueError("config.backtest.symbols_info must be a dict")
    for pair, info in infos.items():
        _check_block(info, SymbolInfoConfig, ctx=f"config.backtest.symbols_info.{pair}")

    hps = bt.get("hyperparameters") or {}
    if not isinstance(hps, dict):
        raise ValueError("config.backtest.hyperparameters must be a dict")
    for name, hp in hps.items():
        if isinstance(hp, dict):
            _check_block(hp, HyperParameter, ctx=f"config.backtest.hyperparameters.{name}")
