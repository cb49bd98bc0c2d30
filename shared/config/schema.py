"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为“强类型 + 可演进”的边界协议；
- 启动阶段尽早失败，避免 typo/类型错误在长回测或扫参中“隐蔽爆炸”；
- 业务代码只读 schema 对象，不再到处 `cfg.get(...)`。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from market_data.timeframe import timeframe_to_minutes


class StrategyConfig(BaseModel):
    """策略配置（type + params）。

    说明：`strategy:` 下的扁平字段会被自动挪到 `params`，
    写起来方便，schema 又能保持严格（forbid extra keys）。
    """
    type: str = "ma_cross"
    params: Dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _pack_flat_params(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "params" in data and isinstance(data.get("params"), dict) and set(data.keys()) <= {"type", "params"}:
            return data
        strat_type = data.get("type", "ma_cross")
        params = {k: v for k, v in data.items() if k not in {"type", "params"}}
        existing = data.get("params")
        if isinstance(existing, dict):
            params = {**params, **existing}
        return {"type": strat_type, "params": params}


class FeesConfig(BaseModel):
    """手续费率（小数，0.0004 即 0.04%）。"""
    maker: float = 0.0002
    taker: float = 0.0004
    model_config = ConfigDict(extra="forbid")

    @field_validator("maker", "taker")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("fee rate must be >= 0")
        return v


class SymbolInfoConfig(BaseModel):
    """交易对精度元数据。"""
    quantity_precision: int = 3
    price_precision: int = 2
    min_notional: float = 5.0
    model_config = ConfigDict(extra="forbid")


class TradingSessionConfig(BaseModel):
    start: str
    end: str
    day: Optional[str] = None
    model_config = ConfigDict(extra="forbid")


class SymbolConfig(BaseModel):
    """单个交易对的策略运行配置。"""
    asset: str
    base: str = "USDT"
    loop_interval: str = "1h"
    indicator_intervals: List[str] = Field(default_factory=list)
    leverage: int = 1
    risk: float = 0.01
    allow_pyramiding: bool = False
    max_pyramiding_allocation: float = 0.5
    unidirectional: bool = False
    can_open_new_position_to_close_last: bool = True
    trading_sessions: List[TradingSessionConfig] = Field(default_factory=list)
    max_trade_duration: Optional[int] = None
    risk_management: Literal["percent", "risk"] = "percent"
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    model_config = ConfigDict(extra="forbid")

    @property
    def pair(self) -> str:
        return f"{self.asset}{self.base}"

    @property
    def intervals(self) -> list[str]:
        out = [self.loop_interval]
        for itv in self.indicator_intervals:
            if itv not in out:
                out.append(itv)
        return out

    @model_validator(mode="after")
    def _check(self) -> "SymbolConfig":
        for itv in self.intervals:
            timeframe_to_minutes(itv)
        if self.leverage < 1:
            raise ValueError("leverage must be >= 1")
        if self.max_trade_duration is not None and self.max_trade_duration <= 0:
            raise ValueError("max_trade_duration must be > 0")
        return self


class HyperParameter(BaseModel):
    """超参数：当前值 + 可选的优化范围。

    - optimization 为两个数值且 `min < max` 时按 optimization_step（默认 1）展开成闭区间；
    - 否则（含 `[max, min]`）视为显式取值列表（bool/str/数值）。
    """
    value: Any
    optimization: Optional[List[Any]] = None
    optimization_step: Optional[float] = None
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _wrap_scalar(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return data
        return {"value": data}

    @field_validator("optimization_step")
    @classmethod
    def _positive_step(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("optimization_step must be > 0")
        return v


class SweepConfig(BaseModel):
    """参数优化配置。"""
    max_workers: Optional[int] = None
    worker_timeout_secs: float = 300.0
    batch_size: Optional[int] = None
    min_batch_size: int = 1
    max_batch_size: int = 64
    target_batch_secs: float = 60.0
    memory_per_run_mb: float = 256.0
    roi_dominance_ratio: float = 1.5
    output_csv: Optional[str] = None
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check(self) -> "SweepConfig":
        if self.min_batch_size < 1 or self.max_batch_size < self.min_batch_size:
            raise ValueError("invalid batch size bounds")
        if self.worker_timeout_secs <= 0:
            raise ValueError("worker_timeout_secs must be > 0")
        return self


class BacktestConfig(BaseModel):
    """回测配置。"""
    data_dir: str = "dataset/history"
    start: datetime
    end: datetime
    initial_capital: float = 10_000.0
    fees: FeesConfig = Field(default_factory=FeesConfig)
    max_window: int = 500
    warmup_bars: Optional[int] = None
    maintenance_margin_rate: float = 0.005
    tie_break: Literal["price_desc", "price_asc", "stop_first", "take_profit_first"] = "price_desc"
    save_state: bool = False
    state_path: str = "dataset/state/backtest_state.sqlite3"
    output_dir: Optional[str] = None
    symbols: List[SymbolConfig]
    symbols_info: Dict[str, SymbolInfoConfig] = Field(default_factory=dict)
    hyperparameters: Dict[str, HyperParameter] = Field(default_factory=dict)
    sweep: SweepConfig = Field(default_factory=SweepConfig)

    model_config = ConfigDict(extra="forbid")

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check(self) -> "BacktestConfig":
        if self.end < self.start:
            raise ValueError("backtest.end must be >= backtest.start")
        if self.initial_capital <= 0:
            raise ValueError("initial_capital must be > 0")
        if self.max_window <= 0:
            raise ValueError("max_window must be > 0")
        if self.warmup_bars is not None and not 1 <= self.warmup_bars <= self.max_window:
            raise ValueError("warmup_bars must be within [1, max_window]")
        if not self.symbols:
            raise ValueError("backtest.symbols must not be empty")
        pairs = [s.pair for s in self.symbols]
        if len(set(pairs)) != len(pairs):
            raise ValueError("backtest.symbols contains duplicate pairs")
        return self

    @property
    def min_history(self) -> int:
        return int(self.warmup_bars) if self.warmup_bars is not None else int(self.max_window)

    def symbol_info(self, pair: str) -> SymbolInfoConfig:
        return self.symbols_info.get(pair) or SymbolInfoConfig()


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: Optional[str] = None
    model_config = ConfigDict(extra="forbid")


class MainConfig(BaseModel):
    """应用总配置。"""
    name: str = "futuresim"
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    backtest: BacktestConfig

    model_config = ConfigDict(extra="forbid", validate_assignment=True)
