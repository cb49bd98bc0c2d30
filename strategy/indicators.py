"""策略用到的轻量指标（对 K 线窗口即时计算）。"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from shared.models.models import Bar


def closes(bars: Sequence[Bar]) -> np.ndarray:
    return np.fromiter((b.close for b in bars), dtype=float, count=len(bars))


def sma(values: np.ndarray, period: int) -> np.ndarray:
    """简单移动平均；前 period-1 个点为 NaN。"""
    if period <= 0:
        raise ValueError("SMA period must be > 0")
    return pd.Series(values).rolling(period, min_periods=period).mean().to_numpy()


def ema(values: np.ndarray, period: int) -> np.ndarray:
    if period <= 0:
        raise ValueError("EMA period must be > 0")
    return pd.Series(values).ewm(span=period, adjust=False, min_periods=period).mean().to_numpy()


def rsi(values: np.ndarray, period: int = 14) -> np.ndarray:
    """RSI（SMA 版本）。"""
    if period <= 0:
        raise ValueError("RSI period must be > 0")
    s = pd.Series(values)
    delta = s.diff()
    gain = delta.clip(lower=0.0).rolling(period, min_periods=period).mean()
    loss = (-delta).clip(lower=0.0).rolling(period, min_periods=period).mean()
    rs = gain / loss
    out = 100.0 - (100.0 / (1.0 + rs))
    # 只涨不跌时 loss 为 0，rs 为 inf，结果自然为 100
    return out.to_numpy()


def last_two(values: np.ndarray) -> tuple[float, float] | None:
    """取最后两个有效值；不足或为 NaN 时返回 None。"""
    if len(values) < 2:
        return None
    prev, curr = float(values[-2]), float(values[-1])
    if np.isnan(prev) or np.isnan(curr):
        return None
    return prev, curr
