"""历史 K 线加载。

从 `{data_dir}/{symbol}_{interval}.csv` 读取 K 线。支持两种列名：
- `open_time` / `close_time`（Binance kline 导出）
- `start_ts` / `end_ts`

时间列可以是毫秒/秒时间戳或 ISO 字符串，统一转为 UTC。
缺少 close 时间列时按 `open_time + interval` 推导。
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pandas as pd

from market_data.timeframe import timeframe_to_timedelta
from shared.models.models import Bar
from shared.utils.logging import setup_logger

_OPEN_COLS = ("open_time", "start_ts")
_CLOSE_COLS = ("close_time", "end_ts")
_REQUIRED = ("open", "high", "low", "close")


def _to_utc(series: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(series):
        unit = "ms" if float(series.abs().max()) > 1e12 else "s"
        return pd.to_datetime(series, unit=unit, utc=True)
    return pd.to_datetime(series, utc=True)


def _pick(df: pd.DataFrame, names: tuple[str, ...]) -> str | None:
    for n in names:
        if n in df.columns:
            return n
    return None


def bars_from_frame(df: pd.DataFrame, symbol: str, interval: str) -> list[Bar]:
    """DataFrame -> Bar 列表（按 open_time 升序，去重）。"""
    missing = [c for c in _REQUIRED if c not in df.columns]
    open_col = _pick(df, _OPEN_COLS)
    if missing or open_col is None:
        raise ValueError(f"Kline data for {symbol} {interval} missing columns: {missing or list(_OPEN_COLS)}")

    out = pd.DataFrame(
        {
            "open": df["open"].astype(float),
            "high": df["high"].astype(float),
            "low": df["low"].astype(float),
            "close": df["close"].astype(float),
            "volume": df["volume"].astype(float) if "volume" in df.columns else 0.0,
            "open_time": _to_utc(df[open_col]),
        }
    )
    close_col = _pick(df, _CLOSE_COLS)
    if close_col is not None:
        out["close_time"] = _to_utc(df[close_col])
    else:
        out["close_time"] = out["open_time"] + timeframe_to_timedelta(interval)

    out = out.drop_duplicates(subset="open_time", keep="last").sort_values("open_time")
    return [
        Bar(
            symbol=symbol,
            interval=interval,
            open=float(r.open),
            high=float(r.high),
            low=float(r.low),
            close=float(r.close),
            volume=float(r.volume),
            open_time=r.open_time.to_pydatetime(),
            close_time=r.close_time.to_pydatetime(),
        )
        for r in out.itertuples(index=False)
    ]


class HistoricalDataLoader:
    """历史 K 线提供者（只读 CSV）。"""

    def __init__(self, data_dir: str | Path = "dataset/history"):
        self.data_dir = Path(data_dir)
        self.logger = setup_logger("data")

    def klines_path(self, symbol: str, interval: str) -> Path:
        return self.data_dir / f"{symbol}_{interval}.csv"

    def load_bars(self, symbol: str, interval: str, end: datetime | None = None) -> list[Bar]:
        """读取某交易对某周期的全部 K 线（保留 start 之前的历史用于预热）。

        文件不存在时返回空列表，由上层决定是否致命。
        """
        path = self.klines_path(symbol, interval)
        if not path.exists():
            self.logger.warning("Kline file not found: %s", path)
            return []
        df = pd.read_csv(path)
        if df.empty:
            return []
        bars = bars_from_frame(df, symbol, interval)
        if end is not None:
            bars = [b for b in bars if b.open_time <= end]
        return bars
