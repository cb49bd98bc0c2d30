"""回测产物：终端报告表格 + 成交/资金曲线 CSV。"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Sequence

import pandas as pd
from rich import box
from rich.console import Console
from rich.table import Table

from shared.models.models import StrategyReport, TradeRecord

TRADE_COLUMNS = ["date", "symbol", "side", "type", "action", "size", "price", "pnl", "fee", "balance", "outcome"]


def _fmt_pct(x: float) -> str:
    return f"{x * 100:.2f}%"


def build_report_table(report: StrategyReport, title: str = "Backtest Report") -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")

    rows = [
        ("Period", f"{report.start.isoformat()} -> {report.end.isoformat()}"),
        ("Bars / Symbols", f"{report.total_bars} / {report.symbols}"),
        ("Initial capital", f"{report.initial_capital:.2f}"),
        ("Final capital", f"{report.final_capital:.2f}"),
        ("Net profit", f"{report.total_net_profit:.2f}"),
        ("ROI", _fmt_pct(report.roi)),
        ("Profit factor", f"{report.profit_factor:.3f}"),
        ("Total fees", f"{report.total_fees:.2f}"),
        ("Max abs drawdown", _fmt_pct(report.max_absolute_drawdown - 1)),
        ("Max rel drawdown", _fmt_pct(report.max_relative_drawdown)),
        ("Trades (long/short)", f"{report.total_trades} ({report.total_long_trades}/{report.total_short_trades})"),
        ("Win rate", _fmt_pct(report.total_win_rate)),
        ("Long / short win rate", f"{_fmt_pct(report.long_win_rate)} / {_fmt_pct(report.short_win_rate)}"),
        ("Max profit / loss", f"{report.max_profit:.2f} / {report.max_loss:.2f}"),
        ("Consecutive wins / losses", f"{report.max_consecutive_wins} / {report.max_consecutive_losses}"),
        ("Liquidations", str(report.liquidations)),
        ("Sharpe", f"{report.sharpe:.3f}"),
    ]
    for name, value in rows:
        table.add_row(name, value)
    return table


def render_report(report: StrategyReport, console: Console | None = None, title: str = "Backtest Report") -> None:
    (console or Console()).print(build_report_table(report, title=title))


def trades_frame(trades: Iterable[TradeRecord]) -> pd.DataFrame:
    rows = [t.to_dict() for t in trades]
    if not rows:
        return pd.DataFrame(columns=TRADE_COLUMNS)
    return pd.DataFrame(rows, columns=TRADE_COLUMNS)


def export_trades_csv(trades: Iterable[TradeRecord], path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    trades_frame(trades).to_csv(p, index=False)
    return p


def export_equity_csv(chart: Sequence[tuple[datetime, float]], path: str | Path) -> Path:
    """资金曲线：每个模拟时刻一行 (ts, balance)。"""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(list(chart), columns=["ts", "balance"])
    if not df.empty:
        df["ts"] = pd.to_datetime(df["ts"], utc=True)
    df.to_csv(p, index=False)
    return p
