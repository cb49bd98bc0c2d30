"""回测统计聚合器。

每次余额变动（成交/手续费/平仓）后增量更新：
- 峰值余额、绝对回撤（balance / peak 的最小值）、相对回撤（(balance - peak) / peak 的最小值）；
- 连胜/连亏（次数与金额，符号翻转即重置）；
- 单笔最大盈利/亏损，多空开平计数。

`finalize()` 时再派生胜率、盈亏因子、平均盈亏等；所有除法都做了 0 分母保护。
"""

from __future__ import annotations

import math
from datetime import datetime
from statistics import mean, median, pstdev

from shared.models.models import PositionSide, StrategyReport


def _safe_div(num: float, den: float) -> float:
    return num / den if den else 0.0


def _floor2(x: float) -> float:
    return math.floor(x * 100) / 100


def _sharpe(equity_curve: list[tuple[datetime, float]]) -> float:
    """按相邻采样点收益率估计年化 Sharpe（加密货币按 365 天）。"""
    if len(equity_curve) < 3:
        return 0.0
    returns = []
    for i in range(1, len(equity_curve)):
        prev = equity_curve[i - 1][1]
        if prev > 0:
            returns.append(equity_curve[i][1] / prev - 1)
    if len(returns) < 2:
        return 0.0
    sigma = pstdev(returns)
    if not sigma:
        return 0.0
    deltas = [
        (equity_curve[i][0] - equity_curve[i - 1][0]).total_seconds()
        for i in range(1, len(equity_curve))
    ]
    med = median([d for d in deltas if d > 0] or [86400])
    return mean(returns) / sigma * math.sqrt(365 * 86400 / med)


class StatsAggregator:
    def __init__(self, initial_capital: float):
        self.initial_capital = float(initial_capital)
        self.peak_balance = float(initial_capital)
        self.max_absolute_drawdown = 1.0
        self.max_relative_drawdown = 0.0

        self.total_long_trades = 0
        self.total_short_trades = 0
        self.long_winning_trades = 0
        self.long_losing_trades = 0
        self.short_winning_trades = 0
        self.short_losing_trades = 0
        self.liquidations = 0

        self.total_profit = 0.0
        self.total_loss = 0.0
        self.total_fees = 0.0
        self.max_profit = 0.0
        self.max_loss = 0.0

        # 当前连胜/连亏：sign 为 1 / -1 / 0（尚无记录）
        self.streak_sign = 0
        self.streak_count = 0
        self.streak_amount = 0.0
        self.max_consecutive_wins = 0
        self.max_consecutive_losses = 0
        self.max_consecutive_profit = 0.0
        self.max_consecutive_loss = 0.0

    @property
    def total_trades(self) -> int:
        return self.total_long_trades + self.total_short_trades

    def update_balance(self, balance: float) -> None:
        if balance > self.peak_balance:
            self.peak_balance = balance
        if self.peak_balance <= 0:
            return
        self.max_absolute_drawdown = min(self.max_absolute_drawdown, balance / self.peak_balance)
        self.max_relative_drawdown = min(
            self.max_relative_drawdown, (balance - self.peak_balance) / self.peak_balance
        )

    def record_fee(self, fee: float) -> None:
        self.total_fees += fee

    def record_open(self, side: PositionSide) -> None:
        if side is PositionSide.LONG:
            self.total_long_trades += 1
        else:
            self.total_short_trades += 1

    def record_close(self, side: PositionSide, pnl: float, liquidated: bool = False) -> None:
        """登记一笔完整平仓（pnl 为该笔交易累计的已实现盈亏，不含手续费）。"""
        win = pnl > 0
        if side is PositionSide.LONG:
            if win:
                self.long_winning_trades += 1
            else:
                self.long_losing_trades += 1
        else:
            if win:
                self.short_winning_trades += 1
            else:
                self.short_losing_trades += 1
        if liquidated:
            self.liquidations += 1

        if pnl > 0:
            self.total_profit += pnl
            self.max_profit = max(self.max_profit, pnl)
        elif pnl < 0:
            self.total_loss += pnl
            self.max_loss = min(self.max_loss, pnl)
        self._update_streak(pnl)

    def _update_streak(self, pnl: float) -> None:
        if pnl == 0:
            return
        sign = 1 if pnl > 0 else -1
        if sign != self.streak_sign:
            self.streak_sign = sign
            self.streak_count = 0
            self.streak_amount = 0.0
        self.streak_count += 1
        self.streak_amount += pnl
        if sign > 0:
            self.max_consecutive_wins = max(self.max_consecutive_wins, self.streak_count)
            self.max_consecutive_profit = max(self.max_consecutive_profit, self.streak_amount)
        else:
            self.max_consecutive_losses = max(self.max_consecutive_losses, self.streak_count)
            self.max_consecutive_loss = min(self.max_consecutive_loss, self.streak_amount)

    def finalize(
        self,
        *,
        final_balance: float,
        start: datetime,
        end: datetime,
        total_bars: int,
        symbols: int,
        equity_curve: list[tuple[datetime, float]] | None = None,
    ) -> StrategyReport:
        """生成最终报告。

        Parameters
        ----------
        final_balance:
            钱包总额（已实现部分）。
        equity_curve:
            可选的 (ts, balance) 采样，用于估计 Sharpe。
        """
        long_closed = self.long_winning_trades + self.long_losing_trades
        short_closed = self.short_winning_trades + self.short_losing_trades
        wins = self.long_winning_trades + self.short_winning_trades
        losses = self.long_losing_trades + self.short_losing_trades
        net = final_balance - self.initial_capital

        return StrategyReport(
            start=start,
            end=end,
            total_bars=int(total_bars),
            symbols=int(symbols),
            initial_capital=self.initial_capital,
            final_capital=_floor2(final_balance),
            total_net_profit=_floor2(net),
            roi=_safe_div(net, self.initial_capital),
            total_profit=self.total_profit,
            total_loss=self.total_loss,
            total_fees=self.total_fees,
            profit_factor=_safe_div(self.total_profit, abs(self.total_loss) + abs(self.total_fees)),
            max_absolute_drawdown=self.max_absolute_drawdown,
            max_relative_drawdown=self.max_relative_drawdown,
            total_trades=self.total_trades,
            total_long_trades=self.total_long_trades,
            total_short_trades=self.total_short_trades,
            long_winning_trades=self.long_winning_trades,
            long_losing_trades=self.long_losing_trades,
            short_winning_trades=self.short_winning_trades,
            short_losing_trades=self.short_losing_trades,
            long_win_rate=_safe_div(self.long_winning_trades, long_closed),
            short_win_rate=_safe_div(self.short_winning_trades, short_closed),
            total_win_rate=_safe_div(wins, long_closed + short_closed),
            max_profit=self.max_profit,
            max_loss=self.max_loss,
            avg_profit=_safe_div(self.total_profit, wins),
            avg_loss=_safe_div(self.total_loss, losses),
            max_consecutive_wins=self.max_consecutive_wins,
            max_consecutive_losses=self.max_consecutive_losses,
            max_consecutive_profit=self.max_consecutive_profit,
            max_consecutive_loss=self.max_consecutive_loss,
            liquidations=self.liquidations,
            sharpe=_sharpe(equity_curve or []),
        )
