"""核心数据结构：Bar/Position/Order/Wallet/TradeRecord/StrategyReport。"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"
    STOP_MARKET = "STOP_MARKET"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is OrderSide.BUY else -1


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    CANCELED = "CANCELED"


class Trend(int, Enum):
    """趋势过滤结果。"""
    SHORT = -1
    NEUTRAL = 0
    LONG = 1


@dataclass(frozen=True)
class Bar:
    """K 线（加载后不可变）。"""
    symbol: str
    interval: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    open_time: datetime
    close_time: datetime


@dataclass
class Position:
    """单个交易对的持仓（整个回测周期内只存在一份，平仓后归零）。

    size 为带符号数量：正数多头，负数空头。
    """
    symbol: str
    leverage: int = 1
    entry_price: float = 0.0
    margin: float = 0.0
    size: float = 0.0
    side: PositionSide = PositionSide.LONG
    unrealized_profit: float = 0.0

    @property
    def is_flat(self) -> bool:
        return self.size == 0

    @property
    def is_long(self) -> bool:
        return self.size > 0

    @property
    def is_short(self) -> bool:
        return self.size < 0

    def reset(self) -> None:
        self.size = 0.0
        self.entry_price = 0.0
        self.margin = 0.0
        self.unrealized_profit = 0.0


@dataclass
class Order:
    """挂单。quantity 带符号：BUY 为正，SELL 为负。"""
    id: str
    symbol: str
    type: OrderType
    side: OrderSide
    price: float
    quantity: float
    created_at: datetime | None = None
    status: OrderStatus = OrderStatus.PENDING
    reduce_only: bool = False


@dataclass
class Wallet:
    """账户钱包。只允许 ledger 修改。"""
    available_balance: float
    total_balance: float
    total_unrealized_profit: float = 0.0
    positions: dict[str, Position] = field(default_factory=dict)


@dataclass(frozen=True)
class TradeRecord:
    """一次成交（开/平）的审计记录，追加后不再修改。"""
    date: datetime
    symbol: str
    side: OrderSide
    type: OrderType
    action: str  # "OPEN" / "CLOSE"
    size: float
    price: float
    pnl: float
    fee: float
    balance: float
    outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["type"] = self.type.value
        return d


@dataclass(frozen=True)
class StrategyReport:
    """回测结束时汇总出的统计报告。

    回撤、收益率、胜率均为比例（0.1 表示 10%）；回撤为负数或 0。
    """
    start: datetime
    end: datetime
    total_bars: int
    symbols: int
    initial_capital: float
    final_capital: float
    total_net_profit: float
    roi: float
    total_profit: float
    total_loss: float
    total_fees: float
    profit_factor: float
    max_absolute_drawdown: float
    max_relative_drawdown: float
    total_trades: int
    total_long_trades: int
    total_short_trades: int
    long_winning_trades: int
    long_losing_trades: int
    short_winning_trades: int
    short_losing_trades: int
    long_win_rate: float
    short_win_rate: float
    total_win_rate: float
    max_profit: float
    max_loss: float
    avg_profit: float
    avg_loss: float
    max_consecutive_wins: int
    max_consecutive_losses: int
    max_consecutive_profit: float
    max_consecutive_loss: float
    liquidations: int = 0
    sharpe: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["start"] = self.start.isoformat()
        d["end"] = self.end.isoformat()
        return d
