"""单次回测引擎（BacktestEngine）。

流程：配置 → K 线仓库 → 逐时刻推进（窗口 → 强平 → 撮合 → 策略）→ 统计报告/产物。

时钟按所有交易对周期中最小的一个步进，从 start 到 end（含）。每个时刻：
1. 刷新每个交易对、每个周期的 K 线窗口；
2. 历史足够且有新 bar 收盘时：先检查强平，再撮合挂单；
3. 只在对齐到该交易对 loop interval 的时刻调用策略；
4. 更新未实现盈亏、回撤统计、资金曲线采样。

运行状态集中在 `RunState`，引擎自身不保存跨运行的缓存；K 线仓库由外部注入且只读。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Mapping, Sequence

from analysis.report import export_equity_csv, export_trades_csv
from analysis.statistics import StatsAggregator
from broker.execution.liquidation import LiquidationChecker
from broker.execution.matching import OrderMatchingEngine
from broker.ledger import MarginLedger
from engine.base_engine import BaseEngine, EngineResult
from engine.window import WindowIndexer
from engine.worker_pool import CancelToken
from market_data.loader import HistoricalDataLoader
from market_data.repository import CandleRepository
from market_data.timeframe import count_steps, is_aligned, smallest_timeframe, timeframe_to_timedelta
from shared.config.config_loader import load_config
from shared.config.schema import BacktestConfig, MainConfig, SymbolConfig, SymbolInfoConfig
from shared.models.models import (
    Bar,
    OrderSide,
    OrderType,
    Position,
    StrategyReport,
    TradeRecord,
    Trend,
    Wallet,
)
from shared.state.snapshot_store import SqliteStateStore
from shared.utils.counter import Counter
from shared.utils.logging import setup_logger
from shared.utils.precision import decimal_round
from shared.utils.sessions import TradingSession, is_on_trading_session
from sizing.base import RiskContext, build_risk_management
from strategy.base import ExitPlan, Strategy
from strategy.registry import build_strategy
from utils.param_search import apply_hyperparameters, current_values


@dataclass
class SymbolRuntime:
    """单个交易对在一次运行中的上下文。"""
    cfg: SymbolConfig
    strategy: Strategy
    info: SymbolInfoConfig
    bars: dict[str, Sequence[Bar]]
    sessions: list[TradingSession]
    counter: Counter | None = None
    last_matched_close: datetime | None = None

    @property
    def pair(self) -> str:
        return self.cfg.pair


@dataclass
class RunState:
    """一次回测的全部可变状态（不跨运行共享）。"""
    wallet: Wallet
    stats: StatsAggregator
    ledger: MarginLedger
    matching: OrderMatchingEngine
    liquidation: LiquidationChecker
    windows: WindowIndexer
    symbols: dict[str, SymbolRuntime]
    step: timedelta
    ts: datetime
    trades: list[TradeRecord] = field(default_factory=list)
    chart: list[tuple[datetime, float]] = field(default_factory=list)
    total_bars: int = 0


def build_requests(cfg: BacktestConfig) -> dict[str, list[str]]:
    return {s.pair: s.intervals for s in cfg.symbols}


def load_repository(cfg: BacktestConfig) -> CandleRepository:
    """从 data_dir 加载本次回测需要的全部 K 线（缺数据直接抛 MissingHistoryError）。"""
    return CandleRepository.build(HistoricalDataLoader(cfg.data_dir), build_requests(cfg), cfg.start, cfg.end)


class BacktestEngine(BaseEngine):
    """单次回测引擎。

    Parameters
    ----------
    cfg_path:
        配置路径（cfg_obj 为空时读取）。
    cfg_obj:
        已解析的 MainConfig / BacktestConfig。
    repository:
        只读 K 线仓库；为空时按配置从 CSV 加载。
    hyperparameters:
        覆盖配置里的超参数当前值。
    strategies:
        {pair: Strategy}，直接注入策略实例（测试/研究用），优先于配置。
    cancel_token:
        协作式取消令牌（扫参 worker 超时）。
    artifacts_dir:
        产物目录；为空时使用 `backtest.output_dir`，两者都为空则不落盘。
    persist:
        False 时不写产物也不保存状态快照（扫参时每个组合只需要报告）。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj: MainConfig | BacktestConfig | None = None,
        repository: CandleRepository | None = None,
        hyperparameters: Mapping[str, Any] | None = None,
        strategies: Mapping[str, Strategy] | None = None,
        cancel_token: CancelToken | None = None,
        artifacts_dir: str | Path | None = None,
        persist: bool = True,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._repository = repository
        self._hyperparameters = dict(hyperparameters or {})
        self._strategies = dict(strategies or {})
        self._cancel = cancel_token
        self._artifacts_dir = artifacts_dir
        self._persist = persist

        self.cfg: BacktestConfig | None = None
        self.state: RunState | None = None
        self.report: StrategyReport | None = None
        self.trades: list[TradeRecord] = []
        self.logger = setup_logger("backtest")

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------
    def _load_cfg(self) -> BacktestConfig:
        cfg = self._cfg_obj if self._cfg_obj is not None else load_config(self._cfg_path)
        bt_cfg = cfg.backtest if isinstance(cfg, MainConfig) else cfg
        if not isinstance(bt_cfg, BacktestConfig):
            raise ValueError("backtest config not found")
        values = {**current_values(bt_cfg.hyperparameters), **self._hyperparameters}
        return apply_hyperparameters(bt_cfg, values)

    def _load_repository(self, cfg: BacktestConfig) -> CandleRepository:
        if self._repository is None:
            return load_repository(cfg)
        for pair, intervals in build_requests(cfg).items():
            for interval in intervals:
                self._repository.require(pair, interval, cfg.start, cfg.end)
        return self._repository

    def _build_state(self, cfg: BacktestConfig, repo: CandleRepository) -> RunState:
        wallet = Wallet(available_balance=cfg.initial_capital, total_balance=cfg.initial_capital)
        for s in cfg.symbols:
            wallet.positions[s.pair] = Position(symbol=s.pair, leverage=s.leverage)

        stats = StatsAggregator(cfg.initial_capital)
        trades: list[TradeRecord] = []
        ledger = MarginLedger(
            wallet,
            stats,
            journal=trades,
            quantity_precision={s.pair: cfg.symbol_info(s.pair).quantity_precision for s in cfg.symbols},
        )
        matching = OrderMatchingEngine(
            ledger, maker_fee=cfg.fees.maker, taker_fee=cfg.fees.taker, tie_break=cfg.tie_break
        )
        liquidation = LiquidationChecker(ledger, matching, cfg.maintenance_margin_rate)

        symbols: dict[str, SymbolRuntime] = {}
        for s in cfg.symbols:
            strat = self._strategies.get(s.pair) or build_strategy(s.strategy)
            strat.bind(s.loop_interval, build_risk_management(s.risk_management))
            symbols[s.pair] = SymbolRuntime(
                cfg=s,
                strategy=strat,
                info=cfg.symbol_info(s.pair),
                bars={itv: repo.bars(s.pair, itv) for itv in s.intervals},
                sessions=[TradingSession.from_config(t.start, t.end, t.day) for t in s.trading_sessions],
                counter=Counter(s.max_trade_duration) if s.max_trade_duration else None,
            )

        step_interval = smallest_timeframe([itv for s in cfg.symbols for itv in s.intervals])
        return RunState(
            wallet=wallet,
            stats=stats,
            ledger=ledger,
            matching=matching,
            liquidation=liquidation,
            windows=WindowIndexer(cfg.max_window),
            symbols=symbols,
            step=timeframe_to_timedelta(step_interval),
            ts=cfg.start,
            trades=trades,
        )

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------
    def run(self) -> EngineResult:
        cfg = self._load_cfg()
        self.cfg = cfg
        repo = self._load_repository(cfg)
        state = self._build_state(cfg, repo)
        self.state = state
        self.trades = state.trades

        store = SqliteStateStore(cfg.state_path, run_id=cfg.start.isoformat()) if cfg.save_state and self._persist else None
        self.logger.info(
            "Backtest start: symbols=%s start=%s end=%s step=%s",
            ",".join(state.symbols), cfg.start.isoformat(), cfg.end.isoformat(), state.step,
        )
        try:
            while state.ts <= cfg.end:
                if self._cancel is not None:
                    self._cancel.raise_if_cancelled()
                self.step(state, cfg.min_history)
                if store is not None:
                    store.save_snapshot(state.ts, state.wallet, state.matching.snapshot())
                state.ts += state.step
            if store is not None:
                store.append_trades(state.trades)
        finally:
            if store is not None:
                store.close()

        steps_unit = smallest_timeframe([itv for s in cfg.symbols for itv in s.intervals])
        report = state.stats.finalize(
            final_balance=state.wallet.total_balance,
            start=cfg.start,
            end=cfg.end,
            total_bars=count_steps(cfg.start, cfg.end, steps_unit),
            symbols=len(state.symbols),
            equity_curve=state.chart,
        )
        self.report = report
        if report.total_trades == 0:
            self.logger.info("Backtest finished without any trade.")

        artifacts = self._export_artifacts(state)
        summary = {
            "report": report.to_dict(),
            "trades": len(state.trades),
            "final_balance": state.wallet.total_balance,
            "available_balance": state.wallet.available_balance,
            "positions": {
                p: {"size": pos.size, "entry_price": pos.entry_price, "margin": pos.margin}
                for p, pos in state.wallet.positions.items()
            },
        }
        return EngineResult(summary=summary, artifacts=artifacts)

    def step(self, state: RunState, min_history: int) -> None:
        """推进一个模拟时刻（state.ts）。单个交易对出错不影响其他交易对。"""
        for pair, rt in state.symbols.items():
            try:
                self._step_symbol(state, rt, min_history)
            except Exception:
                self.logger.exception("Symbol step failed: %s at %s", pair, state.ts.isoformat())
        state.stats.update_balance(state.wallet.total_balance)
        state.chart.append((state.ts, state.wallet.total_balance))
        state.total_bars += 1

    def _step_symbol(self, state: RunState, rt: SymbolRuntime, min_history: int) -> None:
        pair = rt.pair
        ts = state.ts
        candles: dict[str, Sequence[Bar]] = {}
        for interval, bars in rt.bars.items():
            state.windows.advance(pair, interval, bars, ts)
            candles[interval] = state.windows.window(pair, interval, bars)

        loop_bars = candles[rt.cfg.loop_interval]
        if not loop_bars or len(loop_bars) < min_history:
            return
        bar = loop_bars[-1]
        price = bar.close

        if rt.last_matched_close != bar.close_time:
            rt.last_matched_close = bar.close_time
            state.liquidation.check(pair, price, ts)
            state.matching.match(pair, bar, ts)

        if is_aligned(ts, rt.cfg.loop_interval):
            self._trade(state, rt, candles, price)

        state.ledger.mark_to_market(pair, price)

    # ------------------------------------------------------------------
    # strategy step
    # ------------------------------------------------------------------
    @staticmethod
    def _can_take(cfg: SymbolConfig, *, has_same: bool, has_opposite: bool, n_orders: int) -> bool:
        """是否允许在该方向下单（开新仓、加仓或反手）。

        不加仓时只拦同向信号，反向信号总是反手（挂着的止盈止损会先撤掉）；
        加仓模式下反手要求没有挂单，或配置了 can_open_new_position_to_close_last。
        """
        if not cfg.allow_pyramiding:
            return not has_same
        if has_opposite:
            return cfg.can_open_new_position_to_close_last or n_orders == 0
        return True

    def _trade(self, state: RunState, rt: SymbolRuntime, candles: Mapping[str, Sequence[Bar]], price: float) -> None:
        cfg = rt.cfg
        pair = rt.pair
        ts = state.ts
        pos = state.ledger.position(pair)
        matching = state.matching

        # 持仓超时：倒计时归零则市价平仓
        if rt.counter is not None and not pos.is_flat:
            if rt.counter.decrement() == 0:
                self.logger.info("Position on %s exceeded max duration (%s bars); closing.", pair, rt.counter.start)
                matching.cancel_all(pair)
                state.ledger.close_position(pair, price, matching.taker_fee, ts=ts, outcome="max_duration")
                rt.counter.reset()
                return

        # 止盈/止损已把仓位平掉时，清理残留挂单
        if pos.is_flat and matching.pending(pair):
            matching.cancel_all(pair)
        if rt.counter is not None and pos.is_flat:
            rt.counter.reset()

        in_session = is_on_trading_session(candles[cfg.loop_interval][-1].close_time, rt.sessions)
        if not in_session and pos.is_flat:
            return

        n_orders = len(matching.pending(pair))
        if self._can_take(cfg, has_same=pos.is_long, has_opposite=pos.is_short, n_orders=n_orders) and rt.strategy.buy(candles):
            self._enter(state, rt, candles, price, OrderSide.BUY)
        elif self._can_take(cfg, has_same=pos.is_short, has_opposite=pos.is_long, n_orders=n_orders) and rt.strategy.sell(candles):
            self._enter(state, rt, candles, price, OrderSide.SELL)

    def _enter(
        self,
        state: RunState,
        rt: SymbolRuntime,
        candles: Mapping[str, Sequence[Bar]],
        price: float,
        side: OrderSide,
    ) -> None:
        cfg = rt.cfg
        pair = rt.pair
        ts = state.ts
        matching = state.matching
        wallet = state.wallet
        pos = state.ledger.position(pair)
        sign = side.sign
        has_opposite = pos.size * sign < 0
        has_same = pos.size * sign > 0

        # 单向模式：反向信号只平仓，不反手
        if has_opposite and cfg.unidirectional:
            order = matching.new_order(symbol=pair, order_type=OrderType.MARKET, quantity=-pos.size, price=price, ts=ts)
            matching.submit(order, ts=ts)
            matching.cancel_all(pair)
            return

        trend = rt.strategy.trend_filter(candles)
        wanted = Trend.LONG if side is OrderSide.BUY else Trend.SHORT
        if trend is not None and trend is not wanted:
            return

        if cfg.allow_pyramiding and has_same:
            total = wallet.total_balance
            if pos.margin + total * cfg.risk > total * cfg.max_pyramiding_allocation:
                return

        if has_opposite and matching.pending(pair):
            matching.cancel_all(pair)

        plan = ExitPlan()
        if not cfg.allow_pyramiding:
            plan = rt.strategy.exit_plan(price, candles, rt.info.price_precision, side)

        qprec = rt.info.quantity_precision
        ctx = RiskContext(
            symbol=pair,
            balance=wallet.total_balance if cfg.allow_pyramiding else wallet.available_balance,
            risk=cfg.risk,
            enter_price=price,
            leverage=cfg.leverage,
            stop_loss_price=plan.stop_loss,
            quantity_precision=qprec,
            min_notional=rt.info.min_notional,
        )
        quantity = decimal_round(rt.strategy.risk_management(ctx), qprec)
        if quantity <= 0:
            return

        order_qty = sign * quantity - pos.size if has_opposite else sign * quantity
        order = matching.new_order(symbol=pair, order_type=OrderType.MARKET, quantity=order_qty, price=price, ts=ts)
        res = matching.submit(order, ts=ts)
        if res is None or not res.filled or state.ledger.position(pair).size * sign <= 0:
            return

        for tp in plan.take_profits:
            tp_qty = decimal_round(-sign * quantity * tp.quantity_percentage, qprec)
            if tp_qty == 0:
                continue
            matching.submit(
                matching.new_order(
                    symbol=pair, order_type=OrderType.LIMIT, quantity=tp_qty, price=tp.price, ts=ts, reduce_only=True
                ),
                ts=ts,
            )
        if plan.stop_loss:
            stop_type = OrderType.STOP_MARKET if len(plan.take_profits) > 1 else OrderType.STOP
            matching.submit(
                matching.new_order(
                    symbol=pair, order_type=stop_type, quantity=-sign * quantity, price=plan.stop_loss, ts=ts,
                    reduce_only=True,
                ),
                ts=ts,
            )

    # ------------------------------------------------------------------
    # artifacts
    # ------------------------------------------------------------------
    def _export_artifacts(self, state: RunState) -> dict[str, Any] | None:
        if not self._persist:
            return None
        out = self._artifacts_dir or (self.cfg.output_dir if self.cfg else None)
        if not out:
            return None
        out_dir = Path(out)
        out_dir.mkdir(parents=True, exist_ok=True)
        trades_path = out_dir / "trades.csv"
        equity_path = out_dir / "equity.csv"
        export_trades_csv(state.trades, trades_path)
        export_equity_csv(state.chart, equity_path)
        self.logger.info("Artifacts written to %s", out_dir)
        return {"dir": str(out_dir), "trades_csv": str(trades_path), "equity_csv": str(equity_path)}


def run_backtest(
    cfg: BacktestConfig,
    *,
    repository: CandleRepository | None = None,
    hyperparameters: Mapping[str, Any] | None = None,
    cancel_token: CancelToken | None = None,
) -> StrategyReport:
    """跑一次回测并返回报告（扫参 worker 的工作单元）。"""
    engine = BacktestEngine(
        cfg_obj=cfg,
        repository=repository,
        hyperparameters=hyperparameters,
        cancel_token=cancel_token,
        persist=False,
    )
    engine.run()
    assert engine.report is not None
    return engine.report
