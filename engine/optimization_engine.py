"""参数优化引擎（OptimizationEngine）。

流程：
1. 读取配置，先做数据完整性检查（缺数据直接失败，不会启动任何 worker）；
2. 超参数展开成惰性网格，按批次提交给进程池；
3. 每个组合独立回测，超时/异常的组合记日志后剔除；
4. 全部批次跑完后用 `select_best` 把成功结果归约成唯一的最优组合（与完成顺序无关）。

K 线仓库在每个子进程启动时注入一次（只读），组合之间不共享任何可变状态。
"""

from __future__ import annotations

import csv
import logging
import time
from pathlib import Path
from typing import Any, Iterator

import psutil

from engine.backtest_engine import load_repository, run_backtest
from engine.base_engine import BaseEngine, EngineResult
from engine.worker_pool import CancelToken, TaskOutcome, WorkerPool
from market_data.repository import CandleRepository
from shared.config.config_loader import BacktestConfig, SweepConfig, load_config
from shared.config.schema import MainConfig
from shared.models.models import StrategyReport
from shared.utils.logging import set_level, setup_logger
from utils.param_search import ParameterGrid, SweepResult, score_report, select_best

# 子进程内的只读上下文（由 initializer 注入）
_WORKER_CONTEXT: dict[str, Any] = {}


def _init_worker(cfg: BacktestConfig, repository: CandleRepository, quiet: bool = True) -> None:
    _WORKER_CONTEXT["cfg"] = cfg
    _WORKER_CONTEXT["repository"] = repository
    if quiet:
        set_level(["backtest", "ledger", "matching", "data"], logging.WARNING)


def _run_combination(params: dict[str, Any], token: CancelToken) -> StrategyReport:
    cfg = _WORKER_CONTEXT["cfg"]
    repo = _WORKER_CONTEXT["repository"]
    return run_backtest(cfg, repository=repo, hyperparameters=params, cancel_token=token)


class AdaptiveBatchSizer:
    """按内存与耗时自适应批大小。

    初始值取 `可用内存 / 单次回测内存`，并限制在 [min_size, max_size]；
    每批结束后按平均单组合耗时把下一批调向 `target_batch_secs`。
    """

    def __init__(
        self,
        *,
        workers: int,
        min_size: int = 1,
        max_size: int = 64,
        target_batch_secs: float = 60.0,
        memory_per_run_mb: float = 256.0,
        initial: int | None = None,
    ):
        self.workers = max(1, int(workers))
        self.min_size = max(1, int(min_size))
        self.max_size = max(self.min_size, int(max_size))
        self.target_batch_secs = float(target_batch_secs)
        if initial is None:
            available_mb = psutil.virtual_memory().available / (1024 * 1024)
            initial = int(available_mb // max(float(memory_per_run_mb), 1.0))
        self.size = self._clamp(initial)

    def _clamp(self, n: int) -> int:
        return max(self.min_size, min(self.max_size, int(n)))

    def update(self, batch_len: int, elapsed_secs: float) -> int:
        if batch_len <= 0 or elapsed_secs <= 0:
            return self.size
        per_run = elapsed_secs * self.workers / batch_len
        wanted = self.target_batch_secs * self.workers / max(per_run, 1e-6)
        # 每次最多翻倍/减半，避免单批异常耗时导致剧烈抖动
        wanted = min(wanted, self.size * 2)
        wanted = max(wanted, self.size / 2)
        self.size = self._clamp(round(wanted))
        return self.size


def _batches(it: Iterator[dict[str, Any]], sizer: AdaptiveBatchSizer) -> Iterator[list[dict[str, Any]]]:
    while True:
        batch: list[dict[str, Any]] = []
        for params in it:
            batch.append(params)
            if len(batch) >= sizer.size:
                break
        if not batch:
            return
        yield batch


def _write_results_csv(path: str | Path, keys: list[str], rows: list[SweepResult]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    metrics = ["roi", "max_relative_drawdown", "total_trades", "total_win_rate", "profit_factor", "final_capital"]
    with p.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(keys + metrics + ["score"])
        for r in rows:
            writer.writerow(
                [r.params.get(k) for k in keys] + [getattr(r.report, m) for m in metrics] + [r.score]
            )


class OptimizationEngine(BaseEngine):
    """参数优化/批量回测引擎。

    Parameters
    ----------
    cfg_path / cfg_obj:
        配置来源（cfg_obj 优先）。
    repository:
        预先加载的 K 线仓库；为空时按配置加载。
    max_workers:
        覆盖 `backtest.sweep.max_workers`。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj: MainConfig | BacktestConfig | None = None,
        repository: CandleRepository | None = None,
        max_workers: int | None = None,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._repository = repository
        self._max_workers = max_workers
        self.logger = setup_logger("optimize")
        self.results: list[SweepResult] = []
        self.failures: list[TaskOutcome] = []
        self.best: SweepResult | None = None

    def _load_cfg(self) -> BacktestConfig:
        cfg = self._cfg_obj if self._cfg_obj is not None else load_config(self._cfg_path)
        bt_cfg = cfg.backtest if isinstance(cfg, MainConfig) else cfg
        if not isinstance(bt_cfg, BacktestConfig):
            raise ValueError("backtest config not found")
        return bt_cfg

    def run(self) -> EngineResult:
        cfg = self._load_cfg()
        sweep: SweepConfig = cfg.sweep

        # 数据检查放在最前面：缺数据属于致命错误，不应等到 worker 里才暴露
        repo = self._repository or load_repository(cfg)
        for s in cfg.symbols:
            for interval in s.intervals:
                repo.require(s.pair, interval, cfg.start, cfg.end)

        grid = ParameterGrid.from_hyperparameters(cfg.hyperparameters)
        total = len(grid)
        pool = WorkerPool(
            _run_combination,
            max_workers=self._max_workers or sweep.max_workers,
            timeout_secs=sweep.worker_timeout_secs,
            initializer=_init_worker,
            initargs=(cfg, repo, True),
        )
        sizer = AdaptiveBatchSizer(
            workers=pool.max_workers,
            min_size=sweep.min_batch_size,
            max_size=sweep.max_batch_size,
            target_batch_secs=sweep.target_batch_secs,
            memory_per_run_mb=sweep.memory_per_run_mb,
            initial=sweep.batch_size,
        )
        self.logger.info(
            "Sweep start: combinations=%s workers=%s batch=%s timeout=%ss",
            total, pool.max_workers, sizer.size, sweep.worker_timeout_secs,
        )

        self.results = []
        self.failures = []
        done = 0
        with pool:
            for batch in _batches(iter(grid), sizer):
                t0 = time.perf_counter()
                outcomes = pool.run_batch(batch, start_index=done)
                elapsed = time.perf_counter() - t0
                done += len(batch)

                for out in outcomes:
                    if not out.ok:
                        self.failures.append(out)
                        self.logger.warning("Combination #%s %s failed (%s): %s", out.index, out.payload, out.status, out.error)
                        continue
                    self.results.append(
                        SweepResult(params=dict(out.payload), report=out.value, score=score_report(out.value))
                    )

                prev = sizer.size
                if sizer.update(len(batch), elapsed) != prev:
                    self.logger.debug("Batch size adjusted: %s -> %s", prev, sizer.size)
                self.logger.info("Sweep progress: %s/%s (failed=%s)", done, total, len(self.failures))

        best = select_best(self.results, sweep.roi_dominance_ratio)
        self.best = best
        if sweep.output_csv:
            _write_results_csv(sweep.output_csv, grid.keys, self.results)

        if best is None:
            self.logger.warning("Sweep finished without any successful combination.")
        else:
            self.logger.info("Best params: %s roi=%.4f score=%.4f", best.params, best.report.roi, best.score)

        summary = {
            "best_params": best.params if best else None,
            "best_report": best.report.to_dict() if best else None,
            "best_score": best.score if best else None,
            "tested": len(self.results),
            "failed": len(self.failures),
            "total_combinations": total,
        }
        artifacts = {"csv": sweep.output_csv} if sweep.output_csv else None
        return EngineResult(summary=summary, artifacts=artifacts)
