"""futuresim 命令行入口。

子命令：

- `backtest`：单次回测，终端输出统计报告，可选写出成交/资金曲线 CSV。
- `optimize`：超参数网格搜索，输出最优参数组合及其报告。
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from typing import Any

from analysis.report import render_report
from engine.backtest_engine import BacktestEngine
from engine.errors import BacktestError
from engine.optimization_engine import OptimizationEngine
from shared.config.config_loader import load_config
from shared.utils.logging import setup_logger

LOGGER_NAMES = ("backtest", "ledger", "matching", "optimize", "worker-pool", "data")


@dataclass
class CliArgs:
    """命令行参数。

    config: 配置文件路径
    task: backtest / optimize
    """
    config: str
    task: str
    output_dir: str | None = None
    max_workers: int | None = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="futuresim", description="合约策略回测与参数优化")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument("--config", default=default, help="配置文件路径 (默认: config/config.yml)")

    # 允许 `--config` 写在子命令前或子命令后
    _add_config_arg(parser, default="config/config.yml")
    sub = parser.add_subparsers(dest="task")

    p_backtest = sub.add_parser("backtest", help="单次回测")
    _add_config_arg(p_backtest, default=argparse.SUPPRESS)
    p_backtest.add_argument("--output-dir", type=str, default=None, help="成交/资金曲线 CSV 输出目录")

    p_opt = sub.add_parser("optimize", help="超参数搜索")
    _add_config_arg(p_opt, default=argparse.SUPPRESS)
    p_opt.add_argument("--max-workers", type=int, default=None, help="并发进程数（默认 cpu_count - 1）")

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    ns = build_parser().parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", "config/config.yml")),
        task=ns.task or "backtest",
        output_dir=getattr(ns, "output_dir", None),
        max_workers=getattr(ns, "max_workers", None),
    )


def run_task(args: CliArgs) -> dict[str, Any]:
    cfg = load_config(args.config)
    for name in LOGGER_NAMES:
        setup_logger(name, level=cfg.logging.level, log_file=cfg.logging.file)

    if args.task == "backtest":
        engine = BacktestEngine(cfg_obj=cfg, artifacts_dir=args.output_dir)
        result = engine.run()
        if engine.report is not None:
            render_report(engine.report)
        return result.summary

    if args.task == "optimize":
        engine = OptimizationEngine(cfg_obj=cfg, max_workers=args.max_workers)
        result = engine.run()
        if engine.best is not None:
            print(f"Best params: {engine.best.params} (score={engine.best.score:.4f})")
            render_report(engine.best.report, title="Best Combination")
        return result.summary

    raise ValueError(f"Unknown task: {args.task}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logger = setup_logger("backtest")
    try:
        run_task(args)
    except (BacktestError, FileNotFoundError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
