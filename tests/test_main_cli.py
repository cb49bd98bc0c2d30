from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import main as app_main
from engine.errors import MissingHistoryError


def test_parse_args_config_before_or_after_subcommand():
    a = app_main.parse_args(["--config", "cfg/a.yml", "backtest"])
    b = app_main.parse_args(["backtest", "--config", "cfg/a.yml", "--output-dir", "out"])
    assert (a.config, a.task) == ("cfg/a.yml", "backtest")
    assert (b.config, b.task, b.output_dir) == ("cfg/a.yml", "backtest", "out")


def test_parse_args_defaults():
    args = app_main.parse_args([])
    assert args.config == "config/config.yml"
    assert args.task == "backtest"
    opt = app_main.parse_args(["optimize", "--max-workers", "3"])
    assert opt.task == "optimize" and opt.max_workers == 3


def test_main_returns_zero_on_success(monkeypatch):
    calls: list[Any] = []

    def _fake_run_task(args):
        calls.append(args)
        return {"ok": True}

    monkeypatch.setattr(app_main, "run_task", _fake_run_task)
    assert app_main.main(["optimize", "--config", "x.yml"]) == 0
    assert calls[0].task == "optimize"
    assert calls[0].config == "x.yml"


def test_main_exits_one_on_missing_history(monkeypatch):
    from datetime import datetime, timezone

    ts = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _raise(args):
        raise MissingHistoryError("BTCUSDT", "1h", ts, ts)

    monkeypatch.setattr(app_main, "run_task", _raise)
    assert app_main.main(["backtest"]) == 1


def test_main_exits_one_on_missing_config():
    assert app_main.main(["backtest", "--config", "does/not/exist.yml"]) == 1


def test_run_task_backtest_uses_engine(monkeypatch):
    @dataclass
    class _Res:
        summary: dict[str, Any]

    class _FakeEngine:
        def __init__(self, *, cfg_obj, artifacts_dir=None, **_kwargs):
            self.artifacts_dir = artifacts_dir
            self.report = None

        def run(self):
            return _Res(summary={"artifacts_dir": self.artifacts_dir})

    monkeypatch.setattr(app_main, "load_config", lambda path: _FakeCfg())
    monkeypatch.setattr(app_main, "BacktestEngine", _FakeEngine)
    res = app_main.run_task(app_main.CliArgs(config="x.yml", task="backtest", output_dir="out"))
    assert res == {"artifacts_dir": "out"}


class _FakeLogging:
    level = "INFO"
    file = None


class _FakeCfg:
    logging = _FakeLogging()
