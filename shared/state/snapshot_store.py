"""SQLite 状态快照（可选，用于回测过程排查）。

设计
----
- append-only：每个模拟时刻一行（钱包 + 挂单 JSON），成交单独一张表；
- 以 run_id 区分不同回测，重复写入同一 (run_id, ts) 时覆盖。
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from shared.models.models import TradeRecord, Wallet


def _default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


def _json_dumps(obj: Any) -> str:
    if is_dataclass(obj):
        obj = asdict(obj)  # type: ignore[arg-type]
    return json.dumps(obj, ensure_ascii=False, default=_default, allow_nan=False)


class SqliteStateStore:
    def __init__(self, path: str | Path, run_id: str = "default"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.run_id = str(run_id)
        self._conn = sqlite3.connect(self.path, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SqliteStateStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS snapshots (
              run_id TEXT NOT NULL,
              ts TEXT NOT NULL,
              total_balance REAL NOT NULL,
              available_balance REAL NOT NULL,
              wallet_json TEXT NOT NULL,
              orders_json TEXT NOT NULL,
              PRIMARY KEY (run_id, ts)
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL,
              ts TEXT NOT NULL,
              symbol TEXT NOT NULL,
              side TEXT NOT NULL,
              type TEXT NOT NULL,
              action TEXT NOT NULL,
              size REAL NOT NULL,
              price REAL NOT NULL,
              pnl REAL NOT NULL,
              fee REAL NOT NULL,
              balance REAL NOT NULL,
              outcome TEXT
            );
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_run ON trades(run_id);")

    def save_snapshot(self, ts: datetime, wallet: Wallet, orders: list[dict]) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO snapshots (
              run_id, ts, total_balance, available_balance, wallet_json, orders_json
            ) VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                self.run_id,
                ts.isoformat(),
                float(wallet.total_balance),
                float(wallet.available_balance),
                _json_dumps(wallet),
                _json_dumps(orders),
            ),
        )

    def append_trades(self, trades: Iterable[TradeRecord]) -> None:
        rows = [
            (
                self.run_id,
                t.date.isoformat(),
                t.symbol,
                t.side.value,
                t.type.value,
                t.action,
                float(t.size),
                float(t.price),
                float(t.pnl),
                float(t.fee),
                float(t.balance),
                t.outcome,
            )
            for t in trades
        ]
        if not rows:
            return
        self._conn.executemany(
            """
            INSERT INTO trades (run_id, ts, symbol, side, type, action, size, price, pnl, fee, balance, outcome)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            rows,
        )

    def latest_snapshot(self) -> dict[str, Any] | None:
        row = self._conn.execute(
            """
            SELECT ts, total_balance, available_balance, wallet_json, orders_json
            FROM snapshots WHERE run_id = ? ORDER BY ts DESC LIMIT 1;
            """,
            (self.run_id,),
        ).fetchone()
        if row is None:
            return None
        return {
            "ts": row[0],
            "total_balance": row[1],
            "available_balance": row[2],
            "wallet": json.loads(row[3]),
            "orders": json.loads(row[4]),
        }

    def count_trades(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM trades WHERE run_id = ?;", (self.run_id,)).fetchone()
        return int(row[0])
