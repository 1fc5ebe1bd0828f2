from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from updown_trader.config import TraderConfig
from updown_trader.models import ClosedTrade, Decision


class SqliteStore:
    def __init__(self, db_path: str, *, clock: Callable[[], float] = time.time) -> None:
        self._db_path = db_path
        self._clock = clock
        self._conn = sqlite3.connect(db_path)
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def start_run(self, cfg: TraderConfig) -> int:
        cur = self._conn.cursor()
        cur.execute(
            "INSERT INTO runs(started_epoch_s, config_json) VALUES(?, ?)",
            (self._clock(), json.dumps(_to_jsonable(asdict(cfg)), sort_keys=True)),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def end_run(self, run_id: int, summary: Dict[str, Any] | None = None) -> None:
        self._conn.execute(
            "UPDATE runs SET ended_epoch_s=?, summary_json=? WHERE id=?",
            (
                self._clock(),
                json.dumps(_to_jsonable(summary), sort_keys=True) if summary is not None else None,
                int(run_id),
            ),
        )
        self._conn.commit()

    def log_decision(
        self,
        run_id: int,
        *,
        market_id: str,
        decision: Decision,
        accepted: bool,
        reason: str | None,
        position_id: str | None = None,
    ) -> None:
        self._conn.execute(
            "INSERT INTO decisions(run_id, ts_epoch_s, market_id, action, side, confidence, strength, "
            "agreement_count, conflict_level, contributors_json, accepted, reason, position_id) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                int(run_id),
                self._clock(),
                str(market_id),
                decision.action.value,
                decision.side.value if decision.side else None,
                float(decision.confidence),
                decision.strength.value,
                int(decision.agreement_count),
                float(decision.conflict_level),
                json.dumps(decision.contributors),
                1 if accepted else 0,
                reason,
                position_id,
            ),
        )
        self._conn.commit()

    def log_trade(self, run_id: int, trade: ClosedTrade) -> None:
        self._conn.execute(
            "INSERT INTO trades(run_id, ts_epoch_s, position_id, strategy_id, market_id, side, entry_price, "
            "exit_price, size, pnl, won, partial, exit_reason, balance_after, trade_json) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                int(run_id),
                self._clock(),
                trade.position_id,
                trade.strategy_id,
                trade.market_id,
                trade.side.value,
                float(trade.entry_price),
                float(trade.exit_price),
                float(trade.size),
                float(trade.pnl),
                1 if trade.won else 0,
                1 if trade.partial else 0,
                trade.exit_reason,
                float(trade.balance_after),
                json.dumps(_to_jsonable(trade.to_dict()), sort_keys=True),
            ),
        )
        self._conn.commit()

    def log_performance(self, run_id: int, *, strategy_id: str, won: bool, pnl: float, weight: float) -> None:
        self._conn.execute(
            "INSERT INTO performance(run_id, ts_epoch_s, strategy_id, won, pnl, weight) VALUES(?, ?, ?, ?, ?, ?)",
            (int(run_id), self._clock(), str(strategy_id), 1 if won else 0, float(pnl), float(weight)),
        )
        self._conn.commit()

    def log_error(self, run_id: int, *, where: str, message: str) -> None:
        self._conn.execute(
            "INSERT INTO errors(run_id, ts_epoch_s, where_text, message) VALUES(?, ?, ?, ?)",
            (int(run_id), self._clock(), str(where), str(message)),
        )
        self._conn.commit()

    def recent_trades(self, run_id: int | None = None, limit: int = 50) -> List[Dict[str, Any]]:
        if run_id is None:
            cur = self._conn.execute("SELECT trade_json FROM trades ORDER BY id DESC LIMIT ?", (int(limit),))
        else:
            cur = self._conn.execute(
                "SELECT trade_json FROM trades WHERE run_id=? ORDER BY id DESC LIMIT ?",
                (int(run_id), int(limit)),
            )
        return [json.loads(row[0]) for row in cur.fetchall()]

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version(
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_epoch_s REAL NOT NULL,
                ended_epoch_s REAL,
                config_json TEXT NOT NULL,
                summary_json TEXT
            );

            CREATE TABLE IF NOT EXISTS decisions(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                market_id TEXT NOT NULL,
                action TEXT NOT NULL,
                side TEXT,
                confidence REAL,
                strength TEXT,
                agreement_count INTEGER,
                conflict_level REAL,
                contributors_json TEXT NOT NULL,
                accepted INTEGER NOT NULL,
                reason TEXT,
                position_id TEXT,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE TABLE IF NOT EXISTS trades(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                position_id TEXT NOT NULL,
                strategy_id TEXT NOT NULL,
                market_id TEXT NOT NULL,
                side TEXT NOT NULL,
                entry_price REAL NOT NULL,
                exit_price REAL NOT NULL,
                size REAL NOT NULL,
                pnl REAL NOT NULL,
                won INTEGER NOT NULL,
                partial INTEGER NOT NULL,
                exit_reason TEXT NOT NULL,
                balance_after REAL NOT NULL,
                trade_json TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE INDEX IF NOT EXISTS idx_trades_strategy ON trades(strategy_id);
            CREATE INDEX IF NOT EXISTS idx_trades_market ON trades(market_id);

            CREATE TABLE IF NOT EXISTS performance(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                strategy_id TEXT NOT NULL,
                won INTEGER NOT NULL,
                pnl REAL NOT NULL,
                weight REAL NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE TABLE IF NOT EXISTS errors(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                where_text TEXT NOT NULL,
                message TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );
            """
        )
        cur = self._conn.execute("SELECT COUNT(*) FROM schema_version")
        if int(cur.fetchone()[0]) == 0:
            self._conn.execute("INSERT INTO schema_version(version) VALUES(1)")
        self._conn.commit()


class StoreSink:
    """Binds a store to one run so the engine can use it as its record sink."""

    def __init__(self, store: SqliteStore, run_id: int) -> None:
        self.store = store
        self.run_id = run_id

    def record_decision(
        self,
        market_id: str,
        decision: Decision,
        *,
        accepted: bool,
        reason: Optional[str],
        position_id: Optional[str] = None,
    ) -> None:
        self.store.log_decision(
            self.run_id,
            market_id=market_id,
            decision=decision,
            accepted=accepted,
            reason=reason,
            position_id=position_id,
        )

    def record_trade(self, trade: ClosedTrade) -> None:
        self.store.log_trade(self.run_id, trade)

    def record_performance(self, strategy_id: str, *, won: bool, pnl: float, weight: float) -> None:
        self.store.log_performance(self.run_id, strategy_id=strategy_id, won=won, pnl=pnl, weight=weight)

    def record_error(self, where: str, message: str) -> None:
        self.store.log_error(self.run_id, where=where, message=message)


def _to_jsonable(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k.value if isinstance(k, Enum) else k): _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_to_jsonable(v) for v in obj]
    if is_dataclass(obj) and not isinstance(obj, type):
        return _to_jsonable(asdict(obj))
    if isinstance(obj, (str, int, float, bool)) or obj is None:
        return obj
    return str(obj)
