import json
import logging
import os
import sqlite3
import tempfile
import unittest

from updown_trader.config import TraderConfig
from updown_trader.models import Action, ClosedTrade, Decision, Regime, Side, Signal, Strength
from updown_trader.persistence import SqliteStore, StoreSink

logging.disable(logging.CRITICAL)


def _trade(position_id: str = "pos-000001", pnl: float = 12.5, partial: bool = False) -> ClosedTrade:
    return ClosedTrade(
        position_id=position_id,
        strategy_id="AGGREGATED",
        side=Side.UP,
        entry_price=0.56,
        size=16.46,
        confidence=0.72,
        market_id="m-1",
        open_time=100.0,
        exit_price=1.0,
        exit_reason="resolution",
        pnl=pnl,
        won=pnl > 0,
        close_time=700.0,
        hold_time=600.0,
        balance_after=512.5,
        outcome=Side.UP,
        partial=partial,
        contributors=("ALPHA", "BETA"),
        regime=Regime.TREND_UP,
    )


def _decision() -> Decision:
    return Decision(
        action=Action.ENTER,
        side=Side.UP,
        confidence=0.7155,
        strength=Strength.GOOD,
        agreement_count=2,
        contributing_signals=[Signal("ALPHA", Side.UP, 0.75), Signal("BETA", Side.UP, 0.65)],
        regime=Regime.TREND_UP,
    )


class TestPersistence(unittest.TestCase):
    def setUp(self) -> None:
        fd, self.path = tempfile.mkstemp(suffix=".sqlite3")
        os.close(fd)

    def tearDown(self) -> None:
        for suffix in ("", "-wal", "-shm"):
            try:
                os.remove(self.path + suffix)
            except OSError:
                pass

    def _count(self, table: str) -> int:
        conn = sqlite3.connect(self.path)
        try:
            return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
        finally:
            conn.close()

    def test_run_decision_and_trades(self):
        store = SqliteStore(self.path, clock=lambda: 1000.0)
        run_id = store.start_run(TraderConfig())
        self.assertIsInstance(run_id, int)

        store.log_decision(run_id, market_id="m-1", decision=_decision(), accepted=True, reason=None,
                           position_id="pos-000001")
        store.log_decision(run_id, market_id="m-1", decision=Decision.no_trade("no_signals"), accepted=False,
                           reason="no_signals")
        store.log_trade(run_id, _trade("pos-000001"))
        store.log_trade(run_id, _trade("pos-000002", pnl=-4.0))

        trades = store.recent_trades(run_id)
        self.assertEqual([t["position_id"] for t in trades], ["pos-000002", "pos-000001"])
        self.assertEqual(trades[1]["contributors"], ["ALPHA", "BETA"])
        self.assertEqual(trades[1]["regime"], "TREND_UP")
        self.assertEqual(len(store.recent_trades(limit=1)), 1)

        store.end_run(run_id, {"profit_factor": float("inf"), "side": Side.UP})
        store.close()

        self.assertEqual(self._count("decisions"), 2)
        self.assertEqual(self._count("trades"), 2)

        conn = sqlite3.connect(self.path)
        try:
            config_json, summary_json, ended = conn.execute(
                "SELECT config_json, summary_json, ended_epoch_s FROM runs WHERE id=?", (run_id,)
            ).fetchone()
            contributors = conn.execute("SELECT contributors_json FROM decisions ORDER BY id").fetchone()[0]
        finally:
            conn.close()
        config = json.loads(config_json)
        self.assertEqual(config["session"]["initial_balance"], 500.0)
        self.assertIn("CHOP", config["routing"])
        self.assertEqual(json.loads(summary_json)["side"], "UP")
        self.assertEqual(ended, 1000.0)
        self.assertEqual(json.loads(contributors), ["ALPHA", "BETA"])

    def test_store_sink_forwards_records(self):
        store = SqliteStore(self.path)
        run_id = store.start_run(TraderConfig())
        sink = StoreSink(store, run_id)
        sink.record_decision("m-1", _decision(), accepted=True, reason=None, position_id="pos-000001")
        sink.record_trade(_trade())
        sink.record_performance("ALPHA", won=True, pnl=6.25, weight=1.0)
        sink.record_error("fetch", "timeout")
        store.close()

        for table in ("decisions", "trades", "performance", "errors"):
            self.assertEqual(self._count(table), 1, table)

    def test_schema_version_written_once(self):
        SqliteStore(self.path).close()
        SqliteStore(self.path).close()
        self.assertEqual(self._count("schema_version"), 1)


if __name__ == "__main__":
    unittest.main()
