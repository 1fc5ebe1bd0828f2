import json
import logging
import os
import sqlite3
import tempfile
import unittest
from contextlib import redirect_stdout
from io import StringIO

from updown_trader.cli import build_parser, main

logging.disable(logging.CRITICAL)


def _write_frames(path: str) -> None:
    t0 = 1_700_000_000
    frames = [
        {"ts": t0 + 120, "market_id": "m-1", "end_time": t0 + 900, "up_price": 0.55, "down_price": 0.45,
         "price": 100.0, "regime": "RANGE", "indicators": {"rsi": 32.0, "rsi_prev": 28.0}},
        {"ts": t0 + 960, "market_id": "m-2", "end_time": t0 + 1800, "up_price": 0.52, "down_price": 0.48,
         "price": 101.0, "regime": "RANGE", "indicators": {"rsi": 50.0, "rsi_prev": 49.0}},
    ]
    with open(path, "w", encoding="utf-8") as f:
        for frame in frames:
            f.write(json.dumps(frame) + "\n")


class TestCli(unittest.TestCase):
    def test_parser_requires_command(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])

    def test_backtest_command(self):
        with tempfile.TemporaryDirectory() as td:
            frames = os.path.join(td, "frames.jsonl")
            db = os.path.join(td, "runs.sqlite3")
            trades = os.path.join(td, "trades.csv")
            _write_frames(frames)

            out = StringIO()
            with redirect_stdout(out):
                rc = main(["backtest", "--frames", frames, "--db-path", db, "--trades-csv", trades])
            self.assertEqual(rc, 0)
            report = json.loads(out.getvalue())
            self.assertEqual(report["frames"], 2)
            self.assertEqual(report["trades"], 1)
            self.assertTrue(os.path.exists(trades))

            conn = sqlite3.connect(db)
            try:
                ended = conn.execute("SELECT ended_epoch_s FROM runs").fetchone()[0]
            finally:
                conn.close()
            self.assertIsNotNone(ended)

    def test_backtest_empty_file(self):
        with tempfile.TemporaryDirectory() as td:
            frames = os.path.join(td, "empty.jsonl")
            open(frames, "w", encoding="utf-8").close()
            self.assertEqual(main(["backtest", "--frames", frames]), 2)

    def test_strategies_command(self):
        out = StringIO()
        with redirect_stdout(out):
            rc = main(["strategies"])
        self.assertEqual(rc, 0)
        self.assertIn("MOMENTUM strategy", out.getvalue())


if __name__ == "__main__":
    unittest.main()
