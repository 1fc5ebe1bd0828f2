import csv
import json
import logging
import math
from typing import Optional

import pytest

from updown_trader.backtest import Frame, ReplayFeed, load_frames, run_backtest
from updown_trader.config import TraderConfig
from updown_trader.models import MarketFeatures, Regime, Side, Signal
from updown_trader.strategies.base import TradingStrategy

logging.disable(logging.CRITICAL)

T0 = 1_700_000_000


class AlwaysUp(TradingStrategy):
    @property
    def name(self) -> str:
        return "ALWAYS_UP"

    def analyze(self, features: MarketFeatures) -> Optional[Signal]:
        return Signal(self.name, Side.UP, 0.70)


def _raw(ts, market_id, end_time, price, **extra):
    raw = {
        "ts": ts,
        "market_id": market_id,
        "end_time": end_time,
        "up_price": 0.55,
        "down_price": 0.45,
        "price": price,
    }
    raw.update(extra)
    return raw


RAW_FRAMES = [
    _raw(T0 + 120, "m-1", T0 + 900, 100.0),
    _raw(T0 + 300, "m-1", T0 + 900, 101.0),
    _raw(T0 + 600, "m-1", T0 + 900, 102.0),
    _raw(T0 + 960, "m-2", T0 + 1800, 103.0),
]


def _frames():
    return [Frame.from_dict(raw) for raw in RAW_FRAMES]


def _config() -> TraderConfig:
    # Empty routing: the stub strategy is eligible in every regime.
    return TraderConfig(routing={})


class TestFrames:
    def test_from_dict(self):
        frame = Frame.from_dict(_raw(T0, "m-1", T0 + 600, 100.0, regime="trend-up", indicators={"rsi": 40}))
        assert frame.market.remaining_minutes(frame.ts) == pytest.approx(10.0)
        assert frame.features.remaining_minutes == pytest.approx(10.0)
        assert frame.features.regime is Regime.TREND_UP
        assert frame.features.get("rsi") == 40.0

    def test_unknown_regime_defaults_to_range(self):
        assert Frame.from_dict(_raw(T0, "m-1", T0 + 600, 100.0, regime="sideways?")).features.regime is Regime.RANGE

    def test_load_frames_sorts_and_skips_blank_lines(self, tmp_path):
        path = tmp_path / "frames.jsonl"
        lines = [json.dumps(RAW_FRAMES[2]), "", json.dumps(RAW_FRAMES[0]), json.dumps(RAW_FRAMES[1])]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        frames = load_frames(path)
        assert [f.ts for f in frames] == [T0 + 120, T0 + 300, T0 + 600]

    def test_load_frames_reports_bad_line(self, tmp_path):
        path = tmp_path / "frames.jsonl"
        path.write_text(json.dumps(RAW_FRAMES[0]) + "\n{\"ts\": 1}\n", encoding="utf-8")
        with pytest.raises(ValueError, match=":2: invalid frame"):
            load_frames(path)

    def test_replay_feed(self):
        feed = ReplayFeed(_frames())
        assert len(feed) == 4
        with pytest.raises(RuntimeError):
            _ = feed.current
        assert feed.advance()
        assert feed.clock() == T0 + 120
        assert feed.get_market().market_id == "m-1"
        while feed.advance():
            pass
        assert feed.get_features().price == 103.0

    def test_replay_feed_requires_frames(self):
        with pytest.raises(ValueError):
            ReplayFeed([])


class TestRunBacktest:
    def test_two_winning_markets(self):
        report = run_backtest(_frames(), _config(), [AlwaysUp()])

        assert report.frames == 4
        assert report.trades == 2
        assert report.wins == 2
        assert report.losses == 0
        assert report.win_rate == 1.0
        assert math.isinf(report.profit_factor)
        assert report.max_drawdown == 0.0
        assert report.total_pnl > 0
        assert report.final_balance == pytest.approx(500.0 + report.total_pnl)
        assert report.per_strategy["AGGREGATED"]["trades"] == 2
        assert {t.market_id for t in report.closed_trades} == {"m-1", "m-2"}
        assert report.engine_report["cycles"] == 4
        assert report.to_dict()["trades"] == 2

    def test_export_trades_csv(self, tmp_path):
        report = run_backtest(_frames(), _config(), [AlwaysUp()])
        path = report.export_trades_csv(tmp_path / "out" / "trades.csv")
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 2
        assert rows[0]["strategy_id"] == "AGGREGATED"
        assert rows[0]["contributors"] == "ALWAYS_UP"
        assert rows[0]["won"] == "1"

    def test_no_opinion_means_no_trades(self):
        report = run_backtest(_frames(), TraderConfig(), [])
        assert report.trades == 0
        assert report.profit_factor == 0.0
        assert report.final_balance == 500.0
