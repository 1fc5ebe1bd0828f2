"""
Offline replay of recorded market frames through the trading engine.

Each frame is one poll: the active market with its contract prices plus
the pre-computed features for that moment.  Frames are stored as JSON
lines::

    {"ts": 1700000100, "market_id": "m-1", "end_time": 1700000900,
     "up_price": 0.55, "down_price": 0.45, "price": 43010.5,
     "regime": "TREND_UP", "indicators": {"ema_fast": 43000.0, ...}}

The engine runs against a simulated clock that follows the frame
timestamps, so time windows, cooldowns and exits behave as they did live.
"""

from __future__ import annotations

import csv
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from updown_trader.config import TraderConfig
from updown_trader.engine import TradingEngine
from updown_trader.interfaces import RecordSink
from updown_trader.models import ClosedTrade, MarketFeatures, MarketSnapshot, Regime
from updown_trader.strategies.base import TradingStrategy

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    ts: float
    market: MarketSnapshot
    features: MarketFeatures

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Frame":
        ts = float(raw["ts"])
        end_time = float(raw["end_time"])
        market = MarketSnapshot(
            market_id=str(raw["market_id"]),
            end_time=end_time,
            up_price=float(raw["up_price"]),
            down_price=float(raw["down_price"]),
            up_token_id=str(raw.get("up_token_id", "")),
            down_token_id=str(raw.get("down_token_id", "")),
        )
        features = MarketFeatures(
            price=float(raw["price"]),
            regime=Regime.parse(raw.get("regime")) or Regime.RANGE,
            indicators={str(k): float(v) for k, v in (raw.get("indicators") or {}).items() if v is not None},
            prices=tuple(float(p) for p in raw.get("prices", ())),
            remaining_minutes=max(0.0, (end_time - ts) / 60.0),
            timestamp=ts,
        )
        return cls(ts=ts, market=market, features=features)


def load_frames(path: str | Path) -> List[Frame]:
    frames: List[Frame] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                frames.append(Frame.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as exc:
                raise ValueError(f"{path}:{lineno}: invalid frame: {exc}") from exc
    frames.sort(key=lambda fr: fr.ts)
    return frames


class ReplayFeed:
    """Serves recorded frames as both market and feature provider, and as the clock."""

    def __init__(self, frames: Sequence[Frame]) -> None:
        if not frames:
            raise ValueError("ReplayFeed needs at least one frame")
        self._frames = list(frames)
        self._index = -1

    def __len__(self) -> int:
        return len(self._frames)

    def advance(self) -> bool:
        if self._index + 1 >= len(self._frames):
            return False
        self._index += 1
        return True

    @property
    def current(self) -> Frame:
        if self._index < 0:
            raise RuntimeError("ReplayFeed not started; call advance() first")
        return self._frames[self._index]

    def clock(self) -> float:
        return self._frames[max(self._index, 0)].ts

    def get_market(self) -> MarketSnapshot:
        return self.current.market

    def get_features(self) -> MarketFeatures:
        return self.current.features


@dataclass
class BacktestReport:
    frames: int
    trades: int
    wins: int
    losses: int
    win_rate: float
    total_pnl: float
    profit_factor: float
    avg_win: float
    avg_loss: float
    max_drawdown: float
    final_balance: float
    per_strategy: Dict[str, Dict[str, float]] = field(default_factory=dict)
    closed_trades: List[ClosedTrade] = field(default_factory=list)
    engine_report: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frames": self.frames,
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "total_pnl": self.total_pnl,
            "profit_factor": self.profit_factor,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "max_drawdown": self.max_drawdown,
            "final_balance": self.final_balance,
            "per_strategy": self.per_strategy,
        }

    def export_trades_csv(self, path: str | Path) -> Path:
        path = Path(path)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)

        fieldnames = [
            "position_id", "strategy_id", "market_id", "side", "entry_price", "exit_price",
            "size", "pnl", "won", "partial", "exit_reason", "hold_time_s", "balance_after", "contributors",
        ]
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for trade in self.closed_trades:
                writer.writerow(
                    {
                        "position_id": trade.position_id,
                        "strategy_id": trade.strategy_id,
                        "market_id": trade.market_id,
                        "side": trade.side.value,
                        "entry_price": round(trade.entry_price, 4),
                        "exit_price": round(trade.exit_price, 4),
                        "size": round(trade.size, 2),
                        "pnl": round(trade.pnl, 2),
                        "won": int(trade.won),
                        "partial": int(trade.partial),
                        "exit_reason": trade.exit_reason,
                        "hold_time_s": round(trade.hold_time, 1),
                        "balance_after": round(trade.balance_after, 2),
                        "contributors": "|".join(trade.contributors),
                    }
                )
        return path


def run_backtest(
    frames: Iterable[Frame],
    config: TraderConfig,
    strategies: Sequence[TradingStrategy],
    *,
    sink: RecordSink | None = None,
) -> BacktestReport:
    feed = ReplayFeed(list(frames))
    engine = TradingEngine(
        config,
        strategies,
        feed,
        feed,
        sink=sink,
        clock=feed.clock,
        sleep=lambda _s: None,
    )

    while feed.advance():
        engine.run_cycle(now=feed.current.ts)

    final = engine.stop() or {}
    report = _summarize(engine.ledger.closed_trades, config.session.initial_balance, engine.session.balance)
    report.frames = len(feed)
    report.engine_report = final
    log.info(
        "Backtest done: frames=%d trades=%d win_rate=%.1f%% pnl=%+.2f max_dd=%.1f%%",
        report.frames, report.trades, report.win_rate * 100, report.total_pnl, report.max_drawdown * 100,
    )
    return report


def _summarize(trades: Sequence[ClosedTrade], initial_balance: float, final_balance: float) -> BacktestReport:
    # Partial exits fold into their position's result.
    position_pnl: Dict[str, float] = defaultdict(float)
    finals: Dict[str, ClosedTrade] = {}
    for trade in trades:
        position_pnl[trade.position_id] += trade.pnl
        if not trade.partial:
            finals[trade.position_id] = trade

    pnls = np.array([position_pnl[pid] for pid in finals], dtype=float)
    wins_mask = np.array([finals[pid].won for pid in finals], dtype=bool)

    gross_profit = float(pnls[pnls > 0].sum()) if pnls.size else 0.0
    gross_loss = float(pnls[pnls < 0].sum()) if pnls.size else 0.0
    if gross_loss != 0:
        profit_factor = gross_profit / abs(gross_loss)
    else:
        profit_factor = float("inf") if gross_profit > 0 else 0.0

    equity = np.array([initial_balance] + [t.balance_after for t in trades], dtype=float)
    peaks = np.maximum.accumulate(equity)
    drawdowns = np.where(peaks > 0, (peaks - equity) / peaks, 0.0)

    per_strategy: Dict[str, Dict[str, float]] = {}
    for pid, trade in finals.items():
        entry = per_strategy.setdefault(trade.strategy_id, {"trades": 0, "wins": 0, "pnl": 0.0})
        entry["trades"] += 1
        entry["wins"] += int(trade.won)
        entry["pnl"] += position_pnl[pid]
    for entry in per_strategy.values():
        entry["win_rate"] = entry["wins"] / entry["trades"] if entry["trades"] else 0.0

    wins = int(wins_mask.sum())
    count = int(pnls.size)
    return BacktestReport(
        frames=0,
        trades=count,
        wins=wins,
        losses=count - wins,
        win_rate=wins / count if count else 0.0,
        total_pnl=float(final_balance - initial_balance),
        profit_factor=profit_factor,
        avg_win=float(pnls[wins_mask].mean()) if wins else 0.0,
        avg_loss=float(pnls[~wins_mask].mean()) if count - wins else 0.0,
        max_drawdown=float(drawdowns.max()) if drawdowns.size else 0.0,
        final_balance=float(final_balance),
        per_strategy=per_strategy,
        closed_trades=list(trades),
    )
