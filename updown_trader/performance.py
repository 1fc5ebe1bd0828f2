"""
Rolling per-strategy performance and the win-rate -> weight mapping.

Weights come from *live* outcomes over a bounded window, so a strategy
that is currently failing is down-weighted (or excluded) quickly, and a
recovering one regains influence as old losses are evicted.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from updown_trader.config import PerformanceConfig
from updown_trader.models import Regime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeSample:
    won: bool
    pnl: float
    regime: Optional[Regime]
    timestamp: float


@dataclass
class StrategyPerformanceRecord:
    window: Deque[OutcomeSample]
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    last_updated: Optional[float] = None

    @property
    def sample_count(self) -> int:
        return len(self.window)

    def rolling_win_rate(self) -> float:
        if not self.window:
            return 0.5
        return float(np.mean([s.won for s in self.window]))


class PerformanceTracker:
    def __init__(
        self,
        config: PerformanceConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or PerformanceConfig()
        self._clock = clock
        self._records: Dict[str, StrategyPerformanceRecord] = {}

    def _record(self, strategy_id: str) -> StrategyPerformanceRecord:
        record = self._records.get(strategy_id)
        if record is None:
            record = StrategyPerformanceRecord(window=deque(maxlen=self.config.window_size))
            self._records[strategy_id] = record
        return record

    def record_outcome(
        self,
        strategy_id: str,
        won: bool,
        pnl: float,
        regime: Regime | None = None,
        timestamp: float | None = None,
    ) -> None:
        ts = self._clock() if timestamp is None else timestamp
        record = self._record(strategy_id)
        record.window.append(OutcomeSample(won=bool(won), pnl=float(pnl), regime=regime, timestamp=ts))
        record.total_trades += 1
        if won:
            record.wins += 1
        else:
            record.losses += 1
        record.total_pnl += pnl
        record.last_updated = ts
        logger.debug(
            "%s outcome %s pnl=%+.2f -> win rate %.2f weight %.2f",
            strategy_id, "WIN" if won else "LOSS", pnl,
            record.rolling_win_rate(), self.get_weight(strategy_id),
        )

    def sample_count(self, strategy_id: str) -> int:
        record = self._records.get(strategy_id)
        return record.sample_count if record else 0

    def get_win_rate(self, strategy_id: str) -> float:
        """Rolling win rate; 0.5 (neutral) with no history."""
        record = self._records.get(strategy_id)
        return record.rolling_win_rate() if record else 0.5

    def get_weight(self, strategy_id: str) -> float:
        cfg = self.config
        if self.sample_count(strategy_id) < cfg.min_trades_for_weighting:
            return cfg.default_weight

        win_rate = self.get_win_rate(strategy_id)
        weight = cfg.min_weight
        for threshold, step_weight in cfg.weight_ladder:
            if win_rate >= threshold:
                weight = step_weight
                break
        return max(cfg.min_weight, min(cfg.max_weight, weight))

    def is_excluded(self, strategy_id: str) -> bool:
        """A strategy that keeps losing is dropped from aggregation until it recovers."""
        record = self._records.get(strategy_id)
        if record is None:
            return False
        cfg = self.config
        n = record.sample_count
        wins = sum(1 for s in record.window if s.won)
        if n >= cfg.exclude_zero_wins_after and wins == 0:
            return True
        if n >= cfg.exclude_low_win_rate_after and wins / n < cfg.exclude_win_rate_below:
            return True
        return False

    # ─── Diagnostics (read only) ─────────────────────────────────────────

    def get_all_weights(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "weight": self.get_weight(name),
                "win_rate": self.get_win_rate(name),
                "samples": record.sample_count,
                "total_trades": record.total_trades,
                "excluded": self.is_excluded(name),
            }
            for name, record in self._records.items()
        }

    def identify_underperformers(self, threshold: float = 0.45) -> List[Dict[str, Any]]:
        out = []
        for name, record in self._records.items():
            if record.sample_count < self.config.min_trades_for_weighting:
                continue
            win_rate = record.rolling_win_rate()
            if win_rate < threshold:
                out.append({"name": name, "win_rate": win_rate, "samples": record.sample_count})
        return out

    def top_performers(self, n: int = 3) -> List[Dict[str, Any]]:
        performers = [
            {
                "name": name,
                "win_rate": record.rolling_win_rate(),
                "pnl": record.total_pnl,
                "trades": record.total_trades,
            }
            for name, record in self._records.items()
            if record.sample_count >= self.config.min_trades_for_weighting
        ]
        performers.sort(key=lambda p: p["win_rate"], reverse=True)
        return performers[:n]

    def performance_by_regime(self, strategy_id: str) -> Dict[str, Dict[str, float]]:
        record = self._records.get(strategy_id)
        if record is None:
            return {}
        by_regime: Dict[str, Dict[str, float]] = {}
        for sample in record.window:
            key = sample.regime.value if sample.regime else "UNKNOWN"
            bucket = by_regime.setdefault(key, {"trades": 0, "wins": 0, "pnl": 0.0})
            bucket["trades"] += 1
            bucket["wins"] += 1 if sample.won else 0
            bucket["pnl"] += sample.pnl
        for bucket in by_regime.values():
            bucket["win_rate"] = bucket["wins"] / bucket["trades"]
        return by_regime

    def generate_report(self) -> Dict[str, Any]:
        strategies = {}
        for name, record in self._records.items():
            pnls = np.array([s.pnl for s in record.window], dtype=float)
            strategies[name] = {
                "total_trades": record.total_trades,
                "recent_trades": record.sample_count,
                "wins": record.wins,
                "losses": record.losses,
                "total_pnl": record.total_pnl,
                "rolling_win_rate": record.rolling_win_rate(),
                "rolling_avg_pnl": float(pnls.mean()) if pnls.size else 0.0,
                "current_weight": self.get_weight(name),
                "excluded": self.is_excluded(name),
                "by_regime": self.performance_by_regime(name),
            }
        return {
            "timestamp": self._clock(),
            "strategies": strategies,
            "top_performers": self.top_performers(),
            "underperformers": self.identify_underperformers(),
        }

    # ─── Persistence ─────────────────────────────────────────────────────

    def export_state(self) -> Dict[str, Any]:
        return {
            name: {
                "window": [
                    {
                        "won": s.won,
                        "pnl": s.pnl,
                        "regime": s.regime.value if s.regime else None,
                        "timestamp": s.timestamp,
                    }
                    for s in record.window
                ],
                "total_trades": record.total_trades,
                "wins": record.wins,
                "losses": record.losses,
                "total_pnl": record.total_pnl,
                "last_updated": record.last_updated,
            }
            for name, record in self._records.items()
        }

    def import_state(self, state: Dict[str, Any]) -> None:
        for name, raw in state.items():
            record = StrategyPerformanceRecord(
                window=deque(
                    (
                        OutcomeSample(
                            won=bool(s["won"]),
                            pnl=float(s["pnl"]),
                            regime=Regime.parse(s.get("regime")),
                            timestamp=float(s["timestamp"]),
                        )
                        for s in raw.get("window", [])
                    ),
                    maxlen=self.config.window_size,
                ),
                total_trades=int(raw.get("total_trades", 0)),
                wins=int(raw.get("wins", 0)),
                losses=int(raw.get("losses", 0)),
                total_pnl=float(raw.get("total_pnl", 0.0)),
                last_updated=raw.get("last_updated"),
            )
            self._records[name] = record

    def reset(self) -> None:
        self._records.clear()
