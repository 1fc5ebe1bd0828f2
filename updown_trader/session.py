"""
Trading-day session state.

One instance per session.  The Ledger is the only writer of balance and
trade counters; the RiskManager reads halt state through ``can_trade``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from updown_trader.config import RiskConfig

logger = logging.getLogger(__name__)


class HaltKind(str, Enum):
    CONSECUTIVE_LOSSES = "consecutive_losses"
    DAILY_LOSS = "daily_loss"
    MAX_DRAWDOWN = "max_drawdown"
    MAX_DAILY_TRADES = "max_daily_trades"
    EMERGENCY = "emergency"

    @property
    def auto_clears(self) -> bool:
        return self is HaltKind.CONSECUTIVE_LOSSES


@dataclass
class StrategySessionStats:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    pnl: float = 0.0


def _session_date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


class SessionState:
    def __init__(
        self,
        initial_balance: float,
        risk: RiskConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.initial_balance = float(initial_balance)
        self.risk = risk or RiskConfig()
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        """Start a new session. The only way to clear non-cooldown halts."""
        now = self._clock()
        self.session_start = now
        self.session_date = _session_date(now)

        self.balance = self.initial_balance
        self.peak_balance = self.initial_balance
        self.daily_pnl = 0.0
        self.realized_pnl = 0.0

        self.max_drawdown = 0.0
        self.current_drawdown = 0.0

        self.trades_executed = 0
        self.trades_won = 0
        self.trades_lost = 0
        self.consecutive_wins = 0
        self.consecutive_losses = 0

        self.markets_traded: Set[str] = set()
        self.current_market: Optional[str] = None

        self.trading_halted = False
        self.halt_reason: Optional[str] = None
        self.halt_kind: Optional[HaltKind] = None
        self.halt_time: Optional[float] = None

        self.strategy_stats: Dict[str, StrategySessionStats] = {}

    # ─── Mutation (Ledger only) ──────────────────────────────────────────

    def apply_pnl(self, pnl: float) -> None:
        self.balance += pnl
        self.daily_pnl += pnl
        self.realized_pnl += pnl

        if self.balance > self.peak_balance:
            self.peak_balance = self.balance
        if self.peak_balance > 0:
            self.current_drawdown = max(0.0, (self.peak_balance - self.balance) / self.peak_balance)
        else:
            self.current_drawdown = 0.0
        if self.current_drawdown > self.max_drawdown:
            self.max_drawdown = self.current_drawdown

    def record_trade(self, strategy_id: str, won: bool, pnl: float) -> None:
        """Count a completed trade. Balance is applied separately via ``apply_pnl``."""
        self.trades_executed += 1
        if won:
            self.trades_won += 1
            self.consecutive_wins += 1
            self.consecutive_losses = 0
        else:
            self.trades_lost += 1
            self.consecutive_losses += 1
            self.consecutive_wins = 0

        stats = self.strategy_stats.setdefault(strategy_id, StrategySessionStats())
        stats.trades += 1
        if won:
            stats.wins += 1
        else:
            stats.losses += 1
        stats.pnl += pnl

        self.check_halt_conditions()

    def check_halt_conditions(self) -> Optional[HaltKind]:
        cooling_down = self.trading_halted and self.halt_kind is not None and self.halt_kind.auto_clears
        if self.trading_halted and not cooling_down:
            return self.halt_kind

        daily_loss = -self.daily_pnl / self.initial_balance
        # Independent of drawdown_scaling_enabled, which only governs sizing.
        hard_stop = self.risk.hard_stop_drawdown
        drawdown_hit = hard_stop is not None and self.current_drawdown >= hard_stop

        if daily_loss >= self.risk.daily_loss_limit:
            self.halt(HaltKind.DAILY_LOSS, f"Daily loss limit reached: {daily_loss * 100:.1f}%")
        elif cooling_down:
            # A cooldown halt only gives way to a session-ending one.
            if drawdown_hit:
                self.halt(HaltKind.MAX_DRAWDOWN, f"Max drawdown reached: {self.current_drawdown * 100:.1f}%")
        elif self.consecutive_losses >= self.risk.consecutive_loss_limit:
            self.halt(
                HaltKind.CONSECUTIVE_LOSSES,
                f"Consecutive loss limit reached: {self.consecutive_losses} losses",
            )
        elif self.trades_executed >= self.risk.max_daily_trades:
            self.halt(HaltKind.MAX_DAILY_TRADES, f"Max daily trades reached: {self.trades_executed}")
        elif drawdown_hit:
            self.halt(HaltKind.MAX_DRAWDOWN, f"Max drawdown reached: {self.current_drawdown * 100:.1f}%")
        return self.halt_kind

    def halt(self, kind: HaltKind, reason: str) -> None:
        self.trading_halted = True
        self.halt_kind = kind
        self.halt_reason = reason
        self.halt_time = self._clock()
        logger.warning("Trading halted (%s): %s", kind.value, reason)

    def can_trade(self, now: float | None = None) -> bool:
        if not self.trading_halted:
            return True
        now = self._clock() if now is None else now
        if (
            self.halt_kind is not None
            and self.halt_kind.auto_clears
            and self.halt_time is not None
            and now - self.halt_time >= self.risk.cooldown_after_halt_seconds
        ):
            logger.info("Halt cooldown elapsed, resuming (%s)", self.halt_reason)
            self.trading_halted = False
            self.halt_kind = None
            self.halt_reason = None
            self.halt_time = None
            self.consecutive_losses = 0
            return True
        return False

    def on_new_market(self, market_id: str) -> None:
        if self.current_market and self.current_market != market_id:
            self.markets_traded.add(self.current_market)
        self.current_market = market_id

    # ─── Read side ───────────────────────────────────────────────────────

    @property
    def win_rate(self) -> float:
        if self.trades_executed == 0:
            return 0.0
        return self.trades_won / self.trades_executed

    @property
    def return_pct(self) -> float:
        return (self.balance - self.initial_balance) / self.initial_balance * 100.0

    def get_strategy_stats(self, strategy_id: str) -> StrategySessionStats:
        return self.strategy_stats.get(strategy_id, StrategySessionStats())

    def generate_summary(self) -> Dict[str, Any]:
        return {
            "session_date": self.session_date,
            "duration_minutes": round((self._clock() - self.session_start) / 60.0, 1),
            "initial_balance": self.initial_balance,
            "final_balance": self.balance,
            "daily_pnl": self.daily_pnl,
            "return_pct": self.return_pct,
            "max_drawdown": self.max_drawdown,
            "total_trades": self.trades_executed,
            "wins": self.trades_won,
            "losses": self.trades_lost,
            "win_rate": self.win_rate,
            "markets_traded": len(self.markets_traded),
            "trading_halted": self.trading_halted,
            "halt_reason": self.halt_reason,
            "strategy_stats": {k: vars(v).copy() for k, v in self.strategy_stats.items()},
        }

    # ─── Persistence ─────────────────────────────────────────────────────

    def export_state(self) -> Dict[str, Any]:
        return {
            "session_start": self.session_start,
            "session_date": self.session_date,
            "initial_balance": self.initial_balance,
            "balance": self.balance,
            "peak_balance": self.peak_balance,
            "daily_pnl": self.daily_pnl,
            "realized_pnl": self.realized_pnl,
            "max_drawdown": self.max_drawdown,
            "current_drawdown": self.current_drawdown,
            "trades_executed": self.trades_executed,
            "trades_won": self.trades_won,
            "trades_lost": self.trades_lost,
            "consecutive_wins": self.consecutive_wins,
            "consecutive_losses": self.consecutive_losses,
            "markets_traded": sorted(self.markets_traded),
            "trading_halted": self.trading_halted,
            "halt_kind": self.halt_kind.value if self.halt_kind else None,
            "halt_reason": self.halt_reason,
            "halt_time": self.halt_time,
            "strategy_stats": {k: vars(v).copy() for k, v in self.strategy_stats.items()},
        }

    def import_state(self, state: Dict[str, Any]) -> bool:
        """Restore a saved session. Returns False (and keeps a fresh session) on a new day."""
        if state.get("session_date") != _session_date(self._clock()):
            logger.info("Saved session is from %s; starting fresh", state.get("session_date"))
            return False

        self.session_start = float(state["session_start"])
        self.session_date = state["session_date"]
        self.initial_balance = float(state["initial_balance"])
        self.balance = float(state["balance"])
        self.peak_balance = float(state["peak_balance"])
        self.daily_pnl = float(state["daily_pnl"])
        self.realized_pnl = float(state.get("realized_pnl", self.daily_pnl))
        self.max_drawdown = float(state["max_drawdown"])
        self.current_drawdown = float(state["current_drawdown"])
        self.trades_executed = int(state["trades_executed"])
        self.trades_won = int(state["trades_won"])
        self.trades_lost = int(state["trades_lost"])
        self.consecutive_wins = int(state.get("consecutive_wins", 0))
        self.consecutive_losses = int(state.get("consecutive_losses", 0))
        self.markets_traded = set(state.get("markets_traded", []))
        self.trading_halted = bool(state.get("trading_halted", False))
        kind = state.get("halt_kind")
        self.halt_kind = HaltKind(kind) if kind else None
        self.halt_reason = state.get("halt_reason")
        self.halt_time = state.get("halt_time")
        self.strategy_stats = {
            k: StrategySessionStats(**v) for k, v in state.get("strategy_stats", {}).items()
        }
        return True
