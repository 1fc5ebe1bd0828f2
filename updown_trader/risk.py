"""
Risk Manager

Gates and sizes aggregated decisions.

Risk Dimensions:
    1. Session circuit breakers: daily loss, consecutive losses,
       max daily trades, max drawdown, emergency stop
    2. Drawdown ladder: size shrinks stepwise as drawdown grows
    3. Correlation: stacking onto same-side exposure is penalized
    4. Exposure: per-position and total-exposure headroom

A rejected size is 0, never an exception.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, Iterable, Optional

from updown_trader.config import RiskConfig
from updown_trader.models import Decision, Position, Side
from updown_trader.session import HaltKind, SessionState

logger = logging.getLogger(__name__)


class RiskAction(Enum):
    ALLOW = auto()         # Normal trading allowed
    SCALE_DOWN = auto()    # Drawdown ladder is shrinking sizes
    HALT_ENTRIES = auto()  # No new positions


@dataclass(frozen=True)
class ExposureCheck:
    allowed: bool
    current_exposure: float
    max_single: float
    max_total: float
    headroom: float
    reason: Optional[str] = None


def _exposure(open_positions: Iterable[Position]) -> float:
    return sum(p.size for p in open_positions)


class RiskManager:
    def __init__(
        self,
        config: RiskConfig,
        session: SessionState,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.session = session
        self._clock = clock

    # ── Gate ────────────────────────────────────────────────────────────

    def blocking_reason(self, now: float | None = None) -> Optional[str]:
        """Machine-readable reason entries are blocked, or None."""
        now = self._clock() if now is None else now
        if not self.session.can_trade(now):
            kind = self.session.halt_kind
            return kind.value if kind else "halted"
        kind = self.session.check_halt_conditions()
        if kind is not None:
            return kind.value
        return None

    def can_trade(self, now: float | None = None) -> bool:
        return self.blocking_reason(now) is None

    def trigger_emergency_stop(self, reason: str) -> None:
        """Immediate halt for externally detected anomalies. Cleared only by a new session."""
        logger.error("EMERGENCY STOP: %s", reason)
        self.session.halt(HaltKind.EMERGENCY, reason)

    # ── Sizing ──────────────────────────────────────────────────────────

    def drawdown_multiplier(self, drawdown: float | None = None) -> float:
        if not self.config.drawdown_scaling_enabled:
            return 1.0
        dd = self.session.current_drawdown if drawdown is None else drawdown
        multiplier = 1.0
        # Steps are sorted ascending; the deepest one reached wins.
        for step in self.config.drawdown_steps:
            if dd >= step.drawdown:
                multiplier = step.size_multiplier
        return multiplier

    def correlation_multiplier(self, side: Side | None, open_positions: Iterable[Position]) -> float:
        if side is None:
            return 1.0
        if any(p.side is side for p in open_positions):
            return 1.0 - self.config.correlation_penalty
        return 1.0

    def check_exposure_limits(self, size: float, open_positions: Iterable[Position]) -> ExposureCheck:
        balance = self.session.balance
        exposure = _exposure(open_positions)
        max_single = balance * self.config.max_single_position
        max_total = balance * self.config.max_total_exposure
        headroom = max(0.0, min(max_single, max_total - exposure, balance - exposure))
        reason = None
        if size > max_single:
            reason = "max_single_position"
        elif exposure + size > max_total:
            reason = "max_total_exposure"
        elif size > balance - exposure:
            reason = "insufficient_balance"
        return ExposureCheck(
            allowed=reason is None,
            current_exposure=exposure,
            max_single=max_single,
            max_total=max_total,
            headroom=headroom,
            reason=reason,
        )

    def adjust_position_size(
        self,
        base_size: float,
        decision: Decision,
        open_positions: Iterable[Position],
    ) -> float:
        positions = list(open_positions)
        size = base_size * self.drawdown_multiplier()
        if size <= 0:
            return 0.0

        size *= self.correlation_multiplier(decision.side, positions)

        check = self.check_exposure_limits(size, positions)
        size = min(size, check.headroom, self.config.max_bet_size)
        size = math.floor(size * 100) / 100
        if size < self.config.min_bet_size:
            logger.debug("Size %.2f below minimum bet %.2f", size, self.config.min_bet_size)
            return 0.0
        return size

    def kelly_size(self, win_probability: float, price: float, balance: float | None = None) -> float:
        """
        Fractional Kelly stake for a binary contract bought at ``price``.

        Net odds are ``b = 1/price - 1``; the full-Kelly fraction is
        ``(p*b - q) / b``.  Scaled by ``kelly_fraction`` and capped at
        ``max_single_position``.  Returns 0 when there is no edge.
        """
        balance = self.session.balance if balance is None else balance
        if not 0.0 < price < 1.0 or balance <= 0:
            return 0.0
        p = max(0.0, min(1.0, win_probability))
        b = 1.0 / price - 1.0
        full_kelly = (p * b - (1.0 - p)) / b
        if full_kelly <= 0:
            return 0.0
        fraction = min(full_kelly * self.config.kelly_fraction, self.config.max_single_position)
        return balance * fraction

    # ── Reporting ───────────────────────────────────────────────────────

    def current_action(self, now: float | None = None) -> RiskAction:
        if not self.can_trade(now):
            return RiskAction.HALT_ENTRIES
        if self.drawdown_multiplier() < 1.0:
            return RiskAction.SCALE_DOWN
        return RiskAction.ALLOW

    def should_reduce_exposure(self) -> bool:
        return self.drawdown_multiplier() < 1.0 or self.session.consecutive_losses >= max(
            1, self.config.consecutive_loss_limit - 1
        )

    def get_risk_status(self, open_positions: Iterable[Position] = (), now: float | None = None) -> Dict[str, Any]:
        s = self.session
        positions = list(open_positions)
        exposure = _exposure(positions)
        reason = self.blocking_reason(now)
        return {
            "action": self.current_action(now).name,
            "can_trade": reason is None,
            "blocking_reason": reason,
            "trading_halted": s.trading_halted,
            "halt_reason": s.halt_reason,
            "balance": s.balance,
            "daily_pnl": s.daily_pnl,
            "daily_loss_pct": max(0.0, -s.daily_pnl / s.initial_balance),
            "daily_loss_limit": self.config.daily_loss_limit,
            "current_drawdown": s.current_drawdown,
            "max_drawdown": s.max_drawdown,
            "drawdown_multiplier": self.drawdown_multiplier(),
            "consecutive_losses": s.consecutive_losses,
            "consecutive_loss_limit": self.config.consecutive_loss_limit,
            "trades_executed": s.trades_executed,
            "max_daily_trades": self.config.max_daily_trades,
            "exposure": exposure,
            "exposure_pct": exposure / s.balance if s.balance > 0 else 0.0,
            "open_positions": len(positions),
            "should_reduce_exposure": self.should_reduce_exposure(),
        }
