"""
Paper position ledger.

Owns every Position and ClosedTrade of the session and is the single
writer of balance, drawdown and trade counters (through SessionState).
Failures are returned as ``LedgerResult`` objects with a ``LedgerError``
reason; nothing here raises for an expected rejection.

P/L semantics for a binary contract bought at ``entry_price``:
  - resolution win:  pnl = size * (1 / entry_price - 1)
  - resolution loss: pnl = -size
  - early exit:      pnl = (exit_price - entry_price) * size / entry_price
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from updown_trader.config import RiskConfig
from updown_trader.errors import LedgerError
from updown_trader.models import (
    AccountState,
    ClosedTrade,
    LedgerResult,
    Position,
    PositionStatus,
    Regime,
    Side,
)
from updown_trader.session import SessionState

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass
class StrategyLedgerStats:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    best_streak: int = 0
    worst_streak: int = 0

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0


@dataclass(frozen=True)
class BetSize:
    amount: float
    risk_percent: float
    performance_multiplier: float
    streak_multiplier: float
    limit: float

    def __float__(self) -> float:
        return self.amount


class Ledger:
    def __init__(
        self,
        session: SessionState,
        risk: RiskConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session = session
        self.risk = risk or session.risk
        self._clock = clock
        self._positions: Dict[str, Position] = {}
        self._open_keys: Dict[Tuple[str, str], str] = {}
        self.closed_trades: List[ClosedTrade] = []
        self._by_strategy: Dict[str, StrategyLedgerStats] = {}
        self._id_counter = 0

    # ─── Read side ───────────────────────────────────────────────────────

    @property
    def balance(self) -> float:
        return self.session.balance

    def current_exposure(self) -> float:
        return sum(p.size for p in self._positions.values())

    def available_balance(self) -> float:
        return max(0.0, self.session.balance - self.current_exposure())

    def open_positions(self, market_id: str | None = None) -> List[Position]:
        positions = list(self._positions.values())
        if market_id is not None:
            positions = [p for p in positions if p.market_id == market_id]
        return positions

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def has_open_position(self, strategy_id: str, market_id: str) -> bool:
        return (strategy_id, market_id) in self._open_keys

    def get_account_state(self) -> AccountState:
        s = self.session
        exposure = self.current_exposure()
        return AccountState(
            initial_balance=s.initial_balance,
            balance=s.balance,
            available_balance=max(0.0, s.balance - exposure),
            exposure=exposure,
            open_positions=len(self._positions),
            realized_pnl=s.realized_pnl,
            daily_pnl=s.daily_pnl,
            return_pct=s.return_pct,
            peak_balance=s.peak_balance,
            current_drawdown=s.current_drawdown,
            max_drawdown=s.max_drawdown,
        )

    def get_strategy_stats(self, strategy_id: str) -> Optional[Dict[str, Any]]:
        stats = self._by_strategy.get(strategy_id)
        if stats is None:
            return None
        return {
            "strategy_id": strategy_id,
            "trades": stats.trades,
            "wins": stats.wins,
            "losses": stats.losses,
            "win_rate": stats.win_rate,
            "total_pnl": stats.total_pnl,
            "avg_pnl": stats.total_pnl / stats.trades if stats.trades else 0.0,
            "consecutive_wins": stats.consecutive_wins,
            "consecutive_losses": stats.consecutive_losses,
            "best_streak": stats.best_streak,
            "worst_streak": stats.worst_streak,
        }

    def get_all_strategy_summaries(self) -> List[Dict[str, Any]]:
        """Leaderboard of every strategy that has traded, best total P/L first."""
        summaries = [self.get_strategy_stats(name) for name in self._by_strategy]
        summaries = [s for s in summaries if s is not None]
        summaries.sort(key=lambda s: s["total_pnl"], reverse=True)
        for rank, summary in enumerate(summaries, start=1):
            summary["rank"] = rank
            summary["open_positions"] = sum(
                1 for p in self._positions.values() if p.strategy_id == summary["strategy_id"]
            )
        return summaries

    def get_stats(self) -> Dict[str, Any]:
        final = [t for t in self.closed_trades if not t.partial]
        wins = [t for t in final if t.won]
        losses = [t for t in final if not t.won]
        avg_win = sum(t.pnl for t in wins) / len(wins) if wins else 0.0
        avg_loss = abs(sum(t.pnl for t in losses) / len(losses)) if losses else 0.0
        gross_win = sum(t.pnl for t in self.closed_trades if t.pnl > 0)
        gross_loss = abs(sum(t.pnl for t in self.closed_trades if t.pnl < 0))
        return {
            "total_trades": len(final),
            "partial_exits": len(self.closed_trades) - len(final),
            "wins": len(wins),
            "losses": len(losses),
            "win_rate": len(wins) / len(final) if final else 0.0,
            "avg_win": avg_win,
            "avg_loss": avg_loss,
            "profit_factor": gross_win / gross_loss if gross_loss > 0 else 0.0,
            "total_pnl": sum(t.pnl for t in self.closed_trades),
            "balance": self.session.balance,
            "return_pct": self.session.return_pct,
            "max_drawdown": self.session.max_drawdown,
        }

    # ─── Sizing ──────────────────────────────────────────────────────────

    def calculate_bet_size(self, confidence: float, strategy_id: str) -> BetSize:
        balance = self.session.balance
        conf_norm = max(0.0, min(1.0, (confidence - 0.5) * 2.0))
        risk_pct = self.risk.min_risk_percent + (
            self.risk.max_risk_percent - self.risk.min_risk_percent
        ) * conf_norm

        perf_mult = 1.0
        stats = self._by_strategy.get(strategy_id)
        if stats is not None and stats.trades >= 5:
            perf_mult = 0.5 + (stats.win_rate - 0.3) * 2.5
            perf_mult = max(0.5, min(1.5, perf_mult))

        streak_mult = 1.0
        if self.session.consecutive_losses > 0:
            streak_mult = max(
                self.risk.streak_penalty_floor,
                1.0 - self.risk.streak_penalty_per_loss * self.session.consecutive_losses,
            )

        limit = max(
            0.0,
            min(
                balance * self.risk.max_single_position,
                balance * self.risk.max_total_exposure - self.current_exposure(),
                self.available_balance(),
            ),
        )
        amount = min(balance * risk_pct * perf_mult * streak_mult, limit)
        if amount < self.risk.min_bet_size:
            # Floor only when the floor itself fits inside every limit.
            amount = self.risk.min_bet_size if self.risk.min_bet_size <= limit else 0.0

        return BetSize(
            amount=math.floor(amount * 100) / 100,
            risk_percent=risk_pct,
            performance_multiplier=perf_mult,
            streak_multiplier=streak_mult,
            limit=limit,
        )

    @staticmethod
    def calculate_entry_price(market_price: float, confidence: float, remaining_minutes: float) -> float:
        """Quoted price plus the premium we are willing to cross: 1c, more when confident or late."""
        confidence_adj = (confidence - 0.5) * 0.02
        time_adj = max(0.0, (15.0 - remaining_minutes) / 15.0) * 0.01
        return min(0.99, market_price + 0.01 + confidence_adj + time_adj)

    # ─── Mutation ────────────────────────────────────────────────────────

    def open_position(
        self,
        *,
        strategy_id: str,
        side: Side,
        entry_price: float,
        size: float,
        confidence: float,
        market_id: str,
        timestamp: float | None = None,
        contributors: Iterable[str] = (),
        regime: Regime | None = None,
    ) -> LedgerResult:
        if size <= 0:
            return LedgerResult.fail(LedgerError.INVALID_SIZE)
        if not 0.0 < entry_price < 1.0:
            return LedgerResult.fail(LedgerError.INVALID_PRICE)
        if size > self.available_balance() + _EPS:
            return LedgerResult.fail(LedgerError.INSUFFICIENT_BALANCE)
        if self.has_open_position(strategy_id, market_id):
            return LedgerResult.fail(
                LedgerError.DUPLICATE_POSITION,
                position_id=self._open_keys[(strategy_id, market_id)],
            )

        self._id_counter += 1
        position = Position(
            id=f"pos-{self._id_counter:06d}",
            strategy_id=strategy_id,
            side=side,
            entry_price=float(entry_price),
            size=float(size),
            original_size=float(size),
            confidence=float(confidence),
            market_id=market_id,
            open_time=self._clock() if timestamp is None else timestamp,
            contributors=tuple(contributors),
            regime=regime,
        )
        self._positions[position.id] = position
        self._open_keys[(strategy_id, market_id)] = position.id
        logger.info(
            "Opened %s %s %s $%.2f @ %.3f (conf %.2f) market=%s",
            position.id, strategy_id, side.value, size, entry_price, confidence, market_id,
        )
        return LedgerResult(success=True, position_id=position.id, position=position)

    def close_position(
        self,
        position_id: str,
        outcome: Side,
        exit_price: float | None = None,
        timestamp: float | None = None,
        *,
        settlement_price: float | None = None,
    ) -> LedgerResult:
        """Resolve a position against the market outcome."""
        position = self._positions.get(position_id)
        if position is None:
            return LedgerResult.fail(LedgerError.POSITION_NOT_FOUND, position_id=position_id)

        won = position.side is outcome
        if won:
            pnl = position.size * (1.0 / position.entry_price - 1.0)
        else:
            pnl = -position.size
        if exit_price is None:
            exit_price = 1.0 if won else 0.0

        trade = self._finalize(
            position,
            pnl=pnl,
            won=won,
            exit_price=exit_price,
            reason="resolution",
            timestamp=timestamp,
            outcome=outcome,
            settlement_price=settlement_price,
        )
        return LedgerResult(success=True, position_id=position_id, trades=(trade,))

    def close_all_for_market(
        self,
        market_id: str,
        outcome: Side,
        settlement_price: float | None = None,
        timestamp: float | None = None,
    ) -> List[LedgerResult]:
        results = []
        for position in self.open_positions(market_id):
            results.append(
                self.close_position(position.id, outcome, timestamp=timestamp, settlement_price=settlement_price)
            )
        return results

    def close_position_early(
        self,
        position_id: str,
        share_price: float,
        reason: str = "early_exit",
        timestamp: float | None = None,
    ) -> LedgerResult:
        position = self._positions.get(position_id)
        if position is None:
            return LedgerResult.fail(LedgerError.POSITION_NOT_FOUND, position_id=position_id)
        if not 0.0 <= share_price <= 1.0:
            return LedgerResult.fail(LedgerError.INVALID_PRICE, position_id=position_id)

        pnl = (share_price - position.entry_price) * position.shares
        trade = self._finalize(
            position,
            pnl=pnl,
            won=(position.realized_pnl + pnl) > 0,
            exit_price=share_price,
            reason=reason,
            timestamp=timestamp,
        )
        return LedgerResult(success=True, position_id=position_id, trades=(trade,))

    def scale_out_position(
        self,
        position_id: str,
        fraction: float,
        share_price: float,
        reason: str = "scale_out",
        timestamp: float | None = None,
    ) -> LedgerResult:
        """
        Close ``fraction`` of the ORIGINAL size at ``share_price``.

        The closed amount is capped at what remains.  Once the cumulative
        scaled-out share reaches 1 the position is fully closed.
        """
        position = self._positions.get(position_id)
        if position is None:
            return LedgerResult.fail(LedgerError.POSITION_NOT_FOUND, position_id=position_id)
        if not 0.0 < fraction <= 1.0:
            return LedgerResult.fail(LedgerError.INVALID_FRACTION, position_id=position_id)
        if not 0.0 <= share_price <= 1.0:
            return LedgerResult.fail(LedgerError.INVALID_PRICE, position_id=position_id)

        close_size = min(position.original_size * fraction, position.size)
        new_percent = min(1.0, position.scaled_out_percent + close_size / position.original_size)
        if position.size - close_size <= _EPS or new_percent >= 1.0 - _EPS:
            position.scaled_out_percent = 1.0
            return self.close_position_early(position_id, share_price, reason, timestamp)

        ts = self._clock() if timestamp is None else timestamp
        pnl = (share_price - position.entry_price) * (close_size / position.entry_price)
        position.size -= close_size
        position.scaled_out_percent = new_percent
        position.realized_pnl += pnl

        self.session.apply_pnl(pnl)
        stats = self._by_strategy.setdefault(position.strategy_id, StrategyLedgerStats())
        stats.total_pnl += pnl
        self.session.check_halt_conditions()

        trade = ClosedTrade(
            position_id=position.id,
            strategy_id=position.strategy_id,
            side=position.side,
            entry_price=position.entry_price,
            size=close_size,
            confidence=position.confidence,
            market_id=position.market_id,
            open_time=position.open_time,
            exit_price=share_price,
            exit_reason=reason,
            pnl=pnl,
            won=pnl > 0,
            close_time=ts,
            hold_time=ts - position.open_time,
            balance_after=self.session.balance,
            partial=True,
            contributors=position.contributors,
            regime=position.regime,
        )
        self.closed_trades.append(trade)
        logger.info(
            "Scaled out %s %.0f%% ($%.2f) @ %.3f pnl=%+.2f (%s)",
            position.id, new_percent * 100, close_size, share_price, pnl, reason,
        )
        return LedgerResult(success=True, position_id=position.id, position=position, trades=(trade,))

    def _finalize(
        self,
        position: Position,
        *,
        pnl: float,
        won: bool,
        exit_price: float,
        reason: str,
        timestamp: float | None,
        outcome: Side | None = None,
        settlement_price: float | None = None,
    ) -> ClosedTrade:
        ts = self._clock() if timestamp is None else timestamp

        closed_size = position.size
        position.size = 0.0
        position.realized_pnl += pnl
        position.status = PositionStatus.CLOSED
        del self._positions[position.id]
        self._open_keys.pop((position.strategy_id, position.market_id), None)

        self.session.apply_pnl(pnl)
        stats = self._by_strategy.setdefault(position.strategy_id, StrategyLedgerStats())
        stats.trades += 1
        stats.total_pnl += pnl
        if won:
            stats.wins += 1
            stats.consecutive_wins += 1
            stats.consecutive_losses = 0
            stats.best_streak = max(stats.best_streak, stats.consecutive_wins)
        else:
            stats.losses += 1
            stats.consecutive_losses += 1
            stats.consecutive_wins = 0
            stats.worst_streak = max(stats.worst_streak, stats.consecutive_losses)
        self.session.record_trade(position.strategy_id, won, pnl)

        trade = ClosedTrade(
            position_id=position.id,
            strategy_id=position.strategy_id,
            side=position.side,
            entry_price=position.entry_price,
            size=closed_size,
            confidence=position.confidence,
            market_id=position.market_id,
            open_time=position.open_time,
            exit_price=exit_price,
            exit_reason=reason,
            pnl=pnl,
            won=won,
            close_time=ts,
            hold_time=ts - position.open_time,
            balance_after=self.session.balance,
            outcome=outcome,
            contributors=position.contributors,
            regime=position.regime,
            settlement_price=settlement_price,
        )
        self.closed_trades.append(trade)
        logger.info(
            "Closed %s %s %s pnl=%+.2f balance=%.2f (%s)",
            position.id, position.strategy_id, "WIN" if won else "LOSS", pnl, self.session.balance, reason,
        )
        return trade

    # ─── Persistence ─────────────────────────────────────────────────────

    def export_state(self) -> Dict[str, Any]:
        return {
            "id_counter": self._id_counter,
            "positions": [_position_to_dict(p) for p in self._positions.values()],
            "closed_trades": [t.to_dict() for t in self.closed_trades],
            "by_strategy": {k: vars(v).copy() for k, v in self._by_strategy.items()},
        }

    def import_state(self, state: Dict[str, Any]) -> None:
        """Restore positions and history. Balance lives in SessionState and is restored there."""
        self._id_counter = int(state.get("id_counter", 0))
        self._positions = {}
        self._open_keys = {}
        for raw in state.get("positions", []):
            position = _position_from_dict(raw)
            self._positions[position.id] = position
            self._open_keys[(position.strategy_id, position.market_id)] = position.id
        self.closed_trades = [_trade_from_dict(t) for t in state.get("closed_trades", [])]
        self._by_strategy = {
            k: StrategyLedgerStats(**v) for k, v in state.get("by_strategy", {}).items()
        }


def _position_to_dict(p: Position) -> Dict[str, Any]:
    return {
        "id": p.id,
        "strategy_id": p.strategy_id,
        "side": p.side.value,
        "entry_price": p.entry_price,
        "size": p.size,
        "original_size": p.original_size,
        "confidence": p.confidence,
        "market_id": p.market_id,
        "open_time": p.open_time,
        "scaled_out_percent": p.scaled_out_percent,
        "realized_pnl": p.realized_pnl,
        "contributors": list(p.contributors),
        "regime": p.regime.value if p.regime else None,
    }


def _position_from_dict(raw: Dict[str, Any]) -> Position:
    return Position(
        id=raw["id"],
        strategy_id=raw["strategy_id"],
        side=Side(raw["side"]),
        entry_price=float(raw["entry_price"]),
        size=float(raw["size"]),
        original_size=float(raw.get("original_size", raw["size"])),
        confidence=float(raw["confidence"]),
        market_id=raw["market_id"],
        open_time=float(raw["open_time"]),
        scaled_out_percent=float(raw.get("scaled_out_percent", 0.0)),
        realized_pnl=float(raw.get("realized_pnl", 0.0)),
        contributors=tuple(raw.get("contributors", ())),
        regime=Regime.parse(raw.get("regime")),
    )


def _trade_from_dict(raw: Dict[str, Any]) -> ClosedTrade:
    outcome = raw.get("outcome")
    fields = dict(raw)
    fields["side"] = Side(raw["side"])
    fields["outcome"] = Side(outcome) if outcome else None
    fields["contributors"] = tuple(raw.get("contributors", ()))
    fields["regime"] = Regime.parse(raw.get("regime"))
    return ClosedTrade(**fields)
