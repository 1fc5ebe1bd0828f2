"""
Position exit state machine.

Each cycle every OPEN position is evaluated in a fixed priority order and
the first matching rule wins:

    1. take-profit   (price multiple or absolute ceiling)  -> full close
    2. stop-loss     (percent drop or absolute floor)      -> full close
    3. scale-out     (next unfired price-multiple level)   -> partial close
    4. time decay    (cumulative reduction target)         -> increment only

Scale-out levels are keyed by ``(position_id, level)`` and fire at most
once per position, even if price later re-crosses the level.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from updown_trader.config import PositionConfig, RiskConfig
from updown_trader.ledger import Ledger
from updown_trader.models import LedgerResult, Position, Side
from updown_trader.risk import RiskManager

logger = logging.getLogger(__name__)

_EPS = 1e-9  # price ratios of cent prices land a hair off their boundary


class ExitKind(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    SCALE_OUT = "scale_out"
    TIME_DECAY = "time_decay"


@dataclass(frozen=True)
class ExitRecommendation:
    position_id: str
    kind: ExitKind
    reason: str
    price: float
    fraction: Optional[float] = None
    """Fraction of the ORIGINAL size to close; None closes everything."""
    level_key: Optional[float] = None

    @property
    def is_full_close(self) -> bool:
        return self.fraction is None


@dataclass(frozen=True)
class ExitResult:
    recommendation: ExitRecommendation
    result: LedgerResult
    strategy_id: str
    side: Side

    @property
    def success(self) -> bool:
        return self.result.success


class PositionManager:
    def __init__(
        self,
        ledger: Ledger,
        config: PositionConfig | None = None,
        risk_config: RiskConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.config = config or PositionConfig()
        self.risk_config = risk_config or ledger.risk
        self._clock = clock
        self._fired_levels: Set[Tuple[str, float]] = set()

    # ── Evaluation ──────────────────────────────────────────────────────

    def check_position_exit(
        self,
        position: Position,
        price: float,
        remaining_minutes: float,
    ) -> Optional[ExitRecommendation]:
        if not position.is_open or price is None:
            return None
        cfg = self.config
        multiple = price / position.entry_price

        tp = cfg.take_profit
        if tp.enabled:
            if multiple + _EPS >= tp.target_multiple:
                return ExitRecommendation(position.id, ExitKind.TAKE_PROFIT, "target_multiple", price)
            if price + _EPS >= tp.absolute_threshold:
                return ExitRecommendation(position.id, ExitKind.TAKE_PROFIT, "absolute_threshold", price)

        sl = cfg.stop_loss
        if sl.enabled:
            if 1.0 - multiple + _EPS >= sl.percent_drop:
                return ExitRecommendation(position.id, ExitKind.STOP_LOSS, "percent_drop", price)
            if price - _EPS <= sl.absolute_floor:
                return ExitRecommendation(position.id, ExitKind.STOP_LOSS, "absolute_floor", price)

        if cfg.scale_out_enabled:
            for level in sorted(cfg.scale_out_levels, key=lambda lv: lv.price_multiple):
                if (position.id, level.price_multiple) in self._fired_levels:
                    continue
                if multiple + _EPS >= level.price_multiple:
                    return ExitRecommendation(
                        position.id,
                        ExitKind.SCALE_OUT,
                        f"level_{level.price_multiple:g}x",
                        price,
                        fraction=level.exit_fraction,
                        level_key=level.price_multiple,
                    )

        if cfg.time_decay_enabled:
            matched = [s for s in cfg.time_decay_steps if remaining_minutes <= s.minutes_left]
            if matched:
                step = max(matched, key=lambda s: s.target_reduction)
                if position.scaled_out_percent + _EPS < step.target_reduction:
                    reason = f"time_{step.minutes_left:g}min"
                    if step.target_reduction >= 1.0:
                        return ExitRecommendation(position.id, ExitKind.TIME_DECAY, reason, price)
                    return ExitRecommendation(
                        position.id,
                        ExitKind.TIME_DECAY,
                        reason,
                        price,
                        fraction=step.target_reduction - position.scaled_out_percent,
                    )

        return None

    def check_exits(
        self,
        prices_by_side: Mapping[Side, float],
        remaining_minutes: float,
        market_id: str | None = None,
    ) -> List[ExitRecommendation]:
        recs = []
        for position in self.ledger.open_positions(market_id):
            price = prices_by_side.get(position.side)
            if price is None:
                continue
            rec = self.check_position_exit(position, price, remaining_minutes)
            if rec is not None:
                recs.append(rec)
        return recs

    # ── Execution ───────────────────────────────────────────────────────

    def execute_exit(self, rec: ExitRecommendation, timestamp: float | None = None) -> ExitResult:
        position = self.ledger.get_position(rec.position_id)
        strategy_id = position.strategy_id if position else ""
        side = position.side if position else Side.UP
        reason = f"{rec.kind.value}:{rec.reason}"

        if rec.is_full_close:
            result = self.ledger.close_position_early(rec.position_id, rec.price, reason, timestamp)
        else:
            if rec.level_key is not None and (rec.position_id, rec.level_key) in self._fired_levels:
                logger.debug("Level %s already fired for %s", rec.level_key, rec.position_id)
                return ExitResult(rec, LedgerResult(success=False, error="level_already_fired"), strategy_id, side)
            result = self.ledger.scale_out_position(rec.position_id, rec.fraction, rec.price, reason, timestamp)
            if result.success and rec.level_key is not None:
                self._fired_levels.add((rec.position_id, rec.level_key))

        if result.success:
            logger.info("Exit %s %s (%s) @ %.3f", rec.position_id, rec.kind.value, rec.reason, rec.price)
        else:
            logger.warning("Exit %s failed: %s", rec.position_id, result.error)
        return ExitResult(rec, result, strategy_id, side)

    def process_exits(
        self,
        prices_by_side: Mapping[Side, float],
        remaining_minutes: float,
        market_id: str | None = None,
        timestamp: float | None = None,
    ) -> List[ExitResult]:
        return [
            self.execute_exit(rec, timestamp)
            for rec in self.check_exits(prices_by_side, remaining_minutes, market_id)
        ]

    # ── Entry gate ──────────────────────────────────────────────────────

    def should_enter(
        self,
        side: Side,
        market_id: str,
        risk: RiskManager,
        now: float | None = None,
    ) -> Tuple[bool, Optional[str]]:
        reason = risk.blocking_reason(now)
        if reason is not None:
            return False, reason
        same_side = [p for p in self.ledger.open_positions(market_id) if p.side is side]
        if len(same_side) >= self.risk_config.max_positions_per_market:
            return False, "max_positions_per_market"
        return True, None

    def fired_levels(self, position_id: str) -> List[float]:
        return sorted(level for pid, level in self._fired_levels if pid == position_id)

    def position_summary(self) -> List[Dict[str, object]]:
        return [
            {
                "id": p.id,
                "strategy_id": p.strategy_id,
                "side": p.side.value,
                "size": p.size,
                "entry_price": p.entry_price,
                "scaled_out_percent": p.scaled_out_percent,
                "fired_levels": self.fired_levels(p.id),
            }
            for p in self.ledger.open_positions()
        ]

    def on_market_change(self) -> None:
        self._fired_levels.clear()
