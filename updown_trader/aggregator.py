"""
Signal Aggregator

Turns many noisy, differently-reliable strategy opinions into a single
decision for the current market.

Pipeline per cycle:
    1. Collect one signal per eligible, unthrottled, non-excluded strategy
       whose raw confidence clears the floor
    2. Boost confidence by regime and weight by live performance
    3. Measure disagreement between the two sides
    4. Reject on no signals, too few signals, or too much conflict
    5. Pick the majority-mass side and synthesize a final confidence
    6. Classify strength

The aggregator never sizes or places anything; it only decides.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol

from updown_trader.config import SignalConfig
from updown_trader.errors import RejectReason
from updown_trader.models import Action, Decision, MarketFeatures, Regime, Side, Signal, Strength
from updown_trader.regime import RegimeRouter

logger = logging.getLogger(__name__)


class WeightSource(Protocol):
    def get_weight(self, strategy_id: str) -> float: ...

    def is_excluded(self, strategy_id: str) -> bool: ...


@dataclass(frozen=True)
class ConflictReport:
    up_mass: float
    down_mass: float
    up_ratio: float
    down_ratio: float
    conflict_level: float
    up_count: int
    down_count: int

    @property
    def dominant_side(self) -> Side:
        # A perfect tie goes DOWN.
        if self.up_mass + self.down_mass <= 0:
            return Side.UP if self.up_count > self.down_count else Side.DOWN
        return Side.UP if self.up_ratio > self.down_ratio else Side.DOWN


class SignalAggregator:
    """
    Weighted-vote aggregation with a conflict gate.

    Usage::

        aggregator = SignalAggregator(config.signals, router, tracker)
        decision = aggregator.decide(strategies, features, regime)
        if decision.is_entry:
            ...
    """

    def __init__(
        self,
        config: SignalConfig | None = None,
        router: RegimeRouter | None = None,
        weights: WeightSource | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or SignalConfig()
        self.router = router or RegimeRouter(max_confidence=self.config.max_confidence)
        self.weights = weights
        self._clock = clock

    # ── Step 1-2: Collect ───────────────────────────────────────────────

    def collect_signals(
        self,
        strategies: Iterable,
        features: MarketFeatures,
        regime: Regime | None = None,
        now: float | None = None,
    ) -> List[Signal]:
        now = self._clock() if now is None else now
        regime = regime if regime is not None else features.regime
        signals: List[Signal] = []

        for strategy in self.router.eligible(strategies, regime):
            name = strategy.name
            if not strategy.can_trade(now):
                logger.debug("%s in cooldown", name)
                continue
            if self.weights is not None and self.weights.is_excluded(name):
                logger.debug("%s excluded by live performance", name)
                continue
            try:
                signal = strategy.analyze(features)
            except Exception as e:
                logger.error("Error analyzing with %s: %s", name, e)
                continue
            if signal is None:
                continue
            if signal.confidence < self.config.min_confidence:
                logger.debug("%s below confidence floor (%.2f)", name, signal.confidence)
                continue

            signal = self.router.adjust_signal(signal, regime)
            if self.weights is not None:
                signal.weight = self.weights.get_weight(name)
            logger.debug(
                "%s -> %s conf=%.3f (boost %.2f) weight=%.2f",
                name, signal.side.value, signal.confidence, signal.regime_boost, signal.weight,
            )
            signals.append(signal)

        return signals

    # ── Step 3: Conflict ────────────────────────────────────────────────

    @staticmethod
    def detect_conflict(signals: List[Signal]) -> ConflictReport:
        up = [s for s in signals if s.side is Side.UP]
        down = [s for s in signals if s.side is Side.DOWN]
        up_mass = sum(s.mass for s in up)
        down_mass = sum(s.mass for s in down)
        total = up_mass + down_mass
        if total <= 0:
            return ConflictReport(up_mass, down_mass, 0.0, 0.0, 0.0, len(up), len(down))
        up_ratio = up_mass / total
        down_ratio = down_mass / total
        return ConflictReport(
            up_mass=up_mass,
            down_mass=down_mass,
            up_ratio=up_ratio,
            down_ratio=down_ratio,
            conflict_level=min(1.0, 2.0 * min(up_ratio, down_ratio)),
            up_count=len(up),
            down_count=len(down),
        )

    # ── Step 4-6: Aggregate ─────────────────────────────────────────────

    def aggregate(self, signals: List[Signal], regime: Regime | None = None) -> Decision:
        cfg = self.config
        if not signals:
            return Decision.no_trade(RejectReason.NO_SIGNALS.value, regime=regime)
        if len(signals) < cfg.min_strategies_to_trade:
            return Decision.no_trade(
                RejectReason.INSUFFICIENT_SIGNALS.value,
                regime=regime,
                contributing_signals=list(signals),
                metadata={"needed": cfg.min_strategies_to_trade, "got": len(signals)},
            )

        conflict = self.detect_conflict(signals)
        if conflict.conflict_level > cfg.conflict_threshold:
            return Decision.no_trade(
                RejectReason.STRATEGY_CONFLICT.value,
                regime=regime,
                conflict_level=conflict.conflict_level,
                contributing_signals=list(signals),
                metadata={"up_mass": conflict.up_mass, "down_mass": conflict.down_mass},
            )

        side = conflict.dominant_side
        agreeing = [s for s in signals if s.side is side]
        total_weight = sum(s.weight for s in agreeing)
        if total_weight > 0:
            weighted_avg = sum(s.mass for s in agreeing) / total_weight
        else:
            weighted_avg = sum(s.confidence for s in agreeing) / len(agreeing)

        bonus = min(cfg.max_agreement_bonus, (len(agreeing) - 1) * cfg.agreement_bonus)
        penalty = conflict.conflict_level * cfg.conflict_penalty
        confidence = max(cfg.min_confidence, min(cfg.max_confidence, weighted_avg + bonus - penalty))
        strength = self.classify_strength(confidence, len(agreeing))

        return Decision(
            action=Action.ENTER,
            side=side,
            confidence=confidence,
            strength=strength,
            agreement_count=len(agreeing),
            conflict_level=conflict.conflict_level,
            contributing_signals=agreeing,
            regime=regime,
            metadata={
                "weighted_avg": weighted_avg,
                "agreement_bonus": bonus,
                "conflict_penalty": penalty,
                "opposing": len(signals) - len(agreeing),
            },
        )

    @staticmethod
    def classify_strength(confidence: float, count: int) -> Strength:
        if confidence >= 0.75 and count >= 3:
            return Strength.STRONG
        if confidence >= 0.65 and count >= 2:
            return Strength.GOOD
        if confidence >= 0.55:
            return Strength.WEAK
        return Strength.INSUFFICIENT

    def decide(
        self,
        strategies: Iterable,
        features: MarketFeatures,
        regime: Regime | None = None,
        now: float | None = None,
    ) -> Decision:
        regime = regime if regime is not None else features.regime
        signals = self.collect_signals(strategies, features, regime, now)
        decision = self.aggregate(signals, regime)
        logger.debug(self.summarize(decision))
        return decision

    @staticmethod
    def summarize(decision: Decision) -> str:
        if not decision.is_entry:
            return f"NO_TRADE ({decision.reason}) conflict={decision.conflict_level:.2f}"
        names = ",".join(decision.contributors)
        side: Optional[Side] = decision.side
        return (
            f"{side.value if side else '?'} conf={decision.confidence:.3f} "
            f"{decision.strength.value} n={decision.agreement_count} "
            f"conflict={decision.conflict_level:.2f} [{names}]"
        )
