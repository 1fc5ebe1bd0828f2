"""
Strategy protocol for the signal aggregator.

Every strategy that participates in aggregation implements the three
capabilities ``analyze``, ``can_trade`` and ``record_trade``.  The
aggregator depends only on this interface, so strategies can be added or
removed without touching the core.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from updown_trader.models import MarketFeatures, Regime, Side, Signal

ALL_REGIMES: Tuple[Regime, ...] = tuple(Regime)


class TradingStrategy(ABC):
    """
    Abstract base class for all strategies.

    Subclasses must implement ``name`` and ``analyze``.
    """

    regime_compatibility: Tuple[Regime, ...] = ALL_REGIMES

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique strategy identifier (e.g. 'MOMENTUM', 'RSI')."""

    @abstractmethod
    def analyze(self, features: MarketFeatures) -> Optional[Signal]:
        """
        Produce at most one directional opinion for the current cycle.

        Returns None for "no opinion".  Must not mutate ``features``.
        """

    def can_trade(self, now: float) -> bool:
        """Cooldown gate. Default implementation never throttles."""
        return True

    def record_trade(self, now: float) -> None:
        """Called when an entry this strategy contributed to was opened."""

    def reset(self) -> None:
        """Reset strategy state for a new session or backtest run."""

    def describe(self) -> str:
        return f"{self.name} strategy"


class CooldownStrategy(TradingStrategy):
    """
    Base for the bundled strategies: a per-strategy cooldown between
    contributed entries, and the shared confidence shaping (time decay
    toward expiry, hard cap).
    """

    cooldown_seconds: float = 60.0
    max_signal_confidence: float = 0.85
    min_signal_confidence: float = 0.55
    market_minutes: float = 15.0

    def __init__(self, *, cooldown_seconds: float | None = None, enabled: bool = True) -> None:
        if cooldown_seconds is not None:
            self.cooldown_seconds = cooldown_seconds
        self.enabled = enabled
        self._last_trade_time: Optional[float] = None

    def can_trade(self, now: float) -> bool:
        if not self.enabled:
            return False
        if self._last_trade_time is None:
            return True
        return now - self._last_trade_time >= self.cooldown_seconds

    def record_trade(self, now: float) -> None:
        self._last_trade_time = now

    def reset(self) -> None:
        self._last_trade_time = None

    def _time_decay(self, features: MarketFeatures) -> float:
        remaining = features.remaining_minutes
        if remaining is None:
            return 1.0
        return max(0.5, remaining / self.market_minutes)

    def _signal(
        self,
        side: Side,
        confidence: float,
        features: MarketFeatures,
        reason: str,
        extra: Dict[str, Any] | None = None,
    ) -> Optional[Signal]:
        """Apply time decay and the cap; drop opinions under the floor."""
        decay = self._time_decay(features)
        confidence = 0.5 + (confidence - 0.5) * decay
        if confidence < self.min_signal_confidence:
            return None
        snapshot = features.snapshot()
        snapshot["time_decay"] = decay
        if extra:
            snapshot.update(extra)
        return Signal(
            strategy_id=self.name,
            side=side,
            confidence=min(self.max_signal_confidence, confidence),
            reason=reason,
            feature_snapshot=snapshot,
        )
