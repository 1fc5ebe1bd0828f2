"""
Regime -> strategy routing table.

Pure configuration: which strategies are eligible in a regime, how much
their confidence is boosted, and how entry size scales.  Unknown regimes
use the RANGE route.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from updown_trader.config import RegimeRoute, default_routing
from updown_trader.models import Regime, Signal

__all__ = ["RegimeRoute", "RegimeRouter"]

_DESCRIPTIONS = {
    Regime.TREND_UP: "Bullish trend - momentum strategies favored",
    Regime.TREND_DOWN: "Bearish trend - momentum strategies favored",
    Regime.RANGE: "Sideways market - mean reversion favored",
    Regime.CHOP: "Choppy/uncertain - conservative trading",
}


class RegimeRouter:
    def __init__(
        self,
        routing: Mapping[Regime, RegimeRoute] | None = None,
        *,
        max_confidence: float = 0.90,
    ) -> None:
        self.routing: Dict[Regime, RegimeRoute] = dict(routing) if routing is not None else default_routing()
        self.max_confidence = max_confidence

    def route_for(self, regime: Regime | str | None) -> RegimeRoute:
        parsed = Regime.parse(regime)
        if parsed is not None and parsed in self.routing:
            return self.routing[parsed]
        return self.routing.get(Regime.RANGE, RegimeRoute())

    def is_strategy_enabled(self, name: str, regime: Regime | str | None) -> bool:
        route = self.route_for(regime)
        if name in route.disabled:
            return False
        if route.enabled:
            return name in route.enabled
        return True

    def confidence_boost(self, name: str, regime: Regime | str | None) -> float:
        return float(self.route_for(regime).confidence_boost.get(name, 0.0))

    def size_multiplier(self, regime: Regime | str | None) -> float:
        return float(self.route_for(regime).size_multiplier)

    def eligible(self, strategies: Iterable[Any], regime: Regime | str | None) -> List[Any]:
        """Strategies allowed by the table and by their own declared compatibility."""
        parsed = Regime.parse(regime)
        out = []
        for strategy in strategies:
            compat: Optional[Sequence[Regime]] = getattr(strategy, "regime_compatibility", None)
            if compat and parsed is not None and parsed not in compat:
                continue
            if self.is_strategy_enabled(strategy.name, regime):
                out.append(strategy)
        return out

    def adjust_signal(self, signal: Signal, regime: Regime | str | None) -> Signal:
        boost = self.confidence_boost(signal.strategy_id, regime)
        return replace(
            signal,
            confidence=min(self.max_confidence, signal.confidence + boost),
            regime_boost=boost,
            raw_confidence=signal.raw_confidence,
        )

    def routing_summary(self, strategies: Iterable[Any], regime: Regime | str | None) -> Dict[str, Any]:
        enabled, disabled = [], []
        for strategy in strategies:
            if self.is_strategy_enabled(strategy.name, regime):
                enabled.append({"name": strategy.name, "boost": self.confidence_boost(strategy.name, regime)})
            else:
                disabled.append(strategy.name)
        parsed = Regime.parse(regime)
        return {
            "regime": parsed.value if parsed else str(regime),
            "size_multiplier": self.size_multiplier(regime),
            "enabled": enabled,
            "disabled": disabled,
        }

    def recommended_strategies(self, regime: Regime | str | None) -> List[Dict[str, Any]]:
        route = self.route_for(regime)
        recs = [{"name": name, "boost": route.confidence_boost.get(name, 0.0)} for name in route.enabled]
        recs.sort(key=lambda r: r["boost"], reverse=True)
        return recs

    @staticmethod
    def describe(regime: Regime | str | None) -> str:
        parsed = Regime.parse(regime)
        return _DESCRIPTIONS.get(parsed, "Unknown regime") if parsed else "Unknown regime"
