from __future__ import annotations

from typing import Optional

from updown_trader.models import MarketFeatures, Regime, Side, Signal
from updown_trader.strategies.base import CooldownStrategy


class VolatilityBreakoutStrategy(CooldownStrategy):
    """Break of the recent range after a squeeze, confirmed by volume."""

    regime_compatibility = (Regime.TREND_UP, Regime.TREND_DOWN)

    def __init__(self, *, squeeze_threshold: float = 0.5, volume_multiplier: float = 1.5, **kwargs) -> None:
        super().__init__(**kwargs)
        self.squeeze_threshold = squeeze_threshold
        self.volume_multiplier = volume_multiplier

    @property
    def name(self) -> str:
        return "VOLATILITY_BREAKOUT"

    def analyze(self, features: MarketFeatures) -> Optional[Signal]:
        high = features.get("range_high")
        low = features.get("range_low")
        if high is None or low is None:
            return None

        price = features.price
        if price > high:
            side = Side.UP
        elif price < low:
            side = Side.DOWN
        else:
            return None

        confidence = 0.57
        squeeze = features.get("squeeze_ratio")
        if squeeze is not None and squeeze < self.squeeze_threshold:
            confidence += 0.05
        volume = features.get("volume_ratio")
        if volume is not None and volume >= self.volume_multiplier:
            confidence += 0.05

        return self._signal(side, confidence, features, "range_break")
