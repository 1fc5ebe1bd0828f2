from __future__ import annotations

from typing import Optional

from updown_trader.models import MarketFeatures, Regime, Side, Signal
from updown_trader.strategies.base import CooldownStrategy


class MACDStrategy(CooldownStrategy):
    """Histogram zero-cross entries, with expansion and zero-line alignment as confirmation."""

    regime_compatibility = (Regime.TREND_UP, Regime.TREND_DOWN, Regime.RANGE)

    def __init__(self, *, histogram_threshold: float = 0.0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.histogram_threshold = histogram_threshold

    @property
    def name(self) -> str:
        return "MACD"

    def analyze(self, features: MarketFeatures) -> Optional[Signal]:
        hist = features.get("macd_histogram")
        prev = features.get("macd_histogram_prev")
        line = features.get("macd_line")
        if hist is None or prev is None:
            return None
        if abs(hist) <= self.histogram_threshold:
            return None

        side = Side.UP if hist > 0 else Side.DOWN
        crossed = (prev <= 0 < hist) or (prev >= 0 > hist)
        expanding = abs(hist) > abs(prev)

        if crossed:
            confidence = 0.60
            reason = "histogram_cross"
        elif expanding:
            confidence = 0.56
            reason = "histogram_expanding"
        else:
            return None

        if crossed and expanding:
            confidence += 0.03
        if line is not None and ((side is Side.UP and line > 0) or (side is Side.DOWN and line < 0)):
            confidence += 0.04

        return self._signal(side, confidence, features, reason)
