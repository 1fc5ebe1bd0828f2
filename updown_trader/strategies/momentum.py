from __future__ import annotations

from typing import Optional

from updown_trader.models import MarketFeatures, Regime, Side, Signal
from updown_trader.strategies.base import CooldownStrategy


class MomentumStrategy(CooldownStrategy):
    """
    Trend following on an EMA cascade with VWAP-slope and momentum-bar
    confirmation.

    Scores (per side): cascade 3, price vs each EMA 1, VWAP slope 2,
    consecutive momentum bars 2, higher-highs/lower-lows pattern 1.
    Confidence is ``0.5 + diff / 10 * 0.4``.
    """

    regime_compatibility = (Regime.TREND_UP, Regime.TREND_DOWN)

    def __init__(self, *, min_vwap_slope: float = 0.0001, min_momentum_bars: int = 3, **kwargs) -> None:
        super().__init__(**kwargs)
        self.min_vwap_slope = min_vwap_slope
        self.min_momentum_bars = min_momentum_bars

    @property
    def name(self) -> str:
        return "MOMENTUM"

    def analyze(self, features: MarketFeatures) -> Optional[Signal]:
        price = features.price
        fast = features.get("ema_fast")
        medium = features.get("ema_medium")
        slow = features.get("ema_slow")
        if fast is None or medium is None or slow is None:
            return None

        up = down = 0
        if price > fast > medium > slow:
            up += 3
        elif price < fast < medium < slow:
            down += 3

        for ema in (fast, medium, slow):
            if price > ema:
                up += 1
            else:
                down += 1

        slope = features.get("vwap_slope", 0.0)
        if slope > self.min_vwap_slope:
            up += 2
        elif slope < -self.min_vwap_slope:
            down += 2

        if features.get("momentum_bars_up", 0.0) >= self.min_momentum_bars:
            up += 2
        if features.get("momentum_bars_down", 0.0) >= self.min_momentum_bars:
            down += 2

        pattern = features.get("trend_pattern", 0.0)
        if pattern > 0:
            up += 1
        elif pattern < 0:
            down += 1

        if up == down:
            return None
        side = Side.UP if up > down else Side.DOWN
        confidence = 0.5 + abs(up - down) / 10.0 * 0.4
        return self._signal(side, confidence, features, "ema_cascade", {"up_score": up, "down_score": down})
