from __future__ import annotations

from typing import Optional

from updown_trader.models import MarketFeatures, Regime, Side, Signal
from updown_trader.strategies.base import CooldownStrategy


class MeanReversionStrategy(CooldownStrategy):
    """
    Fade stretches away from the Bollinger mid-band.

    Uses the provider's z-score (``bb_zscore``: distance from the middle
    band in standard deviations).  Beyond ``max_zscore`` the move is
    treated as a breakout and left alone.
    """

    regime_compatibility = (Regime.RANGE,)

    def __init__(self, *, entry_zscore: float = 1.5, max_zscore: float = 3.0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.entry_zscore = entry_zscore
        self.max_zscore = max_zscore

    @property
    def name(self) -> str:
        return "MEAN_REVERSION"

    def analyze(self, features: MarketFeatures) -> Optional[Signal]:
        z = features.get("bb_zscore")
        if z is None:
            return None
        stretch = abs(z)
        if stretch < self.entry_zscore or stretch > self.max_zscore:
            return None

        side = Side.DOWN if z > 0 else Side.UP
        span = self.max_zscore - self.entry_zscore
        confidence = 0.56 + (stretch - self.entry_zscore) / span * 0.12 if span > 0 else 0.56

        reversal = features.get("reversal_candle", 0.0)
        if (side is Side.UP and reversal > 0) or (side is Side.DOWN and reversal < 0):
            confidence += 0.04

        return self._signal(side, confidence, features, "band_stretch", {"zscore": z})
