from __future__ import annotations

from typing import Optional

from updown_trader.models import MarketFeatures, Side, Signal
from updown_trader.strategies.base import CooldownStrategy


class RSIStrategy(CooldownStrategy):
    """
    Contrarian RSI.

    Primary signal is a zone crossing back out of oversold/overbought;
    an extreme reading without a crossing gives a weaker anticipatory
    signal.  Price on the far side of VWAP adds a small bonus.
    """

    def __init__(
        self,
        *,
        oversold: float = 30.0,
        overbought: float = 70.0,
        extreme_oversold: float = 20.0,
        extreme_overbought: float = 80.0,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.oversold = oversold
        self.overbought = overbought
        self.extreme_oversold = extreme_oversold
        self.extreme_overbought = extreme_overbought

    @property
    def name(self) -> str:
        return "RSI"

    def analyze(self, features: MarketFeatures) -> Optional[Signal]:
        rsi = features.get("rsi")
        if rsi is None:
            return None
        prev = features.get("rsi_prev")

        side: Optional[Side] = None
        if prev is not None and prev < self.oversold <= rsi:
            side, confidence, reason = Side.UP, 0.58, "oversold_exit"
            if prev < self.extreme_oversold:
                confidence += 0.08
        elif prev is not None and prev > self.overbought >= rsi:
            side, confidence, reason = Side.DOWN, 0.58, "overbought_exit"
            if prev > self.extreme_overbought:
                confidence += 0.08
        elif rsi < self.extreme_oversold:
            side, reason = Side.UP, "extreme_oversold"
            confidence = 0.55 + (self.extreme_oversold - rsi) * 0.005
        elif rsi > self.extreme_overbought:
            side, reason = Side.DOWN, "extreme_overbought"
            confidence = 0.55 + (rsi - self.extreme_overbought) * 0.005
        else:
            return None

        slope = features.get("rsi_slope")
        if slope is not None and ((side is Side.UP and slope > 0) or (side is Side.DOWN and slope < 0)):
            confidence += 0.05

        vwap = features.get("vwap")
        if vwap is not None:
            if (side is Side.UP and features.price < vwap) or (side is Side.DOWN and features.price > vwap):
                confidence += 0.03

        return self._signal(side, confidence, features, reason)
