from __future__ import annotations

from typing import List

from updown_trader.strategies.base import CooldownStrategy, TradingStrategy
from updown_trader.strategies.breakout import VolatilityBreakoutStrategy
from updown_trader.strategies.macd import MACDStrategy
from updown_trader.strategies.mean_reversion import MeanReversionStrategy
from updown_trader.strategies.momentum import MomentumStrategy
from updown_trader.strategies.rsi import RSIStrategy

__all__ = [
    "CooldownStrategy",
    "MACDStrategy",
    "MeanReversionStrategy",
    "MomentumStrategy",
    "RSIStrategy",
    "TradingStrategy",
    "VolatilityBreakoutStrategy",
    "default_strategies",
]


def default_strategies() -> List[TradingStrategy]:
    return [
        MomentumStrategy(),
        MeanReversionStrategy(),
        VolatilityBreakoutStrategy(),
        RSIStrategy(),
        MACDStrategy(),
    ]
