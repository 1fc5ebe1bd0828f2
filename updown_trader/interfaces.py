"""
Collaborator boundaries of the engine.

Everything here is an interface only: network clients, indicator math,
order placement and storage live outside the core and may fail
independently of it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from updown_trader.models import ClosedTrade, Decision, MarketFeatures, MarketSnapshot, Side


@runtime_checkable
class FeatureProvider(Protocol):
    def get_features(self) -> MarketFeatures:
        """Fresh pre-computed features. May raise on fetch failure or timeout."""


@runtime_checkable
class MarketProvider(Protocol):
    def get_market(self) -> MarketSnapshot:
        """The active market and current contract prices. May raise."""


@runtime_checkable
class RecordSink(Protocol):
    """Append-only record store. Failures never abort trading logic."""

    def record_decision(
        self,
        market_id: str,
        decision: Decision,
        *,
        accepted: bool,
        reason: Optional[str],
        position_id: Optional[str] = None,
    ) -> None: ...

    def record_trade(self, trade: ClosedTrade) -> None: ...

    def record_performance(self, strategy_id: str, *, won: bool, pnl: float, weight: float) -> None: ...

    def record_error(self, where: str, message: str) -> None: ...


@dataclass(frozen=True)
class OrderRequest:
    token_id: str
    side: Side
    size: float
    price: float
    market_id: str = ""
    position_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "side": self.side.value,
            "size": self.size,
            "price": self.price,
            "market_id": self.market_id,
            "position_id": self.position_id,
        }


@runtime_checkable
class OrderBackend(Protocol):
    """Live execution. Raises on network, auth or insufficient-funds errors."""

    def place_order(self, request: OrderRequest) -> str: ...
