"""
Core value types shared by the ledger, the aggregator and the engine.

Signals and decisions are ephemeral (one cycle).  Positions are owned
and mutated by the Ledger only; closed trades are append-only records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Side(str, Enum):
    UP = "UP"
    DOWN = "DOWN"

    @property
    def opposite(self) -> "Side":
        return Side.DOWN if self is Side.UP else Side.UP


class Regime(str, Enum):
    TREND_UP = "TREND_UP"
    TREND_DOWN = "TREND_DOWN"
    RANGE = "RANGE"
    CHOP = "CHOP"

    @classmethod
    def parse(cls, value: Any) -> Optional["Regime"]:
        """Lenient conversion from detector output; unknown values give None."""
        if isinstance(value, Regime):
            return value
        if value is None:
            return None
        key = str(value).strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(key)
        except ValueError:
            return None


class Action(str, Enum):
    ENTER = "ENTER"
    NO_TRADE = "NO_TRADE"


class Strength(str, Enum):
    STRONG = "STRONG"
    GOOD = "GOOD"
    WEAK = "WEAK"
    INSUFFICIENT = "INSUFFICIENT"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


# ────────────────────────────────────────────────────────────────────────────
# Inputs from collaborators
# ────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MarketFeatures:
    """
    Pre-computed feature values for one cycle.

    ``indicators`` holds whatever the feature provider computed
    (ema_fast, ema_slow, rsi, macd_histogram, vwap_slope, ...).  The
    core never computes indicators itself.
    """
    price: float
    regime: Regime = Regime.RANGE
    indicators: Dict[str, float] = field(default_factory=dict)
    prices: Tuple[float, ...] = ()
    remaining_minutes: Optional[float] = None
    timestamp: Optional[float] = None

    def get(self, key: str, default: Optional[float] = None) -> Optional[float]:
        value = self.indicators.get(key, default)
        return None if value is None else float(value)

    def snapshot(self) -> Dict[str, Any]:
        return {"price": self.price, "regime": self.regime.value, **self.indicators}


@dataclass(frozen=True)
class MarketSnapshot:
    """The active binary market: identifier, resolution time, contract prices."""
    market_id: str
    end_time: float
    up_price: float
    down_price: float
    up_token_id: str = ""
    down_token_id: str = ""

    def price_for(self, side: Side) -> float:
        return self.up_price if side is Side.UP else self.down_price

    def token_for(self, side: Side) -> str:
        return self.up_token_id if side is Side.UP else self.down_token_id

    def remaining_minutes(self, now: float) -> float:
        return max(0.0, (self.end_time - now) / 60.0)

    def prices_by_side(self) -> Dict[Side, float]:
        return {Side.UP: self.up_price, Side.DOWN: self.down_price}


# ────────────────────────────────────────────────────────────────────────────
# Signals and decisions
# ────────────────────────────────────────────────────────────────────────────

@dataclass
class Signal:
    strategy_id: str
    side: Side
    confidence: float
    weight: float = 1.0
    regime_boost: float = 0.0
    raw_confidence: Optional[float] = None
    reason: str = ""
    feature_snapshot: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.raw_confidence is None:
            self.raw_confidence = self.confidence

    @property
    def mass(self) -> float:
        return self.confidence * self.weight


@dataclass
class Decision:
    action: Action
    side: Optional[Side] = None
    confidence: float = 0.0
    strength: Strength = Strength.INSUFFICIENT
    agreement_count: int = 0
    conflict_level: float = 0.0
    contributing_signals: List[Signal] = field(default_factory=list)
    reason: Optional[str] = None
    regime: Optional[Regime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_entry(self) -> bool:
        return self.action is Action.ENTER

    @property
    def contributors(self) -> List[str]:
        return [s.strategy_id for s in self.contributing_signals]

    @classmethod
    def no_trade(cls, reason: str, **kwargs: Any) -> "Decision":
        return cls(action=Action.NO_TRADE, reason=reason, **kwargs)


# ────────────────────────────────────────────────────────────────────────────
# Ledger records
# ────────────────────────────────────────────────────────────────────────────

@dataclass
class Position:
    id: str
    strategy_id: str
    side: Side
    entry_price: float
    size: float
    original_size: float
    confidence: float
    market_id: str
    open_time: float
    scaled_out_percent: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    realized_pnl: float = 0.0
    contributors: Tuple[str, ...] = ()
    regime: Optional[Regime] = None

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def shares(self) -> float:
        return self.size / self.entry_price


@dataclass(frozen=True)
class ClosedTrade:
    position_id: str
    strategy_id: str
    side: Side
    entry_price: float
    size: float
    confidence: float
    market_id: str
    open_time: float
    exit_price: float
    exit_reason: str
    pnl: float
    won: bool
    close_time: float
    hold_time: float
    balance_after: float
    outcome: Optional[Side] = None
    partial: bool = False
    contributors: Tuple[str, ...] = ()
    regime: Optional[Regime] = None
    settlement_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "strategy_id": self.strategy_id,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "size": self.size,
            "confidence": self.confidence,
            "market_id": self.market_id,
            "open_time": self.open_time,
            "exit_price": self.exit_price,
            "exit_reason": self.exit_reason,
            "pnl": self.pnl,
            "won": self.won,
            "close_time": self.close_time,
            "hold_time": self.hold_time,
            "balance_after": self.balance_after,
            "outcome": self.outcome.value if self.outcome else None,
            "partial": self.partial,
            "contributors": list(self.contributors),
            "regime": self.regime.value if self.regime else None,
            "settlement_price": self.settlement_price,
        }


@dataclass(frozen=True)
class AccountState:
    initial_balance: float
    balance: float
    available_balance: float
    exposure: float
    open_positions: int
    realized_pnl: float
    daily_pnl: float
    return_pct: float
    peak_balance: float
    current_drawdown: float
    max_drawdown: float


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    error: Optional[Any] = None
    position_id: Optional[str] = None
    position: Optional[Position] = None
    trades: Tuple[ClosedTrade, ...] = ()

    @property
    def trade(self) -> Optional[ClosedTrade]:
        return self.trades[-1] if self.trades else None

    @classmethod
    def fail(cls, error: Any, position_id: Optional[str] = None) -> "LedgerResult":
        return cls(success=False, error=error, position_id=position_id)

    def __bool__(self) -> bool:
        return self.success
