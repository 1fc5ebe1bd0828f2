from __future__ import annotations

from enum import Enum


class ConfigError(ValueError):
    """Raised when a configuration section holds an invalid value."""


class LedgerError(str, Enum):
    """Reasons a ledger mutation was refused. Returned, never raised."""

    INVALID_SIZE = "invalid_size"
    INVALID_PRICE = "invalid_price"
    INVALID_FRACTION = "invalid_fraction"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DUPLICATE_POSITION = "duplicate_position"
    POSITION_NOT_FOUND = "position_not_found"


class RejectReason(str, Enum):
    """Machine-readable reasons a cycle produced no entry."""

    NO_SIGNALS = "no_signals"
    INSUFFICIENT_SIGNALS = "insufficient_signals"
    STRATEGY_CONFLICT = "strategy_conflict"
    WEAK_SIGNAL = "weak_signal"
    RISK_BLOCKED = "risk_blocked"
    OUTSIDE_ENTRY_WINDOW = "outside_entry_window"
    PRICE_OUT_OF_RANGE = "price_out_of_range"
    SIZE_TOO_SMALL = "size_too_small"
    MARKET_LIMIT = "market_limit"
    LEDGER_REJECTED = "ledger_rejected"
    STOPPING = "stopping"
    FETCH_FAILED = "fetch_failed"
