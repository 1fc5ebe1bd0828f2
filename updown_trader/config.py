from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Tuple

from updown_trader.errors import ConfigError
from updown_trader.models import Regime


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


def _require_fraction(name: str, value: float) -> None:
    _require(0.0 <= value <= 1.0, f"{name} must be within [0, 1], got {value}")


# ────────────────────────────────────────────────────────────────────────────
# Sections
# ────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionConfig:
    initial_balance: float = 500.0
    poll_seconds: float = 5.0

    def validate(self) -> None:
        _require(self.initial_balance > 0, "initial_balance must be positive")
        _require(self.poll_seconds >= 0, "poll_seconds must be non-negative")


@dataclass(frozen=True)
class SignalConfig:
    min_strategies_to_trade: int = 1
    conflict_threshold: float = 0.4
    """0 = unanimous, 1 = perfect split. Above this the cycle is skipped."""
    min_confidence: float = 0.55
    agreement_bonus: float = 0.02
    max_agreement_bonus: float = 0.10
    conflict_penalty: float = 0.5
    max_confidence: float = 0.90

    def validate(self) -> None:
        _require(self.min_strategies_to_trade >= 1, "min_strategies_to_trade must be >= 1")
        _require_fraction("conflict_threshold", self.conflict_threshold)
        _require_fraction("min_confidence", self.min_confidence)
        _require_fraction("max_confidence", self.max_confidence)
        _require(
            self.min_confidence <= self.max_confidence,
            "min_confidence must not exceed max_confidence",
        )
        _require(self.agreement_bonus >= 0, "agreement_bonus must be non-negative")
        _require(self.max_agreement_bonus >= 0, "max_agreement_bonus must be non-negative")
        _require(self.conflict_penalty >= 0, "conflict_penalty must be non-negative")


@dataclass(frozen=True)
class PerformanceConfig:
    window_size: int = 20
    min_trades_for_weighting: int = 5
    default_weight: float = 1.0
    min_weight: float = 0.1
    max_weight: float = 2.0
    # (minimum rolling win rate, weight), checked top-down.
    weight_ladder: Tuple[Tuple[float, float], ...] = (
        (0.80, 2.0),
        (0.70, 1.75),
        (0.60, 1.5),
        (0.50, 1.0),
        (0.40, 0.5),
        (0.30, 0.25),
    )
    # Live exclusion: (min samples, max win rate that triggers exclusion).
    exclude_zero_wins_after: int = 3
    exclude_low_win_rate_after: int = 5
    exclude_win_rate_below: float = 0.30

    def validate(self) -> None:
        _require(self.window_size >= 1, "window_size must be >= 1")
        _require(self.min_trades_for_weighting >= 0, "min_trades_for_weighting must be >= 0")
        _require(0 < self.min_weight <= self.max_weight, "weight range must satisfy 0 < min <= max")
        _require(
            self.min_weight <= self.default_weight <= self.max_weight,
            "default_weight must lie inside [min_weight, max_weight]",
        )
        rates = [rate for rate, _ in self.weight_ladder]
        weights = [w for _, w in self.weight_ladder]
        _require(rates == sorted(rates, reverse=True), "weight_ladder must be sorted by win rate, descending")
        _require(weights == sorted(weights, reverse=True), "weight_ladder weights must be non-increasing")
        for rate in rates:
            _require_fraction("weight_ladder win rate", rate)
        _require_fraction("exclude_win_rate_below", self.exclude_win_rate_below)


@dataclass(frozen=True)
class DrawdownStep:
    drawdown: float
    size_multiplier: float


@dataclass(frozen=True)
class RiskConfig:
    daily_loss_limit: float = 0.10
    max_daily_trades: int = 100

    max_single_position: float = 0.15
    max_total_exposure: float = 0.50
    max_positions_per_market: int = 2

    min_bet_size: float = 5.0
    max_bet_size: float = 50.0

    # Ledger sizing: base risk fraction spans [min, max] as confidence goes 0.5 -> 1.0.
    min_risk_percent: float = 0.02
    max_risk_percent: float = 0.05
    streak_penalty_per_loss: float = 0.10
    streak_penalty_floor: float = 0.50

    kelly_fraction: float = 0.5
    correlation_penalty: float = 0.20

    drawdown_scaling_enabled: bool = True
    drawdown_steps: Tuple[DrawdownStep, ...] = (
        DrawdownStep(drawdown=0.05, size_multiplier=0.80),
        DrawdownStep(drawdown=0.08, size_multiplier=0.50),
        DrawdownStep(drawdown=0.10, size_multiplier=0.00),
    )

    consecutive_loss_limit: int = 5
    cooldown_after_halt_seconds: float = 30 * 60

    @property
    def hard_stop_drawdown(self) -> float | None:
        """Drawdown at which the ladder reaches zero size (session halt)."""
        for step in self.drawdown_steps:
            if step.size_multiplier == 0:
                return step.drawdown
        return None

    def validate(self) -> None:
        _require_fraction("daily_loss_limit", self.daily_loss_limit)
        _require(self.max_daily_trades >= 1, "max_daily_trades must be >= 1")
        _require_fraction("max_single_position", self.max_single_position)
        _require_fraction("max_total_exposure", self.max_total_exposure)
        _require(self.max_positions_per_market >= 1, "max_positions_per_market must be >= 1")
        _require(self.min_bet_size > 0, "min_bet_size must be positive")
        _require(self.max_bet_size >= self.min_bet_size, "max_bet_size must be >= min_bet_size")
        _require(
            0 <= self.min_risk_percent <= self.max_risk_percent <= 1,
            "risk percents must satisfy 0 <= min <= max <= 1",
        )
        _require_fraction("streak_penalty_per_loss", self.streak_penalty_per_loss)
        _require_fraction("streak_penalty_floor", self.streak_penalty_floor)
        _require_fraction("kelly_fraction", self.kelly_fraction)
        _require_fraction("correlation_penalty", self.correlation_penalty)
        drawdowns = [s.drawdown for s in self.drawdown_steps]
        _require(drawdowns == sorted(drawdowns), "drawdown_steps must be sorted by drawdown, ascending")
        for step in self.drawdown_steps:
            _require_fraction("drawdown step", step.drawdown)
            _require_fraction("drawdown size_multiplier", step.size_multiplier)
        _require(self.consecutive_loss_limit >= 1, "consecutive_loss_limit must be >= 1")
        _require(self.cooldown_after_halt_seconds >= 0, "cooldown_after_halt_seconds must be >= 0")


@dataclass(frozen=True)
class TakeProfitConfig:
    enabled: bool = True
    target_multiple: float = 2.0
    absolute_threshold: float = 0.85


@dataclass(frozen=True)
class StopLossConfig:
    enabled: bool = True
    percent_drop: float = 0.30
    absolute_floor: float = 0.10


@dataclass(frozen=True)
class ScaleOutLevel:
    price_multiple: float
    exit_fraction: float


@dataclass(frozen=True)
class TimeDecayStep:
    minutes_left: float
    target_reduction: float
    """Cumulative fraction of the original size that should be closed."""


@dataclass(frozen=True)
class PositionConfig:
    take_profit: TakeProfitConfig = TakeProfitConfig()
    stop_loss: StopLossConfig = StopLossConfig()
    scale_out_enabled: bool = True
    scale_out_levels: Tuple[ScaleOutLevel, ...] = (
        ScaleOutLevel(price_multiple=1.5, exit_fraction=0.33),
        ScaleOutLevel(price_multiple=2.0, exit_fraction=0.50),
    )
    time_decay_enabled: bool = True
    time_decay_steps: Tuple[TimeDecayStep, ...] = (
        TimeDecayStep(minutes_left=3.0, target_reduction=0.50),
        TimeDecayStep(minutes_left=1.0, target_reduction=1.00),
    )

    def validate(self) -> None:
        tp, sl = self.take_profit, self.stop_loss
        _require(tp.target_multiple > 1.0, "take_profit.target_multiple must be > 1")
        _require(0 < tp.absolute_threshold <= 1, "take_profit.absolute_threshold must be in (0, 1]")
        _require(0 < sl.percent_drop < 1, "stop_loss.percent_drop must be in (0, 1)")
        _require(0 <= sl.absolute_floor < 1, "stop_loss.absolute_floor must be in [0, 1)")
        for level in self.scale_out_levels:
            _require(level.price_multiple > 1.0, "scale-out price_multiple must be > 1")
            _require(0 < level.exit_fraction <= 1, "scale-out exit_fraction must be in (0, 1]")
        for step in self.time_decay_steps:
            _require(step.minutes_left >= 0, "time-decay minutes_left must be >= 0")
            _require(0 < step.target_reduction <= 1, "time-decay target_reduction must be in (0, 1]")


@dataclass(frozen=True)
class RegimeRoute:
    enabled: Tuple[str, ...] = ()
    disabled: Tuple[str, ...] = ()
    confidence_boost: Dict[str, float] = field(default_factory=dict)
    size_multiplier: float = 1.0


def default_routing() -> Dict[Regime, RegimeRoute]:
    trend = RegimeRoute(
        enabled=("MOMENTUM", "MACD", "VOLATILITY_BREAKOUT", "TREND_CONFIRM", "VOLUME_PROFILE"),
        disabled=("MEAN_REVERSION",),
        confidence_boost={"MOMENTUM": 0.05, "TREND_CONFIRM": 0.05},
    )
    return {
        Regime.TREND_UP: trend,
        Regime.TREND_DOWN: trend,
        Regime.RANGE: RegimeRoute(
            enabled=("MEAN_REVERSION", "RSI", "MACD", "PRICE_ACTION", "VOLUME_PROFILE"),
            disabled=("MOMENTUM", "TREND_CONFIRM"),
            confidence_boost={"MEAN_REVERSION": 0.05, "PRICE_ACTION": 0.03},
        ),
        Regime.CHOP: RegimeRoute(
            enabled=("RSI", "PRICE_ACTION"),
            disabled=("MOMENTUM", "VOLATILITY_BREAKOUT", "MEAN_REVERSION", "TREND_CONFIRM"),
            size_multiplier=0.5,
        ),
    }


@dataclass(frozen=True)
class EngineConfig:
    # No entries in the first minute or the last three minutes of a market.
    min_entry_minutes: float = 3.0
    max_entry_minutes: float = 14.0
    market_duration_minutes: float = 15.0
    # Extreme contract prices carry no edge.
    min_contract_price: float = 0.15
    max_contract_price: float = 0.85
    trade_individual_strategies: bool = False
    live_enabled: bool = False
    dry_run: bool = True
    db_path: str | None = None

    def validate(self) -> None:
        _require(
            0 <= self.min_entry_minutes <= self.max_entry_minutes,
            "entry window must satisfy 0 <= min_entry_minutes <= max_entry_minutes",
        )
        _require(self.market_duration_minutes > 0, "market_duration_minutes must be positive")
        _require(
            0 < self.min_contract_price < self.max_contract_price < 1,
            "contract price guard must satisfy 0 < min < max < 1",
        )


# ────────────────────────────────────────────────────────────────────────────
# Top level
# ────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TraderConfig:
    session: SessionConfig = SessionConfig()
    signals: SignalConfig = SignalConfig()
    performance: PerformanceConfig = PerformanceConfig()
    risk: RiskConfig = RiskConfig()
    position: PositionConfig = PositionConfig()
    engine: EngineConfig = EngineConfig()
    routing: Dict[Regime, RegimeRoute] = field(default_factory=default_routing)

    def validate(self) -> "TraderConfig":
        self.session.validate()
        self.signals.validate()
        self.performance.validate()
        self.risk.validate()
        self.position.validate()
        self.engine.validate()
        for regime, route in self.routing.items():
            _require(isinstance(regime, Regime), f"routing key {regime!r} is not a Regime")
            _require(route.size_multiplier >= 0, f"{regime.name} size_multiplier must be >= 0")
            for name, boost in route.confidence_boost.items():
                _require(0 <= boost <= 1, f"{regime.name} boost for {name} must be in [0, 1]")
        return self

    @staticmethod
    def from_env() -> "TraderConfig":
        base = TraderConfig()
        session = SessionConfig(
            initial_balance=_get_env_float("UPDOWN_INITIAL_BALANCE", base.session.initial_balance),
            poll_seconds=_get_env_float("UPDOWN_POLL_SECONDS", base.session.poll_seconds),
        )
        signals = replace(
            base.signals,
            min_strategies_to_trade=_get_env_int("UPDOWN_MIN_STRATEGIES", base.signals.min_strategies_to_trade),
            conflict_threshold=_get_env_float("UPDOWN_CONFLICT_THRESHOLD", base.signals.conflict_threshold),
            min_confidence=_get_env_float("UPDOWN_MIN_CONFIDENCE", base.signals.min_confidence),
        )
        risk = replace(
            base.risk,
            daily_loss_limit=_get_env_float("UPDOWN_DAILY_LOSS_LIMIT", base.risk.daily_loss_limit),
            max_daily_trades=_get_env_int("UPDOWN_MAX_DAILY_TRADES", base.risk.max_daily_trades),
            min_bet_size=_get_env_float("UPDOWN_MIN_BET", base.risk.min_bet_size),
            max_bet_size=_get_env_float("UPDOWN_MAX_BET", base.risk.max_bet_size),
            consecutive_loss_limit=_get_env_int("UPDOWN_CONSECUTIVE_LOSS_LIMIT", base.risk.consecutive_loss_limit),
        )
        engine = replace(
            base.engine,
            trade_individual_strategies=_get_env_bool("UPDOWN_INDIVIDUAL_STRATEGIES", False),
            # Paper ledger is authoritative; live orders need both flags.
            live_enabled=_get_env_bool("UPDOWN_LIVE_ENABLED", False),
            dry_run=_get_env_bool("UPDOWN_DRY_RUN", True),
            db_path=(_get_env("UPDOWN_DB_PATH", "").strip() or None),
        )
        return TraderConfig(
            session=session,
            signals=signals,
            performance=base.performance,
            risk=risk,
            position=base.position,
            engine=engine,
        ).validate()
