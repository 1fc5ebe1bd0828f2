"""Tests for the position exit state machine."""

import logging

import pytest

from updown_trader.config import PositionConfig, RiskConfig, StopLossConfig, TakeProfitConfig
from updown_trader.ledger import Ledger
from updown_trader.models import Side
from updown_trader.positions import ExitKind, PositionManager
from updown_trader.risk import RiskManager
from updown_trader.session import SessionState

logging.disable(logging.CRITICAL)

T0 = 1_700_000_000.0


def _setup(config: PositionConfig | None = None, risk: RiskConfig | None = None):
    risk = risk or RiskConfig()
    clock = lambda: T0  # noqa: E731
    session = SessionState(1000.0, risk, clock=clock)
    ledger = Ledger(session, risk, clock=clock)
    manager = PositionManager(ledger, config, risk, clock=clock)
    return ledger, manager, RiskManager(risk, session, clock=clock)


def _open(ledger, entry_price=0.40, size=100.0, side=Side.UP, strategy_id="A", market_id="m-1"):
    result = ledger.open_position(
        strategy_id=strategy_id,
        side=side,
        entry_price=entry_price,
        size=size,
        confidence=0.7,
        market_id=market_id,
        timestamp=T0,
    )
    return ledger.get_position(result.position_id)


class TestExitRules:
    def test_take_profit_on_multiple(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        rec = manager.check_position_exit(position, 0.80, 10.0)
        assert rec.kind is ExitKind.TAKE_PROFIT
        assert rec.reason == "target_multiple"
        assert rec.is_full_close

    def test_take_profit_on_absolute_threshold(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.50)
        rec = manager.check_position_exit(position, 0.86, 10.0)
        assert rec.kind is ExitKind.TAKE_PROFIT
        assert rec.reason == "absolute_threshold"

    def test_stop_loss_on_drop(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        rec = manager.check_position_exit(position, 0.25, 10.0)
        assert rec.kind is ExitKind.STOP_LOSS
        assert rec.reason == "percent_drop"

    def test_stop_loss_on_absolute_floor(self):
        config = PositionConfig(stop_loss=StopLossConfig(percent_drop=0.9, absolute_floor=0.10))
        ledger, manager, _ = _setup(config)
        position = _open(ledger, entry_price=0.15)
        rec = manager.check_position_exit(position, 0.09, 10.0)
        assert rec.kind is ExitKind.STOP_LOSS
        assert rec.reason == "absolute_floor"

    def test_take_profit_outranks_scale_out(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        # 2.0x hits both the take-profit multiple and the 2.0x scale-out level.
        assert manager.check_position_exit(position, 0.80, 2.0).kind is ExitKind.TAKE_PROFIT

    def test_disabled_rules_are_skipped(self):
        config = PositionConfig(
            take_profit=TakeProfitConfig(enabled=False),
            stop_loss=StopLossConfig(enabled=False),
            scale_out_enabled=False,
            time_decay_enabled=False,
        )
        ledger, manager, _ = _setup(config)
        position = _open(ledger, entry_price=0.40)
        assert manager.check_position_exit(position, 0.95, 0.5) is None
        assert manager.check_position_exit(position, 0.05, 0.5) is None

    def test_scale_out_fires_at_exact_level(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        # 0.60 / 0.40 evaluates to 1.4999999999999998
        rec = manager.check_position_exit(position, 0.60, 10.0)
        assert rec.kind is ExitKind.SCALE_OUT
        assert rec.level_key == 1.5

    def test_stop_loss_fires_at_exact_drop(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        rec = manager.check_position_exit(position, 0.28, 10.0)
        assert rec.kind is ExitKind.STOP_LOSS
        assert rec.reason == "percent_drop"

    def test_zero_price_is_a_price(self):
        ledger, manager, _ = _setup()
        _open(ledger, entry_price=0.40)
        results = manager.process_exits({Side.UP: 0.0, Side.DOWN: 1.0}, 10.0, "m-1")
        assert [r.recommendation.kind for r in results] == [ExitKind.STOP_LOSS]
        assert results[0].success
        assert ledger.open_positions() == []
        assert ledger.closed_trades[-1].pnl == pytest.approx(-100.0)

    def test_missing_side_price_is_skipped(self):
        ledger, manager, _ = _setup()
        _open(ledger, entry_price=0.40)
        assert manager.process_exits({Side.DOWN: 0.9}, 10.0) == []

    def test_no_exit_in_quiet_market(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        assert manager.check_position_exit(position, 0.45, 10.0) is None


class TestScaleOut:
    def test_level_fires_once(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)

        rec = manager.check_position_exit(position, 0.62, 10.0)
        assert rec.kind is ExitKind.SCALE_OUT
        assert rec.fraction == pytest.approx(0.33)
        assert rec.level_key == 1.5

        first = manager.execute_exit(rec, T0 + 60)
        assert first.success
        assert position.size == pytest.approx(67.0)
        assert manager.fired_levels(position.id) == [1.5]

        # Replaying the same recommendation does nothing.
        again = manager.execute_exit(rec, T0 + 61)
        assert not again.success
        assert position.size == pytest.approx(67.0)

        # Price dips and re-crosses: the level stays spent.
        assert manager.check_position_exit(position, 0.50, 10.0) is None
        assert manager.check_position_exit(position, 0.63, 10.0) is None

    def test_second_level_after_first(self):
        ledger, manager, _ = _setup(
            PositionConfig(take_profit=TakeProfitConfig(target_multiple=3.0, absolute_threshold=0.99))
        )
        position = _open(ledger, entry_price=0.40)
        results = manager.process_exits({Side.UP: 0.82, Side.DOWN: 0.18}, 10.0)
        assert [r.recommendation.level_key for r in results] == [1.5]
        results = manager.process_exits({Side.UP: 0.82, Side.DOWN: 0.18}, 10.0)
        assert [r.recommendation.level_key for r in results] == [2.0]
        assert position.scaled_out_percent == pytest.approx(0.83)

    def test_market_change_clears_levels(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        manager.execute_exit(manager.check_position_exit(position, 0.62, 10.0))
        manager.on_market_change()
        assert manager.fired_levels(position.id) == []


class TestTimeDecay:
    def test_first_step_requests_half(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.50)
        rec = manager.check_position_exit(position, 0.50, 2.5)
        assert rec.kind is ExitKind.TIME_DECAY
        assert rec.fraction == pytest.approx(0.5)
        manager.execute_exit(rec)
        assert position.scaled_out_percent == pytest.approx(0.5)
        assert manager.check_position_exit(position, 0.50, 2.4) is None

    def test_only_increment_is_requested(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        manager.execute_exit(manager.check_position_exit(position, 0.62, 10.0))
        rec = manager.check_position_exit(position, 0.62, 2.5)
        assert rec.kind is ExitKind.TIME_DECAY
        assert rec.fraction == pytest.approx(0.50 - 0.33)

    def test_final_step_is_full_close(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.50)
        rec = manager.check_position_exit(position, 0.50, 0.5)
        assert rec.is_full_close
        result = manager.execute_exit(rec)
        assert result.success
        assert ledger.open_positions() == []

    def test_process_exits_filters_market(self):
        ledger, manager, _ = _setup()
        _open(ledger, entry_price=0.50, market_id="m-1")
        _open(ledger, entry_price=0.50, market_id="m-2", strategy_id="B")
        results = manager.process_exits({Side.UP: 0.5, Side.DOWN: 0.5}, 0.5, "m-1")
        assert len(results) == 1
        assert [p.market_id for p in ledger.open_positions()] == ["m-2"]


class TestEntryGate:
    def test_max_positions_per_market_per_side(self):
        ledger, manager, risk = _setup()
        _open(ledger, strategy_id="A")
        _open(ledger, strategy_id="B")
        ok, reason = manager.should_enter(Side.UP, "m-1", risk)
        assert not ok
        assert reason == "max_positions_per_market"
        assert manager.should_enter(Side.DOWN, "m-1", risk) == (True, None)
        assert manager.should_enter(Side.UP, "m-2", risk) == (True, None)

    def test_risk_block_propagates(self):
        ledger, manager, risk = _setup()
        risk.trigger_emergency_stop("test")
        assert manager.should_enter(Side.UP, "m-1", risk) == (False, "emergency")

    def test_position_summary(self):
        ledger, manager, _ = _setup()
        position = _open(ledger, entry_price=0.40)
        manager.execute_exit(manager.check_position_exit(position, 0.62, 10.0))
        summary = manager.position_summary()
        assert summary[0]["fired_levels"] == [1.5]
        assert summary[0]["scaled_out_percent"] == pytest.approx(0.33)
