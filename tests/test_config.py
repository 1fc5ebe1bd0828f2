import os
import unittest
from unittest import mock

from updown_trader.config import (
    DrawdownStep,
    EngineConfig,
    PerformanceConfig,
    RiskConfig,
    SignalConfig,
    TraderConfig,
)
from updown_trader.errors import ConfigError
from updown_trader.models import Regime


class TestTraderConfig(unittest.TestCase):
    def test_defaults_validate(self):
        cfg = TraderConfig().validate()
        self.assertEqual(cfg.session.initial_balance, 500.0)
        self.assertEqual(cfg.signals.conflict_threshold, 0.4)
        self.assertEqual(cfg.risk.hard_stop_drawdown, 0.10)
        self.assertIn(Regime.CHOP, cfg.routing)
        self.assertFalse(cfg.engine.live_enabled)
        self.assertTrue(cfg.engine.dry_run)

    def test_config_error_is_value_error(self):
        self.assertTrue(issubclass(ConfigError, ValueError))

    def test_rejects_invalid_values(self):
        with self.assertRaises(ConfigError):
            RiskConfig(min_bet_size=-1).validate()
        with self.assertRaises(ConfigError):
            RiskConfig(min_bet_size=60, max_bet_size=50).validate()
        with self.assertRaises(ConfigError):
            SignalConfig(min_confidence=0.95, max_confidence=0.9).validate()
        with self.assertRaises(ConfigError):
            SignalConfig(conflict_threshold=1.5).validate()
        with self.assertRaises(ConfigError):
            PerformanceConfig(min_weight=3.0).validate()
        with self.assertRaises(ConfigError):
            EngineConfig(min_contract_price=0.9, max_contract_price=0.1).validate()

    def test_rejects_unsorted_drawdown_ladder(self):
        steps = (DrawdownStep(0.10, 0.0), DrawdownStep(0.05, 0.8))
        with self.assertRaises(ConfigError):
            RiskConfig(drawdown_steps=steps).validate()

    def test_hard_stop_absent_without_zero_step(self):
        risk = RiskConfig(drawdown_steps=(DrawdownStep(0.05, 0.8),))
        self.assertIsNone(risk.hard_stop_drawdown)

    def test_from_env(self):
        env = {
            "UPDOWN_INITIAL_BALANCE": "1000",
            "UPDOWN_MIN_STRATEGIES": "2",
            "UPDOWN_MAX_BET": "25",
            "UPDOWN_INDIVIDUAL_STRATEGIES": "yes",
            "UPDOWN_DB_PATH": "  ",
        }
        with mock.patch.dict(os.environ, env, clear=False):
            cfg = TraderConfig.from_env()
        self.assertEqual(cfg.session.initial_balance, 1000.0)
        self.assertEqual(cfg.signals.min_strategies_to_trade, 2)
        self.assertEqual(cfg.risk.max_bet_size, 25.0)
        self.assertTrue(cfg.engine.trade_individual_strategies)
        self.assertIsNone(cfg.engine.db_path)

    def test_from_env_invalid_raises(self):
        with mock.patch.dict(os.environ, {"UPDOWN_MIN_BET": "100", "UPDOWN_MAX_BET": "10"}, clear=False):
            with self.assertRaises(ConfigError):
                TraderConfig.from_env()


if __name__ == "__main__":
    unittest.main()
