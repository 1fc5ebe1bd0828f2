import unittest

from updown_trader.config import RegimeRoute
from updown_trader.models import Regime, Side, Signal
from updown_trader.regime import RegimeRouter
from updown_trader.strategies import MeanReversionStrategy, MomentumStrategy, RSIStrategy


class TestRegimeRouter(unittest.TestCase):
    def setUp(self) -> None:
        self.router = RegimeRouter()

    def test_default_table(self):
        r = self.router
        self.assertTrue(r.is_strategy_enabled("MOMENTUM", Regime.TREND_UP))
        self.assertFalse(r.is_strategy_enabled("MOMENTUM", Regime.RANGE))
        self.assertFalse(r.is_strategy_enabled("MEAN_REVERSION", Regime.TREND_DOWN))
        self.assertTrue(r.is_strategy_enabled("RSI", Regime.CHOP))
        self.assertAlmostEqual(r.size_multiplier(Regime.CHOP), 0.5)
        self.assertAlmostEqual(r.size_multiplier(Regime.TREND_UP), 1.0)
        self.assertAlmostEqual(r.confidence_boost("MOMENTUM", Regime.TREND_UP), 0.05)
        self.assertAlmostEqual(r.confidence_boost("RSI", Regime.TREND_UP), 0.0)

    def test_unknown_regime_uses_range_route(self):
        r = self.router
        self.assertIs(r.route_for("sideways-ish"), r.route_for(Regime.RANGE))
        self.assertTrue(r.is_strategy_enabled("MEAN_REVERSION", None))
        self.assertTrue(r.is_strategy_enabled("MEAN_REVERSION", "range"))

    def test_disable_wins_over_enable(self):
        router = RegimeRouter({Regime.RANGE: RegimeRoute(enabled=("A",), disabled=("A",))})
        self.assertFalse(router.is_strategy_enabled("A", Regime.RANGE))

    def test_empty_enable_list_allows_everything_not_disabled(self):
        router = RegimeRouter({Regime.RANGE: RegimeRoute(disabled=("B",))})
        self.assertTrue(router.is_strategy_enabled("A", Regime.RANGE))
        self.assertFalse(router.is_strategy_enabled("B", Regime.RANGE))

    def test_eligible_honours_declared_compatibility(self):
        router = RegimeRouter({regime: RegimeRoute() for regime in Regime})
        strategies = [MomentumStrategy(), MeanReversionStrategy(), RSIStrategy()]
        names = [s.name for s in router.eligible(strategies, Regime.TREND_UP)]
        self.assertEqual(names, ["MOMENTUM", "RSI"])
        names = [s.name for s in router.eligible(strategies, Regime.RANGE)]
        self.assertEqual(names, ["MEAN_REVERSION", "RSI"])

    def test_adjust_signal_caps_boost(self):
        signal = Signal("MOMENTUM", Side.UP, 0.88)
        boosted = self.router.adjust_signal(signal, Regime.TREND_UP)
        self.assertAlmostEqual(boosted.confidence, 0.90)
        self.assertAlmostEqual(boosted.raw_confidence, 0.88)
        self.assertAlmostEqual(boosted.regime_boost, 0.05)
        self.assertAlmostEqual(signal.confidence, 0.88)

    def test_summaries(self):
        summary = self.router.routing_summary([MomentumStrategy(), RSIStrategy()], Regime.CHOP)
        self.assertEqual(summary["regime"], "CHOP")
        self.assertEqual(summary["disabled"], ["MOMENTUM"])
        self.assertEqual([e["name"] for e in summary["enabled"]], ["RSI"])
        recs = self.router.recommended_strategies(Regime.TREND_UP)
        self.assertEqual(recs[0]["boost"], 0.05)
        self.assertIn("mean reversion", RegimeRouter.describe("RANGE"))
        self.assertEqual(RegimeRouter.describe("???"), "Unknown regime")


if __name__ == "__main__":
    unittest.main()
