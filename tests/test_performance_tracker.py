"""Tests for rolling strategy performance and weighting."""

import pytest

from updown_trader.config import PerformanceConfig
from updown_trader.models import Regime
from updown_trader.performance import PerformanceTracker


def _tracker(**overrides) -> PerformanceTracker:
    return PerformanceTracker(PerformanceConfig(**overrides), clock=lambda: 1_700_000_000.0)


def _feed(tracker: PerformanceTracker, name: str, results):
    for won in results:
        tracker.record_outcome(name, won, 10.0 if won else -10.0, Regime.RANGE)


class TestWeights:
    def test_neutral_without_history(self):
        tracker = _tracker()
        assert tracker.get_win_rate("NEW") == 0.5
        assert tracker.get_weight("NEW") == 1.0
        assert not tracker.is_excluded("NEW")

    def test_default_weight_below_min_trades(self):
        tracker = _tracker()
        _feed(tracker, "A", [True] * 4)
        assert tracker.get_weight("A") == 1.0

    @pytest.mark.parametrize(
        "results, expected",
        [
            ([True] * 5, 2.0),
            ([True, True, True, True, False], 2.0),
            ([True, True, True, False, False], 1.5),
            ([True, True, False, False, False], 0.5),
            ([True, False, False, False, False], 0.1),
        ],
    )
    def test_weight_ladder(self, results, expected):
        tracker = _tracker(exclude_zero_wins_after=100, exclude_low_win_rate_after=100)
        _feed(tracker, "A", results)
        assert tracker.get_weight("A") == pytest.approx(expected)

    def test_weight_stays_within_bounds(self):
        tracker = _tracker(min_weight=0.2, max_weight=1.6)
        _feed(tracker, "HOT", [True] * 10)
        _feed(tracker, "COLD", [False] * 10)
        assert tracker.get_weight("HOT") == pytest.approx(1.6)
        assert tracker.get_weight("COLD") == pytest.approx(0.2)

    def test_window_evicts_old_outcomes(self):
        tracker = _tracker(window_size=10)
        _feed(tracker, "A", [False] * 10 + [True] * 10)
        assert tracker.get_win_rate("A") == pytest.approx(1.0)
        assert tracker.sample_count("A") == 10
        report = tracker.generate_report()["strategies"]["A"]
        assert report["total_trades"] == 20
        assert report["losses"] == 10


class TestExclusion:
    def test_three_straight_losses_exclude(self):
        tracker = _tracker()
        _feed(tracker, "A", [False, False])
        assert not tracker.is_excluded("A")
        _feed(tracker, "A", [False])
        assert tracker.is_excluded("A")

    def test_low_win_rate_excludes_after_five(self):
        tracker = _tracker()
        _feed(tracker, "A", [True, False, False, False, False])
        assert tracker.is_excluded("A")

    def test_recovery_lifts_exclusion(self):
        tracker = _tracker(window_size=5)
        _feed(tracker, "A", [False] * 5)
        assert tracker.is_excluded("A")
        _feed(tracker, "A", [True] * 3)
        assert not tracker.is_excluded("A")


class TestDiagnostics:
    def test_underperformers_and_top_performers(self):
        tracker = _tracker(exclude_zero_wins_after=100, exclude_low_win_rate_after=100)
        _feed(tracker, "GOOD", [True] * 6)
        _feed(tracker, "BAD", [False] * 6)
        _feed(tracker, "FEW", [False] * 2)
        under = [u["name"] for u in tracker.identify_underperformers()]
        assert under == ["BAD"]
        top = tracker.top_performers(1)
        assert top[0]["name"] == "GOOD"

    def test_performance_by_regime(self):
        tracker = _tracker()
        tracker.record_outcome("A", True, 5.0, Regime.TREND_UP)
        tracker.record_outcome("A", False, -3.0, Regime.TREND_UP)
        tracker.record_outcome("A", True, 2.0, None)
        by_regime = tracker.performance_by_regime("A")
        assert by_regime["TREND_UP"]["trades"] == 2
        assert by_regime["TREND_UP"]["win_rate"] == pytest.approx(0.5)
        assert by_regime["UNKNOWN"]["pnl"] == pytest.approx(2.0)
        assert tracker.performance_by_regime("missing") == {}

    def test_diagnostics_do_not_mutate(self):
        tracker = _tracker()
        _feed(tracker, "A", [True, False, True, True, True, False])
        before = tracker.export_state()
        tracker.generate_report()
        tracker.get_all_weights()
        tracker.identify_underperformers(0.9)
        assert tracker.export_state() == before

    def test_export_import_round_trip(self):
        tracker = _tracker()
        _feed(tracker, "A", [True, True, False, True, True])
        restored = _tracker()
        restored.import_state(tracker.export_state())
        assert restored.get_weight("A") == tracker.get_weight("A")
        assert restored.sample_count("A") == 5
        restored.reset()
        assert restored.sample_count("A") == 0
