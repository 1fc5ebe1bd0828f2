from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from updown_trader.aggregator import SignalAggregator
from updown_trader.config import TraderConfig
from updown_trader.errors import RejectReason
from updown_trader.interfaces import (
    FeatureProvider,
    MarketProvider,
    OrderBackend,
    OrderRequest,
    RecordSink,
)
from updown_trader.ledger import Ledger
from updown_trader.logging_setup import set_market_context
from updown_trader.models import (
    AccountState,
    Action,
    ClosedTrade,
    Decision,
    MarketFeatures,
    MarketSnapshot,
    Regime,
    Side,
    Signal,
    Strength,
)
from updown_trader.performance import PerformanceTracker
from updown_trader.positions import ExitResult, PositionManager
from updown_trader.regime import RegimeRouter
from updown_trader.risk import RiskManager
from updown_trader.session import SessionState
from updown_trader.strategies.base import TradingStrategy

log = logging.getLogger(__name__)

AGGREGATED = "AGGREGATED"


@dataclass
class CycleReport:
    timestamp: float
    market_id: Optional[str] = None
    remaining_minutes: Optional[float] = None
    skipped: bool = False
    reason: Optional[str] = None
    decision: Optional[Decision] = None
    entries: List[str] = field(default_factory=list)
    exits: List[ExitResult] = field(default_factory=list)
    resolved: List[ClosedTrade] = field(default_factory=list)

    @property
    def entered(self) -> bool:
        return bool(self.entries)


class TradingEngine:
    """
    One polling cycle at a time: fetch, decide, persist.

    Owns the session-scoped stores (SessionState, Ledger,
    PerformanceTracker) and is their only mutator.  Any of the components
    can be injected; missing ones are built from ``config``.
    """

    def __init__(
        self,
        config: TraderConfig,
        strategies: Sequence[TradingStrategy],
        feature_provider: FeatureProvider,
        market_provider: MarketProvider,
        *,
        sink: RecordSink | None = None,
        order_backend: OrderBackend | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        session: SessionState | None = None,
        ledger: Ledger | None = None,
        tracker: PerformanceTracker | None = None,
        router: RegimeRouter | None = None,
        aggregator: SignalAggregator | None = None,
        risk: RiskManager | None = None,
        positions: PositionManager | None = None,
    ) -> None:
        self.config = config.validate()
        self.strategies = list(strategies)
        self.feature_provider = feature_provider
        self.market_provider = market_provider
        self.sink = sink
        self.order_backend = order_backend
        self._clock = clock
        self._sleep = sleep

        self.session = session or SessionState(config.session.initial_balance, config.risk, clock=clock)
        self.ledger = ledger or Ledger(self.session, config.risk, clock=clock)
        self.tracker = tracker or PerformanceTracker(config.performance, clock=clock)
        self.router = router or RegimeRouter(config.routing, max_confidence=config.signals.max_confidence)
        self.aggregator = aggregator or SignalAggregator(config.signals, self.router, self.tracker, clock=clock)
        self.risk = risk or RiskManager(config.risk, self.session, clock=clock)
        self.positions = positions or PositionManager(self.ledger, config.position, config.risk, clock=clock)

        self._market: Optional[MarketSnapshot] = None
        self._start_price: Optional[float] = None
        self._last_price: Optional[float] = None
        self._stop_requested = False
        self._looping = False
        self._drained: Optional[Dict[str, Any]] = None
        self.cycles = 0

        if self.config.engine.live_enabled and not self.config.engine.dry_run and order_backend is None:
            log.warning("Live trading enabled but no order backend configured; paper only.")

    # ── Loop ────────────────────────────────────────────────────────────

    def run_forever(self, max_cycles: int | None = None) -> Dict[str, Any]:
        """Run cycles until stopped (or ``max_cycles``), then drain and return the final report."""
        self._looping = True
        try:
            while not self._stop_requested:
                self.run_cycle()
                if max_cycles is not None and self.cycles >= max_cycles:
                    break
                if self._stop_requested:
                    break
                self._sleep(self.config.session.poll_seconds)
        finally:
            self._looping = False
        return self._drain()

    def stop(self) -> Optional[Dict[str, Any]]:
        """
        Request a graceful halt.

        Inside ``run_forever`` this only sets the flag: the in-flight cycle
        finishes and the loop drains.  Outside a loop the drain happens
        immediately and the final report is returned.
        """
        if not self._stop_requested:
            log.info("Stop requested")
        self._stop_requested = True
        if self._looping:
            return None
        return self._drain()

    def _drain(self) -> Dict[str, Any]:
        if self._drained is not None:
            return self._drained
        now = self._clock()
        if self._market is not None and self.ledger.open_positions(self._market.market_id):
            log.info("Force-resolving open positions of %s on stop", self._market.market_id)
            self._resolve_market(self._market, now)
        self._drained = self.final_report()
        log.info(
            "Session finished: balance=%.2f pnl=%+.2f trades=%d",
            self.session.balance, self.session.realized_pnl, self.session.trades_executed,
        )
        return self._drained

    # ── Cycle ───────────────────────────────────────────────────────────

    def run_cycle(self, now: float | None = None) -> CycleReport:
        now = self._clock() if now is None else now
        report = CycleReport(timestamp=now)
        self.cycles += 1

        # Suspension point 1: fetch. A failure skips the cycle and mutates nothing.
        try:
            market = self.market_provider.get_market()
            features = self.feature_provider.get_features()
        except Exception as exc:
            log.warning("Fetch failed, skipping cycle: %s", exc)
            report.skipped = True
            report.reason = RejectReason.FETCH_FAILED.value
            self._persist_error("fetch", str(exc))
            return report

        if self._market is None or market.market_id != self._market.market_id:
            if self._market is not None:
                report.resolved = self._resolve_market(self._market, now)
            self._start_market(market, features)
        self._market = market
        self._last_price = features.price

        remaining = market.remaining_minutes(now)
        report.market_id = market.market_id
        report.remaining_minutes = remaining

        report.exits = self.positions.process_exits(
            market.prices_by_side(), remaining, market.market_id, timestamp=now
        )
        for exit_result in report.exits:
            if exit_result.success:
                for trade in exit_result.result.trades:
                    self._persist_trade(trade)
                    if not trade.partial:
                        self._record_outcomes(trade)

        if self._stop_requested:
            report.reason = RejectReason.STOPPING.value
            return report

        blocked = self.risk.blocking_reason(now)
        if blocked is not None:
            log.warning("Entries blocked: %s", blocked)
            report.reason = RejectReason.RISK_BLOCKED.value
            return report

        engine_cfg = self.config.engine
        if not engine_cfg.min_entry_minutes <= remaining <= engine_cfg.max_entry_minutes:
            report.reason = RejectReason.OUTSIDE_ENTRY_WINDOW.value
            return report

        regime = features.regime
        signals = self.aggregator.collect_signals(self.strategies, features, regime, now)
        decision = self.aggregator.aggregate(signals, regime)
        report.decision = decision
        log.debug("Decision: %s", self.aggregator.summarize(decision))

        traded: List[str] = []
        position_id, reason = self._enter(
            AGGREGATED, decision, market, features, remaining, now, contributors=decision.contributors
        )
        self._persist_decision(market.market_id, decision, accepted=position_id is not None, reason=reason,
                               position_id=position_id)
        if position_id is not None:
            report.entries.append(position_id)
            traded.extend(decision.contributors)
        else:
            report.reason = reason

        if engine_cfg.trade_individual_strategies:
            for signal in signals:
                single = self._single_decision(signal, regime)
                pid, _ = self._enter(
                    signal.strategy_id, single, market, features, remaining, now, contributors=(signal.strategy_id,)
                )
                if pid is not None:
                    report.entries.append(pid)
                    if signal.strategy_id not in traded:
                        traded.append(signal.strategy_id)

        by_name = {s.name: s for s in self.strategies}
        for name in traded:
            strategy = by_name.get(name)
            if strategy is not None:
                strategy.record_trade(now)

        return report

    def _single_decision(self, signal: Signal, regime: Regime) -> Decision:
        """A lone signal as its own decision, for independent per-strategy entries."""
        cfg = self.config.signals
        confidence = max(cfg.min_confidence, min(cfg.max_confidence, signal.confidence))
        return Decision(
            action=Action.ENTER,
            side=signal.side,
            confidence=confidence,
            strength=self.aggregator.classify_strength(confidence, 1),
            agreement_count=1,
            contributing_signals=[signal],
            regime=regime,
        )

    def _enter(
        self,
        strategy_id: str,
        decision: Decision,
        market: MarketSnapshot,
        features: MarketFeatures,
        remaining: float,
        now: float,
        *,
        contributors: Sequence[str],
    ) -> tuple[Optional[str], Optional[str]]:
        """Gate, size and open one position. Returns (position_id, None) or (None, reason)."""
        if not decision.is_entry or decision.side is None:
            return None, decision.reason
        if decision.strength is Strength.INSUFFICIENT:
            return None, RejectReason.WEAK_SIGNAL.value

        side: Side = decision.side
        engine_cfg = self.config.engine
        market_price = market.price_for(side)
        if not engine_cfg.min_contract_price <= market_price <= engine_cfg.max_contract_price:
            log.info("Skip %s %s: contract price %.3f outside guard", strategy_id, side.value, market_price)
            return None, RejectReason.PRICE_OUT_OF_RANGE.value

        ok, gate_reason = self.positions.should_enter(side, market.market_id, self.risk, now)
        if not ok:
            if gate_reason == "max_positions_per_market":
                return None, RejectReason.MARKET_LIMIT.value
            return None, RejectReason.RISK_BLOCKED.value

        bet = self.ledger.calculate_bet_size(decision.confidence, strategy_id)
        base = bet.amount * self.router.size_multiplier(features.regime)
        size = self.risk.adjust_position_size(base, decision, self.ledger.open_positions())
        if size <= 0:
            return None, RejectReason.SIZE_TOO_SMALL.value

        entry_price = self.ledger.calculate_entry_price(market_price, decision.confidence, remaining)
        result = self.ledger.open_position(
            strategy_id=strategy_id,
            side=side,
            entry_price=entry_price,
            size=size,
            confidence=decision.confidence,
            market_id=market.market_id,
            timestamp=now,
            contributors=contributors,
            regime=features.regime,
        )
        if not result.success:
            log.info("Ledger rejected %s entry: %s", strategy_id, result.error)
            return None, RejectReason.LEDGER_REJECTED.value

        self._place_live_order(market, side, size, entry_price, result.position_id)
        return result.position_id, None

    def _place_live_order(
        self,
        market: MarketSnapshot,
        side: Side,
        size: float,
        price: float,
        position_id: Optional[str],
    ) -> None:
        cfg = self.config.engine
        if self.order_backend is None or cfg.dry_run or not cfg.live_enabled:
            return
        request = OrderRequest(
            token_id=market.token_for(side),
            side=side,
            size=size,
            price=price,
            market_id=market.market_id,
            position_id=position_id or "",
        )
        try:
            order_id = self.order_backend.place_order(request)
            log.info("Live order placed: %s (%s)", order_id, request.to_dict())
        except Exception as exc:
            # The paper ledger stays authoritative.
            log.error("Live order failed for %s: %s", position_id, exc)
            self._persist_error("place_order", str(exc))

    # ── Market lifecycle ────────────────────────────────────────────────

    def _start_market(self, market: MarketSnapshot, features: MarketFeatures) -> None:
        self._start_price = self._last_price if self._last_price is not None else features.price
        self.session.on_new_market(market.market_id)
        set_market_context(market.market_id)
        log.info("New market %s (start price %.2f)", market.market_id, self._start_price)

    def _resolve_market(self, market: MarketSnapshot, now: float) -> List[ClosedTrade]:
        """Close every position of ``market`` and feed outcomes back. Completes before any new entry."""
        start, end = self._start_price, self._last_price
        if start is None or end is None:
            outcome = Side.DOWN
        else:
            outcome = Side.UP if end > start else Side.DOWN
        log.info("Market %s resolved %s (%s -> %s)", market.market_id, outcome.value, start, end)

        trades: List[ClosedTrade] = []
        for result in self.ledger.close_all_for_market(market.market_id, outcome, end, now):
            if not result.success:
                log.error("Resolution close failed: %s", result.error)
                continue
            for trade in result.trades:
                trades.append(trade)
                self._persist_trade(trade)
                self._record_outcomes(trade)
        self.positions.on_market_change()
        return trades

    def _record_outcomes(self, trade: ClosedTrade) -> None:
        if trade.strategy_id == AGGREGATED and self.config.engine.trade_individual_strategies:
            # Strategies are scored by their own positions in this mode.
            return
        contributors = trade.contributors or (trade.strategy_id,)
        # Position P/L includes earlier partial exits.
        position_pnl = trade.pnl + sum(
            t.pnl for t in self.ledger.closed_trades if t.partial and t.position_id == trade.position_id
        )
        share = position_pnl / len(contributors)
        for strategy_id in contributors:
            self.tracker.record_outcome(strategy_id, trade.won, share, trade.regime, trade.close_time)
            self._persist_performance(strategy_id, trade.won, share)

    # ── Read side ───────────────────────────────────────────────────────

    def get_account_state(self) -> AccountState:
        return self.ledger.get_account_state()

    def get_risk_status(self) -> Dict[str, Any]:
        return self.risk.get_risk_status(self.ledger.open_positions())

    def get_all_strategy_summaries(self) -> List[Dict[str, Any]]:
        summaries = {s["strategy_id"]: s for s in self.ledger.get_all_strategy_summaries()}
        weights = self.tracker.get_all_weights()
        out = []
        for strategy in self.strategies:
            entry = dict(summaries.pop(strategy.name, {"strategy_id": strategy.name, "trades": 0, "total_pnl": 0.0}))
            entry.update(
                {
                    "weight": self.tracker.get_weight(strategy.name),
                    "rolling_win_rate": self.tracker.get_win_rate(strategy.name),
                    "excluded": weights.get(strategy.name, {}).get("excluded", False),
                }
            )
            out.append(entry)
        out.extend(summaries.values())
        out.sort(key=lambda s: s.get("total_pnl", 0.0), reverse=True)
        return out

    def final_report(self) -> Dict[str, Any]:
        return {
            "session": self.session.generate_summary(),
            "account": vars(self.get_account_state()).copy(),
            "stats": self.ledger.get_stats(),
            "strategies": self.get_all_strategy_summaries(),
            "performance": self.tracker.generate_report(),
            "risk": self.get_risk_status(),
            "cycles": self.cycles,
        }

    # ── Suspension point 2: persistence. Never fatal. ──────────────────

    def _persist_decision(
        self,
        market_id: str,
        decision: Decision,
        *,
        accepted: bool,
        reason: Optional[str],
        position_id: Optional[str] = None,
    ) -> None:
        if self.sink is None:
            return
        try:
            self.sink.record_decision(market_id, decision, accepted=accepted, reason=reason, position_id=position_id)
        except Exception as exc:
            log.error("Sink failed (decision): %s", exc)

    def _persist_trade(self, trade: ClosedTrade) -> None:
        if self.sink is None:
            return
        try:
            self.sink.record_trade(trade)
        except Exception as exc:
            log.error("Sink failed (trade): %s", exc)

    def _persist_performance(self, strategy_id: str, won: bool, pnl: float) -> None:
        if self.sink is None:
            return
        try:
            self.sink.record_performance(strategy_id, won=won, pnl=pnl, weight=self.tracker.get_weight(strategy_id))
        except Exception as exc:
            log.error("Sink failed (performance): %s", exc)

    def _persist_error(self, where: str, message: str) -> None:
        if self.sink is None:
            return
        try:
            self.sink.record_error(where, message)
        except Exception as exc:
            log.error("Sink failed (error record): %s", exc)
