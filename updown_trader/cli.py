from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace

from updown_trader.backtest import load_frames, run_backtest
from updown_trader.config import TraderConfig
from updown_trader.errors import ConfigError
from updown_trader.logging_setup import configure_logging
from updown_trader.models import Regime
from updown_trader.persistence import SqliteStore, StoreSink
from updown_trader.regime import RegimeRouter
from updown_trader.strategies import default_strategies

log = logging.getLogger(__name__)


def _load_dotenv_if_present() -> None:
    if not os.path.exists(".env"):
        return
    with open(".env", "r", encoding="utf-8") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            os.environ.setdefault(k.strip(), v.strip().strip('"').strip("'"))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="updown-trader", description="Signal aggregation engine for 15-minute UP/DOWN markets")
    p.add_argument("--log-file", default=None, help="Also write logs to this file")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    bt = sub.add_parser("backtest", help="Replay recorded frames (JSON lines) through the engine")
    bt.add_argument("--frames", required=True, help="Path to a JSON-lines frame file")
    bt.add_argument("--balance", type=float, default=None, help="Override UPDOWN_INITIAL_BALANCE")
    bt.add_argument("--db-path", default=None, help="Override UPDOWN_DB_PATH")
    bt.add_argument("--trades-csv", default=None, help="Write closed trades to this CSV")
    bt.add_argument("--individual", action="store_true", help="Also open one position per strategy signal")

    sub.add_parser("strategies", help="List strategies and regime routing")
    return p


def _cmd_backtest(args: argparse.Namespace, cfg: TraderConfig) -> int:
    if args.balance is not None:
        cfg = replace(cfg, session=replace(cfg.session, initial_balance=float(args.balance)))
    engine_cfg = cfg.engine
    if args.db_path:
        engine_cfg = replace(engine_cfg, db_path=args.db_path)
    if args.individual:
        engine_cfg = replace(engine_cfg, trade_individual_strategies=True)
    # Replays never reach a live venue.
    cfg = replace(cfg, engine=replace(engine_cfg, live_enabled=False, dry_run=True)).validate()

    frames = load_frames(args.frames)
    if not frames:
        print(f"No frames in {args.frames}", file=sys.stderr)
        return 2

    store = SqliteStore(cfg.engine.db_path) if cfg.engine.db_path else None
    run_id = store.start_run(cfg) if store else None
    try:
        sink = StoreSink(store, run_id) if store is not None and run_id is not None else None
        report = run_backtest(frames, cfg, default_strategies(), sink=sink)
        if store is not None and run_id is not None:
            store.end_run(run_id, report.to_dict())
    finally:
        if store is not None:
            store.close()

    if args.trades_csv:
        path = report.export_trades_csv(args.trades_csv)
        log.info("Trades written to %s", path)

    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0


def _cmd_strategies(cfg: TraderConfig) -> int:
    router = RegimeRouter(cfg.routing, max_confidence=cfg.signals.max_confidence)
    strategies = default_strategies()
    for strategy in strategies:
        print(strategy.describe())
    summaries = [router.routing_summary(strategies, regime) for regime in Regime]
    print(json.dumps(summaries, indent=2, default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    _load_dotenv_if_present()
    args = build_parser().parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO, log_file=args.log_file)

    try:
        cfg = TraderConfig.from_env()
        if args.command == "backtest":
            return _cmd_backtest(args, cfg)
        if args.command == "strategies":
            return _cmd_strategies(cfg)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
