"""
Root logger wiring for the CLI and backtests.

Every record is stamped with the market currently being traded so a day's
log can be split per 15-minute window.  The engine updates the stamp via
``set_market_context`` when a new market starts.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import List, Optional

_FORMAT = "%(asctime)s %(levelname)s [%(market_id)s] %(name)s: %(message)s"
_NO_MARKET = "-"

_current_market: Optional[str] = None


def set_market_context(market_id: Optional[str]) -> None:
    global _current_market
    _current_market = market_id


def current_market() -> Optional[str]:
    return _current_market


class MarketContextFilter(logging.Filter):
    """Adds ``market_id`` to records that do not carry one already."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "market_id"):
            record.market_id = _current_market or _NO_MARKET
        return True


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def _file_handler(path: str) -> logging.Handler:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    return logging.FileHandler(path, encoding="utf-8")


def build_handlers(*, log_file: str | None = None, console: bool = True) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(stream=sys.stderr))
    if log_file:
        handlers.append(_file_handler(str(log_file)))
    if not handlers:
        return [logging.NullHandler()]

    context = MarketContextFilter()
    formatter = logging.Formatter(_FORMAT)
    for handler in handlers:
        handler.addFilter(context)
        handler.setFormatter(formatter)
    return handlers


def configure_logging(
    *,
    level: int | str = logging.INFO,
    log_file: str | None = None,
    console: bool = True,
) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in build_handlers(log_file=log_file, console=console):
        root.addHandler(handler)
    root.setLevel(resolve_level(level))
