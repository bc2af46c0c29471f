"""Logging setup for console entry points."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str | int = "INFO", console: Console | None = None) -> logging.Logger:
    """Route the ``handoff`` logger through rich. Safe to call more than once."""
    logger = logging.getLogger("handoff")
    logger.setLevel(level if isinstance(level, int) else level.upper())
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger
