"""Logging configuration for the valuation lab."""

from __future__ import annotations

import logging
import sys

from src.config import SETTINGS

_FORMAT = "%(asctime)s | %(name)-20s | %(levelname)-7s | %(message)s"


def setup_logger(name: str = "valuation_lab", level: str | None = None) -> logging.Logger:
    """Create and configure a logger.

    The level defaults to ``app.log_level`` from settings.yaml.
    """
    if level is None:
        level = SETTINGS.get("app", {}).get("log_level", "INFO")
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return logger
