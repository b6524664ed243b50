"""Logging setup for the appgen service."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stream handler to the ``appgen`` logger.

    Safe to call more than once; the level is updated and no duplicate handler
    is added.
    """
    logger = logging.getLogger("appgen")
    logger.setLevel(level.upper())
    if not any(getattr(handler, "_appgen", False) for handler in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._appgen = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
