"""Logging configuration for pelens."""
from __future__ import annotations

import logging
import sys

logger = logging.getLogger("pelens")


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """
    Configure the ``pelens`` logger.

    Args:
        verbose: Enable debug output
        quiet: Suppress all output except errors
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.WARNING

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname).1s] %(message)s"))

    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(handler)


def log_warning(msg: str) -> None:
    logger.warning(msg)


def log_debug(msg: str) -> None:
    logger.debug(msg)
