"""Logging configuration for the oss_stats command-line jobs."""

from __future__ import annotations

import logging
import sys

logger = logging.getLogger("oss_stats")

DEFAULT_FORMAT = "%(levelname)s %(name)s: %(message)s"
VERBOSE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Attach a stderr handler to the ``oss_stats`` logger.

    Args:
        verbose: Show DEBUG messages with timestamps and thread names.
        quiet: Only show WARNING and above.
    """
    logger.handlers.clear()

    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT if verbose else DEFAULT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level)
