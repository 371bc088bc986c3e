"""Logging setup for the crashwire logger hierarchy."""

from __future__ import annotations

import logging
import sys

LOGGER_NAME = "crashwire"

_handler: logging.Handler | None = None


def configure_logging(debug: bool) -> logging.Logger:
    """Route crashwire diagnostics to stderr when debug is enabled.

    Without debug nothing is attached, so only warnings reach the host
    application's own logging setup (or Python's last-resort handler).
    """
    global _handler
    logger = logging.getLogger(LOGGER_NAME)
    if not debug:
        return logger

    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(logging.Formatter("crashwire: %(message)s"))
        logger.addHandler(_handler)
    logger.setLevel(logging.DEBUG)
    return logger
