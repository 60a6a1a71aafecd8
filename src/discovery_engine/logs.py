"""
Logging setup for command-line entry points.

Library modules only call ``logging.getLogger(__name__)``; handlers are
installed here, once, by whoever owns the process.
"""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "discovery_engine"
ENV_LOG_LEVEL = "DISCOVERY_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach a RichHandler to the package logger and set its level."""
    resolved = (level or os.getenv(ENV_LOG_LEVEL) or DEFAULT_LOG_LEVEL).upper()
    if not isinstance(logging.getLevelName(resolved), int):
        raise ValueError(f"Unknown log level: {resolved}")

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(resolved)
    if not any(isinstance(handler, RichHandler) for handler in logger.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger
