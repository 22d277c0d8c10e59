"""Log output setup for applications built on mcp_bearer."""

import logging
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

PACKAGE_LOGGER = "mcp_bearer"


def configure_logging(level: LogLevel = "INFO", *, console: Console | None = None) -> logging.Logger:
    """Send mcp_bearer's log records to a Rich handler on stderr.

    Only the package logger is changed; the root logger is left to the
    application. Calling this again just updates the level.

    Args:
        level: Level for the package logger.
        console: Console to write to instead of stderr.

    Returns:
        The package logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    if not any(isinstance(handler, RichHandler) for handler in logger.handlers):
        handler = RichHandler(console=console or Console(stderr=True), rich_tracebacks=True, show_path=False)
        logger.addHandler(handler)
    return logger
