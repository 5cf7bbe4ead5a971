"""Logging setup utilities for termlink.

Configures logging for the server and both client programs based on
the logging configuration settings.
"""

from __future__ import annotations

import logging
import sys

from termlink.config.settings import LoggingConfig


def setup_logging(config: LoggingConfig | None = None, verbose: bool = False) -> None:
    """Configure logging for the termlink application.

    Sets up the ``termlink`` logger with the configured level, format,
    and optional file handler.

    Args:
        config: Logging configuration. If None, uses defaults
                (INFO level, stderr output).
        verbose: Force DEBUG level regardless of the configured level.
    """
    if config is None:
        config = LoggingConfig()

    level = "DEBUG" if verbose else config.level
    root_logger = logging.getLogger("termlink")
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(config.format)

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (optional)
    if config.file:
        file_handler = logging.FileHandler(config.file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    root_logger.info("Logging initialized at %s level", level)
