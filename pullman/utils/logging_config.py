"""Centralized logging configuration for Pullman."""

import logging
import os
import sys


def configure_logging() -> None:
    """Configure logging for Pullman worker processes.

    Respects PULLMAN_LOG_LEVEL environment variable:
    - DEBUG: Verbose logging, including every fetch batch
    - INFO: Loop state changes and subscriptions
    - WARNING: Backoffs and lost locks (default)
    - ERROR: Error and above
    """
    log_level_name = os.getenv("PULLMAN_LOG_LEVEL", "WARNING").upper()
    log_level = getattr(logging, log_level_name, logging.WARNING)

    logging.basicConfig(
        level=log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )

    for handler in logging.getLogger().handlers:
        handler.setLevel(log_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
