"""Logging configuration for the gateway."""

import logging
import sys

from .config import settings

LOGGER_NAME = "gateway"


def setup_logging() -> logging.Logger:
    """Attach a single stderr handler to the ``gateway`` logger hierarchy."""
    logger = logging.getLogger(LOGGER_NAME)
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level, logging.INFO)
    logger.setLevel(level)

    # Avoid duplicate handlers when the app module is reloaded
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    logger.propagate = True
    return logger
