"""Logging configuration for the geolayers service.

Modules obtain their logger with ``logging.getLogger(__name__)``; this module
attaches a single console handler to the ``geolayers`` package logger so the
level can be driven from settings.

Example:
    >>> from geolayers.core.logging import setup_logging
    >>> setup_logging("DEBUG")
"""

import logging
import sys

LOGGER_NAME = "geolayers"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger with a console handler.

    Calling this more than once replaces the previous handler instead of
    stacking duplicates.

    Args:
        level: Logging level name such as "INFO" or "DEBUG".

    Returns:
        The configured ``geolayers`` logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console)
    return logger
