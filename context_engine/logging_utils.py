"""Logging setup for the context engine.

Modules log through ``logging.getLogger(__name__)``; applications call
:func:`setup_logging` once to attach handlers.
"""

import logging
import os
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_LEVEL_ENV = "CONTEXT_ENGINE_LOG_LEVEL"
LOG_FILE_ENV = "CONTEXT_ENGINE_LOG_FILE"

ROOT_LOGGER_NAME = "context_engine"


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the package logger.

    Args:
        level: Level name (e.g. "DEBUG"). Defaults to $CONTEXT_ENGINE_LOG_LEVEL or INFO.
        log_file: Optional path for a file handler. Defaults to $CONTEXT_ENGINE_LOG_FILE.

    Returns:
        The configured ``context_engine`` logger. Calling this again replaces
        the handlers instead of stacking them.
    """
    level_name = (level or os.getenv(LOG_LEVEL_ENV, "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    log_file = log_file or os.getenv(LOG_FILE_ENV)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the package logger."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
