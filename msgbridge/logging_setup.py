"""Logging configuration for the bridge."""

import logging
import sys


LOGGER_NAME = "msgbridge"


def setup_logging(debug: bool = False) -> logging.Logger:
    """Attach a stderr handler to the ``msgbridge`` logger; DEBUG level when ``debug``."""
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Clear any existing handlers so repeated setup does not duplicate output
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
