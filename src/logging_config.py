"""
Logging configuration for the simulation scripts.
"""

import logging
import sys
from typing import Optional

LOGGER_NAMES = ("bmode_processing", "acquisition", "pulse_echo_engine", "single_point_scatterer")


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Send the simulation modules' log records to stdout and, optionally, a file.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file.
    """
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S"
    )
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        # Avoid duplicate records when called twice in one process
        if logger.hasHandlers():
            logger.handlers.clear()
        for handler in handlers:
            logger.addHandler(handler)
