"""
Logging setup for Shelfcast processes
"""

import logging
from typing import Union


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def setup_logging(level: Union[str, int] = "INFO"):
    """
    Configure root logging for a Shelfcast process

    Args:
        level: Log level name or number
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT)

    # Quiet chatty third-party loggers unless debugging
    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
