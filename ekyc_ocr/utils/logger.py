"""Logging for the verification service and its command line tools.

Background extraction runs finish after the request that started them has
returned, so the log is where their outcome shows up. Record creation,
recognizer pool start and stop, run transitions and officer decisions all
log under their module name with the verification or document id in the
message, so one grep follows a verification from upload to approval.
``main`` and ``cli`` both call :func:`setup_logging` before doing any work.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO") -> None:
    """Send all service logs to stdout in one format.

    Uvicorn and the CLI both call this; later calls keep the first handler.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger instance.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)
