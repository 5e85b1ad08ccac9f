"""Logging setup for the Remind Me engine.

One dated log file per day under LOG_DIR, plus console output when run
from a terminal. APScheduler's own logger is attached to the same handlers
so job errors end up next to the engine's messages.
"""

import logging
import sys
from datetime import datetime

from config import LOG_DIR, LOG_LEVEL


def _handlers() -> list[logging.Handler]:
    log_file = LOG_DIR / f"{datetime.now().strftime('%Y-%m-%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    handlers: list[logging.Handler] = [file_handler]

    # Console only when attached to a terminal (not under a service manager)
    if sys.stdout is not None and sys.stdout.isatty():
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(message)s",
            datefmt="%H:%M:%S"
        ))
        handlers.append(console_handler)

    return handlers


def setup_logging() -> logging.Logger:
    """Configure the engine logger and APScheduler's logger."""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    handlers = _handlers()

    logger = logging.getLogger("remind_me")
    logger.setLevel(level)
    logger.handlers.clear()
    for handler in handlers:
        logger.addHandler(handler)

    scheduler_logger = logging.getLogger("apscheduler")
    scheduler_logger.setLevel(logging.WARNING)
    scheduler_logger.handlers.clear()
    for handler in handlers:
        scheduler_logger.addHandler(handler)
    scheduler_logger.propagate = False

    return logger


# Global logger instance
logger = setup_logging()
