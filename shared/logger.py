"""
Console logging for canvasflow.

Every component logs to stdout with colored, pipe-separated output. The
level defaults to ``config.log_level``.

Usage:
    from shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Session opened")
"""

import logging
import sys
from typing import Dict, Optional

from shared.config import config

_loggers: Dict[str, logging.Logger] = {}


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname)
        if color is None:
            return super().format(record)
        # Work on a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def _resolve_level(level: Optional[int]) -> int:
    if level is not None:
        return level
    resolved = logging.getLevelName(config.log_level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get a logger that writes colored, structured lines to stdout.

    Args:
        name: Logger name (typically __name__ or component name)
        level: Logging level (default: ``config.log_level``)

    Returns:
        Configured logger instance
    """
    if name in _loggers:
        return _loggers[name]

    resolved = _resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(resolved)
    logger.propagate = False
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(resolved)
    console_handler.setFormatter(
        ColoredFormatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        )
    )
    logger.addHandler(console_handler)

    _loggers[name] = logger
    return logger
