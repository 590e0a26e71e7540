"""
Logging setup for Kiosk Screen Agent.
Every module gets its logger through setup_logger(__name__).
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_root_level: Optional[int] = None


def _resolve_level(level: Optional[str]) -> int:
    """Map a level name (or KSA_LOG_LEVEL) to a logging level."""
    name = (level or os.environ.get('KSA_LOG_LEVEL') or 'INFO').upper()
    return getattr(logging, name, logging.INFO)


def set_log_level(level: str) -> None:
    """
    Change the level of every logger created by setup_logger.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ...)
    """
    global _root_level
    _root_level = _resolve_level(level)
    logging.getLogger('src').setLevel(_root_level)


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger.

    Handlers are attached once to the "src" parent logger so module
    loggers share one stream handler.

    Args:
        name: Logger name, normally __name__
        level: Optional level override for this logger

    Returns:
        Configured logging.Logger
    """
    global _root_level

    parent = logging.getLogger('src')
    if not parent.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        parent.addHandler(handler)
        if _root_level is None:
            _root_level = _resolve_level(None)
        parent.setLevel(_root_level)
        parent.propagate = False

    logger = logging.getLogger(name)
    if level:
        logger.setLevel(_resolve_level(level))
    return logger
