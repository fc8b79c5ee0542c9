"""
Package-wide logger.

Modules bind ``logger = get_logger(__name__)``; records propagate to the
``compnet`` logger, which callers (or ``configure_logging``) attach handlers to.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from .config import config

LOGGER_NAME = "compnet"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(LOGGER_NAME)


def get_logger(name: str) -> logging.Logger:
    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logger.getChild(name)


def configure_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """
    Attach a stream handler to the package logger (once) and set its level.

    Args:
        level: Logging level; defaults to ``config.log_level`` or DEBUG when
            ``config.debug`` is set.
    """
    if level is None:
        level = "DEBUG" if config.debug else config.log_level
    if isinstance(level, str):
        level = level.upper()

    if not any(getattr(h, "_compnet_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._compnet_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    logger.setLevel(level)
    return logger
