"""
Miscellaneous utilities shared across compnet.
"""

from .logging import configure_logging, get_logger, logger
from .config import config

__all__ = ["logger", "get_logger", "configure_logging", "config"]
