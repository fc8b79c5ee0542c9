"""
Global / experimental configuration flags.
"""

import os
from dataclasses import dataclass, field


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CompnetConfig:
    debug: bool = field(default_factory=lambda: _env_flag("COMPNET_DEBUG"))
    log_level: str = field(default_factory=lambda: os.getenv("COMPNET_LOG_LEVEL", "WARNING"))
    # suffix of the scratch file written before the atomic rename on save
    tmp_suffix: str = ".tmp"
    default_aligned_size: int = 1


config = CompnetConfig()
