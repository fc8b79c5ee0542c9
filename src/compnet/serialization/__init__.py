"""
Binary model format: section-marked stream plus network Save/Load.
"""

from .stream import ModelStream, memory_stream
from .model_io import (
    load_network,
    read_network,
    read_network_from_stream,
    reload_persistable_parameters,
    save_network,
    write_network,
)

__all__ = [
    "ModelStream",
    "memory_stream",
    "load_network",
    "read_network",
    "read_network_from_stream",
    "reload_persistable_parameters",
    "save_network",
    "write_network",
]
