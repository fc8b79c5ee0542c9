"""
Runtime support for evaluating compiled networks.

This layer is responsible for:
- Pooling transient value buffers across passes.
- Planning buffer lifetimes along an evaluation order.
- Deciding which process performs writes in a distributed group.
"""

from .matrix_pool import MatrixPool
from .memory_plan import BufferStep, PassStats, plan_buffer_lifetimes, run_pass
from .leader import RankDesignation, SingleProcess, WriterDesignation

__all__ = [
    "MatrixPool",
    "BufferStep",
    "PassStats",
    "plan_buffer_lifetimes",
    "run_pass",
    "RankDesignation",
    "SingleProcess",
    "WriterDesignation",
]
