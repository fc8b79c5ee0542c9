"""
Free lists of reusable value buffers, keyed by element type.
"""

from __future__ import annotations

from typing import Dict, List, Sequence

import numpy as np

from compnet.graph.node import ElementType
from compnet.utils.logging import get_logger

logger = get_logger(__name__)


def _base_buffer(buffer: np.ndarray) -> np.ndarray:
    while isinstance(buffer.base, np.ndarray):
        buffer = buffer.base
    return buffer


class MatrixPool:
    """
    Released buffers are kept as flat arrays; ``acquire`` hands out a
    reshaped view onto the smallest released buffer that is large enough,
    or allocates a new one.
    """

    def __init__(self) -> None:
        self._released: Dict[ElementType, List[np.ndarray]] = {t: [] for t in ElementType}
        self.allocations = 0
        self.reuses = 0

    def released_matrices(self, element_type: ElementType) -> List[np.ndarray]:
        return self._released[ElementType(element_type)]

    def acquire(self, element_type: ElementType, shape: Sequence[int]) -> np.ndarray:
        element_type = ElementType(element_type)
        shape = tuple(int(dim) for dim in shape)
        size = int(np.prod(shape, dtype=np.int64))
        free = self._released[element_type]

        best = None
        for idx, candidate in enumerate(free):
            if candidate.size >= size and (best is None or candidate.size < free[best].size):
                best = idx

        if best is None:
            base = np.empty(size, dtype=element_type.dtype)
            self.allocations += 1
        else:
            base = free.pop(best)
            self.reuses += 1
            logger.debug("Reusing %d-element %s buffer for %s.", base.size, element_type.value, shape)
        return base[:size].reshape(shape)

    def release(self, buffer: np.ndarray) -> None:
        base = _base_buffer(buffer)
        free = self._released[ElementType.from_dtype(base.dtype)]
        if any(existing is base for existing in free):
            return
        free.append(base)

    def clear(self) -> None:
        for free in self._released.values():
            free.clear()

    def released_bytes(self) -> int:
        return sum(buf.nbytes for free in self._released.values() for buf in free)

    def __len__(self) -> int:
        return sum(len(free) for free in self._released.values())
