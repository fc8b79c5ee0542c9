from __future__ import annotations

import numpy as np

from compnet.graph.node import ElementType
from compnet.runtime.matrix_pool import MatrixPool


def test_acquire_allocates_then_reuses_released_buffer() -> None:
    pool = MatrixPool()
    first = pool.acquire(ElementType.FLOAT, (4, 3))
    assert first.shape == (4, 3)
    assert first.dtype == np.float32
    assert pool.allocations == 1

    pool.release(first)
    second = pool.acquire(ElementType.FLOAT, (2, 5))

    assert pool.reuses == 1
    assert second.shape == (2, 5)
    assert np.shares_memory(first, second)
    assert len(pool) == 0


def test_free_lists_are_per_element_type() -> None:
    pool = MatrixPool()
    pool.release(pool.acquire(ElementType.DOUBLE, (3, 3)))

    single = pool.acquire(ElementType.FLOAT, (2, 2))

    assert single.dtype == np.float32
    assert pool.reuses == 0
    assert len(pool.released_matrices(ElementType.DOUBLE)) == 1


def test_best_fit_and_too_small_buffers() -> None:
    pool = MatrixPool()
    big = pool.acquire(ElementType.FLOAT, (10, 10))
    small = pool.acquire(ElementType.FLOAT, (3, 3))
    pool.release(big)
    pool.release(small)

    reused = pool.acquire(ElementType.FLOAT, (2, 4))
    assert np.shares_memory(reused, small)

    fresh = pool.acquire(ElementType.FLOAT, (20, 20))
    assert not np.shares_memory(fresh, big)
    assert pool.allocations == 3


def test_release_is_idempotent_and_clear_empties_pool() -> None:
    pool = MatrixPool()
    buf = pool.acquire(ElementType.DOUBLE, (2, 2))
    pool.release(buf)
    pool.release(buf)

    assert len(pool) == 1
    assert pool.released_bytes() == 4 * 8

    pool.clear()
    assert len(pool) == 0
