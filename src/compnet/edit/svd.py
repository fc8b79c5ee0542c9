"""
Low-rank rewrite of learnable parameter matrices.

A parameter ``A`` (m x n) is replaced by two parameters ``A-U`` (m x r) and
``A-V`` (r x n) feeding a ``Times`` node that takes over the name ``A``, so
every consumer now reads ``U @ V`` without being rewired.
"""

from __future__ import annotations

import re
import time
from typing import TYPE_CHECKING, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from compnet.errors import DuplicateNameError
from compnet.graph.node import ElementType
from compnet.graph.ops import LearnableParameterNode, TimesNode
from compnet.utils.config import config
from compnet.utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from compnet.graph.network import ComputationNetwork

logger = get_logger(__name__)


def choose_rank(singular_values: Sequence[float], keep_ratio: float, aligned_size: int = 1) -> int:
    """
    Number of singular values to keep.

    The unaligned rank is the shortest prefix of the (descending) spectrum
    whose sum exceeds ``keep_ratio`` of the total. When that is not a
    multiple of ``aligned_size`` it is rounded down to one, then grown by a
    block only while the result stays below the full rank.
    """
    if not 0.0 < keep_ratio <= 1.0:
        raise ValueError(f"keep_ratio must be in (0, 1], got {keep_ratio}.")
    if aligned_size < 1:
        raise ValueError(f"aligned_size must be at least 1, got {aligned_size}.")

    values = [float(v) for v in singular_values]
    full = len(values)
    if full == 0:
        return 0

    threshold = sum(values) * keep_ratio
    rank = full
    running = 0.0
    for idx, value in enumerate(values):
        running += value
        if running > threshold:
            rank = idx + 1
            break

    if rank % aligned_size != 0:
        lower = rank - rank % aligned_size
        if lower == 0:
            rank = min(aligned_size, full)
        elif lower + aligned_size < full:
            rank = lower + aligned_size
        else:
            rank = lower
    return rank


def factorize(
    matrix: np.ndarray, keep_ratio: float, aligned_size: int = 1
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Truncated SVD ``matrix ~= left @ right`` with the square roots of the
    kept singular values folded into both factors.
    """
    matrix = np.asarray(matrix)
    u, s, vt = np.linalg.svd(matrix.astype(np.float64), full_matrices=False)
    rank = choose_rank(s, keep_ratio, aligned_size)
    root = np.sqrt(s[:rank])
    left = u[:, :rank] * root[np.newaxis, :]
    right = vt[:rank, :] * root[:, np.newaxis]
    return left.astype(matrix.dtype), right.astype(matrix.dtype)


def _eligible(node: object, element_type: Optional[ElementType]) -> bool:
    if not isinstance(node, LearnableParameterNode):
        return False
    if element_type is not None and node.element_type is not element_type:
        return False
    rows, cols = node.value_as_matrix().shape
    return rows > 1 and cols > 1


def _collect_groups(
    network: "ComputationNetwork",
    svd_config: Mapping[str, float],
    element_type: Optional[ElementType],
) -> List[Tuple[List[str], float]]:
    groups: List[Tuple[List[str], float]] = []
    for pattern, keep_ratio in svd_config.items():
        regex = re.compile(pattern) if pattern else None
        names = [
            name
            for name, node in sorted(network.nodes.items())
            if (regex is None or regex.fullmatch(name)) and _eligible(node, element_type)
        ]
        groups.append((names, keep_ratio))
    return groups


def _rewrite_parameter(
    network: "ComputationNetwork",
    node: LearnableParameterNode,
    keep_ratio: float,
    aligned_size: int,
) -> None:
    matrix = node.value_as_matrix()
    rows, cols = matrix.shape

    started = time.perf_counter()
    left, right = factorize(matrix, keep_ratio, aligned_size)
    elapsed = time.perf_counter() - started
    rank = left.shape[1]
    logger.info(
        "SVD of %d x %d matrix `%s`: %.2f s; keeping %.1f%% energy => %d singular values "
        "(%.1f%% of parameters).",
        rows,
        cols,
        node.name,
        elapsed,
        keep_ratio * 100,
        rank,
        (rows + cols) * rank / (rows * cols) * 100,
    )

    options = dict(
        is_parameter_update_required=node.is_parameter_update_required,
        element_type=node.element_type,
        device_id=node.device_id,
    )
    u = network.add_node(LearnableParameterNode(f"{node.name}-U", value=left, **options))
    v = network.add_node(LearnableParameterNode(f"{node.name}-V", value=right, **options))
    product = TimesNode(node.name, element_type=node.element_type, device_id=node.device_id)
    product.attach_inputs([u, v])
    network.replace_node(node.name, product)


def perform_svd_decomposition(
    network: "ComputationNetwork",
    svd_config: Mapping[str, float],
    aligned_size: Optional[int] = None,
    element_type: Optional[ElementType] = None,
) -> List[str]:
    """
    Replace every eligible parameter matched by a pattern of ``svd_config``
    (pattern -> keep ratio, processed in mapping order) with its low-rank
    factorization, then recompile. Patterns must match the whole name; an
    empty pattern matches every parameter. A name rewritten by an earlier
    pattern is skipped. Returns the rewritten names.
    """
    network.verify_is_compiled("perform_svd_decomposition")
    if aligned_size is None:
        aligned_size = config.default_aligned_size
    if aligned_size < 1:
        raise ValueError(f"aligned_size must be at least 1, got {aligned_size}.")
    for keep_ratio in svd_config.values():
        if not 0.0 < keep_ratio <= 1.0:
            raise ValueError(f"keep_ratio must be in (0, 1], got {keep_ratio}.")

    # Each name goes to the first group that matches it.
    seen: Set[str] = set()
    groups: List[Tuple[List[str], float]] = []
    for names, keep_ratio in _collect_groups(network, svd_config, element_type):
        names = [name for name in names if name not in seen]
        seen.update(names)
        groups.append((names, keep_ratio))

    taken = sorted(
        target
        for names, _ in groups
        for name in names
        for target in (f"{name}-U", f"{name}-V")
        if network.has_node(target)
    )
    if taken:
        raise DuplicateNameError(
            "Cannot decompose: factor names already in use: " + ", ".join(taken)
        )

    order: List[str] = []
    for group_id, (names, keep_ratio) in enumerate(groups):
        logger.info("SVD: processing group %d with keep ratio %.2f.", group_id, keep_ratio)
        for name in names:
            node = network.get_node(name)
            _rewrite_parameter(network, node, keep_ratio, aligned_size)  # type: ignore[arg-type]
            order.append(name)

    network.compile_network()
    return order
