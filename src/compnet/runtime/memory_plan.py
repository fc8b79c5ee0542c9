from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, List, Set, Tuple

from compnet.graph.node import ComputationNode, Shape
from compnet.graph.topo import EvaluationOrder
from compnet.runtime.matrix_pool import MatrixPool


@dataclass(frozen=True)
class BufferStep:
    step: int
    node: str
    acquires: bool
    releasing: Tuple[str, ...]


@dataclass
class PassStats:
    peak_memory_bytes: int = 0
    acquired: int = 0
    released: int = 0


def holds_persistent_value(node: ComputationNode) -> bool:
    """Parameters, inputs and cached statistics keep their values across passes."""
    return node.is_learnable_parameter or node.is_input_value or node.requires_precompute


def plan_buffer_lifetimes(order: EvaluationOrder, keep: Iterable[str] = ()) -> List[BufferStep]:
    """
    Walk ``order`` and decide, per step, whether the node needs a transient
    buffer and which inputs' buffers die after their last consumer.

    Recurrent-loop members carry state across time steps and are only
    released at the end of the pass; so are nodes named in ``keep``.
    """
    pinned: Set[str] = set(keep)
    pinned.add(order.root.name)
    for loop in order.loops:
        pinned.update(loop.names)
    persistent = {node.name for node in order if holds_persistent_value(node)}

    needed_by = {node.name: 0 for node in order}
    for node in order:
        for inp in node.inputs:
            if inp is not None:
                needed_by[inp.name] = needed_by.get(inp.name, 0) + 1

    steps: List[BufferStep] = []
    released: Set[str] = set()
    for idx, node in enumerate(order):
        releasing: List[str] = []
        for inp in node.inputs:
            if inp is None:
                continue
            needed_by[inp.name] -= 1
            if (
                needed_by[inp.name] <= 0
                and inp.name not in pinned
                and inp.name not in persistent
                and inp.name not in released
            ):
                released.add(inp.name)
                releasing.append(inp.name)
        steps.append(
            BufferStep(
                step=idx,
                node=node.name,
                acquires=node.name not in persistent,
                releasing=tuple(releasing),
            )
        )
    return steps


def value_shape(node: ComputationNode, minibatch_size: int) -> Shape:
    if node.shape is None:
        raise ValueError(f"Node `{node.name}` has not been validated.")
    rows, cols = node.shape
    if node.has_mb_layout:
        return (rows, cols * minibatch_size)
    return (rows, cols)


def run_pass(
    order: EvaluationOrder,
    pool: MatrixPool,
    compute: Callable[[ComputationNode], None],
    *,
    minibatch_size: int = 1,
    keep: Iterable[str] = (),
) -> PassStats:
    """
    Drive one evaluation pass: give every transient node a pooled buffer,
    call ``compute(node)`` in order, and hand buffers back to the pool as
    soon as nothing downstream reads them. Buffers of the root and of
    ``keep`` stay attached to their nodes until the next pass over them.
    If ``compute`` raises, every other buffer is returned before the error
    propagates.
    """
    if minibatch_size <= 0:
        raise ValueError("minibatch_size must be positive.")

    keep = set(keep)
    plan = plan_buffer_lifetimes(order, keep)
    by_name = {node.name: node for node in order}
    stats = PassStats()
    live_bytes = 0
    attached: List[ComputationNode] = []

    def _release(node: ComputationNode) -> None:
        nonlocal live_bytes
        if node.value is None:
            return
        live_bytes -= node.value.nbytes
        pool.release(node.value)
        node.value = None
        stats.released += 1

    # Buffers left on the root and on kept nodes by an earlier pass.
    for entry in plan:
        node = by_name[entry.node]
        if entry.acquires and node.value is not None:
            pool.release(node.value)
            node.value = None

    keep.add(order.root.name)
    try:
        for entry in plan:
            node = by_name[entry.node]
            if entry.acquires:
                node.value = pool.acquire(node.element_type, value_shape(node, minibatch_size))
                live_bytes += node.value.nbytes
                stats.acquired += 1
                attached.append(node)
                stats.peak_memory_bytes = max(stats.peak_memory_bytes, live_bytes)

            compute(node)

            for name in entry.releasing:
                _release(by_name[name])
    finally:
        for node in attached:
            if node.name not in keep:
                _release(node)

    return stats
