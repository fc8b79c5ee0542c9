"""
Evaluation order selection & recurrent-loop formation.

The order of a root is a deterministic topological sort of the subgraph
reachable from it. Strongly connected components (time recurrence) are
collapsed into ``RecurrentLoop`` units that appear as one contiguous step;
inside a loop the edges into PastValue/FutureValue nodes refer to another
time step and are ignored for ordering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Union

import networkx as nx

from compnet.errors import GraphValidationError
from compnet.graph.node import ComputationNode
from compnet.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RecurrentLoop:
    """Cluster of nodes with a cyclic dependency through time."""

    loop_id: int
    nodes: List[ComputationNode]
    direction: int  # +1: PastValue (forward in time), -1: FutureValue

    @property
    def names(self) -> List[str]:
        return [node.name for node in self.nodes]

    @property
    def delay_nodes(self) -> List[ComputationNode]:
        return [node for node in self.nodes if node.is_recurrent]

    def __contains__(self, node: object) -> bool:
        return any(member is node for member in self.nodes)


Step = Union[ComputationNode, RecurrentLoop]


@dataclass
class EvaluationOrder:
    root: ComputationNode
    steps: List[Step] = field(default_factory=list)
    loops: List[RecurrentLoop] = field(default_factory=list)

    def __post_init__(self) -> None:
        flat: List[ComputationNode] = []
        for step in self.steps:
            if isinstance(step, RecurrentLoop):
                flat.extend(step.nodes)
            else:
                flat.append(step)
        self.nodes = flat
        self._ids: Set[int] = {id(node) for node in flat}

    @property
    def names(self) -> List[str]:
        return [node.name for node in self.nodes]

    def __iter__(self) -> Iterator[ComputationNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node: object) -> bool:
        return id(node) in self._ids

    def loop_of(self, node: ComputationNode) -> Optional[RecurrentLoop]:
        for loop in self.loops:
            if node in loop:
                return loop
        return None


def reachable_nodes(root: ComputationNode) -> List[ComputationNode]:
    """
    Nodes reachable from ``root`` through input edges, in depth-first
    post-order (inputs before consumers wherever the graph is acyclic).
    """
    order: List[ComputationNode] = []
    visited: Set[int] = {id(root)}
    stack = [(root, 0)]
    while stack:
        node, idx = stack.pop()
        if idx < len(node.inputs):
            stack.append((node, idx + 1))
            child = node.inputs[idx]
            if child is not None and id(child) not in visited:
                visited.add(id(child))
                stack.append((child, 0))
        else:
            order.append(node)
    return order


def _dependency_graph(nodes: Iterable[ComputationNode]) -> nx.DiGraph:
    graph = nx.DiGraph()
    for node in nodes:
        graph.add_node(id(node))
        for inp in node.inputs:
            if inp is not None:
                graph.add_edge(id(inp), id(node))
    return graph


def _form_loop(
    loop_id: int,
    members: List[ComputationNode],
    rank: Dict[int, int],
) -> RecurrentLoop:
    names = sorted(node.name for node in members)
    delay_nodes = [node for node in members if node.is_recurrent]
    if not delay_nodes:
        raise GraphValidationError(
            f"cycle through {names} contains no PastValue/FutureValue node.",
            names[0],
        )
    directions = {node.direction for node in delay_nodes}  # type: ignore[attr-defined]
    if len(directions) > 1:
        raise GraphValidationError(
            f"recurrent loop {names} mixes PastValue and FutureValue nodes.",
            names[0],
        )

    member_ids = {id(node) for node in members}
    by_id = {id(node): node for node in members}
    inner = nx.DiGraph()
    inner.add_nodes_from(member_ids)
    for node in members:
        if node.is_recurrent:
            continue
        for inp in node.inputs:
            if inp is not None and id(inp) in member_ids:
                inner.add_edge(id(inp), id(node))
    if not nx.is_directed_acyclic_graph(inner):
        raise GraphValidationError(
            f"cycle inside {names} does not pass through a PastValue/FutureValue node.",
            names[0],
        )

    ordered = [by_id[i] for i in nx.lexicographical_topological_sort(inner, key=rank.__getitem__)]
    return RecurrentLoop(loop_id=loop_id, nodes=ordered, direction=directions.pop())


def form_evaluation_order(root: ComputationNode) -> EvaluationOrder:
    """
    Compute the evaluation order of ``root``.

    Raises:
        GraphValidationError: a cycle is not broken by a delay node, or a loop
            mixes time directions.
    """
    post_order = reachable_nodes(root)
    rank = {id(node): idx for idx, node in enumerate(post_order)}
    by_id = {id(node): node for node in post_order}

    graph = _dependency_graph(post_order)
    components = list(nx.strongly_connected_components(graph))
    condensed = nx.condensation(graph, scc=components)

    def component_key(component: int) -> int:
        return min(rank[m] for m in condensed.nodes[component]["members"])

    steps: List[Step] = []
    loops: List[RecurrentLoop] = []
    for component in nx.lexicographical_topological_sort(condensed, key=component_key):
        members = condensed.nodes[component]["members"]
        if len(members) == 1:
            (member,) = members
            if not graph.has_edge(member, member):
                steps.append(by_id[member])
                continue
        loop = _form_loop(
            len(loops),
            sorted((by_id[m] for m in members), key=lambda n: rank[id(n)]),
            rank,
        )
        loops.append(loop)
        steps.append(loop)

    logger.debug(
        "Formed evaluation order for `%s`: %d nodes, %d recurrent loops.",
        root.name,
        len(post_order),
        len(loops),
    )
    return EvaluationOrder(root=root, steps=steps, loops=loops)


class EvaluationOrderCache:
    """Per-root memoized evaluation orders."""

    def __init__(self) -> None:
        self._orders: Dict[str, EvaluationOrder] = {}

    def get(self, root: ComputationNode) -> EvaluationOrder:
        order = self._orders.get(root.name)
        if order is None or order.root is not root:
            order = form_evaluation_order(root)
            self._orders[root.name] = order
        return order

    def peek(self, root_name: str) -> Optional[EvaluationOrder]:
        return self._orders.get(root_name)

    def invalidate(self, nodes: Optional[Iterable[ComputationNode]] = None) -> List[str]:
        """
        Drop cached orders that contain any of ``nodes`` (all orders when
        ``nodes`` is None). Returns the names of the invalidated roots.
        """
        if nodes is None:
            dropped = list(self._orders)
            self._orders.clear()
            return dropped

        nodes = list(nodes)
        dropped = [
            name
            for name, order in self._orders.items()
            if any(node in order for node in nodes)
        ]
        for name in dropped:
            del self._orders[name]
        return dropped

    def clear(self) -> None:
        self._orders.clear()

    def __contains__(self, root_name: object) -> bool:
        return root_name in self._orders

    def __len__(self) -> int:
        return len(self._orders)
