"""
Graphviz DOT rendering of a network's topology.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, NamedTuple, Set, Union

from compnet.graph.node import ComputationNode
from compnet.graph.ops import FutureValueNode, LearnableParameterNode, PastValueNode

if TYPE_CHECKING:  # pragma: no cover
    from compnet.graph.network import ComputationNetwork

PARAMETER_STYLE = 'node [ shape = box, color = gray, style = "filled, rounded" ];'
FEATURE_STYLE = "node [ shape = ellipse, color = red, fillcolor = white ];"
LABEL_STYLE = "node [ shape = diamond, color = brown, style = bold ];"
CRITERION_STYLE = "node [ shape = doublecircle, color = red, fillcolor = white ];"
PRECOMPUTE_STYLE = 'node [ shape = box, color = black, style = "dashed, filled", fillcolor = limegreen ];'
PAST_VALUE_STYLE = 'node [ shape = box3d, color = lightgray, style = "filled", fillcolor = white ];'
FUTURE_VALUE_STYLE = 'node [ shape = box3d, color = red, style = "filled", fillcolor = white ];'
NORMAL_STYLE = "node [ shape = ellipse, color = blue, fillcolor = white, style = solid ];"


class ComputationArc(NamedTuple):
    consumer: ComputationNode
    input: ComputationNode


def enumerate_arcs(network: "ComputationNetwork") -> List[ComputationArc]:
    """
    Every (consumer, input) edge reachable from the root groups. A node is
    expanded at most once, so shared subgraphs and recurrent loops are not
    walked again.
    """
    visited: Set[int] = set()
    arcs: List[ComputationArc] = []
    for root in network.all_roots():
        stack = [root]
        while stack:
            node = stack.pop()
            if id(node) in visited:
                continue
            visited.add(id(node))
            for inp in node.inputs:
                if inp is None:
                    continue
                arcs.append(ComputationArc(node, inp))
                if id(inp) not in visited:
                    stack.append(inp)
    return arcs


def _quoted(nodes: Iterable[ComputationNode]) -> str:
    return " ".join(f'"{node.name}"' for node in nodes)


def _special(style: str, nodes: List[ComputationNode]) -> str:
    if not nodes:
        return ""
    return f"{style} {_quoted(nodes)} ;\n"


def _label(node: ComputationNode) -> str:
    rows, cols = node.shape if node.shape is not None else (0, 0)
    layout = " x *" if node.has_mb_layout else ""
    return f'"{node.name}" [ label = "{node.name} [{rows} x {cols}{layout}]\\n{node.operator_kind}" ] ;\n'


def _arc(arc: ComputationArc) -> str:
    consumer, inp = arc
    if isinstance(inp, (PastValueNode, FutureValueNode)):
        style = PAST_VALUE_STYLE if isinstance(inp, PastValueNode) else FUTURE_VALUE_STYLE
        dummy = f"{inp.name}.dummy"
        return (
            f'{style[:-2]}, label = "{inp.name}\\n({inp.operator_kind})" ] ; "{dummy}"\n'
            f'"{dummy}" -> "{consumer.name}" ;\n'
        )
    return f'"{inp.name}" -> "{consumer.name}" ;\n'


def describe_network_using_dot(network: "ComputationNetwork", arcs: Iterable[ComputationArc]) -> str:
    nodes = network.get_all_nodes()
    parts = ["strict digraph {\n", "rankdir = BT ;\n", "// special nodes\n"]
    parts.append(_special(PARAMETER_STYLE, [n for n in nodes if isinstance(n, LearnableParameterNode)]))
    parts.append(_special(FEATURE_STYLE, network.feature_nodes))
    parts.append(_special(LABEL_STYLE, network.label_nodes))
    parts.append(_special(CRITERION_STYLE, network.final_criterion_nodes))
    parts.append(_special(PRECOMPUTE_STYLE, [n for n in nodes if n.requires_precompute]))
    parts.append(_special(PAST_VALUE_STYLE, [n for n in nodes if isinstance(n, PastValueNode)]))
    parts.append(_special(FUTURE_VALUE_STYLE, [n for n in nodes if isinstance(n, FutureValueNode)]))
    parts.append(NORMAL_STYLE + "\n")

    parts.append("\n// labels and operator kinds\n")
    parts.extend(_label(node) for node in nodes)

    parts.append("subgraph {\n\trank = source ; " + _quoted(network.feature_nodes) + "\n}\n")
    sinks = network.final_criterion_nodes + network.output_nodes + network.evaluation_nodes
    parts.append("subgraph {\n\trank = sink ; " + _quoted(sinks) + "\n}\n")

    parts.append("\n// arcs\n")
    parts.extend(_arc(arc) for arc in arcs)
    parts.append("}\n")
    return "".join(parts)


def plot_network_topology(network: "ComputationNetwork", path: Union[str, Path]) -> Path:
    """Write the DOT description of a compiled network to ``path``."""
    network.verify_is_compiled("plot_network_topology")
    path = Path(path)
    path.write_text(describe_network_using_dot(network, enumerate_arcs(network)), encoding="utf-8")
    return path
