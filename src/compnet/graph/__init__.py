"""
Computation graph: nodes, operator kinds, evaluation order and the network.

- `ComputationNode` and the capability mixins (see `node.py`)
- Operator kinds and the node factory (see `ops.py`)
- Evaluation order and recurrent-loop formation (see `topo.py`)
- `ComputationNetwork`, the owner of all nodes (see `network.py`)
- DOT topology export (see `visualize.py`)
"""

from .node import ComputationNode, ElementType, SequenceTrainingParams
from . import ops
from . import topo
from .network import ComputationNetwork, RootGroup
from . import visualize

__all__ = [
    "ComputationNode",
    "ComputationNetwork",
    "ElementType",
    "RootGroup",
    "SequenceTrainingParams",
    "ops",
    "topo",
    "visualize",
]
