"""
compnet

Named computation-network graph engine: construction, compilation into
evaluation orders with recurrent loops, binary persistence and graph edits.
"""

from .graph.network import ComputationNetwork, RootGroup
from .graph.node import ComputationNode, ElementType, SequenceTrainingParams
from .serialization.model_io import load_network, read_network, save_network
from .edit.svd import perform_svd_decomposition
from .runtime.matrix_pool import MatrixPool
from .errors import (
    CompnetError,
    DuplicateNameError,
    FormatError,
    GraphValidationError,
    StateError,
    UnknownNodeError,
    UnsupportedFeatureError,
)

__all__ = [
    "ComputationNetwork",
    "ComputationNode",
    "ElementType",
    "RootGroup",
    "SequenceTrainingParams",
    "load_network",
    "read_network",
    "save_network",
    "perform_svd_decomposition",
    "MatrixPool",
    "CompnetError",
    "DuplicateNameError",
    "FormatError",
    "GraphValidationError",
    "StateError",
    "UnknownNodeError",
    "UnsupportedFeatureError",
]
