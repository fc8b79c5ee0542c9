from __future__ import annotations

from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from compnet.errors import (
    DuplicateNameError,
    GraphValidationError,
    StateError,
    UnknownNodeError,
)
from compnet.graph.node import (
    ComputationNode,
    ElementType,
    HasDropoutRate,
    HasSequenceTrainingParams,
    HasTempMemoryBudget,
    SequenceTrainingParams,
)
from compnet.graph.ops import (
    CRITERION_OPERATOR_KINDS,
    INPUT_OPERATOR_KINDS,
    ConvolutionNode,
    DropoutNode,
    LearnableParameterNode,
    SequenceWithSoftmaxNode,
)
from compnet.graph.topo import EvaluationOrder, EvaluationOrderCache, RecurrentLoop, reachable_nodes
from compnet.runtime.matrix_pool import MatrixPool
from compnet.utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from compnet.runtime.leader import WriterDesignation
    from compnet.runtime.memory_plan import PassStats

logger = get_logger(__name__)

NodeRef = Union[str, ComputationNode]
PathLike = Union[str, Path]


class RootGroup(str, Enum):
    FEATURES = "features"
    LABELS = "labels"
    FINAL_CRITERIA = "final_criteria"
    EVALUATION = "evaluation"
    OUTPUT = "output"


class ComputationNetwork:
    """
    Owner of all nodes of a model, keyed by name, plus the named root groups.

    Nodes reference their inputs without owning them; the name table is the
    sole owner. The network must be compiled (validated, ordered and
    loop-formed) before it is evaluated, saved or edited; any topology change
    drops the compiled state again.
    """

    def __init__(self, *, device_id: int = -1, random_seed_offset: int = 0) -> None:
        self.device_id = device_id
        self.random_seed_offset = random_seed_offset
        self.matrix_pool = MatrixPool()
        self._nodes: Dict[str, ComputationNode] = {}
        self._groups: Dict[RootGroup, List[ComputationNode]] = {group: [] for group in RootGroup}
        self._orders = EvaluationOrderCache()
        self._compiled = False
        self._input_values: Dict[str, List[ComputationNode]] = {}
        self._learnable_parameters: Dict[str, List[ComputationNode]] = {}

    def __repr__(self) -> str:
        return (
            f"ComputationNetwork(nodes={len(self._nodes)}, "
            f"compiled={self._compiled})"
        )

    # ------------------------------------------------------------------
    # node container
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> Mapping[str, ComputationNode]:
        return MappingProxyType(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[ComputationNode]:
        return iter(self.get_all_nodes())

    def get_all_nodes(self) -> List[ComputationNode]:
        """All nodes, in name order."""
        return [self._nodes[name] for name in sorted(self._nodes)]

    def has_node(self, name: str) -> bool:
        return name in self._nodes

    def get_node(self, name: str) -> ComputationNode:
        try:
            return self._nodes[name]
        except KeyError:
            raise UnknownNodeError(f"Node `{name}` does not exist in the network.") from None

    def _resolve(self, node: NodeRef) -> ComputationNode:
        if isinstance(node, str):
            return self.get_node(node)
        if self._nodes.get(node.name) is not node:
            raise UnknownNodeError(f"Node `{node.name}` is not part of this network.")
        return node

    def add_node(self, node: ComputationNode) -> ComputationNode:
        if node.name in self._nodes:
            raise DuplicateNameError(f"Duplicate node name: {node.name}")
        self._nodes[node.name] = node
        self._compiled = False
        return node

    def attach_inputs(self, node: NodeRef, inputs: Sequence[NodeRef]) -> ComputationNode:
        node = self._resolve(node)
        resolved = [self._resolve(inp) for inp in inputs]
        node.attach_inputs(resolved)
        self.invalidate_compiled_network([node])
        return node

    def add_node_and_attach_inputs(self, node: ComputationNode, *inputs: NodeRef) -> ComputationNode:
        resolved = [self._resolve(inp) for inp in inputs]
        node.attach_inputs(resolved)
        return self.add_node(node)

    def consumers_of(self, node: NodeRef) -> List[ComputationNode]:
        node = self._resolve(node)
        return [
            candidate
            for candidate in self.get_all_nodes()
            if any(inp is node for inp in candidate.inputs)
        ]

    def remove_node(self, name: str) -> ComputationNode:
        node = self.get_node(name)
        consumers = [c.name for c in self.consumers_of(node)]
        if consumers:
            raise GraphValidationError(f"still consumed by {consumers}.", name)
        self.invalidate_compiled_network([node])
        for members in self._groups.values():
            members[:] = [member for member in members if member is not node]
        node.detach_inputs()
        del self._nodes[name]
        return node

    def replace_node(self, old_name: str, new_node: ComputationNode) -> ComputationNode:
        """
        Swap ``old_name`` for ``new_node``: every consumer edge and root-group
        entry that pointed at the old node now points at the new one. The new
        node must produce a value of the same shape and element type.
        """
        old = self.get_node(old_name)
        if new_node.name != old_name and new_node.name in self._nodes:
            raise DuplicateNameError(f"Duplicate node name: {new_node.name}")
        if new_node.element_type is not old.element_type:
            raise GraphValidationError(
                f"replacement is {new_node.element_type.value}, "
                f"original is {old.element_type.value}.",
                new_node.name,
            )
        if old.shape is not None:
            new_node.validate()
            if new_node.shape != old.shape:
                raise GraphValidationError(
                    f"replacement shape {new_node.shape} differs from {old.shape}.",
                    new_node.name,
                )

        consumers = self.consumers_of(old)
        self.invalidate_compiled_network([old])
        for consumer in consumers:
            consumer.replace_input(old, new_node)
        for members in self._groups.values():
            members[:] = [new_node if member is old else member for member in members]

        del self._nodes[old_name]
        old.detach_inputs()
        self._nodes[new_node.name] = new_node
        return new_node

    def clear_network(self) -> None:
        """
        Tear the graph down. Inputs are detached from every node before the
        name table is dropped so recurrent reference cycles are broken.
        """
        self.invalidate_compiled_network()
        for members in self._groups.values():
            members.clear()
        for node in self._nodes.values():
            node.detach_inputs()
        self._nodes.clear()
        self.matrix_pool.clear()

    # ------------------------------------------------------------------
    # root groups
    # ------------------------------------------------------------------

    def group(self, group: Union[RootGroup, str]) -> List[ComputationNode]:
        return list(self._groups[RootGroup(group)])

    def add_root(self, group: Union[RootGroup, str], node: NodeRef) -> ComputationNode:
        node = self._resolve(node)
        members = self._groups[RootGroup(group)]
        if not any(member is node for member in members):
            members.append(node)
            self._compiled = False
        return node

    @property
    def feature_nodes(self) -> List[ComputationNode]:
        return self.group(RootGroup.FEATURES)

    @property
    def label_nodes(self) -> List[ComputationNode]:
        return self.group(RootGroup.LABELS)

    @property
    def final_criterion_nodes(self) -> List[ComputationNode]:
        return self.group(RootGroup.FINAL_CRITERIA)

    @property
    def evaluation_nodes(self) -> List[ComputationNode]:
        return self.group(RootGroup.EVALUATION)

    @property
    def output_nodes(self) -> List[ComputationNode]:
        return self.group(RootGroup.OUTPUT)

    def all_roots(self) -> List[ComputationNode]:
        """Every root-group member once, in group order."""
        roots: List[ComputationNode] = []
        seen: Set[int] = set()
        for group in RootGroup:
            for node in self._groups[group]:
                if id(node) not in seen:
                    seen.add(id(node))
                    roots.append(node)
        return roots

    # ------------------------------------------------------------------
    # compilation
    # ------------------------------------------------------------------

    @property
    def is_compiled(self) -> bool:
        return self._compiled

    def verify_is_compiled(self, operation: str) -> None:
        if not self._compiled:
            raise StateError(f"{operation}: the network has not been compiled.")

    def invalidate_compiled_network(self, nodes: Optional[Iterable[ComputationNode]] = None) -> None:
        """Forget compiled state; cached orders containing ``nodes`` (all, if None) go too."""
        self._compiled = False
        dropped = self._orders.invalidate(nodes)
        for name in dropped:
            self._input_values.pop(name, None)
            self._learnable_parameters.pop(name, None)
        if nodes is None:
            self._input_values.clear()
            self._learnable_parameters.clear()

    def _check_ownership(self, root: ComputationNode) -> None:
        for node in reachable_nodes(root):
            if self._nodes.get(node.name) is not node:
                raise GraphValidationError(
                    f"node `{node.name}` reachable from `{root.name}` "
                    "is not part of the network.",
                    root.name,
                )

    def compile_network(self) -> None:
        """
        Validate the graph and form evaluation orders and recurrent loops for
        every root. A no-op when the network is already compiled.
        """
        if self._compiled:
            return

        roots = self.all_roots()
        for root in roots:
            self._check_ownership(root)

        validated: Set[int] = set()
        delay_nodes: List[ComputationNode] = []
        for root in roots:
            for node in self._orders.get(root):
                if id(node) in validated:
                    continue
                node.validate()
                validated.add(id(node))
                if node.is_recurrent:
                    delay_nodes.append(node)

        # Delay nodes were validated ahead of their loop-internal inputs.
        for node in delay_nodes:
            node.validate()

        self._compiled = True
        logger.debug("Compiled network: %d nodes, %d roots.", len(self._nodes), len(roots))

    def get_eval_order(self, root: NodeRef) -> EvaluationOrder:
        self.verify_is_compiled("get_eval_order")
        return self._orders.get(self._resolve(root))

    def get_recurrent_loops(self, root: NodeRef) -> List[RecurrentLoop]:
        return list(self.get_eval_order(root).loops)

    # ------------------------------------------------------------------
    # node-group queries
    # ------------------------------------------------------------------

    def collect_input_and_learnable_parameters(self, root: NodeRef) -> None:
        """
        Partition the order of ``root`` into input values and learnable
        parameters (update flag set). Parameters are sorted by name so their
        enumeration does not depend on load order. Once per root.
        """
        root = self._resolve(root)
        if root.name in self._input_values or root.name in self._learnable_parameters:
            raise StateError(
                f"Inputs and parameters of `{root.name}` have already been collected."
            )
        order = self.get_eval_order(root)

        self._input_values[root.name] = [
            node for node in order if node.operator_kind in INPUT_OPERATOR_KINDS
        ]
        names = sorted(
            node.name
            for node in order
            if node.is_learnable_parameter and getattr(node, "is_parameter_update_required", False)
        )
        self._learnable_parameters[root.name] = [self.get_node(name) for name in names]

    def input_nodes(self, root: NodeRef) -> List[ComputationNode]:
        root = self._resolve(root)
        if root.name not in self._input_values:
            self.collect_input_and_learnable_parameters(root)
        return list(self._input_values[root.name])

    def learnable_parameter_nodes(self, root: NodeRef) -> List[ComputationNode]:
        root = self._resolve(root)
        if root.name not in self._learnable_parameters:
            self.collect_input_and_learnable_parameters(root)
        return list(self._learnable_parameters[root.name])

    def _candidates(self, root: Optional[NodeRef]) -> List[ComputationNode]:
        if root is None:
            return self.get_all_nodes()
        return self.get_eval_order(root).nodes

    def get_nodes_requiring_precomputation(
        self, root: Optional[NodeRef] = None, check_computed: bool = True
    ) -> List[ComputationNode]:
        """
        Precompute nodes reachable from ``root`` in evaluation order (all
        nodes in name order when ``root`` is None); with ``check_computed``
        only those not computed yet.
        """
        result: List[ComputationNode] = []
        seen: Set[int] = set()
        for node in self._candidates(root):
            if not node.requires_precompute or id(node) in seen:
                continue
            if check_computed and getattr(node, "has_computed", False):
                continue
            seen.add(id(node))
            result.append(node)
        return result

    def get_nodes_with_type(self, operator_kind: str, root: Optional[NodeRef] = None) -> List[ComputationNode]:
        return [node for node in self._candidates(root) if node.operator_kind == operator_kind]

    @staticmethod
    def is_typical_criterion_node(node: ComputationNode) -> bool:
        return node.operator_kind in CRITERION_OPERATOR_KINDS

    # ------------------------------------------------------------------
    # cross-cutting parameter updates (no topology change)
    # ------------------------------------------------------------------

    def set_dropout_rate(
        self,
        criterion: Optional[NodeRef],
        dropout_rate: float,
        prev_dropout_rate: float,
        dropout_seed: int,
    ) -> Tuple[float, int]:
        """
        Push ``dropout_rate`` into every dropout node reachable from
        ``criterion``, giving each the next seed. Returns the updated
        ``(prev_dropout_rate, dropout_seed)`` pair.
        """
        if dropout_rate == prev_dropout_rate:
            return prev_dropout_rate, dropout_seed

        logger.info("Switching dropout rate to %.8g.", dropout_rate)
        nodes = [
            node
            for node in self.get_nodes_with_type(DropoutNode.operator_kind, criterion)
            if isinstance(node, HasDropoutRate)
        ]
        if not nodes and dropout_rate > 0:
            logger.warning("There is no dropout node.")
        for node in nodes:
            node.set_dropout_rate(dropout_rate)
            node.set_random_seed(dropout_seed)
            dropout_seed += 1
        return dropout_rate, dropout_seed

    def set_sequence_training_params(
        self,
        criterion: Optional[NodeRef],
        params: SequenceTrainingParams,
    ) -> int:
        logger.info(
            "Setting hsmoothing weight to %.8g and frame-dropping threshold to %.8g.",
            params.hsmoothing_weight,
            params.frame_drop_threshold,
        )
        logger.info(
            "Setting sequence-gamma parameters: amf=%.2f, lmf=%.2f, wp=%.2f, "
            "b_mmi_factor=%.2f, s_mbr=%s.",
            params.amf,
            params.lmf,
            params.wp,
            params.b_mmi_factor,
            params.s_mbr,
        )
        nodes = [
            node
            for node in self.get_nodes_with_type(SequenceWithSoftmaxNode.operator_kind, criterion)
            if isinstance(node, HasSequenceTrainingParams)
        ]
        if not nodes:
            logger.warning("There is no sequence node.")
        for node in nodes:
            node.set_sequence_params(params)
        return len(nodes)

    def set_max_temp_mem_size_for_convolution(
        self,
        criterion: Optional[NodeRef],
        max_temp_mem_size_in_samples: int,
    ) -> int:
        logger.info(
            "Setting max temp mem size for convolution nodes to %d samples.",
            max_temp_mem_size_in_samples,
        )
        nodes = [
            node
            for node in self.get_nodes_with_type(ConvolutionNode.operator_kind, criterion)
            if isinstance(node, HasTempMemoryBudget)
        ]
        if not nodes and max_temp_mem_size_in_samples != 0:
            logger.warning("There is no convolution node.")
        for node in nodes:
            node.set_max_temp_mem_size_in_samples(max_temp_mem_size_in_samples)
        return len(nodes)

    def init_learnable_parameters(
        self,
        node: NodeRef,
        uniform_init: bool,
        random_seed: int,
        init_value_scale: float = 1.0,
    ) -> None:
        node = self._resolve(node)
        if not isinstance(node, LearnableParameterNode):
            raise GraphValidationError("is not a learnable parameter.", node.name)
        node.init_random(uniform_init, random_seed + self.random_seed_offset, init_value_scale)

    # ------------------------------------------------------------------
    # checks and passes
    # ------------------------------------------------------------------

    def _unit_test_root(self, root: ComputationNode) -> bool:
        logger.info("Unit test node %s.", root.name)
        return all(node.unit_test() for node in self.get_eval_order(root))

    def unit_test(self, allow_fragment: bool = False) -> bool:
        """Run every node's self-check along the criterion, output and evaluation roots."""
        self.verify_is_compiled("unit_test")
        failures: List[str] = []

        if not self._groups[RootGroup.FEATURES] and not allow_fragment:
            raise GraphValidationError("No feature nodes specified.")

        for group, label in (
            (RootGroup.FINAL_CRITERIA, "criterion"),
            (RootGroup.OUTPUT, "output"),
            (RootGroup.EVALUATION, None),
        ):
            roots = self._groups[group]
            if not roots and label is not None and not allow_fragment:
                raise GraphValidationError(f"No {label} nodes specified.")
            failures.extend(root.name for root in roots if not self._unit_test_root(root))

        if failures:
            logger.warning("Unit test failed for roots: %s", ", ".join(failures))
        return not failures

    def forward_pass(
        self,
        root: NodeRef,
        compute: Callable[[ComputationNode], None],
        *,
        minibatch_size: int = 1,
        keep: Iterable[str] = (),
    ) -> "PassStats":
        """Evaluate ``root`` with ``compute`` using buffers from the network's matrix pool."""
        from compnet.runtime.memory_plan import run_pass

        order = self.get_eval_order(root)
        return run_pass(order, self.matrix_pool, compute, minibatch_size=minibatch_size, keep=keep)

    # ------------------------------------------------------------------
    # persistence and editing
    # ------------------------------------------------------------------

    def save(self, path: PathLike, leader: Optional["WriterDesignation"] = None) -> bool:
        from compnet.serialization.model_io import save_network

        return save_network(self, path, leader=leader)

    def save_edited(self, path: PathLike, leader: Optional["WriterDesignation"] = None) -> bool:
        """Save after editing; compiles first when needed."""
        self.compile_network()
        return self.save(path, leader=leader)

    def read(self, path: PathLike) -> None:
        """Replace this network's content with the model at ``path`` (uncompiled)."""
        from compnet.serialization.model_io import read_network

        self._adopt(read_network(path, device_id=self.device_id))

    def load(self, path: PathLike) -> None:
        """Read and compile the model at ``path``; on failure this network is untouched."""
        from compnet.serialization.model_io import read_network

        fresh = read_network(path, device_id=self.device_id)
        fresh.compile_network()
        self._adopt(fresh)

    @classmethod
    def from_file(cls, path: PathLike, *, device_id: int = -1) -> "ComputationNetwork":
        network = cls(device_id=device_id)
        network.load(path)
        return network

    def reload_persistable_parameters(self, path: PathLike) -> None:
        from compnet.serialization.model_io import reload_persistable_parameters

        reload_persistable_parameters(self, path)

    def _adopt(self, other: "ComputationNetwork") -> None:
        self.clear_network()
        self._nodes = other._nodes
        self._groups = other._groups
        self._orders = other._orders
        self._compiled = other._compiled
        self._input_values = other._input_values
        self._learnable_parameters = other._learnable_parameters
        other._nodes = {}
        other._groups = {group: [] for group in RootGroup}
        other._orders = EvaluationOrderCache()
        other._compiled = False
        other._input_values = {}
        other._learnable_parameters = {}

    def perform_svd_decomposition(
        self,
        svd_config: Mapping[str, float],
        aligned_size: Optional[int] = None,
        element_type: Optional[ElementType] = None,
    ) -> List[str]:
        from compnet.edit.svd import perform_svd_decomposition

        return perform_svd_decomposition(
            self, svd_config, aligned_size=aligned_size, element_type=element_type
        )

    def plot_network_topology(self, path: PathLike) -> Path:
        from compnet.graph.visualize import plot_network_topology

        return plot_network_topology(self, path)
