"""
Persisted network format: Save, Load and partial parameter reload.

File layout::

    BCN
      BVersion <version> EVersion
      <node count>
      BNodeList   (<kind> <name> <state>)*          ENodeList
      BRelation   (<name> <input count> <input>*)*  ERelation
      BRootNodes
        [BFeatureNodes <names> EFeatureNodes]
        [BLabelNodes <names> ELabelNodes]
        [BCriterionNodes <names> ECriterionNodes]   (old: BCriteriaNodes)
        [BNodesReqMultiSeqHandling <names> ENodesReqMultiSeqHandling]
        [BEvalNodes <names> EEvalNodes]
        [BOutputNodes <names> EOutputNodes]
        [BPairNodes <names> EPairNodes]
      ERootNodes
    ECN

Root sections are optional; the multi-sequence and pair-node sections are
only read for backward compatibility.
"""

from __future__ import annotations

import os
import struct
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple, Union

from compnet.errors import FormatError, UnsupportedFeatureError
from compnet.graph.node import CURRENT_MODEL_VERSION, MODEL_VERSION_1, ComputationNode
from compnet.graph.ops import LEGACY_OPERATOR_ALIASES, new_node
from compnet.serialization.stream import ModelStream
from compnet.utils.config import config
from compnet.utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from compnet.graph.network import ComputationNetwork
    from compnet.runtime.leader import WriterDesignation

logger = get_logger(__name__)

PathLike = Union[str, Path]

# (group attribute, begin marker, end marker) in file order
_ROOT_SECTIONS: Tuple[Tuple[str, str, str], ...] = (
    ("features", "BFeatureNodes", "EFeatureNodes"),
    ("labels", "BLabelNodes", "ELabelNodes"),
    ("final_criteria", "BCriterionNodes", "ECriterionNodes"),
    ("evaluation", "BEvalNodes", "EEvalNodes"),
    ("output", "BOutputNodes", "EOutputNodes"),
)
_LEGACY_CRITERIA_SECTION = ("BCriteriaNodes", "ECriteriaNodes")
_MULTI_SEQ_SECTION = ("BNodesReqMultiSeqHandling", "ENodesReqMultiSeqHandling")
_PAIR_NODES_SECTION = ("BPairNodes", "EPairNodes")


# ----------------------------------------------------------------------
# writing
# ----------------------------------------------------------------------


def _written_inputs(node: ComputationNode) -> List[str]:
    names: List[str] = []
    for idx, inp in enumerate(node.inputs):
        if inp is None:
            logger.warning(
                "Node `%s` has a null input at position %d; it is not saved.", node.name, idx
            )
            continue
        names.append(inp.name)
    return names


def write_network(network: "ComputationNetwork", stream: ModelStream) -> None:
    """Serialize a compiled network to ``stream``."""
    from compnet.graph.network import RootGroup

    network.verify_is_compiled("save")
    nodes = network.get_all_nodes()

    stream.put_marker("BCN")
    stream.put_marker("BVersion")
    stream.write_int(CURRENT_MODEL_VERSION)
    stream.put_marker("EVersion")
    stream.write_int(len(nodes))

    stream.put_marker("BNodeList")
    for node in nodes:
        node.save(stream)
    stream.put_marker("ENodeList")

    stream.put_marker("BRelation")
    for node in nodes:
        stream.write_string(node.name)
        stream.write_strings(_written_inputs(node))
    stream.put_marker("ERelation")

    stream.put_marker("BRootNodes")
    for group, begin, end in _ROOT_SECTIONS:
        stream.put_marker(begin)
        stream.write_strings(node.name for node in network.group(RootGroup(group)))
        stream.put_marker(end)
    stream.put_marker("ERootNodes")
    stream.put_marker("ECN")


def save_network(
    network: "ComputationNetwork",
    path: PathLike,
    *,
    leader: Optional["WriterDesignation"] = None,
) -> bool:
    """
    Save ``network`` to ``path`` atomically: the model is written to a
    scratch file next to ``path`` and renamed over it once complete.

    Returns False (and writes nothing) when ``leader`` says this process is
    not the designated writer.
    """
    network.verify_is_compiled("save")
    if leader is not None and not leader.is_main_node():
        logger.debug("Not the main node; skipping save of %s.", path)
        return False

    path = Path(path)
    tmp_path = path.with_name(path.name + config.tmp_suffix)
    try:
        with ModelStream.open(tmp_path, "wb") as stream:
            write_network(network, stream)
            stream.flush()
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    logger.info("Saved network with %d nodes to %s.", len(network), path)
    return True


# ----------------------------------------------------------------------
# reading
# ----------------------------------------------------------------------


def _read_version(stream: ModelStream) -> int:
    stream.get_marker("BCN")
    version = MODEL_VERSION_1
    if stream.try_get_marker("BVersion"):
        version = stream.read_int()
        stream.get_marker("EVersion")
    if not MODEL_VERSION_1 <= version <= CURRENT_MODEL_VERSION:
        raise FormatError(f"{stream.name}: unsupported model version {version}.")
    return version


def _read_node_header(stream: ModelStream) -> Tuple[str, str]:
    return stream.read_string(), stream.read_string()


def _read_optional_names(stream: ModelStream, begin: str, end: str) -> Optional[List[str]]:
    """Names of an optional root section, or None when the section is absent."""
    if stream.try_get_marker(begin):
        names = stream.read_strings()
        stream.get_marker(end)
        return names
    if stream.try_get_marker(end):
        raise FormatError(f"{stream.name}: section end `{end}` without `{begin}`.")
    return None


def _resolve_names(
    stream: ModelStream, nodes: Dict[str, ComputationNode], names: List[str], section: str
) -> List[ComputationNode]:
    resolved = []
    for name in names:
        node = nodes.get(name)
        if node is None:
            raise FormatError(f"{stream.name}: {section} refers to unknown node `{name}`.")
        resolved.append(node)
    return resolved


def _read_nodes(
    stream: ModelStream, network: "ComputationNetwork", version: int, count: int
) -> None:
    stream.get_marker("BNodeList")
    for _ in range(count):
        kind, name = _read_node_header(stream)
        try:
            node = new_node(kind, name, device_id=network.device_id)
        except ValueError as exc:
            raise FormatError(f"{stream.name}: node `{name}`: {exc}") from exc
        node.load(stream, version)
        network.add_node(node)
    stream.get_marker("ENodeList")


def _read_relations(stream: ModelStream, network: "ComputationNetwork", count: int) -> None:
    nodes = dict(network.nodes)
    wired: Set[str] = set()
    stream.get_marker("BRelation")
    for _ in range(count):
        name = stream.read_string()
        input_names = stream.read_strings()
        if name not in nodes:
            raise FormatError(f"{stream.name}: relation for unknown node `{name}`.")
        if name in wired:
            raise FormatError(f"{stream.name}: duplicate relation entry for `{name}`.")
        wired.add(name)
        inputs = _resolve_names(stream, nodes, input_names, f"relation of `{name}`")
        if inputs:
            nodes[name].attach_inputs(inputs)
    stream.get_marker("ERelation")


def _read_root_groups(stream: ModelStream, network: "ComputationNetwork") -> None:
    from compnet.graph.network import RootGroup

    nodes = dict(network.nodes)
    stream.get_marker("BRootNodes")
    for group, begin, end in _ROOT_SECTIONS:
        if group == "evaluation":
            # Retired section between criteria and evaluation nodes.
            defunct = _read_optional_names(stream, *_MULTI_SEQ_SECTION)
            if defunct is not None:
                logger.warning(
                    "%s: ignoring defunct multi-sequence-handling section (%d nodes).",
                    stream.name,
                    len(defunct),
                )
        names = _read_optional_names(stream, begin, end)
        if names is None and group == "final_criteria":
            names = _read_optional_names(stream, *_LEGACY_CRITERIA_SECTION)
        for node in _resolve_names(stream, nodes, names or [], begin):
            network.add_root(RootGroup(group), node)

    pairs = _read_optional_names(stream, *_PAIR_NODES_SECTION)
    if pairs:
        raise UnsupportedFeatureError(
            f"{stream.name}: pair nodes ({len(pairs)}) are no longer supported."
        )
    stream.get_marker("ERootNodes")


def read_network_from_stream(stream: ModelStream, *, device_id: int = -1) -> "ComputationNetwork":
    """
    Read a network in two phases: every node is created before any input is
    wired. The result is not compiled.
    """
    from compnet.graph.network import ComputationNetwork

    network = ComputationNetwork(device_id=device_id)
    try:
        version = _read_version(stream)
        count = stream.read_int()
        _read_nodes(stream, network, version, count)
        _read_relations(stream, network, count)
        _read_root_groups(stream, network)
        stream.get_marker("ECN")
    except (EOFError, struct.error) as exc:
        raise FormatError(f"{stream.name}: malformed model stream.") from exc
    logger.debug("Read %d nodes (model version %d) from %s.", count, version, stream.name)
    return network


def read_network(path: PathLike, *, device_id: int = -1) -> "ComputationNetwork":
    with ModelStream.open(path, "rb") as stream:
        return read_network_from_stream(stream, device_id=device_id)


def load_network(path: PathLike, *, device_id: int = -1) -> "ComputationNetwork":
    """Read and compile the model at ``path``."""
    network = read_network(path, device_id=device_id)
    network.compile_network()
    return network


def reload_persistable_parameters(network: "ComputationNetwork", path: PathLike) -> List[str]:
    """
    Refresh node state (parameter values, cached statistics, settings) from
    the node-info region of ``path`` without touching the topology. Node
    shapes must not change. Returns the names of the reloaded nodes.
    """
    reloaded: List[ComputationNode] = []
    with ModelStream.open(path, "rb") as stream:
        try:
            version = _read_version(stream)
            count = stream.read_int()
            stream.get_marker("BNodeList")
            for _ in range(count):
                kind, name = _read_node_header(stream)
                node = network.get_node(name)
                kind = LEGACY_OPERATOR_ALIASES.get(kind, kind)
                if kind != node.operator_kind:
                    raise FormatError(
                        f"{stream.name}: node `{name}` is {kind} in the file "
                        f"but {node.operator_kind} in the network."
                    )
                node.load(stream, version)
                reloaded.append(node)
            stream.get_marker("ENodeList")
        except (EOFError, struct.error) as exc:
            raise FormatError(f"{stream.name}: malformed model stream.") from exc

    for node in reloaded:
        if node.shape is not None:
            node.validate(is_reload=True)
    logger.info("Reloaded parameters of %d nodes from %s.", len(reloaded), path)
    return [node.name for node in reloaded]
