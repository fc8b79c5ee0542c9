from __future__ import annotations

import io
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

from compnet.errors import (
    FormatError,
    GraphValidationError,
    StateError,
    UnknownNodeError,
    UnsupportedFeatureError,
)
from compnet.graph.network import ComputationNetwork, RootGroup
from compnet.graph.node import CURRENT_MODEL_VERSION, ElementType
from compnet.graph.ops import (
    CrossEntropyWithSoftmaxNode,
    InputValueNode,
    LearnableParameterNode,
    PastValueNode,
    PlusNode,
    SoftmaxNode,
    TimesNode,
)
from compnet.runtime.leader import RankDesignation, SingleProcess
from compnet.serialization.model_io import (
    load_network,
    read_network,
    read_network_from_stream,
    save_network,
    write_network,
)
from compnet.serialization.stream import ModelStream

Section = Tuple[str, Sequence[str], str]


def _build_mlp(num_classes: int = 3) -> ComputationNetwork:
    net = ComputationNetwork()
    x = net.add_node(InputValueNode("features", 4))
    y = net.add_node(InputValueNode("labels", num_classes))
    w = net.add_node(LearnableParameterNode("W", num_classes, 4))
    b = net.add_node(LearnableParameterNode("b", num_classes, 1))
    wx = net.add_node_and_attach_inputs(TimesNode("Wx"), w, x)
    z = net.add_node_and_attach_inputs(PlusNode("z"), wx, b)
    out = net.add_node_and_attach_inputs(SoftmaxNode("out"), z)
    ce = net.add_node_and_attach_inputs(CrossEntropyWithSoftmaxNode("ce"), y, z)
    net.add_root(RootGroup.FEATURES, x)
    net.add_root(RootGroup.LABELS, y)
    net.add_root(RootGroup.FINAL_CRITERIA, ce)
    net.add_root(RootGroup.OUTPUT, out)
    net.add_root(RootGroup.EVALUATION, ce)
    net.init_learnable_parameters(w, uniform_init=True, random_seed=3)
    net.compile_network()
    return net


def _write_legacy_model(
    fh: io.BytesIO,
    root_sections: List[Section],
    *,
    version: Optional[int] = None,
    relation_inputs: Sequence[str] = ("W", "x"),
    end_marker: str = "ERootNodes",
) -> None:
    """Hand-written model: x (InputValue), W (LearnableParameter), y = Times(W, x)."""
    stream = ModelStream(fh)
    stream.put_marker("BCN")
    if version is not None:
        stream.put_marker("BVersion")
        stream.write_int(version)
        stream.put_marker("EVersion")
    stream.write_int(3)

    tagged = version is not None and version >= 2
    stream.put_marker("BNodeList")
    stream.write_string("InputValue")
    stream.write_string("x")
    if tagged:
        stream.write_string("float")
    stream.write_int(2)
    stream.write_int(1)
    stream.write_string("LearnableParameter")
    stream.write_string("W")
    if tagged:
        stream.write_string("float")
    stream.write_bool(True)
    stream.write_matrix(np.eye(2, dtype=np.float32))
    stream.write_string("Times")
    stream.write_string("y")
    if tagged:
        stream.write_string("float")
    stream.put_marker("ENodeList")

    stream.put_marker("BRelation")
    stream.write_string("W")
    stream.write_strings([])
    stream.write_string("x")
    stream.write_strings([])
    stream.write_string("y")
    stream.write_strings(relation_inputs)
    stream.put_marker("ERelation")

    stream.put_marker("BRootNodes")
    for begin, names, end in root_sections:
        if begin:
            stream.put_marker(begin)
            stream.write_strings(names)
        if end:
            stream.put_marker(end)
    stream.put_marker(end_marker)
    stream.put_marker("ECN")
    fh.seek(0)


def _read(fh: io.BytesIO) -> ComputationNetwork:
    return read_network_from_stream(ModelStream(fh, name="legacy"))


def test_save_load_round_trip(tmp_path) -> None:
    net = _build_mlp()
    path = tmp_path / "model.cn"

    assert net.save(path)
    loaded = ComputationNetwork.from_file(path)

    assert loaded.is_compiled
    assert sorted(loaded.nodes) == sorted(net.nodes)
    for name, node in net.nodes.items():
        other = loaded.get_node(name)
        assert other.operator_kind == node.operator_kind
        assert [inp.name for inp in other.inputs] == [inp.name for inp in node.inputs]
        assert other.shape == node.shape
    for group in RootGroup:
        assert [n.name for n in loaded.group(group)] == [n.name for n in net.group(group)]
    np.testing.assert_array_equal(
        loaded.get_node("W").value_as_matrix(), net.get_node("W").value_as_matrix()
    )
    assert not (tmp_path / "model.cn.tmp").exists()


def test_round_trip_recurrent_network() -> None:
    net = ComputationNetwork()
    x = net.add_node(InputValueNode("x", 2))
    delay = net.add_node(PastValueNode("delay", 2, 1, time_step=2, initial_state_value=0.5))
    acc = net.add_node_and_attach_inputs(PlusNode("acc"), x, delay)
    net.attach_inputs(delay, [acc])
    net.add_root(RootGroup.OUTPUT, acc)
    net.compile_network()

    fh = io.BytesIO()
    write_network(net, ModelStream(fh))
    fh.seek(0)
    loaded = _read(fh)
    loaded.compile_network()

    restored = loaded.get_node("delay")
    assert isinstance(restored, PastValueNode)
    assert restored.time_step == 2
    assert restored.initial_state_value == 0.5
    assert restored.input(0) is loaded.get_node("acc")
    assert loaded.get_eval_order("acc").names == net.get_eval_order("acc").names


def test_save_requires_compiled_network(tmp_path) -> None:
    net = _build_mlp()
    net.invalidate_compiled_network()
    with pytest.raises(StateError):
        net.save(tmp_path / "model.cn")
    assert list(tmp_path.iterdir()) == []


def test_only_designated_writer_saves(tmp_path) -> None:
    net = _build_mlp()
    path = tmp_path / "model.cn"

    assert save_network(net, path, leader=RankDesignation(rank=1)) is False
    assert not path.exists()
    assert save_network(net, path, leader=SingleProcess()) is True
    assert path.exists()


def test_save_replaces_existing_file_atomically(tmp_path) -> None:
    path = tmp_path / "model.cn"
    path.write_bytes(b"previous")
    net = _build_mlp()

    net.save(path)

    assert read_network(path).has_node("ce")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["model.cn"]


def test_null_input_is_warned_and_skipped(caplog) -> None:
    net = _build_mlp()
    net.get_node("out").inputs[0] = None

    fh = io.BytesIO()
    write_network(net, ModelStream(fh))
    fh.seek(0)
    loaded = _read(fh)

    assert any("null input" in r.getMessage() for r in caplog.records)
    assert loaded.get_node("out").inputs == []


def test_written_version_is_current() -> None:
    fh = io.BytesIO()
    write_network(_build_mlp(), ModelStream(fh))
    fh.seek(0)
    stream = ModelStream(fh)
    stream.get_marker("BCN")
    stream.get_marker("BVersion")
    assert stream.read_int() == CURRENT_MODEL_VERSION


def test_oldest_version_without_optional_sections() -> None:
    fh = io.BytesIO()
    _write_legacy_model(fh, [])

    net = _read(fh)

    assert not net.is_compiled
    assert net.all_roots() == []
    assert net.get_node("W").element_type is ElementType.FLOAT
    assert [inp.name for inp in net.get_node("y").inputs] == ["W", "x"]


def test_legacy_criteria_section_and_defunct_sections(caplog) -> None:
    fh = io.BytesIO()
    _write_legacy_model(
        fh,
        [
            ("BFeatureNodes", ["x"], "EFeatureNodes"),
            ("BCriteriaNodes", ["y"], "ECriteriaNodes"),
            ("BNodesReqMultiSeqHandling", ["y"], "ENodesReqMultiSeqHandling"),
            ("BEvalNodes", ["y"], "EEvalNodes"),
            ("BOutputNodes", ["y"], "EOutputNodes"),
            ("BPairNodes", [], "EPairNodes"),
        ],
        version=2,
    )

    with caplog.at_level(logging.WARNING):
        net = _read(fh)

    assert [n.name for n in net.feature_nodes] == ["x"]
    assert [n.name for n in net.final_criterion_nodes] == ["y"]
    assert [n.name for n in net.output_nodes] == ["y"]
    assert net.label_nodes == []
    assert [n.name for n in net.evaluation_nodes] == ["y"]
    assert any("multi-sequence" in r.getMessage() for r in caplog.records)
    net.compile_network()
    assert net.get_node("y").shape == (2, 1)


def test_nonempty_pair_nodes_are_unsupported() -> None:
    fh = io.BytesIO()
    _write_legacy_model(fh, [("BPairNodes", ["y"], "EPairNodes")], version=2)

    with pytest.raises(UnsupportedFeatureError):
        _read(fh)


def test_begin_marker_without_end_is_format_error() -> None:
    fh = io.BytesIO()
    _write_legacy_model(fh, [("BLabelNodes", ["x"], "")], version=2)

    with pytest.raises(FormatError):
        _read(fh)


def test_end_marker_without_begin_is_format_error() -> None:
    fh = io.BytesIO()
    _write_legacy_model(fh, [("", [], "ELabelNodes")], version=2)

    with pytest.raises(FormatError):
        _read(fh)


def test_missing_required_end_marker() -> None:
    fh = io.BytesIO()
    _write_legacy_model(fh, [], version=2, end_marker="EBogus")

    with pytest.raises(FormatError):
        _read(fh)


def test_relation_to_unknown_node() -> None:
    fh = io.BytesIO()
    _write_legacy_model(fh, [], version=2, relation_inputs=("W", "ghost"))

    with pytest.raises(FormatError, match="ghost"):
        _read(fh)


def test_truncated_file(tmp_path) -> None:
    path = tmp_path / "model.cn"
    _build_mlp().save(path)
    data = path.read_bytes()
    path.write_bytes(data[: len(data) // 2])

    with pytest.raises(FormatError):
        load_network(path)


def test_failed_load_leaves_network_untouched(tmp_path) -> None:
    net = _build_mlp()
    bad = tmp_path / "bad.cn"
    bad.write_bytes(b"\x00" * 16)

    with pytest.raises(FormatError):
        net.load(bad)

    assert net.is_compiled
    assert net.has_node("ce")
    assert net.get_eval_order("ce").names[-1] == "ce"


def test_reload_persistable_parameters(tmp_path) -> None:
    net = _build_mlp()
    path = tmp_path / "model.cn"
    net.save(path)
    saved = net.get_node("W").value_as_matrix().copy()

    net.get_node("W").set_value(np.zeros((3, 4)))
    net.reload_persistable_parameters(path)

    np.testing.assert_array_equal(net.get_node("W").value_as_matrix(), saved)
    assert net.is_compiled


def test_reload_rejects_shape_change(tmp_path) -> None:
    path = tmp_path / "model.cn"
    _build_mlp(num_classes=3).save(path)

    with pytest.raises(GraphValidationError):
        _build_mlp(num_classes=2).reload_persistable_parameters(path)


def test_reload_into_network_without_node(tmp_path) -> None:
    path = tmp_path / "model.cn"
    _build_mlp().save(path)

    with pytest.raises(UnknownNodeError):
        ComputationNetwork().reload_persistable_parameters(path)
