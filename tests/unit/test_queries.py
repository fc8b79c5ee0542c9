from __future__ import annotations

import pytest

from compnet.errors import StateError
from compnet.graph.network import ComputationNetwork, RootGroup
from compnet.graph.ops import (
    CrossEntropyWithSoftmaxNode,
    ElementTimesNode,
    InputValueNode,
    InvStdDevNode,
    LearnableParameterNode,
    MeanNode,
    MinusNode,
    PlusNode,
    TimesNode,
)


def _build_normalized_classifier(reverse_insertion: bool = False) -> ComputationNetwork:
    net = ComputationNetwork()
    params = [
        LearnableParameterNode("W", 3, 4),
        LearnableParameterNode("b", 3, 1),
        LearnableParameterNode("frozen", 3, 1, is_parameter_update_required=False),
    ]
    if reverse_insertion:
        params.reverse()
    for param in params:
        net.add_node(param)

    x = net.add_node(InputValueNode("features", 4))
    y = net.add_node(InputValueNode("labels", 3))
    mean = net.add_node_and_attach_inputs(MeanNode("mean"), x)
    invstd = net.add_node_and_attach_inputs(InvStdDevNode("invstd"), x)
    centered = net.add_node_and_attach_inputs(MinusNode("centered"), x, mean)
    norm = net.add_node_and_attach_inputs(ElementTimesNode("norm"), centered, invstd)
    wx = net.add_node_and_attach_inputs(TimesNode("Wx"), "W", norm)
    z = net.add_node_and_attach_inputs(PlusNode("z"), wx, "b")
    shifted = net.add_node_and_attach_inputs(PlusNode("shifted"), z, "frozen")
    ce = net.add_node_and_attach_inputs(CrossEntropyWithSoftmaxNode("ce"), y, shifted)
    net.add_root(RootGroup.FEATURES, x)
    net.add_root(RootGroup.LABELS, y)
    net.add_root(RootGroup.FINAL_CRITERIA, ce)
    net.compile_network()
    return net


def test_collect_partitions_inputs_and_sorted_parameters() -> None:
    net = _build_normalized_classifier()
    net.collect_input_and_learnable_parameters("ce")

    assert [node.name for node in net.input_nodes("ce")] == ["labels", "features"]
    assert [node.name for node in net.learnable_parameter_nodes("ce")] == ["W", "b"]


def test_collect_runs_at_most_once_per_root() -> None:
    net = _build_normalized_classifier()
    net.collect_input_and_learnable_parameters("ce")
    with pytest.raises(StateError):
        net.collect_input_and_learnable_parameters("ce")


def test_parameter_order_independent_of_insertion_order() -> None:
    forward = _build_normalized_classifier()
    backward = _build_normalized_classifier(reverse_insertion=True)

    names = [node.name for node in forward.learnable_parameter_nodes("ce")]
    assert names == [node.name for node in backward.learnable_parameter_nodes("ce")]

    backward.invalidate_compiled_network()
    backward.compile_network()
    backward.collect_input_and_learnable_parameters("ce")
    assert [node.name for node in backward.learnable_parameter_nodes("ce")] == names


def test_collect_requires_compiled_network() -> None:
    net = _build_normalized_classifier()
    net.invalidate_compiled_network()
    with pytest.raises(StateError):
        net.collect_input_and_learnable_parameters("ce")


def test_precompute_nodes_in_evaluation_order() -> None:
    net = _build_normalized_classifier()

    pending = net.get_nodes_requiring_precomputation("ce")
    assert [node.name for node in pending] == ["mean", "invstd"]

    net.get_node("mean").mark_computed()
    assert [node.name for node in net.get_nodes_requiring_precomputation("ce")] == ["invstd"]
    assert len(net.get_nodes_requiring_precomputation("ce", check_computed=False)) == 2


def test_precompute_nodes_across_whole_network_in_name_order() -> None:
    net = _build_normalized_classifier()
    names = [node.name for node in net.get_nodes_requiring_precomputation(None)]
    assert names == ["invstd", "mean"]


def test_nodes_with_type() -> None:
    net = _build_normalized_classifier()

    assert [node.name for node in net.get_nodes_with_type("Times", "ce")] == ["Wx"]
    assert [node.name for node in net.get_nodes_with_type("Plus")] == ["shifted", "z"]
    assert net.get_nodes_with_type("Dropout", "ce") == []


def test_typical_criterion_kinds() -> None:
    net = _build_normalized_classifier()
    assert ComputationNetwork.is_typical_criterion_node(net.get_node("ce"))
    assert not net.is_typical_criterion_node(net.get_node("Wx"))
