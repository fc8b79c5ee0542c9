from __future__ import annotations

import numpy as np
import pytest

from compnet.edit.svd import choose_rank, factorize
from compnet.errors import DuplicateNameError, StateError
from compnet.graph.network import ComputationNetwork, RootGroup
from compnet.graph.node import ElementType
from compnet.graph.ops import (
    InputValueNode,
    LearnableParameterNode,
    PlusNode,
    SquareErrorNode,
    TimesNode,
)


def _build_regression(compile_network: bool = True) -> ComputationNetwork:
    net = ComputationNetwork()
    x = net.add_node(InputValueNode("x", 4))
    y = net.add_node(InputValueNode("y", 3))
    w = net.add_node(LearnableParameterNode("W", 3, 4))
    net.add_node(LearnableParameterNode("W2", 3, 4))
    b = net.add_node(LearnableParameterNode("b", 3, 1))
    wx = net.add_node_and_attach_inputs(TimesNode("Wx"), w, x)
    z = net.add_node_and_attach_inputs(PlusNode("z"), wx, b)
    se = net.add_node_and_attach_inputs(SquareErrorNode("se"), y, z)
    net.add_root(RootGroup.FEATURES, x)
    net.add_root(RootGroup.FINAL_CRITERIA, se)
    for seed, name in enumerate(("W", "W2", "b")):
        net.init_learnable_parameters(name, uniform_init=False, random_seed=seed)
    if compile_network:
        net.compile_network()
    return net


def test_rank_drops_to_lower_alignment_when_growing_reaches_full_rank() -> None:
    # energy 10, threshold 8: 5 + 3 + 1 = 9 > 8 keeps 3; aligned to 2 gives 2
    assert choose_rank([5, 3, 1, 1], keep_ratio=0.8, aligned_size=2) == 2


def test_rank_without_alignment() -> None:
    assert choose_rank([5, 3, 1, 1], keep_ratio=0.8) == 3
    assert choose_rank([5, 3, 1, 1], keep_ratio=0.4) == 1


def test_rank_grows_by_one_block_below_full_rank() -> None:
    # 8 + 7 + 6 = 21 > 18 keeps 3; 2 + 2 = 4 < 8
    assert choose_rank([8, 7, 6, 5, 4, 3, 2, 1], keep_ratio=0.5, aligned_size=2) == 4


def test_rank_smaller_than_alignment_uses_one_block() -> None:
    assert choose_rank([10, 1, 1, 1, 1, 1, 1, 1], keep_ratio=0.5, aligned_size=4) == 4
    assert choose_rank([10, 1], keep_ratio=0.5, aligned_size=4) == 2


def test_full_ratio_keeps_full_rank() -> None:
    assert choose_rank([5, 3, 1, 1], keep_ratio=1.0, aligned_size=2) == 4


@pytest.mark.parametrize("keep_ratio, aligned_size", [(0.0, 1), (1.5, 1), (0.5, 0)])
def test_rank_rejects_bad_arguments(keep_ratio: float, aligned_size: int) -> None:
    with pytest.raises(ValueError):
        choose_rank([1.0, 0.5], keep_ratio, aligned_size)


def test_factorize_reconstructs_low_rank_matrix(rng) -> None:
    matrix = rng.normal(size=(6, 2)) @ rng.normal(size=(2, 5))

    left, right = factorize(matrix, keep_ratio=0.99)

    assert left.shape == (6, 2)
    assert right.shape == (2, 5)
    np.testing.assert_allclose(left @ right, matrix, atol=1e-8)


def test_factorize_folds_singular_values_symmetrically(rng) -> None:
    matrix = rng.normal(size=(4, 4))
    left, right = factorize(matrix, keep_ratio=1.0)

    np.testing.assert_allclose(left @ right, matrix, atol=1e-8)
    np.testing.assert_allclose(
        np.linalg.norm(left, axis=0), np.linalg.norm(right, axis=1), rtol=1e-8
    )


def test_decomposition_rewrites_graph_locally() -> None:
    net = _build_regression()
    wx = net.get_node("Wx")
    original = net.get_node("W").value_as_matrix().astype(np.float64)

    rewritten = net.perform_svd_decomposition({"W": 1.0})

    assert rewritten == ["W"]
    assert net.is_compiled
    product = net.get_node("W")
    assert isinstance(product, TimesNode)
    assert wx.input(0) is product
    u, v = net.get_node("W-U"), net.get_node("W-V")
    assert product.inputs == [u, v]
    assert u.shape[0] == 3 and v.shape[1] == 4
    np.testing.assert_allclose(
        u.value_as_matrix() @ v.value_as_matrix(), original, atol=1e-5
    )
    assert [n.name for n in net.learnable_parameter_nodes("se")] == ["W-U", "W-V", "b"]


def test_patterns_match_whole_names_and_skip_vectors() -> None:
    net = _build_regression()

    rewritten = net.perform_svd_decomposition({"W": 0.5})

    assert rewritten == ["W"]
    assert isinstance(net.get_node("W2"), LearnableParameterNode)
    assert "W2-U" not in net


def test_name_rewritten_by_earlier_pattern_is_skipped() -> None:
    net = _build_regression()

    rewritten = net.perform_svd_decomposition({"W": 0.5, "": 0.9}, aligned_size=1)

    assert rewritten == ["W", "W2"]
    assert "W-U-U" not in net
    assert isinstance(net.get_node("b"), LearnableParameterNode)


def test_decomposition_filters_element_type() -> None:
    net = _build_regression()
    assert net.perform_svd_decomposition({"": 0.5}, element_type=ElementType.DOUBLE) == []


def test_decomposition_requires_compiled_network() -> None:
    net = _build_regression(compile_network=False)
    with pytest.raises(StateError):
        net.perform_svd_decomposition({"W": 0.5})


def test_decomposition_rejects_bad_keep_ratio() -> None:
    net = _build_regression()
    with pytest.raises(ValueError):
        net.perform_svd_decomposition({"W": 0.0})


def test_factor_name_collision_leaves_network_untouched() -> None:
    net = _build_regression(compile_network=False)
    net.add_node(LearnableParameterNode("W2-V", 2, 2))
    net.compile_network()

    with pytest.raises(DuplicateNameError, match="W2-V"):
        net.perform_svd_decomposition({"W": 0.5, "W2": 0.5})

    assert isinstance(net.get_node("W"), LearnableParameterNode)
    assert "W-U" not in net
    assert net.is_compiled
