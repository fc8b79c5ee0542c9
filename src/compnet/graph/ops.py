"""
Operator kinds known to the network core and the node factory.

Only wiring concerns live here: arity, shape inference for validation, the
per-kind state codec and capabilities. Numeric kernels are provided
elsewhere.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, ClassVar, Dict, Optional, Sequence, Type, TypeVar

import numpy as np

from compnet.errors import GraphValidationError, StateError
from compnet.graph.node import (
    ComputationNode,
    ElementType,
    HasDropoutRate,
    HasSequenceTrainingParams,
    HasTempMemoryBudget,
    Precomputable,
    SequenceTrainingParams,
    Shape,
)

if TYPE_CHECKING:  # pragma: no cover
    from compnet.serialization.stream import ModelStream

NodeT = TypeVar("NodeT", bound=Type[ComputationNode])

NODE_REGISTRY: Dict[str, Type[ComputationNode]] = {}

# Operator names written by older versions.
LEGACY_OPERATOR_ALIASES: Dict[str, str] = {"Delay": "PastValue"}


def register_node(cls: NodeT) -> NodeT:
    kind = cls.operator_kind
    if kind in NODE_REGISTRY and NODE_REGISTRY[kind] is not cls:
        raise ValueError(f"Operator kind `{kind}` is already registered.")
    NODE_REGISTRY[kind] = cls
    return cls


def new_node(
    operator_kind: str,
    name: str,
    *,
    element_type: ElementType = ElementType.FLOAT,
    device_id: int = -1,
) -> ComputationNode:
    """Construct an empty node of the given kind, ready to have its state loaded."""
    kind = LEGACY_OPERATOR_ALIASES.get(operator_kind, operator_kind)
    cls = NODE_REGISTRY.get(kind)
    if cls is None:
        raise ValueError(f"Unknown operator kind `{operator_kind}`.")
    return cls(name, element_type=element_type, device_id=device_id)


# ----------------------------------------------------------------------
# leaves
# ----------------------------------------------------------------------


@register_node
class LearnableParameterNode(ComputationNode):
    operator_kind = "LearnableParameter"
    arity = 0
    is_learnable_parameter = True

    def __init__(
        self,
        name: str,
        rows: int = 0,
        cols: int = 0,
        *,
        value: Optional[np.ndarray] = None,
        is_parameter_update_required: bool = True,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        super().__init__(name, element_type=element_type, device_id=device_id)
        self.is_parameter_update_required = is_parameter_update_required
        if value is None:
            value = np.zeros((rows, cols), dtype=self.element_type.dtype)
        self.set_value(value)
        self.shape = self.value.shape  # type: ignore[union-attr]

    def set_value(self, matrix: np.ndarray) -> None:
        matrix = np.asarray(matrix)
        if matrix.ndim != 2:
            raise ValueError(
                f"LearnableParameter `{self.name}` needs a 2-D value, got shape {matrix.shape}."
            )
        self.value = np.array(matrix, dtype=self.element_type.dtype)

    def value_as_matrix(self) -> np.ndarray:
        if self.value is None:
            raise StateError(f"LearnableParameter `{self.name}` has no value.")
        return self.value

    def init_random(
        self,
        uniform_init: bool,
        random_seed: int,
        init_value_scale: float = 1.0,
    ) -> None:
        rows, cols = self.value_as_matrix().shape
        rng = np.random.default_rng(random_seed)
        if uniform_init:
            bound = 0.05 * init_value_scale
            values = rng.uniform(-bound, bound, size=(rows, cols))
        else:
            std = 0.2 * init_value_scale / math.sqrt(max(cols, 1))
            values = rng.normal(0.0, std, size=(rows, cols))
        self.set_value(values)

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        return self.value_as_matrix().shape  # type: ignore[return-value]

    def infer_mb_layout(self) -> bool:
        return False

    def save_state(self, stream: ModelStream) -> None:
        super().save_state(stream)
        stream.write_bool(self.is_parameter_update_required)
        stream.write_matrix(self.value_as_matrix())

    def load_state(self, stream: ModelStream, version: int) -> None:
        super().load_state(stream, version)
        self.is_parameter_update_required = stream.read_bool()
        self.set_value(stream.read_matrix())


@register_node
class InputValueNode(ComputationNode):
    operator_kind = "InputValue"
    arity = 0
    is_input_value = True

    def __init__(
        self,
        name: str,
        rows: int = 0,
        cols: int = 1,
        *,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        super().__init__(name, element_type=element_type, device_id=device_id)
        self.sample_shape: Shape = (rows, cols)
        self.shape = self.sample_shape
        self.has_mb_layout = True

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        return self.sample_shape

    def infer_mb_layout(self) -> bool:
        return True

    def save_state(self, stream: ModelStream) -> None:
        super().save_state(stream)
        stream.write_int(self.sample_shape[0])
        stream.write_int(self.sample_shape[1])

    def load_state(self, stream: ModelStream, version: int) -> None:
        super().load_state(stream, version)
        self.sample_shape = (stream.read_int(), stream.read_int())


@register_node
class SparseInputValueNode(InputValueNode):
    operator_kind = "SparseInputValue"


# ----------------------------------------------------------------------
# linear algebra and nonlinearities
# ----------------------------------------------------------------------


@register_node
class TimesNode(ComputationNode):
    """Matrix product ``inputs[0] @ inputs[1]``."""

    operator_kind = "Times"
    arity = 2

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        (m, k), (k2, n) = input_shapes  # type: ignore[misc]
        if k != k2:
            raise GraphValidationError(
                f"cannot multiply {m}x{k} by {k2}x{n}.", self.name
            )
        return (m, n)


class _ElementwiseBinaryNode(ComputationNode):
    arity = 2

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        (r0, c0), (r1, c1) = input_shapes  # type: ignore[misc]
        if r0 != r1 or (c0 != c1 and 1 not in (c0, c1)):
            raise GraphValidationError(
                f"incompatible operand shapes {(r0, c0)} and {(r1, c1)}.", self.name
            )
        return (r0, max(c0, c1))


@register_node
class PlusNode(_ElementwiseBinaryNode):
    operator_kind = "Plus"


@register_node
class MinusNode(_ElementwiseBinaryNode):
    operator_kind = "Minus"


@register_node
class ElementTimesNode(_ElementwiseBinaryNode):
    operator_kind = "ElementTimes"


class _UnaryNode(ComputationNode):
    arity = 1

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        return input_shapes[0]  # type: ignore[return-value]


@register_node
class SigmoidNode(_UnaryNode):
    operator_kind = "Sigmoid"


@register_node
class TanhNode(_UnaryNode):
    operator_kind = "Tanh"


@register_node
class RectifiedLinearNode(_UnaryNode):
    operator_kind = "RectifiedLinear"


@register_node
class SoftmaxNode(_UnaryNode):
    operator_kind = "Softmax"


@register_node
class DropoutNode(HasDropoutRate, _UnaryNode):
    operator_kind = "Dropout"

    def __init__(
        self,
        name: str,
        dropout_rate: float = 0.0,
        *,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        super().__init__(name, element_type=element_type, device_id=device_id)
        self.set_dropout_rate(dropout_rate)
        self.random_seed = 0

    def save_state(self, stream: ModelStream) -> None:
        super().save_state(stream)
        stream.write_float(self.dropout_rate)

    def load_state(self, stream: ModelStream, version: int) -> None:
        super().load_state(stream, version)
        self.set_dropout_rate(stream.read_float())


# ----------------------------------------------------------------------
# recurrence
# ----------------------------------------------------------------------


class _DelayNode(ComputationNode):
    """Reads its input shifted in time; the only legal way to close a loop."""

    arity = 1
    is_recurrent = True
    tolerates_unvalidated_inputs = True
    direction: ClassVar[int] = 0

    def __init__(
        self,
        name: str,
        rows: int = 0,
        cols: int = 1,
        *,
        time_step: int = 1,
        initial_state_value: float = 0.1,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        super().__init__(name, element_type=element_type, device_id=device_id)
        if time_step < 1:
            raise ValueError("time_step must be at least 1.")
        self.declared_shape: Shape = (rows, cols)
        self.time_step = time_step
        self.initial_state_value = initial_state_value

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        input_shape = input_shapes[0]
        if input_shape is not None and input_shape != self.declared_shape:
            raise GraphValidationError(
                f"input shape {input_shape} does not match declared shape "
                f"{self.declared_shape}.",
                self.name,
            )
        return self.declared_shape

    def infer_mb_layout(self) -> bool:
        return True

    def save_state(self, stream: ModelStream) -> None:
        super().save_state(stream)
        stream.write_int(self.time_step)
        stream.write_int(self.declared_shape[0])
        stream.write_int(self.declared_shape[1])
        stream.write_float(self.initial_state_value)

    def load_state(self, stream: ModelStream, version: int) -> None:
        super().load_state(stream, version)
        self.time_step = stream.read_int()
        self.declared_shape = (stream.read_int(), stream.read_int())
        self.initial_state_value = stream.read_float()


@register_node
class PastValueNode(_DelayNode):
    operator_kind = "PastValue"
    direction = 1


@register_node
class FutureValueNode(_DelayNode):
    operator_kind = "FutureValue"
    direction = -1


# ----------------------------------------------------------------------
# convolution
# ----------------------------------------------------------------------


@register_node
class ConvolutionNode(HasTempMemoryBudget, ComputationNode):
    """
    Inputs are the kernel matrix (output_channels x kw*kh*input_channels)
    and the image batch (input_width*input_height*input_channels x N).
    """

    operator_kind = "Convolution"
    arity = 2

    def __init__(
        self,
        name: str,
        kernel_width: int = 1,
        kernel_height: int = 1,
        output_channels: int = 1,
        *,
        input_width: int = 1,
        input_height: int = 1,
        input_channels: int = 1,
        horizontal_subsample: int = 1,
        vertical_subsample: int = 1,
        zero_padding: bool = False,
        max_temp_mem_size_in_samples: int = 0,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        super().__init__(name, element_type=element_type, device_id=device_id)
        self.kernel_width = kernel_width
        self.kernel_height = kernel_height
        self.output_channels = output_channels
        self.input_width = input_width
        self.input_height = input_height
        self.input_channels = input_channels
        self.horizontal_subsample = horizontal_subsample
        self.vertical_subsample = vertical_subsample
        self.zero_padding = zero_padding
        self.set_max_temp_mem_size_in_samples(max_temp_mem_size_in_samples)

    def _output_extent(self, extent: int, kernel: int, stride: int) -> int:
        if self.zero_padding:
            return -(-extent // stride)
        return (extent - kernel) // stride + 1

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        kernel_shape, image_shape = input_shapes
        expected_kernel = (
            self.output_channels,
            self.kernel_width * self.kernel_height * self.input_channels,
        )
        if kernel_shape != expected_kernel:
            raise GraphValidationError(
                f"kernel shape {kernel_shape} does not match {expected_kernel}.",
                self.name,
            )
        pixels = self.input_width * self.input_height * self.input_channels
        if image_shape[0] != pixels:  # type: ignore[index]
            raise GraphValidationError(
                f"image rows {image_shape[0]} do not match "  # type: ignore[index]
                f"{self.input_width}x{self.input_height}x{self.input_channels}.",
                self.name,
            )
        out_w = self._output_extent(self.input_width, self.kernel_width, self.horizontal_subsample)
        out_h = self._output_extent(self.input_height, self.kernel_height, self.vertical_subsample)
        if out_w <= 0 or out_h <= 0:
            raise GraphValidationError("kernel is larger than the input image.", self.name)
        return (out_w * out_h * self.output_channels, image_shape[1])  # type: ignore[index]

    def save_state(self, stream: ModelStream) -> None:
        super().save_state(stream)
        for value in (
            self.kernel_width,
            self.kernel_height,
            self.output_channels,
            self.input_width,
            self.input_height,
            self.input_channels,
            self.horizontal_subsample,
            self.vertical_subsample,
        ):
            stream.write_int(value)
        stream.write_bool(self.zero_padding)
        stream.write_int(self.max_temp_mem_size_in_samples)

    def load_state(self, stream: ModelStream, version: int) -> None:
        super().load_state(stream, version)
        (
            self.kernel_width,
            self.kernel_height,
            self.output_channels,
            self.input_width,
            self.input_height,
            self.input_channels,
            self.horizontal_subsample,
            self.vertical_subsample,
        ) = (stream.read_int() for _ in range(8))
        self.zero_padding = stream.read_bool()
        self.set_max_temp_mem_size_in_samples(stream.read_int())


# ----------------------------------------------------------------------
# precompute (statistics) nodes
# ----------------------------------------------------------------------


class _PreComputeNode(Precomputable, ComputationNode):
    arity = 1

    def __init__(
        self,
        name: str,
        *,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        super().__init__(name, element_type=element_type, device_id=device_id)
        self.has_computed = False

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        rows = input_shapes[0][0]  # type: ignore[index]
        if self.value is not None and self.value.shape != (rows, 1):
            raise GraphValidationError(
                f"cached statistics have shape {self.value.shape}, expected {(rows, 1)}.",
                self.name,
            )
        return (rows, 1)

    def infer_mb_layout(self) -> bool:
        return False

    def save_state(self, stream: ModelStream) -> None:
        super().save_state(stream)
        stream.write_bool(self.has_computed)
        stream.write_bool(self.value is not None)
        if self.value is not None:
            stream.write_matrix(self.value)

    def load_state(self, stream: ModelStream, version: int) -> None:
        super().load_state(stream, version)
        self.has_computed = stream.read_bool()
        if stream.read_bool():
            self.value = stream.read_matrix().astype(self.element_type.dtype)
        else:
            self.value = None


@register_node
class MeanNode(_PreComputeNode):
    operator_kind = "Mean"


@register_node
class InvStdDevNode(_PreComputeNode):
    operator_kind = "InvStdDev"


# ----------------------------------------------------------------------
# criteria
# ----------------------------------------------------------------------


class _CriterionNode(ComputationNode):
    """Reduces (labels, prediction, ...) to a scalar."""

    arity = 2

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        first = input_shapes[0]
        for shape in input_shapes[1:]:
            if shape != first:
                raise GraphValidationError(
                    f"operand shapes differ: {list(input_shapes)}.", self.name
                )
        return (1, 1)

    def infer_mb_layout(self) -> bool:
        return False


@register_node
class SquareErrorNode(_CriterionNode):
    operator_kind = "SquareError"


@register_node
class CrossEntropyWithSoftmaxNode(_CriterionNode):
    operator_kind = "CrossEntropyWithSoftmax"


@register_node
class CrossEntropyNode(_CriterionNode):
    operator_kind = "CrossEntropy"


@register_node
class LogisticNode(_CriterionNode):
    operator_kind = "Logistic"


@register_node
class ErrorPredictionNode(_CriterionNode):
    operator_kind = "ErrorPrediction"


@register_node
class SequenceWithSoftmaxNode(HasSequenceTrainingParams, _CriterionNode):
    """Sequence-discriminative criterion over (labels, prediction, log-likelihood)."""

    operator_kind = "SequenceWithSoftmax"
    arity = 3

    def __init__(
        self,
        name: str,
        *,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        super().__init__(name, element_type=element_type, device_id=device_id)
        self.sequence_params = SequenceTrainingParams()

    def save_state(self, stream: ModelStream) -> None:
        super().save_state(stream)
        params = self.sequence_params
        stream.write_float(params.hsmoothing_weight)
        stream.write_float(params.frame_drop_threshold)
        stream.write_bool(params.do_reference_align)
        stream.write_float(params.amf)
        stream.write_float(params.lmf)
        stream.write_float(params.wp)
        stream.write_float(params.b_mmi_factor)
        stream.write_bool(params.s_mbr)

    def load_state(self, stream: ModelStream, version: int) -> None:
        super().load_state(stream, version)
        self.sequence_params = SequenceTrainingParams(
            hsmoothing_weight=stream.read_float(),
            frame_drop_threshold=stream.read_float(),
            do_reference_align=stream.read_bool(),
            amf=stream.read_float(),
            lmf=stream.read_float(),
            wp=stream.read_float(),
            b_mmi_factor=stream.read_float(),
            s_mbr=stream.read_bool(),
        )


CRITERION_OPERATOR_KINDS = frozenset(
    {
        "SquareError",
        "Logistic",
        "CrossEntropyWithSoftmax",
        "SequenceWithSoftmax",
        "CrossEntropy",
        "ClassBasedCrossEntropyWithSoftmax",
        "ErrorPrediction",
        "DummyCriterion",
    }
)

INPUT_OPERATOR_KINDS = frozenset({InputValueNode.operator_kind, SparseInputValueNode.operator_kind})
