from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, List, Optional, Sequence, Tuple

import numpy as np

from compnet.errors import FormatError, GraphValidationError, StateError

if TYPE_CHECKING:  # pragma: no cover
    from compnet.serialization.stream import ModelStream

Shape = Tuple[int, int]

# Model versions understood by the node codecs. Version 1 files carry no
# element-type tag in the node blobs.
MODEL_VERSION_1 = 1
MODEL_VERSION_ELEMENT_TYPE = 2
CURRENT_MODEL_VERSION = MODEL_VERSION_ELEMENT_TYPE


class ElementType(str, Enum):
    """Numeric precision of a node's values."""

    FLOAT = "float"
    DOUBLE = "double"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(np.float32) if self is ElementType.FLOAT else np.dtype(np.float64)

    @classmethod
    def from_dtype(cls, dtype) -> "ElementType":
        dtype = np.dtype(dtype)
        if dtype == np.float32:
            return cls.FLOAT
        if dtype == np.float64:
            return cls.DOUBLE
        raise ValueError(f"No element type for dtype `{dtype}`.")


class ComputationNode:
    """
    Named vertex of a computation network.

    A node references (but does not own) its inputs; the owning
    ``ComputationNetwork`` is the only place nodes live. Subclasses fix the
    operator kind and arity and implement shape inference and their own
    state codec.
    """

    operator_kind: ClassVar[str] = "ComputationNode"
    arity: ClassVar[Optional[int]] = None

    is_learnable_parameter: ClassVar[bool] = False
    is_input_value: ClassVar[bool] = False
    is_recurrent: ClassVar[bool] = False
    requires_precompute: ClassVar[bool] = False
    # Delay nodes may be validated before their (loop-internal) input.
    tolerates_unvalidated_inputs: ClassVar[bool] = False

    def __init__(
        self,
        name: str,
        *,
        element_type: ElementType = ElementType.FLOAT,
        device_id: int = -1,
    ) -> None:
        if not name:
            raise ValueError("Node name must be a non-empty string.")
        self.name = name
        self.element_type = ElementType(element_type)
        self.device_id = device_id
        self.inputs: List[Optional[ComputationNode]] = []
        self.shape: Optional[Shape] = None
        self.has_mb_layout = False
        self.value: Optional[np.ndarray] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, shape={self.shape})"

    # ------------------------------------------------------------------
    # wiring
    # ------------------------------------------------------------------

    @property
    def num_inputs(self) -> int:
        return len(self.inputs)

    def input(self, index: int) -> Optional["ComputationNode"]:
        return self.inputs[index]

    def attach_inputs(self, inputs: Sequence[Optional["ComputationNode"]]) -> None:
        """One-time wiring of this node's inputs."""
        if self.inputs:
            raise StateError(f"Node `{self.name}` already has its inputs attached.")
        self._check_arity(len(inputs))
        self.inputs = list(inputs)

    def replace_input(self, old: "ComputationNode", new: "ComputationNode") -> int:
        """Point every input slot holding ``old`` at ``new``; returns the count."""
        replaced = 0
        for idx, inp in enumerate(self.inputs):
            if inp is old:
                self.inputs[idx] = new
                replaced += 1
        return replaced

    def detach_inputs(self) -> None:
        self.inputs = []

    def _check_arity(self, count: int) -> None:
        if self.arity is not None and count != self.arity:
            raise GraphValidationError(
                f"{self.operator_kind} expects {self.arity} inputs, got {count}.",
                self.name,
            )

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def validate(self, is_reload: bool = False) -> None:
        """
        Check arity and input types and (re)compute ``shape``.

        Args:
            is_reload: The node's state was just reloaded into an already
                wired network; its shape must not change.
        """
        self._check_arity(len(self.inputs))
        for idx, inp in enumerate(self.inputs):
            if inp is None:
                raise GraphValidationError(f"input {idx} is not connected.", self.name)
            if inp.element_type is not self.element_type:
                raise GraphValidationError(
                    f"input `{inp.name}` is {inp.element_type.value}, "
                    f"node is {self.element_type.value}.",
                    self.name,
                )
            if inp.shape is None and not self.tolerates_unvalidated_inputs:
                raise GraphValidationError(
                    f"input `{inp.name}` has not been validated.", self.name
                )

        previous = self.shape
        shape = self.infer_shape([inp.shape for inp in self.inputs])  # type: ignore[union-attr]
        if is_reload and previous is not None and shape != previous:
            raise GraphValidationError(
                f"shape changed on reload from {previous} to {shape}.", self.name
            )
        self.shape = shape
        self.has_mb_layout = self.infer_mb_layout()

    def infer_shape(self, input_shapes: Sequence[Optional[Shape]]) -> Shape:
        raise NotImplementedError

    def infer_mb_layout(self) -> bool:
        return any(inp is not None and inp.has_mb_layout for inp in self.inputs)

    def unit_test(self) -> bool:
        """Numeric self-check hook; kernels live outside the core."""
        return True

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def save(self, stream: "ModelStream") -> None:
        stream.write_string(self.operator_kind)
        stream.write_string(self.name)
        self.save_state(stream)

    def load(self, stream: "ModelStream", version: int) -> None:
        self.load_state(stream, version)

    def save_state(self, stream: "ModelStream") -> None:
        stream.write_string(self.element_type.value)

    def load_state(self, stream: "ModelStream", version: int) -> None:
        if version >= MODEL_VERSION_ELEMENT_TYPE:
            tag = stream.read_string()
            try:
                self.element_type = ElementType(tag)
            except ValueError as exc:
                raise FormatError(
                    f"Node `{self.name}` has unknown element type `{tag}`."
                ) from exc


# ----------------------------------------------------------------------
# capabilities
# ----------------------------------------------------------------------


class Precomputable:
    """Value is computed once from data (statistics), then cached and reused."""

    requires_precompute: ClassVar[bool] = True
    has_computed: bool = False

    def mark_computed(self, has_computed: bool = True) -> None:
        self.has_computed = has_computed


class HasDropoutRate:
    dropout_rate: float = 0.0
    random_seed: int = 0

    def set_dropout_rate(self, rate: float) -> None:
        if not 0.0 <= rate < 1.0:
            raise ValueError(f"Dropout rate must be in [0, 1), got {rate}.")
        self.dropout_rate = float(rate)

    def set_random_seed(self, seed: int) -> None:
        self.random_seed = int(seed)


@dataclass
class SequenceTrainingParams:
    """Sequence-training criterion settings (smoothing, frame dropping, lattice scaling)."""

    hsmoothing_weight: float = 0.0
    frame_drop_threshold: float = 0.0
    do_reference_align: bool = False
    amf: float = 14.0
    lmf: float = 14.0
    wp: float = 0.0
    b_mmi_factor: float = 0.0
    s_mbr: bool = False


class HasSequenceTrainingParams:
    sequence_params: SequenceTrainingParams

    def set_sequence_params(self, params: SequenceTrainingParams) -> None:
        self.sequence_params = SequenceTrainingParams(**vars(params))


class HasTempMemoryBudget:
    max_temp_mem_size_in_samples: int = 0

    def set_max_temp_mem_size_in_samples(self, samples: int) -> None:
        if samples < 0:
            raise ValueError("Temporary memory budget must be non-negative.")
        self.max_temp_mem_size_in_samples = int(samples)
