"""
Type descriptions of the lowered (DAQ) model.
"""

import numpy as np
from typing import ClassVar, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum


class FuseCode(Enum):
    """Activation folded into a producing layer. Values are the serialized byte."""

    NONE = 0
    RELU = 1
    RELU1 = 2
    RELU6 = 3


class LayerType(Enum):
    """Layer kinds of the target runtime, in schema order"""

    CONV_2D = 0
    AVE_POOL = 1
    MAX_POOL = 2
    RELU = 3
    SOFTMAX = 4
    FC = 5
    ADD = 6
    CONCAT = 7
    DEPTHWISE_CONV_2D = 8
    BATCH_TO_SPACE = 9
    SPACE_TO_BATCH = 10
    STRIDED_SLICE = 11


class DataType(Enum):
    FLOAT32 = 0
    QUANT8_ASYMM = 1


@dataclass(frozen=True)
class RawTensor:
    """Float32 initializer as found in the source graph (flat data)"""

    name: str
    shape: Tuple[int, ...]
    data: np.ndarray

    def as_array(self) -> np.ndarray:
        """Return the data reshaped to `shape`."""
        return self.data.reshape(self.shape)


@dataclass(frozen=True)
class LoweredTensor:
    """Tensor materialized for the target runtime"""

    name: str
    shape: Tuple[int, ...]
    data: np.ndarray
    data_type: DataType = DataType.FLOAT32


@dataclass(frozen=True)
class GraphInput:
    """Graph-level input, shape already channel-last"""

    name: str
    shape: Tuple[int, ...]


@dataclass(frozen=True, kw_only=True)
class LoweredLayer:
    """Base class for all lowered layers"""

    layer_type: ClassVar[LayerType]

    output: str

    @property
    def inputs(self) -> Tuple[str, ...]:
        """Operand names this layer reads."""
        return (self.input,)


@dataclass(frozen=True, kw_only=True)
class Conv2DLayer(LoweredLayer):
    layer_type: ClassVar[LayerType] = LayerType.CONV_2D

    input: str
    weight: str
    bias: Optional[str] = None
    # [top, bottom, left, right]
    padding: Tuple[int, int, int, int] = (0, 0, 0, 0)
    # [stride_h, stride_w]
    strides: Tuple[int, int] = (1, 1)
    fuse: FuseCode = FuseCode.NONE

    @property
    def inputs(self) -> Tuple[str, ...]:
        return tuple(n for n in (self.input, self.weight, self.bias) if n is not None)


@dataclass(frozen=True, kw_only=True)
class DepthwiseConv2DLayer(Conv2DLayer):
    layer_type: ClassVar[LayerType] = LayerType.DEPTHWISE_CONV_2D

    multiplier: int = 1


@dataclass(frozen=True, kw_only=True)
class PoolLayer(LoweredLayer):
    """Windowed or global pooling. Kernel (-1, -1) means the whole spatial extent."""

    input: str
    kernel_shape: Tuple[int, int]
    padding: Tuple[int, int, int, int] = (0, 0, 0, 0)
    strides: Tuple[int, int] = (1, 1)
    fuse: FuseCode = FuseCode.NONE

    def is_global(self) -> bool:
        return self.kernel_shape == (-1, -1)


@dataclass(frozen=True, kw_only=True)
class AvePoolLayer(PoolLayer):
    layer_type: ClassVar[LayerType] = LayerType.AVE_POOL


@dataclass(frozen=True, kw_only=True)
class MaxPoolLayer(PoolLayer):
    layer_type: ClassVar[LayerType] = LayerType.MAX_POOL


@dataclass(frozen=True, kw_only=True)
class ReluLayer(LoweredLayer):
    layer_type: ClassVar[LayerType] = LayerType.RELU

    input: str


@dataclass(frozen=True, kw_only=True)
class SoftmaxLayer(LoweredLayer):
    """Softmax over the last axis; the runtime has no axis parameter"""

    layer_type: ClassVar[LayerType] = LayerType.SOFTMAX

    input: str


@dataclass(frozen=True, kw_only=True)
class FCLayer(LoweredLayer):
    """output = input . weight^T + bias"""

    layer_type: ClassVar[LayerType] = LayerType.FC

    input: str
    weight: str
    bias: Optional[str] = None
    fuse: FuseCode = FuseCode.NONE

    @property
    def inputs(self) -> Tuple[str, ...]:
        return tuple(n for n in (self.input, self.weight, self.bias) if n is not None)


@dataclass(frozen=True, kw_only=True)
class AddLayer(LoweredLayer):
    layer_type: ClassVar[LayerType] = LayerType.ADD

    input1: str
    input2: str
    fuse: FuseCode = FuseCode.NONE

    @property
    def inputs(self) -> Tuple[str, ...]:
        return (self.input1, self.input2)


@dataclass(frozen=True, kw_only=True)
class ConcatLayer(LoweredLayer):
    layer_type: ClassVar[LayerType] = LayerType.CONCAT

    concat_inputs: Tuple[str, ...]
    # channel-last axis
    axis: int

    @property
    def inputs(self) -> Tuple[str, ...]:
        return self.concat_inputs


@dataclass(frozen=True, kw_only=True)
class SpaceToBatchLayer(LoweredLayer):
    layer_type: ClassVar[LayerType] = LayerType.SPACE_TO_BATCH

    input: str
    block_sizes: Tuple[int, int]
    # [top, bottom, left, right]
    pads: Tuple[int, int, int, int]


@dataclass(frozen=True, kw_only=True)
class BatchToSpaceLayer(LoweredLayer):
    layer_type: ClassVar[LayerType] = LayerType.BATCH_TO_SPACE

    input: str
    block_sizes: Tuple[int, int]


@dataclass(frozen=True, kw_only=True)
class StridedSliceLayer(LoweredLayer):
    layer_type: ClassVar[LayerType] = LayerType.STRIDED_SLICE

    input: str
    starts: Tuple[int, ...]
    ends: Tuple[int, ...]
    strides: Tuple[int, ...]
    begin_mask: int = 0
    end_mask: int = 0
    shrink_axis_mask: int = 0


@dataclass(frozen=True)
class LoweredModel:
    """Complete output artifact of one conversion"""

    inputs: Tuple[GraphInput, ...]
    tensors: Tuple[LoweredTensor, ...]
    layers: Tuple[LoweredLayer, ...]

    # Resolved names of the source graph outputs (not serialized)
    outputs: Tuple[str, ...] = field(default=())

    def get_tensor(self, name: str) -> LoweredTensor:
        for tensor in self.tensors:
            if tensor.name == name:
                return tensor
        raise KeyError(name)

    def layers_of_type(self, layer_type: LayerType) -> list:
        return [layer for layer in self.layers if layer.layer_type == layer_type]

    def __str__(self) -> str:
        layer_types = [layer.layer_type.name for layer in self.layers]
        layers_str = "\n  ".join(layer_types)
        return (
            f"LoweredModel(inputs={len(self.inputs)}, tensors={len(self.tensors)}, "
            f"layers={len(self.layers)})\n"
            f"Layer types (in order):\n  {layers_str}"
        )
