"""
Serialization of a LoweredModel into the DAQ flatbuffer.

Schema (root type Model):

    enum DataType:byte { Float32 = 0, QUANT8_ASYMM }
    enum FuseCode:byte { None = 0, Relu, Relu1, Relu6 }
    enum LayerType:byte { Conv2D = 0, AvePool, MaxPool, Relu, Softmax, FC, Add,
                          Concat, DepthwiseConv2D, BatchToSpace, SpaceToBatch,
                          StridedSlice }

    table Tensor { data_type; int8_data:[ubyte]; float32_data:[float];
                   shape:[uint]; name:string; }
    table Input { shape:[uint]; name:string; }
    table Layer { type:LayerType; conv2d_param; avepool_param; maxpool_param;
                  relu_param; softmax_param; fc_param; add_param; concat_param;
                  depthwise_conv2d_param; batch_to_space_param;
                  space_to_batch_param; strided_slice_param; }
    table Model { layers:[Layer]; initializers:[Tensor]; inputs:[Input]; }

The parameter table of a layer sits in slot `layer_type + 1` of Layer.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import flatbuffers
import numpy as np

from .types import (
    LayerType,
    LoweredModel,
    LoweredLayer,
    LoweredTensor,
    GraphInput,
    Conv2DLayer,
    DepthwiseConv2DLayer,
    PoolLayer,
    ReluLayer,
    SoftmaxLayer,
    FCLayer,
    AddLayer,
    ConcatLayer,
    SpaceToBatchLayer,
    BatchToSpaceLayer,
    StridedSliceLayer,
)

logger = logging.getLogger(__name__)

LAYER_NUM_FIELDS = 13


def _int_vector(builder: flatbuffers.Builder, values: Sequence[int]) -> int:
    return builder.CreateNumpyVector(np.asarray(values, dtype=np.int32))


def _uint_vector(builder: flatbuffers.Builder, values: Sequence[int]) -> int:
    return builder.CreateNumpyVector(np.asarray(values, dtype=np.uint32))


def _offset_vector(builder: flatbuffers.Builder, offsets: List[int]) -> int:
    builder.StartVector(4, len(offsets), 4)
    for offset in reversed(offsets):
        builder.PrependUOffsetTRelative(offset)
    return builder.EndVector()


def _optional_string(builder: flatbuffers.Builder, value: Optional[str]) -> Optional[int]:
    return builder.CreateString(value) if value is not None else None


def _table(builder: flatbuffers.Builder, fields: List[tuple]) -> int:
    """
    Build a table from (kind, value) pairs, one per slot in schema order.

    kind is "offset", "int8", "int32" or "uint32"; None values are left out.
    """
    builder.StartObject(len(fields))
    for slot, (kind, value) in enumerate(fields):
        if value is None:
            continue
        if kind == "offset":
            builder.PrependUOffsetTRelativeSlot(slot, value, 0)
        elif kind == "int8":
            builder.PrependInt8Slot(slot, value, 0)
        elif kind == "int32":
            builder.PrependInt32Slot(slot, value, 0)
        elif kind == "uint32":
            builder.PrependUint32Slot(slot, value, 0)
        else:
            raise ValueError(f"Unknown field kind {kind}")
    return builder.EndObject()


def _write_conv2d(builder: flatbuffers.Builder, layer: Conv2DLayer) -> int:
    input_ = builder.CreateString(layer.input)
    weight = builder.CreateString(layer.weight)
    bias = _optional_string(builder, layer.bias)
    padding = _int_vector(builder, layer.padding)
    strides = _int_vector(builder, layer.strides)
    output = builder.CreateString(layer.output)
    fields = [
        ("offset", input_),
        ("offset", weight),
        ("offset", bias),
        ("offset", padding),
        ("offset", strides),
    ]
    if isinstance(layer, DepthwiseConv2DLayer):
        fields.append(("int32", layer.multiplier))
    fields += [("int8", layer.fuse.value), ("offset", output)]
    return _table(builder, fields)


def _write_pool(builder: flatbuffers.Builder, layer: PoolLayer) -> int:
    input_ = builder.CreateString(layer.input)
    kernel_shape = _int_vector(builder, layer.kernel_shape)
    padding = _int_vector(builder, layer.padding)
    strides = _int_vector(builder, layer.strides)
    output = builder.CreateString(layer.output)
    return _table(
        builder,
        [
            ("offset", input_),
            ("offset", kernel_shape),
            ("offset", padding),
            ("offset", strides),
            ("int8", layer.fuse.value),
            ("offset", output),
        ],
    )


def _write_unary(builder: flatbuffers.Builder, layer: ReluLayer | SoftmaxLayer) -> int:
    input_ = builder.CreateString(layer.input)
    output = builder.CreateString(layer.output)
    return _table(builder, [("offset", input_), ("offset", output)])


def _write_fc(builder: flatbuffers.Builder, layer: FCLayer) -> int:
    input_ = builder.CreateString(layer.input)
    weight = builder.CreateString(layer.weight)
    bias = _optional_string(builder, layer.bias)
    output = builder.CreateString(layer.output)
    return _table(
        builder,
        [
            ("offset", input_),
            ("offset", weight),
            ("offset", bias),
            ("int8", layer.fuse.value),
            ("offset", output),
        ],
    )


def _write_add(builder: flatbuffers.Builder, layer: AddLayer) -> int:
    input1 = builder.CreateString(layer.input1)
    input2 = builder.CreateString(layer.input2)
    output = builder.CreateString(layer.output)
    return _table(
        builder,
        [
            ("offset", input1),
            ("offset", input2),
            ("int8", layer.fuse.value),
            ("offset", output),
        ],
    )


def _write_concat(builder: flatbuffers.Builder, layer: ConcatLayer) -> int:
    inputs = _offset_vector(
        builder, [builder.CreateString(name) for name in layer.concat_inputs]
    )
    output = builder.CreateString(layer.output)
    return _table(
        builder, [("offset", inputs), ("uint32", layer.axis), ("offset", output)]
    )


def _write_batch_to_space(builder: flatbuffers.Builder, layer: BatchToSpaceLayer) -> int:
    input_ = builder.CreateString(layer.input)
    block_sizes = _int_vector(builder, layer.block_sizes)
    output = builder.CreateString(layer.output)
    return _table(
        builder, [("offset", input_), ("offset", block_sizes), ("offset", output)]
    )


def _write_space_to_batch(builder: flatbuffers.Builder, layer: SpaceToBatchLayer) -> int:
    input_ = builder.CreateString(layer.input)
    block_sizes = _int_vector(builder, layer.block_sizes)
    pads = _int_vector(builder, layer.pads)
    output = builder.CreateString(layer.output)
    return _table(
        builder,
        [
            ("offset", input_),
            ("offset", block_sizes),
            ("offset", pads),
            ("offset", output),
        ],
    )


def _write_strided_slice(builder: flatbuffers.Builder, layer: StridedSliceLayer) -> int:
    input_ = builder.CreateString(layer.input)
    starts = _int_vector(builder, layer.starts)
    ends = _int_vector(builder, layer.ends)
    strides = _int_vector(builder, layer.strides)
    output = builder.CreateString(layer.output)
    return _table(
        builder,
        [
            ("offset", input_),
            ("offset", starts),
            ("offset", ends),
            ("offset", strides),
            ("int32", layer.begin_mask),
            ("int32", layer.end_mask),
            ("int32", layer.shrink_axis_mask),
            ("offset", output),
        ],
    )


LAYER_WRITERS: Dict[LayerType, Callable[[flatbuffers.Builder, LoweredLayer], int]] = {
    LayerType.CONV_2D: _write_conv2d,
    LayerType.AVE_POOL: _write_pool,
    LayerType.MAX_POOL: _write_pool,
    LayerType.RELU: _write_unary,
    LayerType.SOFTMAX: _write_unary,
    LayerType.FC: _write_fc,
    LayerType.ADD: _write_add,
    LayerType.CONCAT: _write_concat,
    LayerType.DEPTHWISE_CONV_2D: _write_conv2d,
    LayerType.BATCH_TO_SPACE: _write_batch_to_space,
    LayerType.SPACE_TO_BATCH: _write_space_to_batch,
    LayerType.STRIDED_SLICE: _write_strided_slice,
}


def write_layer(builder: flatbuffers.Builder, layer: LoweredLayer) -> int:
    param = LAYER_WRITERS[layer.layer_type](builder, layer)
    builder.StartObject(LAYER_NUM_FIELDS)
    builder.PrependInt8Slot(0, layer.layer_type.value, 0)
    builder.PrependUOffsetTRelativeSlot(layer.layer_type.value + 1, param, 0)
    return builder.EndObject()


def write_tensor(builder: flatbuffers.Builder, tensor: LoweredTensor) -> int:
    float32_data = builder.CreateNumpyVector(np.asarray(tensor.data, dtype=np.float32))
    shape = _uint_vector(builder, tensor.shape)
    name = builder.CreateString(tensor.name)
    return _table(
        builder,
        [
            ("int8", tensor.data_type.value),
            ("offset", None),
            ("offset", float32_data),
            ("offset", shape),
            ("offset", name),
        ],
    )


def write_input(builder: flatbuffers.Builder, graph_input: GraphInput) -> int:
    shape = _uint_vector(builder, graph_input.shape)
    name = builder.CreateString(graph_input.name)
    return _table(builder, [("offset", shape), ("offset", name)])


def serialize_model(model: LoweredModel) -> bytes:
    """
    Build the complete DAQ buffer in memory.

    Args:
        model: Lowered model

    Returns:
        Serialized flatbuffer
    """
    builder = flatbuffers.Builder(1024)

    layers = _offset_vector(builder, [write_layer(builder, l) for l in model.layers])
    tensors = _offset_vector(builder, [write_tensor(builder, t) for t in model.tensors])
    inputs = _offset_vector(builder, [write_input(builder, i) for i in model.inputs])

    root = _table(
        builder, [("offset", layers), ("offset", tensors), ("offset", inputs)]
    )
    builder.Finish(root)

    buffer = bytes(builder.Output())
    logger.info(
        f"Serialized {len(model.layers)} layers, {len(model.tensors)} tensors, "
        f"{len(model.inputs)} inputs ({len(buffer)} bytes)"
    )
    return buffer


def save_model(model: LoweredModel, output_path: str | Path) -> bytes:
    """
    Serialize `model` and write it as the sole contents of `output_path`.

    Returns:
        The bytes written
    """
    buffer = serialize_model(model)
    output_file = Path(output_path)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    output_file.write_bytes(buffer)
    logger.info(f"Wrote {output_file}")
    return buffer
