"""
Per-operator lowering handlers.
Each handler turns one ONNX node into zero or more lowered layers.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict

from ..types import (
    AvePoolLayer,
    MaxPoolLayer,
    ReluLayer,
    SoftmaxLayer,
    FCLayer,
    AddLayer,
    ConcatLayer,
)
from ..errors import UnsupportedConfiguration, UnsupportedOperator
from .attributes import NodeAttributes
from .context import ConversionContext
from .conv_lowering import add_conv
from .weight_utils import copy_tensor

logger = logging.getLogger(__name__)


class OpType(Enum):
    """Supported ONNX operators"""

    CONV = "Conv"
    AVERAGE_POOL = "AveragePool"
    MAX_POOL = "MaxPool"
    GLOBAL_AVERAGE_POOL = "GlobalAveragePool"
    GLOBAL_MAX_POOL = "GlobalMaxPool"
    RELU = "Relu"
    ADD = "Add"
    GEMM = "Gemm"
    SOFTMAX = "Softmax"
    CONCAT = "Concat"
    DROPOUT = "Dropout"
    RESHAPE = "Reshape"

    @classmethod
    def of(cls, node: Dict[str, Any]) -> "OpType":
        try:
            return cls(node["op_type"])
        except ValueError:
            raise UnsupportedOperator(f"Unsupported operator {node['op_type']}") from None


# channel-first axis -> channel-last axis
AXIS_NCHW_TO_NHWC = (0, 3, 1, 2)


def onnx_pads_to_nnapi(pads):
    """[h_begin, w_begin, h_end, w_end] -> [top, bottom, left, right]"""
    return [pads[0], pads[2], pads[1], pads[3]]


def output_of(node: Dict[str, Any], ctx: ConversionContext, activation) -> str:
    """Output operand of a producer; a fused activation's output replaces it."""
    if activation.is_fused():
        return ctx.m(activation.output)
    return ctx.m(node["outputs"][0])


def lower_conv(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """Lower Conv (vanilla, depthwise or dilated)."""
    helper = NodeAttributes(node)
    strides = helper.get_ints("strides", [1, 1], 2)
    pads = helper.get_ints("pads", [0, 0, 0, 0], 4)
    dilations = helper.get_ints("dilations", [1, 1], 2)
    group = helper.get("group", 1)
    if helper.has("auto_pad") and helper.get("auto_pad") != "NOTSET":
        raise UnsupportedConfiguration("auto_pad is not supported")

    activation = ctx.activations.find_activation(node)

    bias_name = None
    if len(node["inputs"]) >= 3 and node["inputs"][2]:
        ori_bias_name = ctx.m(node["inputs"][2])
        bias_name = f"{ori_bias_name}_conv_b"
        ctx.register_tensor(copy_tensor(ctx.raw_tensor(ori_bias_name), bias_name))

    add_conv(
        ctx,
        ctx.m(node["inputs"][0]),
        strides,
        onnx_pads_to_nnapi(pads),
        dilations,
        group,
        activation.fuse_code,
        ctx.m(node["inputs"][1]),
        bias_name,
        output_of(node, ctx, activation),
    )


def lower_pool(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """Lower windowed and global average/max pooling."""
    op = OpType.of(node)
    helper = NodeAttributes(node)
    input_name = ctx.m(node["inputs"][0])

    if op in (OpType.AVERAGE_POOL, OpType.MAX_POOL):
        strides = helper.get_ints("strides", [1, 1], 2)
        pads = onnx_pads_to_nnapi(helper.get_ints("pads", [0, 0, 0, 0], 4))
        if not helper.has("kernel_shape"):
            raise UnsupportedConfiguration("kernel_shape is required")
        kernel_shape = helper.get_ints("kernel_shape", [0, 0], 2)
        if helper.get("count_include_pad", 0) == 1:
            raise UnsupportedConfiguration("count_include_pad == 1 is not supported")
        if helper.get("storage_order", 0) == 1:
            raise UnsupportedConfiguration("storage_order == 1 is not supported")
        if helper.has("auto_pad"):
            raise UnsupportedConfiguration("auto_pad is not supported")
        if helper.get("ceil_mode", 0) == 1:
            raise UnsupportedConfiguration("ceil_mode == 1 is not supported")
        if helper.get_ints("dilations", [1, 1], 2) != [1, 1]:
            raise UnsupportedConfiguration("Pooling dilations are not supported")
    else:
        strides = [0, 0]
        pads = [0, 0, 0, 0]
        kernel_shape = [-1, -1]  # global

    activation = ctx.activations.find_activation(node)
    output_name = output_of(node, ctx, activation)

    ctx.shaper.pool(input_name, kernel_shape, pads, strides, output_name)
    layer_class = (
        AvePoolLayer
        if op in (OpType.AVERAGE_POOL, OpType.GLOBAL_AVERAGE_POOL)
        else MaxPoolLayer
    )
    ctx.add_layer(
        layer_class(
            input=input_name,
            kernel_shape=tuple(kernel_shape),
            padding=tuple(pads),
            strides=tuple(strides),
            fuse=activation.fuse_code,
            output=output_name,
        )
    )


def lower_relu(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """Lower a standalone Relu, unless it was fused into its producer."""
    if ctx.activations.is_consumed(node):
        logger.info(f"Relu {node['name']} fused into its producer, skipping")
        return

    input_name = ctx.m(node["inputs"][0])
    output_name = ctx.m(node["outputs"][0])
    ctx.shaper.relu(input_name, output_name)
    ctx.add_layer(ReluLayer(input=input_name, output=output_name))


def lower_add(node: Dict[str, Any], ctx: ConversionContext) -> None:
    input1_name = ctx.m(node["inputs"][0])
    input2_name = ctx.m(node["inputs"][1])
    activation = ctx.activations.find_activation(node)
    output_name = output_of(node, ctx, activation)

    ctx.shaper.eltwise(input1_name, input2_name, output_name)
    ctx.add_layer(
        AddLayer(
            input1=input1_name,
            input2=input2_name,
            fuse=activation.fuse_code,
            output=output_name,
        )
    )


def lower_gemm(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """
    Lower Gemm as a fully connected layer, output = input . weight^T + bias.

    Only transA == 0, transB == 1, alpha == 1.0 and beta == 1.0 is supported.
    """
    helper = NodeAttributes(node)
    trans_a = helper.get("transA", 0)
    trans_b = helper.get("transB", 0)
    alpha = helper.get("alpha", 1.0)
    beta = helper.get("beta", 1.0)
    if not (trans_a == 0 and trans_b == 1 and alpha == 1.0 and beta == 1.0):
        raise UnsupportedConfiguration(
            f"Only transA == 0, transB == 1, alpha == 1.0 and beta == 1.0 is supported, "
            f"got transA={trans_a}, transB={trans_b}, alpha={alpha}, beta={beta}"
        )

    input_name = ctx.m(node["inputs"][0])
    weight_name = ctx.m(node["inputs"][1])
    weight = ctx.register_tensor(copy_tensor(ctx.raw_tensor(weight_name), weight_name))
    if len(weight.shape) != 2:
        raise UnsupportedConfiguration(
            f"Gemm weight '{weight_name}' must be 2-D, got shape {weight.shape}"
        )

    bias_name = None
    if len(node["inputs"]) >= 3 and node["inputs"][2]:
        bias_name = ctx.m(node["inputs"][2])
        ctx.register_tensor(copy_tensor(ctx.raw_tensor(bias_name), bias_name))

    activation = ctx.activations.find_activation(node)
    output_name = output_of(node, ctx, activation)

    ctx.shaper.fc(input_name, weight_name, output_name)
    ctx.add_layer(
        FCLayer(
            input=input_name,
            weight=weight_name,
            bias=bias_name,
            fuse=activation.fuse_code,
            output=output_name,
        )
    )


def lower_softmax(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """Lower Softmax. The runtime has no axis parameter, so "axis" is ignored."""
    if NodeAttributes(node).has("axis"):
        logger.debug(f"Ignoring axis attribute of Softmax {node['name']}")

    input_name = ctx.m(node["inputs"][0])
    output_name = ctx.m(node["outputs"][0])
    ctx.shaper.softmax(input_name, output_name)
    ctx.add_layer(SoftmaxLayer(input=input_name, output=output_name))


def lower_concat(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """
    Lower Concat. The axis of 4-D operands is remapped from channel-first to
    channel-last, other ranks keep it as is.
    """
    concat_inputs = tuple(ctx.m(name) for name in node["inputs"])
    rank = len(ctx.shaper[concat_inputs[0]])
    axis = NodeAttributes(node).get("axis", 1)
    if axis < 0:
        axis += rank
    if not 0 <= axis < rank:
        raise UnsupportedConfiguration(
            f"Concat axis {axis} is out of range for rank {rank} operands"
        )
    nhwc_axis = AXIS_NCHW_TO_NHWC[axis] if rank == 4 else axis

    output_name = ctx.m(node["outputs"][0])
    ctx.shaper.concat(concat_inputs, nhwc_axis, output_name)
    ctx.add_layer(
        ConcatLayer(concat_inputs=concat_inputs, axis=nhwc_axis, output=output_name)
    )


def lower_dropout(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """Dropout does nothing at inference, so the output is the same as the input."""
    ctx.resolver.alias(node["outputs"][0], ctx.m(node["inputs"][0]))


def lower_reshape(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """
    Reshape emits no layer and must be the last node of the graph.
    Its output refers to the unreshaped input from here on.
    """
    ctx.resolver.alias(node["outputs"][0], ctx.m(node["inputs"][0]))
    ctx.has_reshape = True


LAYER_LOWERINGS: Dict[OpType, Callable[[Dict[str, Any], ConversionContext], None]] = {
    OpType.CONV: lower_conv,
    OpType.AVERAGE_POOL: lower_pool,
    OpType.MAX_POOL: lower_pool,
    OpType.GLOBAL_AVERAGE_POOL: lower_pool,
    OpType.GLOBAL_MAX_POOL: lower_pool,
    OpType.RELU: lower_relu,
    OpType.ADD: lower_add,
    OpType.GEMM: lower_gemm,
    OpType.SOFTMAX: lower_softmax,
    OpType.CONCAT: lower_concat,
    OpType.DROPOUT: lower_dropout,
    OpType.RESHAPE: lower_reshape,
}


def lower_node(node: Dict[str, Any], ctx: ConversionContext) -> None:
    """Dispatch `node` to its handler."""
    LAYER_LOWERINGS[OpType.of(node)](node, ctx)
