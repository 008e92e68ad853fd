"""
Convolution lowering: vanilla / depthwise dispatch and the decomposition of
dilated convolution into SpaceToBatch -> Conv -> BatchToSpace -> StridedSlice.
"""

import logging
from typing import Optional, Sequence

from ..types import (
    FuseCode,
    Conv2DLayer,
    DepthwiseConv2DLayer,
    SpaceToBatchLayer,
    BatchToSpaceLayer,
    StridedSliceLayer,
)
from ..errors import UnsupportedConfiguration
from .context import ConversionContext
from .weight_utils import onnx_to_nnapi_vanilla, onnx_to_nnapi_depthwise

logger = logging.getLogger(__name__)


def ceil_to_multiple(value: int, multiple: int) -> int:
    return (value + multiple - 1) // multiple * multiple


def adjusted_high_pad(size: int, pad_low: int, pad_high: int, block: int) -> int:
    """
    High-side padding that makes the padded extent a multiple of `block`.

    Equals ceil_to_multiple(size + pad_high, block) - size whenever `pad_low`
    is a multiple of `block`.
    """
    return ceil_to_multiple(pad_low + size + pad_high, block) - pad_low - size


def add_conv(
    ctx: ConversionContext,
    input_name: str,
    strides: Sequence[int],
    padding: Sequence[int],
    dilations: Sequence[int],
    group: int,
    fuse: FuseCode,
    weight_name: str,
    bias_name: Optional[str],
    output_name: str,
) -> None:
    """
    Lower one convolution.

    Args:
        ctx: Conversion context
        input_name: Resolved input operand
        strides: [stride_h, stride_w]
        padding: [top, bottom, left, right]
        dilations: [dilation_h, dilation_w]
        group: Number of groups
        fuse: Activation folded into the convolution
        weight_name: Resolved name of the ONNX weight initializer
        bias_name: Name of the already registered bias tensor, if any
        output_name: Operand the convolution (or its decomposition) writes
    """
    if tuple(dilations) != (1, 1):
        add_dilated_conv(
            ctx, input_name, strides, padding, dilations, group, fuse,
            weight_name, bias_name, output_name,
        )
        return

    onnx_weight = ctx.raw_tensor(weight_name)
    if len(onnx_weight.shape) != 4:
        raise UnsupportedConfiguration(
            f"Conv weight '{weight_name}' must be 4-D, got shape {onnx_weight.shape}"
        )

    if group == 1:
        logger.info("Vanilla conv")
        weight = ctx.register_tensor(
            onnx_to_nnapi_vanilla(onnx_weight, f"{weight_name}_conv_w")
        )
        ctx.shaper.conv(input_name, weight.name, padding, strides, output_name)
        layer = Conv2DLayer(
            input=input_name,
            weight=weight.name,
            bias=bias_name,
            padding=tuple(padding),
            strides=tuple(strides),
            fuse=fuse,
            output=output_name,
        )
    elif onnx_weight.shape[1] == 1:
        logger.info("Depthwise conv")
        channels = ctx.shaper[input_name][-1]
        if channels != group:
            raise UnsupportedConfiguration(
                f"Depthwise conv needs group == input channels, got group={group}, "
                f"channels={channels}"
            )
        weight = ctx.register_tensor(
            onnx_to_nnapi_depthwise(onnx_weight, f"{weight_name}_dwconv_w")
        )
        ctx.shaper.depthwise_conv(input_name, weight.name, padding, strides, output_name)
        layer = DepthwiseConv2DLayer(
            input=input_name,
            weight=weight.name,
            bias=bias_name,
            padding=tuple(padding),
            strides=tuple(strides),
            multiplier=weight.shape[3] // group,
            fuse=fuse,
            output=output_name,
        )
    else:
        raise UnsupportedConfiguration(
            f"Grouped convolution with group={group} is only supported as depthwise "
            f"(weight second dimension 1), weight shape is {onnx_weight.shape}"
        )

    ctx.add_layer(layer)


def add_dilated_conv(
    ctx: ConversionContext,
    input_name: str,
    strides: Sequence[int],
    padding: Sequence[int],
    dilations: Sequence[int],
    group: int,
    fuse: FuseCode,
    weight_name: str,
    bias_name: Optional[str],
    output_name: str,
) -> None:
    """
    Rewrite a dilated convolution as a plain convolution over space-to-batch
    blocks. The padding of each spatial axis is rounded up on the high side so
    the padded extent divides into the dilation; the excess is sliced off.
    """
    if tuple(strides) != (1, 1):
        raise UnsupportedConfiguration(
            f"Dilations {tuple(dilations)} combined with strides {tuple(strides)} "
            f"are not supported"
        )

    logger.info(f"Dilations of conv: {list(dilations)}, converting..")
    s2b_name = f"{output_name}_s2b"
    im_name = f"{output_name}_conv_imm"
    b2s_name = f"{output_name}_b2s"

    _, height, width, _ = ctx.shaper[input_name]
    new_pads = list(padding)
    new_pads[1] = adjusted_high_pad(height, padding[0], padding[1], dilations[0])
    new_pads[3] = adjusted_high_pad(width, padding[2], padding[3], dilations[1])
    logger.debug(
        f"Input {ctx.shaper[input_name]}, padding {list(padding)}, "
        f"dilations {list(dilations)} -> padding {new_pads}"
    )

    ctx.shaper.space_to_batch(input_name, dilations, new_pads, s2b_name)
    ctx.add_layer(
        SpaceToBatchLayer(
            input=input_name,
            block_sizes=tuple(dilations),
            pads=tuple(new_pads),
            output=s2b_name,
        )
    )

    # padding was applied by space-to-batch
    add_conv(
        ctx, s2b_name, strides, (0, 0, 0, 0), (1, 1), group, fuse,
        weight_name, bias_name, im_name,
    )

    ctx.shaper.batch_to_space(im_name, dilations, b2s_name)
    ctx.add_layer(
        BatchToSpaceLayer(input=im_name, block_sizes=tuple(dilations), output=b2s_name)
    )

    batch, b2s_height, b2s_width, channels = ctx.shaper[b2s_name]
    starts = (0, 0, 0, 0)
    ends = (
        batch,
        b2s_height - (new_pads[1] - padding[1]),
        b2s_width - (new_pads[3] - padding[3]),
        channels,
    )
    slice_strides = (1, 1, 1, 1)
    ctx.shaper.strided_slice(b2s_name, starts, ends, slice_strides, 0, 0, 0, output_name)
    ctx.add_layer(
        StridedSliceLayer(
            input=b2s_name,
            starts=starts,
            ends=ends,
            strides=slice_strides,
            output=output_name,
        )
    )
