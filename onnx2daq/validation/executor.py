"""
Reference numpy interpreter for lowered models.

Implements the channel-last semantics of every target layer kind, so a
lowered model can be checked numerically against its source ONNX model.
"""

import logging
from typing import Callable, Dict

import numpy as np

from ..types import (
    FuseCode,
    LayerType,
    LoweredModel,
    LoweredLayer,
    Conv2DLayer,
    DepthwiseConv2DLayer,
    PoolLayer,
    FCLayer,
    AddLayer,
    ConcatLayer,
    SpaceToBatchLayer,
    BatchToSpaceLayer,
    StridedSliceLayer,
)

logger = logging.getLogger(__name__)


def apply_fuse(x: np.ndarray, fuse: FuseCode) -> np.ndarray:
    if fuse == FuseCode.RELU:
        return np.maximum(x, 0.0)
    elif fuse == FuseCode.RELU1:
        return np.clip(x, -1.0, 1.0)
    elif fuse == FuseCode.RELU6:
        return np.clip(x, 0.0, 6.0)
    return x


def _pad_nhwc(x: np.ndarray, padding, value: float = 0.0) -> np.ndarray:
    top, bottom, left, right = padding
    return np.pad(
        x, ((0, 0), (top, bottom), (left, right), (0, 0)), constant_values=value
    )


def _windows(xp: np.ndarray, kh: int, kw: int, strides):
    """Yield (i, j, patch) for every kernel offset; patch is [N, out_h, out_w, C]."""
    sh, sw = strides
    out_h = (xp.shape[1] - kh) // sh + 1
    out_w = (xp.shape[2] - kw) // sw + 1
    for i in range(kh):
        for j in range(kw):
            yield i, j, xp[:, i : i + sh * (out_h - 1) + 1 : sh, j : j + sw * (out_w - 1) + 1 : sw, :]


def conv2d(x: np.ndarray, weight: np.ndarray, bias, padding, strides) -> np.ndarray:
    """x [N, H, W, C], weight [O, kh, kw, C]."""
    xp = _pad_nhwc(x, padding)
    _, kh, kw, _ = weight.shape
    out = None
    for i, j, patch in _windows(xp, kh, kw, strides):
        term = np.einsum("nhwc,oc->nhwo", patch, weight[:, i, j, :])
        out = term if out is None else out + term
    if bias is not None:
        out = out + bias
    return out


def depthwise_conv2d(x: np.ndarray, weight: np.ndarray, bias, padding, strides,
                     multiplier: int) -> np.ndarray:
    """x [N, H, W, C], weight [1, kh, kw, C * multiplier]."""
    xp = np.repeat(_pad_nhwc(x, padding), multiplier, axis=3)
    _, kh, kw, _ = weight.shape
    out = None
    for i, j, patch in _windows(xp, kh, kw, strides):
        term = patch * weight[0, i, j, :]
        out = term if out is None else out + term
    if bias is not None:
        out = out + bias
    return out


def pool(x: np.ndarray, layer: PoolLayer, reducer: str) -> np.ndarray:
    if layer.is_global():
        if reducer == "max":
            return x.max(axis=(1, 2), keepdims=True)
        return x.mean(axis=(1, 2), keepdims=True)

    kh, kw = layer.kernel_shape
    if reducer == "max":
        xp = _pad_nhwc(x, layer.padding, value=-np.inf)
        windows = [patch for _, _, patch in _windows(xp, kh, kw, layer.strides)]
        return np.max(np.stack(windows), axis=0)

    # padded cells are excluded from the average
    xp = _pad_nhwc(x, layer.padding)
    mask = _pad_nhwc(np.ones_like(x), layer.padding)
    total = sum(patch for _, _, patch in _windows(xp, kh, kw, layer.strides))
    count = sum(patch for _, _, patch in _windows(mask, kh, kw, layer.strides))
    return total / count


def softmax(x: np.ndarray) -> np.ndarray:
    shifted = np.exp(x - x.max(axis=-1, keepdims=True))
    return shifted / shifted.sum(axis=-1, keepdims=True)


def space_to_batch(x: np.ndarray, block_sizes, pads) -> np.ndarray:
    bh, bw = block_sizes
    xp = _pad_nhwc(x, pads)
    n, h, w, c = xp.shape
    y = xp.reshape(n, h // bh, bh, w // bw, bw, c).transpose(2, 4, 0, 1, 3, 5)
    return y.reshape(bh * bw * n, h // bh, w // bw, c)


def batch_to_space(x: np.ndarray, block_sizes) -> np.ndarray:
    bh, bw = block_sizes
    b, h, w, c = x.shape
    n = b // (bh * bw)
    y = x.reshape(bh, bw, n, h, w, c).transpose(2, 3, 0, 4, 1, 5)
    return y.reshape(n, h * bh, w * bw, c)


def strided_slice(x: np.ndarray, layer: StridedSliceLayer) -> np.ndarray:
    index = []
    for axis in range(x.ndim):
        if layer.shrink_axis_mask & (1 << axis):
            index.append(layer.starts[axis])
            continue
        start = None if layer.begin_mask & (1 << axis) else layer.starts[axis]
        end = None if layer.end_mask & (1 << axis) else layer.ends[axis]
        index.append(slice(start, end, layer.strides[axis]))
    return x[tuple(index)]


class DaqExecutor:
    """Runs a LoweredModel on numpy arrays (channel-last inputs)."""

    def __init__(self, model: LoweredModel):
        self.model = model
        self.constants: Dict[str, np.ndarray] = {
            tensor.name: np.asarray(tensor.data, dtype=np.float32).reshape(tensor.shape)
            for tensor in model.tensors
        }
        self.handlers: Dict[LayerType, Callable[[LoweredLayer, Dict], np.ndarray]] = {
            LayerType.CONV_2D: self._conv2d,
            LayerType.DEPTHWISE_CONV_2D: self._depthwise_conv2d,
            LayerType.AVE_POOL: lambda l, v: apply_fuse(pool(v[l.input], l, "avg"), l.fuse),
            LayerType.MAX_POOL: lambda l, v: apply_fuse(pool(v[l.input], l, "max"), l.fuse),
            LayerType.RELU: lambda l, v: np.maximum(v[l.input], 0.0),
            LayerType.SOFTMAX: lambda l, v: softmax(v[l.input]),
            LayerType.FC: self._fc,
            LayerType.ADD: lambda l, v: apply_fuse(v[l.input1] + v[l.input2], l.fuse),
            LayerType.CONCAT: lambda l, v: np.concatenate(
                [v[name] for name in l.concat_inputs], axis=l.axis
            ),
            LayerType.SPACE_TO_BATCH: lambda l, v: space_to_batch(
                v[l.input], l.block_sizes, l.pads
            ),
            LayerType.BATCH_TO_SPACE: lambda l, v: batch_to_space(v[l.input], l.block_sizes),
            LayerType.STRIDED_SLICE: lambda l, v: strided_slice(v[l.input], l),
        }

    def _conv2d(self, layer: Conv2DLayer, values: Dict) -> np.ndarray:
        bias = values[layer.bias] if layer.bias else None
        out = conv2d(values[layer.input], values[layer.weight], bias, layer.padding, layer.strides)
        return apply_fuse(out, layer.fuse)

    def _depthwise_conv2d(self, layer: DepthwiseConv2DLayer, values: Dict) -> np.ndarray:
        bias = values[layer.bias] if layer.bias else None
        out = depthwise_conv2d(
            values[layer.input], values[layer.weight], bias, layer.padding,
            layer.strides, layer.multiplier,
        )
        return apply_fuse(out, layer.fuse)

    def _fc(self, layer: FCLayer, values: Dict) -> np.ndarray:
        x = values[layer.input]
        out = x.reshape(x.shape[0], -1) @ values[layer.weight].T
        if layer.bias:
            out = out + values[layer.bias]
        return apply_fuse(out, layer.fuse)

    def run(self, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """
        Execute all layers in order.

        Args:
            feeds: Graph input name -> channel-last array

        Returns:
            Every operand value computed, by name
        """
        values: Dict[str, np.ndarray] = dict(self.constants)
        for graph_input in self.model.inputs:
            values[graph_input.name] = np.asarray(feeds[graph_input.name], dtype=np.float32)

        for layer in self.model.layers:
            values[layer.output] = self.handlers[layer.layer_type](layer, values)
            logger.debug(f"{layer.layer_type.name} -> {layer.output} {values[layer.output].shape}")

        return values
