"""
Shape bookkeeping for the lowered graph.

All shapes are channel-last ([N, H, W, C] for 4-D tensors). Each lowered
layer kind has one method that computes the output shape from the shapes
of its operands and stores it under the output name.
"""

import logging
from typing import Dict, List, Sequence, Tuple

import numpy as np

from ..errors import MissingOperand, UnsupportedConfiguration

logger = logging.getLogger(__name__)

Shape = Tuple[int, ...]


def conv_output_dim(size: int, kernel: int, stride: int, pad_begin: int, pad_end: int,
                    dilation: int = 1) -> int:
    """Output extent of a convolution/pooling window along one axis."""
    effective_kernel = (kernel - 1) * dilation + 1
    out = (size + pad_begin + pad_end - effective_kernel) // stride + 1
    if out <= 0:
        raise UnsupportedConfiguration(
            f"Window {effective_kernel} (stride {stride}) does not fit extent {size} "
            f"with padding ({pad_begin}, {pad_end})"
        )
    return out


class Shaper:
    """Operand name -> current shape, for every operand of the lowered graph."""

    def __init__(self):
        self.shape_map: Dict[str, Shape] = {}

    def __getitem__(self, name: str) -> Shape:
        if name not in self.shape_map:
            raise MissingOperand(f"Operand '{name}' has no known shape")
        return self.shape_map[name]

    def __contains__(self, name: str) -> bool:
        return name in self.shape_map

    def add_shape(self, name: str, shape: Sequence[int]) -> Shape:
        shape = tuple(int(d) for d in shape)
        self.shape_map[name] = shape
        logger.debug(f"Shape of {name}: {shape}")
        return shape

    def _nhwc(self, name: str) -> Shape:
        shape = self[name]
        if len(shape) != 4:
            raise UnsupportedConfiguration(
                f"Operand '{name}' must be 4-D (NHWC), got shape {shape}"
            )
        return shape

    def conv(self, input_name: str, weight_name: str, padding: Sequence[int],
             strides: Sequence[int], output_name: str,
             dilations: Sequence[int] = (1, 1)) -> Shape:
        """
        Vanilla convolution. Weight layout [out_c, kh, kw, in_c].

        Args:
            padding: [top, bottom, left, right]
            strides: [stride_h, stride_w]
        """
        n, h, w, c = self._nhwc(input_name)
        out_c, kh, kw, in_c = self[weight_name]
        if in_c != c:
            raise UnsupportedConfiguration(
                f"Conv weight '{weight_name}' expects {in_c} input channels, "
                f"'{input_name}' has {c}"
            )
        out_h = conv_output_dim(h, kh, strides[0], padding[0], padding[1], dilations[0])
        out_w = conv_output_dim(w, kw, strides[1], padding[2], padding[3], dilations[1])
        return self.add_shape(output_name, (n, out_h, out_w, out_c))

    def depthwise_conv(self, input_name: str, weight_name: str, padding: Sequence[int],
                       strides: Sequence[int], output_name: str) -> Shape:
        """Depthwise convolution. Weight layout [1, kh, kw, out_c]."""
        n, h, w, c = self._nhwc(input_name)
        _, kh, kw, out_c = self[weight_name]
        if out_c % c != 0:
            raise UnsupportedConfiguration(
                f"Depthwise weight '{weight_name}' has {out_c} output channels, "
                f"not a multiple of {c} input channels"
            )
        out_h = conv_output_dim(h, kh, strides[0], padding[0], padding[1])
        out_w = conv_output_dim(w, kw, strides[1], padding[2], padding[3])
        return self.add_shape(output_name, (n, out_h, out_w, out_c))

    def pool(self, input_name: str, kernel_shape: Sequence[int], padding: Sequence[int],
             strides: Sequence[int], output_name: str) -> Shape:
        """Pooling; kernel (-1, -1) pools the whole spatial extent."""
        n, h, w, c = self._nhwc(input_name)
        if tuple(kernel_shape) == (-1, -1):
            return self.add_shape(output_name, (n, 1, 1, c))
        out_h = conv_output_dim(h, kernel_shape[0], strides[0], padding[0], padding[1])
        out_w = conv_output_dim(w, kernel_shape[1], strides[1], padding[2], padding[3])
        return self.add_shape(output_name, (n, out_h, out_w, c))

    def relu(self, input_name: str, output_name: str) -> Shape:
        return self.add_shape(output_name, self[input_name])

    def softmax(self, input_name: str, output_name: str) -> Shape:
        return self.add_shape(output_name, self[input_name])

    def fc(self, input_name: str, weight_name: str, output_name: str) -> Shape:
        """Fully connected, weight [out_features, in_features]."""
        input_shape = self[input_name]
        out_features, in_features = self[weight_name]
        flat = int(np.prod(input_shape[1:])) if len(input_shape) > 1 else 1
        if flat != in_features:
            raise UnsupportedConfiguration(
                f"FC weight '{weight_name}' expects {in_features} input features, "
                f"'{input_name}' {input_shape} provides {flat}"
            )
        return self.add_shape(output_name, (input_shape[0], out_features))

    def eltwise(self, input1_name: str, input2_name: str, output_name: str) -> Shape:
        shape1, shape2 = self[input1_name], self[input2_name]
        if shape1 != shape2:
            raise UnsupportedConfiguration(
                f"Elementwise operands must have equal shapes, got {shape1} and {shape2}"
            )
        return self.add_shape(output_name, shape1)

    def concat(self, input_names: Sequence[str], axis: int, output_name: str) -> Shape:
        """Concatenate along channel-last `axis`."""
        shapes = [self[name] for name in input_names]
        first = shapes[0]
        if not 0 <= axis < len(first):
            raise UnsupportedConfiguration(
                f"Concat axis {axis} is out of range for rank {len(first)} operands"
            )
        for name, shape in zip(input_names, shapes):
            if len(shape) != len(first) or any(
                a != b for i, (a, b) in enumerate(zip(shape, first)) if i != axis
            ):
                raise UnsupportedConfiguration(
                    f"Concat operand '{name}' {shape} does not match {first} "
                    f"outside axis {axis}"
                )
        output_shape = list(first)
        output_shape[axis] = sum(shape[axis] for shape in shapes)
        return self.add_shape(output_name, output_shape)

    def space_to_batch(self, input_name: str, block_sizes: Sequence[int],
                       pads: Sequence[int], output_name: str) -> Shape:
        """
        Args:
            pads: [top, bottom, left, right]
        """
        n, h, w, c = self._nhwc(input_name)
        padded_h = h + pads[0] + pads[1]
        padded_w = w + pads[2] + pads[3]
        if padded_h % block_sizes[0] or padded_w % block_sizes[1]:
            raise UnsupportedConfiguration(
                f"Padded extent ({padded_h}, {padded_w}) of '{input_name}' is not "
                f"divisible by block sizes {tuple(block_sizes)}"
            )
        return self.add_shape(
            output_name,
            (
                n * block_sizes[0] * block_sizes[1],
                padded_h // block_sizes[0],
                padded_w // block_sizes[1],
                c,
            ),
        )

    def batch_to_space(self, input_name: str, block_sizes: Sequence[int],
                       output_name: str) -> Shape:
        n, h, w, c = self._nhwc(input_name)
        blocks = block_sizes[0] * block_sizes[1]
        if n % blocks:
            raise UnsupportedConfiguration(
                f"Batch {n} of '{input_name}' is not divisible by {blocks} blocks"
            )
        return self.add_shape(
            output_name, (n // blocks, h * block_sizes[0], w * block_sizes[1], c)
        )

    def strided_slice(self, input_name: str, starts: Sequence[int], ends: Sequence[int],
                      strides: Sequence[int], begin_mask: int, end_mask: int,
                      shrink_axis_mask: int, output_name: str) -> Shape:
        input_shape = self[input_name]
        output_shape: List[int] = []
        for axis, dim in enumerate(input_shape):
            stride = strides[axis]
            if stride <= 0:
                raise UnsupportedConfiguration(f"StridedSlice stride must be positive, got {stride}")
            start = 0 if begin_mask & (1 << axis) else starts[axis]
            end = dim if end_mask & (1 << axis) else ends[axis]
            start = min(max(start + dim if start < 0 else start, 0), dim)
            end = min(max(end + dim if end < 0 else end, 0), dim)
            size = max(0, -(-(end - start) // stride))
            if shrink_axis_mask & (1 << axis):
                continue
            output_shape.append(size)
        return self.add_shape(output_name, output_shape)

    def __str__(self) -> str:
        return "\n".join(f"{name}: {shape}" for name, shape in self.shape_map.items())
