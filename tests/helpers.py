"""Model builders and a minimal DAQ reader shared by the tests."""

from typing import Dict, Optional, Sequence

import numpy as np
import onnx
from flatbuffers import encode, number_types as N, packer, table
from onnx import TensorProto, helper, numpy_helper, shape_inference

from onnx2daq.graph_optimizer import GraphOptimizer
from onnx2daq.onnx_model import ONNXModel
from onnx2daq.onnx_to_daq import onnx_to_daq
from onnx2daq.types import LoweredModel


def make_model(
    nodes,
    inputs: Dict[str, Sequence],
    outputs: Dict[str, Optional[Sequence[int]]],
    initializers: Optional[Dict[str, np.ndarray]] = None,
    opset: int = 13,
) -> onnx.ModelProto:
    """Build a model; outputs declared with shape None get their inferred shape."""
    initializers = initializers or {}
    graph = helper.make_graph(
        nodes,
        "test_graph",
        [helper.make_tensor_value_info(n, TensorProto.FLOAT, s) for n, s in inputs.items()],
        [],
        [numpy_helper.from_array(value, name) for name, value in initializers.items()],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", opset)])
    model.ir_version = 8

    inferred = {
        info.name: info
        for info in shape_inference.infer_shapes(model).graph.value_info
        if info.type.tensor_type.HasField("shape")
    }
    for name, shape in outputs.items():
        if shape is None and name in inferred:
            model.graph.output.append(inferred[name])
        else:
            # Models that fail inference are expected to fail conversion as well.
            model.graph.output.append(
                helper.make_tensor_value_info(name, TensorProto.FLOAT, shape or [])
            )
    return model


def weights(*shape, seed: int = 0) -> np.ndarray:
    return np.random.default_rng(seed).standard_normal(shape).astype(np.float32)


def conv_model(
    input_shape=(1, 3, 8, 8),
    weight_shape=(4, 3, 3, 3),
    with_bias: bool = False,
    extra_nodes=(),
    outputs=None,
    initializers=None,
    **attrs,
) -> onnx.ModelProto:
    """x -> Conv -> y, plus any extra nodes consuming y and their initializers."""
    conv_inputs = ["x", "W"] + (["B"] if with_bias else [])
    initializers = {"W": weights(*weight_shape), **(initializers or {})}
    if with_bias:
        initializers["B"] = weights(weight_shape[0], seed=1)
    nodes = [helper.make_node("Conv", conv_inputs, ["y"], name="conv", **attrs)]
    nodes.extend(extra_nodes)
    return make_model(nodes, {"x": input_shape}, outputs or {"y": None}, initializers)


def convert(model: onnx.ModelProto, optimize: bool = False) -> LoweredModel:
    analyzer = ONNXModel.from_proto(model)
    if optimize:
        GraphOptimizer(analyzer).optimize()
    return onnx_to_daq(analyzer)


class FbTable:
    """Read access to one flatbuffer table by slot number."""

    def __init__(self, buf, pos):
        self.tab = table.Table(buf, pos)

    @classmethod
    def root(cls, data: bytes) -> "FbTable":
        buf = bytearray(data)
        return cls(buf, encode.Get(packer.uoffset, buf, 0))

    def _offset(self, slot: int) -> int:
        return self.tab.Offset(4 + 2 * slot)

    def has(self, slot: int) -> bool:
        return self._offset(slot) != 0

    def string(self, slot: int) -> Optional[str]:
        o = self._offset(slot)
        return self.tab.String(o + self.tab.Pos).decode("utf-8") if o else None

    def scalar(self, slot: int, flags=N.Int8Flags) -> int:
        o = self._offset(slot)
        return self.tab.Get(flags, o + self.tab.Pos) if o else 0

    def table(self, slot: int) -> Optional["FbTable"]:
        o = self._offset(slot)
        return FbTable(self.tab.Bytes, self.tab.Indirect(o + self.tab.Pos)) if o else None

    def tables(self, slot: int) -> list:
        o = self._offset(slot)
        if not o:
            return []
        start = self.tab.Vector(o)
        return [
            FbTable(self.tab.Bytes, self.tab.Indirect(start + 4 * j))
            for j in range(self.tab.VectorLen(o))
        ]

    def strings(self, slot: int) -> list:
        o = self._offset(slot)
        start = self.tab.Vector(o)
        return [
            self.tab.String(start + 4 * j).decode("utf-8")
            for j in range(self.tab.VectorLen(o))
        ]

    def numbers(self, slot: int, flags=N.Int32Flags) -> list:
        o = self._offset(slot)
        if not o:
            return []
        return self.tab.GetVectorAsNumpy(flags, o).tolist()
