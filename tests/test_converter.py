import numpy as np
import onnx
import pytest
from onnx import helper

from helpers import conv_model, convert, make_model, weights
from onnx2daq.daq_writer import serialize_model
from onnx2daq.errors import (
    ConversionError,
    MalformedInput,
    MissingOperand,
    UnsupportedConfiguration,
    UnsupportedOperator,
)
from onnx2daq.main import convert_onnx_to_daq
from onnx2daq.onnx_model import ONNXModel
from onnx2daq.onnx_to_daq import (
    LAYER_LOWERINGS,
    ConversionContext,
    OpType,
    ingest_graph,
    lower_node,
)
from onnx2daq.types import FuseCode, GraphInput, LayerType


RESHAPE_SHAPE = {"shape": np.array([1, -1], dtype=np.int64)}


def test_graph_inputs_are_channel_last() -> None:
    lowered = convert(conv_model(input_shape=(1, 3, 8, 6)))

    assert lowered.inputs == (GraphInput(name="x", shape=(1, 8, 6, 3)),)


def test_non_4d_inputs_keep_their_shape() -> None:
    node = helper.make_node("Gemm", ["x", "W"], ["y"], transB=1)
    model = make_model([node], {"x": (2, 10)}, {"y": None}, {"W": weights(5, 10)})

    assert convert(model).inputs == (GraphInput(name="x", shape=(2, 10)),)


def test_conv_relu_is_fused() -> None:
    model = conv_model(
        extra_nodes=[helper.make_node("Relu", ["y"], ["z"])], outputs={"z": None}
    )

    lowered = convert(model)

    assert len(lowered.layers) == 1
    conv = lowered.layers[0]
    assert conv.layer_type == LayerType.CONV_2D
    assert conv.fuse == FuseCode.RELU
    assert conv.output == "z"
    assert lowered.outputs == ("z",)


def test_diverging_relus_are_not_fused() -> None:
    model = conv_model(
        extra_nodes=[
            helper.make_node("Relu", ["y"], ["r1"]),
            helper.make_node("Relu", ["y"], ["r2"]),
        ],
        outputs={"r1": None, "r2": None},
    )

    lowered = convert(model)

    conv = lowered.layers_of_type(LayerType.CONV_2D)[0]
    assert conv.fuse == FuseCode.NONE
    assert conv.output == "y"
    relus = lowered.layers_of_type(LayerType.RELU)
    assert [(r.input, r.output) for r in relus] == [("y", "r1"), ("y", "r2")]


def test_relus_sharing_a_name_are_both_lowered() -> None:
    model = conv_model(
        extra_nodes=[
            helper.make_node("Relu", ["y"], ["r1"], name="relu"),
            helper.make_node("Relu", ["x"], ["r2"], name="relu"),
        ],
        outputs={"r1": None, "r2": None},
    )

    lowered = convert(model)

    assert [layer.layer_type for layer in lowered.layers] == [
        LayerType.CONV_2D,
        LayerType.RELU,
    ]
    conv, relu = lowered.layers
    assert (conv.fuse, conv.output) == (FuseCode.RELU, "r1")
    assert (relu.input, relu.output) == ("x", "r2")
    produced = {layer.output for layer in lowered.layers}
    assert set(lowered.outputs) <= produced


def test_duplicate_node_names_are_made_unique() -> None:
    nodes = [
        helper.make_node("Relu", ["x"], ["a"], name="relu"),
        helper.make_node("Relu", ["a"], ["b"], name="relu"),
        helper.make_node("Relu", ["b"], ["c"]),
    ]
    model = make_model(nodes, {"x": (1, 3, 4, 4)}, {"c": None})

    names = [node["name"] for node in ONNXModel.from_proto(model).layers]

    assert names == ["relu", "relu_1", "Relu_2"]


def test_add_relu_is_fused() -> None:
    nodes = [
        helper.make_node("Add", ["a", "b"], ["s"]),
        helper.make_node("Relu", ["s"], ["z"]),
    ]
    model = make_model(nodes, {"a": (1, 3, 4, 4), "b": (1, 3, 4, 4)}, {"z": None})

    lowered = convert(model)

    assert len(lowered.layers) == 1
    add = lowered.layers[0]
    assert add.layer_type == LayerType.ADD
    assert (add.input1, add.input2) == ("a", "b")
    assert add.fuse == FuseCode.RELU
    assert add.output == "z"


def test_add_requires_equal_shapes() -> None:
    node = helper.make_node("Add", ["a", "b"], ["s"])
    model = make_model([node], {"a": (1, 3, 4, 4), "b": (1, 3, 1, 1)}, {"s": None})

    with pytest.raises(UnsupportedConfiguration):
        convert(model)


def test_dropout_is_aliased() -> None:
    model = conv_model(
        extra_nodes=[
            helper.make_node("Dropout", ["y"], ["d"]),
            helper.make_node("Relu", ["d"], ["z"]),
        ],
        outputs={"z": None},
    )

    lowered = convert(model)

    assert [layer.layer_type for layer in lowered.layers] == [
        LayerType.CONV_2D,
        LayerType.RELU,
    ]
    assert lowered.layers[1].input == "y"


def test_trailing_reshape_emits_no_layer() -> None:
    model = conv_model(
        extra_nodes=[helper.make_node("Reshape", ["y", "shape"], ["r"])],
        outputs={"r": None},
        initializers=RESHAPE_SHAPE,
    )

    lowered = convert(model)

    assert [layer.layer_type for layer in lowered.layers] == [LayerType.CONV_2D]
    assert lowered.outputs == ("y",)


def test_reshape_must_be_last(tmp_path) -> None:
    model = conv_model(
        extra_nodes=[
            helper.make_node("Reshape", ["y", "shape"], ["r"]),
            helper.make_node("Relu", ["r"], ["z"]),
        ],
        outputs={"z": None},
        initializers=RESHAPE_SHAPE,
    )
    model_path = tmp_path / "model.onnx"
    output_path = tmp_path / "model.daq"
    onnx.save(model, str(model_path))

    with pytest.raises(UnsupportedConfiguration, match="Reshape must be the last node"):
        convert_onnx_to_daq(model_path, optimize=False, output_path=output_path)

    assert not output_path.exists()


def test_unsupported_operator() -> None:
    node = helper.make_node("Sigmoid", ["x"], ["y"], name="sig")
    model = make_model([node], {"x": (1, 3, 4, 4)}, {"y": None})

    with pytest.raises(UnsupportedOperator, match="Sigmoid"):
        convert(model)


def test_every_op_type_has_a_lowering() -> None:
    assert set(LAYER_LOWERINGS) == set(OpType)


def test_error_names_the_node() -> None:
    model = conv_model(input_shape=(1, 6, 8, 8), weight_shape=(4, 3, 3, 3), group=2)

    with pytest.raises(ConversionError) as excinfo:
        convert(model)

    assert "Node 'conv' (Conv)" in str(excinfo.value)


def test_gemm_lowering() -> None:
    node = helper.make_node("Gemm", ["x", "W", "B"], ["y"], transB=1)
    model = make_model(
        [node], {"x": (1, 10)}, {"y": None}, {"W": weights(5, 10), "B": weights(5)}
    )

    lowered = convert(model)

    fc = lowered.layers[0]
    assert fc.layer_type == LayerType.FC
    assert (fc.input, fc.weight, fc.bias) == ("x", "W", "B")
    assert lowered.get_tensor("W").shape == (5, 10)
    assert lowered.get_tensor("B").shape == (5,)


@pytest.mark.parametrize(
    "attrs",
    [
        {"transB": 0},
        {"transA": 1, "transB": 1},
        {"transB": 1, "alpha": 2.0},
        {"transB": 1, "beta": 0.5},
    ],
)
def test_non_canonical_gemm_is_rejected(attrs) -> None:
    node = helper.make_node("Gemm", ["x", "W"], ["y"], **attrs)
    model = make_model([node], {"x": (10, 10)}, {"y": None}, {"W": weights(10, 10)})

    with pytest.raises(UnsupportedConfiguration):
        convert(model)


def test_softmax_axis_is_ignored() -> None:
    node = helper.make_node("Softmax", ["x"], ["y"], axis=0)
    model = make_model([node], {"x": (2, 10)}, {"y": None})

    lowered = convert(model)

    softmax = lowered.layers[0]
    assert softmax.layer_type == LayerType.SOFTMAX
    assert (softmax.input, softmax.output) == ("x", "y")


@pytest.mark.parametrize("axis", [1, -3])
def test_concat_axis_is_remapped(axis) -> None:
    node = helper.make_node("Concat", ["a", "b"], ["y"], axis=axis)
    model = make_model([node], {"a": (1, 3, 4, 4), "b": (1, 5, 4, 4)}, {"y": None})

    analyzer = ONNXModel.from_proto(model)
    ctx = ConversionContext(analyzer.layers, analyzer.weights, analyzer.output_names)
    ingest_graph(analyzer, ctx)
    lower_node(analyzer.layers[0], ctx)

    concat = ctx.layers[0]
    assert concat.layer_type == LayerType.CONCAT
    assert concat.concat_inputs == ("a", "b")
    assert concat.axis == 3
    assert ctx.shaper["y"] == (1, 4, 4, 8)


def test_concat_of_2d_operands_keeps_axis() -> None:
    nodes = [
        helper.make_node("Gemm", ["x", "W1"], ["a"], transB=1),
        helper.make_node("Gemm", ["x", "W2"], ["b"], transB=1),
        helper.make_node("Concat", ["a", "b"], ["y"], axis=1),
    ]
    model = make_model(
        nodes, {"x": (1, 10)}, {"y": None}, {"W1": weights(3, 10), "W2": weights(3, 10, seed=1)}
    )

    lowered = convert(model)

    concat = lowered.layers_of_type(LayerType.CONCAT)[0]
    assert concat.concat_inputs == ("a", "b")
    assert concat.axis == 1


def test_concat_axis_out_of_range() -> None:
    node = helper.make_node("Concat", ["a", "b"], ["y"], axis=2)
    model = make_model([node], {"a": (1, 3), "b": (1, 3)}, {"y": (1, 6)})

    with pytest.raises(UnsupportedConfiguration, match="axis"):
        convert(model)


def test_pooling_lowering() -> None:
    node = helper.make_node(
        "MaxPool", ["x"], ["y"], kernel_shape=[3, 2], strides=[2, 1], pads=[1, 0, 2, 1]
    )
    model = make_model([node], {"x": (1, 3, 8, 8)}, {"y": None})

    pool = convert(model).layers[0]

    assert pool.layer_type == LayerType.MAX_POOL
    assert pool.kernel_shape == (3, 2)
    assert pool.strides == (2, 1)
    assert pool.padding == (1, 2, 0, 1)
    assert not pool.is_global()


@pytest.mark.parametrize(
    "op, layer_type",
    [
        ("GlobalAveragePool", LayerType.AVE_POOL),
        ("GlobalMaxPool", LayerType.MAX_POOL),
    ],
)
def test_global_pooling(op, layer_type) -> None:
    model = make_model(
        [helper.make_node(op, ["x"], ["y"])], {"x": (1, 3, 8, 8)}, {"y": None}
    )

    pool = convert(model).layers[0]

    assert pool.layer_type == layer_type
    assert pool.kernel_shape == (-1, -1)
    assert pool.is_global()


@pytest.mark.parametrize(
    "op, attrs",
    [
        ("AveragePool", {"count_include_pad": 1}),
        ("MaxPool", {"storage_order": 1}),
        ("MaxPool", {"auto_pad": "VALID"}),
        ("AveragePool", {"ceil_mode": 1}),
        ("MaxPool", {"dilations": [2, 2]}),
    ],
)
def test_pooling_rejections(op, attrs) -> None:
    node = helper.make_node(op, ["x"], ["y"], kernel_shape=[2, 2], **attrs)
    model = make_model([node], {"x": (1, 3, 8, 8)}, {"y": None})

    with pytest.raises(UnsupportedConfiguration):
        convert(model)


def test_pooling_requires_kernel_shape() -> None:
    node = {
        "name": "pool",
        "op_type": "MaxPool",
        "inputs": ["x"],
        "outputs": ["y"],
        "attributes": {},
    }
    ctx = ConversionContext([node], {})
    ctx.add_input(GraphInput(name="x", shape=(1, 8, 8, 3)))

    with pytest.raises(UnsupportedConfiguration, match="kernel_shape"):
        lower_node(node, ctx)


def test_symbolic_input_dimension() -> None:
    model = conv_model(input_shape=("N", 3, 8, 8))

    with pytest.raises(MalformedInput):
        convert(model)


def test_weight_without_initializer() -> None:
    node = helper.make_node("Conv", ["x", "W"], ["y"], name="conv")
    model = make_model([node], {"x": (1, 3, 8, 8), "W": (4, 3, 3, 3)}, {"y": None})

    with pytest.raises(MissingOperand):
        convert(model)


def test_conversion_is_deterministic() -> None:
    model = conv_model(
        with_bias=True,
        pads=[2, 2, 2, 2],
        dilations=[2, 2],
        extra_nodes=[
            helper.make_node("Relu", ["y"], ["z"]),
            helper.make_node("GlobalAveragePool", ["z"], ["p"]),
        ],
        outputs={"p": None},
    )

    first = serialize_model(convert(model))
    second = serialize_model(convert(model))

    assert first == second


def test_unused_initializers_are_not_materialized() -> None:
    model = conv_model(initializers={"unused": np.zeros(3, dtype=np.float32)})

    lowered = convert(model)

    assert [tensor.name for tensor in lowered.tensors] == ["W_conv_w"]
