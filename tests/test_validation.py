import numpy as np
import pytest
from onnx import helper

from helpers import conv_model, convert, make_model, weights
from onnx2daq.types import StridedSliceLayer
from onnx2daq.validation import DaqExecutor, compare_inference
from onnx2daq.validation.executor import batch_to_space, space_to_batch, strided_slice


def _assert_equivalent(model, optimize: bool = False) -> None:
    pytest.importorskip("onnxruntime")
    result = compare_inference(model, convert(model, optimize=optimize))
    assert result["passed"], f"max abs diff {result['max_abs_diff']}"


@pytest.mark.parametrize("size", [7, 8])
def test_dilated_conv(size) -> None:
    model = conv_model(
        input_shape=(1, 3, size, size), with_bias=True, pads=[2, 2, 2, 2], dilations=[2, 2]
    )
    _assert_equivalent(model)


def test_dilated_conv_asymmetric_padding() -> None:
    model = conv_model(
        input_shape=(1, 3, 9, 10), weight_shape=(4, 3, 3, 2), pads=[1, 0, 3, 2], dilations=[2, 3]
    )
    _assert_equivalent(model)


def test_strided_conv_relu() -> None:
    model = conv_model(
        with_bias=True,
        pads=[0, 1, 2, 1],
        strides=[2, 2],
        extra_nodes=[helper.make_node("Relu", ["y"], ["z"])],
        outputs={"z": None},
    )
    _assert_equivalent(model)


def test_depthwise_conv() -> None:
    model = conv_model(
        weight_shape=(6, 1, 3, 3), with_bias=True, group=3, pads=[1, 1, 1, 1]
    )
    _assert_equivalent(model)


def test_dilated_depthwise_conv() -> None:
    model = conv_model(weight_shape=(3, 1, 3, 3), group=3, pads=[2, 2, 2, 2], dilations=[2, 2])
    _assert_equivalent(model)


@pytest.mark.parametrize(
    "node",
    [
        helper.make_node(
            "MaxPool", ["x"], ["y"], kernel_shape=[3, 2], strides=[2, 1], pads=[1, 0, 2, 1]
        ),
        helper.make_node(
            "AveragePool", ["x"], ["y"], kernel_shape=[3, 3], strides=[2, 2], pads=[1, 1, 1, 1]
        ),
        helper.make_node("GlobalAveragePool", ["x"], ["y"]),
        helper.make_node("GlobalMaxPool", ["x"], ["y"]),
    ],
    ids=["max_pool", "average_pool", "global_average_pool", "global_max_pool"],
)
def test_pooling(node) -> None:
    _assert_equivalent(make_model([node], {"x": (1, 3, 8, 8)}, {"y": None}))


def test_gemm_softmax() -> None:
    nodes = [
        helper.make_node("Gemm", ["x", "W", "B"], ["h"], transB=1),
        helper.make_node("Relu", ["h"], ["r"]),
        helper.make_node("Softmax", ["r"], ["y"]),
    ]
    model = make_model(
        nodes, {"x": (2, 10)}, {"y": None}, {"W": weights(5, 10), "B": weights(5, seed=1)}
    )
    _assert_equivalent(model)


def test_concat_add() -> None:
    nodes = [
        helper.make_node("Concat", ["a", "b"], ["c"], axis=1),
        helper.make_node("Add", ["c", "d"], ["y"]),
    ]
    model = make_model(
        nodes, {"a": (1, 3, 4, 4), "b": (1, 5, 4, 4), "d": (1, 8, 4, 4)}, {"y": None}
    )
    _assert_equivalent(model)


def test_batch_norm_folding() -> None:
    bn = helper.make_node("BatchNormalization", ["y", "s", "bb", "m", "v"], ["z"])
    params = {
        "s": weights(4, seed=2),
        "bb": weights(4, seed=3),
        "m": weights(4, seed=4),
        "v": np.abs(weights(4, seed=5)) + 0.5,
    }
    model = conv_model(
        with_bias=True,
        pads=[1, 1, 1, 1],
        extra_nodes=[bn],
        outputs={"z": None},
        initializers=params,
    )
    _assert_equivalent(model, optimize=True)


def test_trailing_reshape() -> None:
    model = conv_model(
        extra_nodes=[
            helper.make_node("GlobalAveragePool", ["y"], ["p"]),
            helper.make_node("Reshape", ["p", "shape"], ["r"]),
        ],
        outputs={"r": None},
        initializers={"shape": np.array([1, -1], dtype=np.int64)},
    )
    _assert_equivalent(model)


def test_space_to_batch_inverts_batch_to_space() -> None:
    x = np.arange(2 * 6 * 4 * 3, dtype=np.float32).reshape(2, 6, 4, 3)

    blocks = space_to_batch(x, (2, 2), (0, 0, 0, 0))

    assert blocks.shape == (8, 3, 2, 3)
    np.testing.assert_array_equal(blocks[0], x[0, ::2, ::2])
    np.testing.assert_array_equal(blocks[3], x[1, ::2, 1::2])
    np.testing.assert_array_equal(batch_to_space(blocks, (2, 2)), x)


def test_strided_slice_masks() -> None:
    x = np.arange(24, dtype=np.float32).reshape(2, 3, 4)
    layer = StridedSliceLayer(
        input="x",
        starts=(1, 0, 1),
        ends=(0, 2, 0),
        strides=(1, 1, 2),
        begin_mask=0,
        end_mask=0b100,
        shrink_axis_mask=0b001,
        output="y",
    )

    np.testing.assert_array_equal(strided_slice(x, layer), x[1, 0:2, 1::2])


def test_executor_returns_every_operand() -> None:
    model = conv_model(pads=[2, 2, 2, 2], dilations=[2, 2])
    lowered = convert(model)

    values = DaqExecutor(lowered).run({"x": np.zeros((1, 8, 8, 3), dtype=np.float32)})

    assert set(values) >= {layer.output for layer in lowered.layers}
    assert values["y"].shape == (1, 8, 8, 4)
