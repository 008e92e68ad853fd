"""
Main ONNX to DAQ conversion orchestration.
"""

import logging

from ..types import GraphInput, LoweredModel
from ..onnx_model import ONNXModel
from ..errors import ConversionError, UnsupportedConfiguration
from .context import ConversionContext
from .layer_lowering import lower_node

logger = logging.getLogger(__name__)


def nchw_to_nhwc(shape):
    """Permute a 4-D channel-first shape to channel-last; other ranks are kept."""
    if len(shape) == 4:
        return (shape[0], shape[2], shape[3], shape[1])
    return tuple(shape)


def ingest_graph(analyzer: ONNXModel, ctx: ConversionContext) -> None:
    """
    Register the graph-level inputs that are not initializers.

    Initializers are reachable through `ctx.weights` and are only
    materialized when a layer uses them.
    """
    for name, shape in analyzer.input_info.items():
        nnapi_shape = nchw_to_nhwc(shape)
        ctx.add_input(GraphInput(name=name, shape=nnapi_shape))
        logger.info(f"Input {name}: {tuple(shape)} -> {nnapi_shape}")


def onnx_to_daq(analyzer: ONNXModel) -> LoweredModel:
    """
    Convert an analyzed (and optionally optimized) ONNX model to a LoweredModel.

    This is the main entry point of the lowering pass. It:
    1. Registers graph inputs with channel-last shapes
    2. Lowers each node in source order through the dispatch table
    3. Collects inputs, materialized tensors and layers

    Args:
        analyzer: Loaded ONNX model

    Returns:
        LoweredModel with inputs, tensors and layers in emission order

    Raises:
        ConversionError: On the first node that cannot be lowered
    """
    logger.info("Converting ONNX model to DAQ...")

    ctx = ConversionContext(analyzer.layers, analyzer.weights, analyzer.output_names)
    ingest_graph(analyzer, ctx)

    for node in analyzer.layers:
        logger.info(f"Node {node['name']}")
        try:
            if ctx.has_reshape:
                raise UnsupportedConfiguration("Reshape must be the last node")
            logger.info(f"Start converting {node['op_type']}")
            lower_node(node, ctx)
            logger.info(f"Converting {node['op_type']} completed")
        except ConversionError as e:
            logger.error(f"Failed to convert node {node['name']} ({node['op_type']}): {e}")
            raise type(e).for_node(node, str(e)) from e

    logger.debug(f"Shapes:\n{ctx.shaper}")
    logger.info(
        f"Created DAQ model with {len(ctx.layers)} layers and {len(ctx.tensors)} tensors"
    )

    return LoweredModel(
        inputs=tuple(ctx.inputs),
        tensors=tuple(ctx.tensors.values()),
        layers=tuple(ctx.layers),
        outputs=tuple(ctx.m(name) for name in analyzer.output_names),
    )
