"""
Mutable state of one conversion, threaded through every lowering handler.
"""

import logging
from typing import Dict, List, Any, Iterable

from ..types import RawTensor, LoweredTensor, LoweredLayer, GraphInput
from ..errors import MissingOperand
from .name_resolver import NameResolver
from .shape_inference import Shaper
from .activation_fusion import ActivationFusionAnalyzer

logger = logging.getLogger(__name__)


class ConversionContext:
    """
    Accumulates the lowered model during a single pass over the graph.

    Tensors and layers are append-only; the name map and shape table are
    upsert-only.
    """

    def __init__(
        self,
        nodes: List[Dict[str, Any]],
        weights: Dict[str, RawTensor],
        graph_outputs: Iterable[str] = (),
    ):
        self.nodes = nodes
        self.weights = weights
        self.graph_outputs = list(graph_outputs)

        self.resolver = NameResolver()
        self.shaper = Shaper()
        self.activations = ActivationFusionAnalyzer(nodes, self.graph_outputs)

        self.inputs: List[GraphInput] = []
        self.tensors: Dict[str, LoweredTensor] = {}
        self.layers: List[LoweredLayer] = []
        self.has_reshape = False

    def m(self, name: str) -> str:
        """Resolve an operand name."""
        return self.resolver.resolve(name)

    def raw_tensor(self, name: str) -> RawTensor:
        if name not in self.weights:
            raise MissingOperand(f"Initializer '{name}' not found")
        return self.weights[name]

    def register_tensor(self, tensor: LoweredTensor) -> LoweredTensor:
        """
        Materialize `tensor` for the target runtime.

        Registering a name twice keeps the first entry, so tensors shared by
        several layers appear once in the output.
        """
        if tensor.name in self.tensors:
            logger.debug(f"Tensor {tensor.name} already registered")
            return self.tensors[tensor.name]

        self.tensors[tensor.name] = tensor
        self.shaper.add_shape(tensor.name, tensor.shape)
        logger.debug(f"Registered tensor {tensor.name} {tensor.shape}")
        return tensor

    def add_input(self, graph_input: GraphInput) -> None:
        self.inputs.append(graph_input)
        self.shaper.add_shape(graph_input.name, graph_input.shape)

    def add_layer(self, layer: LoweredLayer) -> LoweredLayer:
        for name in layer.inputs:
            # raises MissingOperand for names nothing produced
            self.shaper[name]
        self.layers.append(layer)
        logger.debug(f"Added {layer.layer_type.name} layer -> {layer.output}")
        return layer
