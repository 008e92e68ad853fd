"""
Graph optimizer that orchestrates optimization passes on the ONNX node list.
"""

import logging
from typing import Dict, List, Optional, Type

from ..onnx_model import ONNXModel
from .base_pass import OptimizationPass
from .passes import FuseBatchNormIntoConvPass

logger = logging.getLogger(__name__)

DEFAULT_PASSES: List[Type[OptimizationPass]] = [
    FuseBatchNormIntoConvPass,
]


class GraphOptimizer:
    """Applies optimization passes to an analyzed ONNX model."""

    def __init__(
        self,
        graph: ONNXModel,
        passes: Optional[List[Type[OptimizationPass]]] = None,
    ):
        self.graph = graph
        self.passes = passes if passes is not None else DEFAULT_PASSES

    def optimize(self) -> ONNXModel:
        """
        Apply optimization passes to the graph.

        Each pass gets a fresh instance and sees the graph rebuilt by the
        previous one.

        Returns:
            The optimized graph (same object, nodes and weights replaced)
        """
        initial_layer_count = len(self.graph.layers)
        logger.info(f"Starting optimization with {initial_layer_count} nodes")

        for pass_class in self.passes:
            pass_instance = pass_class()
            logger.info(f"Running pass: {pass_instance.get_name()}")
            pass_instance.optimize(self.graph)

            if pass_instance.removed_layers or pass_instance.replaced_layers:
                self._rebuild_graph(pass_instance)

        final_layer_count = len(self.graph.layers)
        logger.info(
            f"Optimization complete: {initial_layer_count} -> {final_layer_count} nodes "
            f"({initial_layer_count - final_layer_count} removed)"
        )
        return self.graph

    def _follow_tensor_mapping(self, tensor: str, tensor_mapping: Dict[str, str]) -> str:
        """
        Follow tensor mapping chain to find final tensor.

        Handles transitive mappings: A->B, B->C results in A->C
        """
        source = tensor
        while source in tensor_mapping:
            source = tensor_mapping[source]
        return source

    def _rebuild_graph(self, pass_instance: OptimizationPass) -> None:
        """Rebuild the node list with removed/replaced nodes and rewired tensors."""
        mapping = pass_instance.tensor_mapping
        new_layers = []
        for node in self.graph.layers:
            if pass_instance.should_remove(node["name"]):
                continue
            node = pass_instance.replaced_layers.get(node["name"], node)
            inputs = [self._follow_tensor_mapping(inp, mapping) for inp in node["inputs"]]
            if inputs != node["inputs"]:
                node = {**node, "inputs": inputs}
            new_layers.append(node)

        weights = {**self.graph.weights, **pass_instance.new_weights}
        self.graph.replace_graph(new_layers, weights)
