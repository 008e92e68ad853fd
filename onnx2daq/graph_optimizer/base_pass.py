"""
Base class for graph optimization passes run before lowering.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Set

from ..onnx_model import ONNXModel
from ..types import RawTensor

logger = logging.getLogger(__name__)


class OptimizationPass(ABC):
    """Base class for all optimization passes."""

    def __init__(self):
        self.removed_layers: Set[str] = set()
        self.replaced_layers: Dict[str, Dict[str, Any]] = {}
        self.tensor_mapping: Dict[str, str] = {}  # Maps removed tensor -> replacement
        self.new_weights: Dict[str, RawTensor] = {}

    @abstractmethod
    def get_name(self) -> str:
        """Return the name of this optimization pass."""
        pass

    @abstractmethod
    def optimize(self, graph: ONNXModel) -> None:
        """
        Analyze the graph and record removals, replacements and new weights.

        Don't modify the graph directly - the optimizer applies the changes.
        """
        pass

    def mark_for_removal(self, node: Dict[str, Any]):
        self.removed_layers.add(node["name"])

    def should_remove(self, node_name: str) -> bool:
        """Check if a node is marked for removal."""
        return node_name in self.removed_layers

    def remap_tensor(self, old_tensor: str, new_tensor: str):
        """
        Remap a tensor to point to a different source.

        Args:
            old_tensor: Original tensor name
            new_tensor: New tensor to use instead
        """
        self.tensor_mapping[old_tensor] = new_tensor

    def add_weight(self, tensor: RawTensor) -> str:
        """Add an initializer created by this pass."""
        self.new_weights[tensor.name] = tensor
        return tensor.name

    def replace_layer(self, old_node: Dict[str, Any], new_node: Dict[str, Any]):
        """
        Replace a node with a new node in the same position.

        Args:
            old_node: Node being replaced
            new_node: Node taking its place
        """
        self.replaced_layers[old_node["name"]] = new_node

        # Remap old outputs to new outputs
        for old_out, new_out in zip(old_node["outputs"], new_node["outputs"]):
            if old_out != new_out:
                self.remap_tensor(old_out, new_out)
