"""
Detection of activations that can be folded into the layer producing their input.

Fusing saves an elementwise layer on the target runtime. When a producer's
output feeds several activations (diverging branches) they cannot share one
fused result, so they stay explicit layers.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Any, Optional, Set, Iterable

from ..types import FuseCode

logger = logging.getLogger(__name__)

# op_type -> fuse code it folds into
FUSIBLE_ACTIVATIONS: Dict[str, FuseCode] = {
    "Relu": FuseCode.RELU,
}


@dataclass(frozen=True)
class FusedActivation:
    """Result of an activation lookup for one producer"""

    node_name: Optional[str] = None
    output: Optional[str] = None
    fuse_code: FuseCode = FuseCode.NONE

    def is_fused(self) -> bool:
        return self.node_name is not None


NO_ACTIVATION = FusedActivation()


class ActivationFusionAnalyzer:
    """
    Finds fusible activations over the full node list.

    Activation nodes that were fused are recorded in `consumed` by identity of
    their node dict, so nodes sharing a name are told apart; the handler of that
    activation type must skip them when they come up in the pass.
    """

    def __init__(self, nodes: List[Dict[str, Any]], graph_outputs: Iterable[str] = ()):
        self.nodes = nodes
        self.graph_outputs: Set[str] = set(graph_outputs)
        self.consumed: Set[int] = set()

        self.consumer_counts: Dict[str, int] = {}
        for node in nodes:
            for inp in node["inputs"]:
                self.consumer_counts[inp] = self.consumer_counts.get(inp, 0) + 1

    def find_activation(self, node: Dict[str, Any]) -> FusedActivation:
        """
        Look for the activation consuming the first output of `node`.

        Returns:
            The fused activation, or NO_ACTIVATION when there is none or the
            output feeds more than one activation
        """
        if not node["outputs"]:
            return NO_ACTIVATION
        produced = node["outputs"][0]

        matches = [
            candidate
            for candidate in self.nodes
            if candidate["op_type"] in FUSIBLE_ACTIVATIONS
            and candidate["inputs"]
            and candidate["inputs"][0] == produced
        ]

        if not matches:
            return NO_ACTIVATION

        if len(matches) > 1:
            logger.debug(
                f"{node['name']}: output {produced} feeds {len(matches)} activations, "
                f"not fusing"
            )
            return NO_ACTIVATION

        activation = matches[0]
        if self.consumer_counts.get(produced, 0) != 1 or produced in self.graph_outputs:
            logger.debug(
                f"{node['name']}: output {produced} is used besides "
                f"{activation['name']}, not fusing"
            )
            return NO_ACTIVATION

        self.consumed.add(id(activation))
        fused = FusedActivation(
            node_name=activation["name"],
            output=activation["outputs"][0],
            fuse_code=FUSIBLE_ACTIVATIONS[activation["op_type"]],
        )
        logger.debug(
            f"Fusing {activation['name']} ({fused.fuse_code.name}) into {node['name']}"
        )
        return fused

    def is_consumed(self, node: Dict[str, Any]) -> bool:
        """Check if `node` was already folded into its producer."""
        return id(node) in self.consumed
