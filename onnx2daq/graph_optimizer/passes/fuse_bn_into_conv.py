"""
Fuse Conv -> BatchNormalization into a single Conv.

    y = scale * (conv(x, W) + b - mean) / sqrt(var + eps) + beta
      = conv(x, W * s) + (b - mean) * s + beta,   s = scale / sqrt(var + eps)
"""

import logging
from typing import Any, Dict, Optional

import numpy as np

from ..base_pass import OptimizationPass
from ...onnx_model import ONNXModel
from ...types import RawTensor

logger = logging.getLogger(__name__)


def _raw(name: str, array: np.ndarray) -> RawTensor:
    data = np.ascontiguousarray(array, dtype=np.float32).ravel()
    data.setflags(write=False)
    return RawTensor(name=name, shape=tuple(int(d) for d in array.shape), data=data)


class FuseBatchNormIntoConvPass(OptimizationPass):
    """Fold inference-mode BatchNormalization into the preceding Conv."""

    def get_name(self) -> str:
        return "fuse_bn_into_conv"

    def optimize(self, graph: ONNXModel) -> None:
        """Find Conv -> BatchNormalization pairs and fold them."""
        consumers: Dict[str, list] = {}
        for node in graph.layers:
            for inp in node["inputs"]:
                consumers.setdefault(inp, []).append(node)

        fused_count = 0
        for node in graph.layers:
            if node["op_type"] != "Conv":
                continue

            bn = self._find_fuseable_bn(graph, node, consumers)
            if bn is None:
                continue

            fused_conv = self._create_fused_conv(graph, node, bn)
            self.replace_layer(node, fused_conv)
            self.mark_for_removal(bn)
            fused_count += 1
            logger.debug(f"Fused {bn['name']} into {node['name']}")

        if fused_count > 0:
            logger.info(f"Fused {fused_count} BatchNormalization nodes into Conv")

    def _find_fuseable_bn(
        self, graph: ONNXModel, conv: Dict[str, Any], consumers: Dict[str, list]
    ) -> Optional[Dict[str, Any]]:
        """
        Return the BatchNormalization consuming `conv`, if it can be folded.

        The Conv output must be used only by the BN, and the weight plus all
        BN parameters must be float initializers.
        """
        output = conv["outputs"][0]
        if output in graph.output_names:
            return None

        users = consumers.get(output, [])
        if len(users) != 1:
            return None

        bn = users[0]
        if bn["op_type"] != "BatchNormalization" or bn["inputs"][0] != output:
            return None
        if len(bn["outputs"]) != 1 or bn["attributes"].get("training_mode", 0):
            return None

        params = [conv["inputs"][1], *bn["inputs"][1:5]]
        if len(conv["inputs"]) >= 3 and conv["inputs"][2]:
            params.append(conv["inputs"][2])
        if not all(name in graph.weights for name in params):
            return None

        return bn

    def _create_fused_conv(
        self, graph: ONNXModel, conv: Dict[str, Any], bn: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create the Conv node with folded weight and bias."""
        weight = graph.weights[conv["inputs"][1]].as_array()
        scale, beta, mean, var = (
            graph.weights[name].as_array() for name in bn["inputs"][1:5]
        )
        epsilon = bn["attributes"].get("epsilon", 1e-5)

        if len(conv["inputs"]) >= 3 and conv["inputs"][2]:
            bias = graph.weights[conv["inputs"][2]].as_array()
        else:
            bias = np.zeros(weight.shape[0], dtype=np.float32)

        s = scale / np.sqrt(var + epsilon)
        fused_weight = weight * s.reshape(-1, 1, 1, 1)
        fused_bias = (bias - mean) * s + beta

        weight_name = self.add_weight(_raw(f"{conv['name']}_bn_fused_w", fused_weight))
        bias_name = self.add_weight(_raw(f"{conv['name']}_bn_fused_b", fused_bias))

        return {
            **conv,
            "inputs": [conv["inputs"][0], weight_name, bias_name],
            "outputs": list(bn["outputs"]),
        }
