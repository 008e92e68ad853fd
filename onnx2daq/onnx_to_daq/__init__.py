"""
ONNX to DAQ lowering module.
"""

from .converter import onnx_to_daq, ingest_graph
from .context import ConversionContext
from .name_resolver import NameResolver
from .activation_fusion import ActivationFusionAnalyzer, FusedActivation
from .shape_inference import Shaper
from .layer_lowering import LAYER_LOWERINGS, OpType, lower_node

__all__ = [
    "onnx_to_daq",
    "ingest_graph",
    "ConversionContext",
    "NameResolver",
    "ActivationFusionAnalyzer",
    "FusedActivation",
    "Shaper",
    "LAYER_LOWERINGS",
    "OpType",
    "lower_node",
]
