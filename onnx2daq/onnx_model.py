"""
Loads ONNX models and extracts initializers, graph inputs/outputs and nodes
into plain Python structures for the lowering pass.
"""

import onnx
import onnx.numpy_helper
import numpy as np
from typing import Dict, List, Tuple, Any, Optional
from pathlib import Path
import logging

from .types import RawTensor
from .errors import MalformedInput

logger = logging.getLogger(__name__)


class ONNXModel:
    """
    A class to load an ONNX model and extract the graph information the
    converter works on: float32 initializers, declared inputs, outputs and nodes.
    """

    def __init__(self, model_path: Optional[str | Path] = None):
        """
        Initialize with the path of an ONNX model file.

        Args:
            model_path: Path to the ONNX model file (string or Path object)
        """
        self.model_path = Path(model_path) if model_path is not None else None
        self.model: Optional[onnx.ModelProto] = None
        self.graph = None
        self.weights: Dict[str, RawTensor] = {}
        self.initializer_names: List[str] = []
        self.layers: List[Dict[str, Any]] = []
        self.input_info: Dict[str, Tuple[int, ...]] = {}
        self.output_names: List[str] = []

    @classmethod
    def from_proto(cls, model: onnx.ModelProto) -> "ONNXModel":
        """Wrap an in-memory ModelProto and analyze it."""
        analyzer = cls()
        analyzer._set_model(model)
        return analyzer

    def load_model(self) -> None:
        """
        Load the ONNX model from file, check it and analyze its graph.

        Raises:
            FileNotFoundError: If the model file does not exist
            onnx.checker.ValidationError: If the model is not valid ONNX
        """
        if self.model_path is None or not self.model_path.exists():
            raise FileNotFoundError(f"ONNX model file not found: {self.model_path}")

        model = onnx.load(str(self.model_path))
        logger.info(f"Successfully loaded ONNX model: {self.model_path}")
        self._set_model(model)

    def _set_model(self, model: onnx.ModelProto) -> None:
        onnx.checker.check_model(model)
        self.model = model
        self.graph = model.graph
        self.extract_weights()
        self.analyze_layers()
        self.get_input_output_info()

    @staticmethod
    def parse_attribute(attr: onnx.AttributeProto) -> Any:
        """Convert an AttributeProto to a Python value."""
        if attr.type == onnx.AttributeProto.INT:
            return attr.i
        elif attr.type == onnx.AttributeProto.FLOAT:
            return attr.f
        elif attr.type == onnx.AttributeProto.STRING:
            return attr.s.decode("utf-8")
        elif attr.type == onnx.AttributeProto.INTS:
            return list(attr.ints)
        elif attr.type == onnx.AttributeProto.FLOATS:
            return list(attr.floats)
        elif attr.type == onnx.AttributeProto.TENSOR:
            return onnx.numpy_helper.to_array(attr.t)
        return None

    def extract_weights(self) -> Dict[str, RawTensor]:
        """
        Extract float32 initializers as RawTensors.

        Initializers of other types are only remembered by name, so that graph
        inputs they cover are not treated as runtime inputs.

        Returns:
            Dict[str, RawTensor]: Mapping of initializer names to tensors
        """
        weights = {}
        names = []

        for initializer in self.graph.initializer:
            names.append(initializer.name)
            if initializer.data_type != onnx.TensorProto.FLOAT:
                logger.debug(
                    f"Skipping non-float initializer '{initializer.name}' "
                    f"({onnx.helper.tensor_dtype_to_string(initializer.data_type)})"
                )
                continue

            data = onnx.numpy_helper.to_array(initializer).astype(np.float32).ravel()
            data.setflags(write=False)
            weights[initializer.name] = RawTensor(
                name=initializer.name,
                shape=tuple(int(d) for d in initializer.dims),
                data=data,
            )

        self.weights = weights
        self.initializer_names = names
        return weights

    def analyze_layers(self) -> List[Dict[str, Any]]:
        """
        Analyze all nodes of the graph, in source order.

        Node names are made unique: unnamed nodes get "<op_type>_<index>", and
        a name already taken gets a "_<n>" suffix.

        Returns:
            List[Dict[str, Any]]: List of node information dictionaries
        """
        layers = []
        taken = set()

        for i, node in enumerate(self.graph.node):
            name = node.name or f"{node.op_type}_{i}"
            if name in taken:
                suffix = 1
                while f"{name}_{suffix}" in taken:
                    suffix += 1
                logger.debug(f"Duplicate node name {name}, renamed to {name}_{suffix}")
                name = f"{name}_{suffix}"
            taken.add(name)

            layer_info = {
                "name": name,
                "op_type": node.op_type,
                "inputs": list(node.input),
                "outputs": list(node.output),
                "attributes": {
                    attr.name: self.parse_attribute(attr) for attr in node.attribute
                },
            }
            layers.append(layer_info)

        self.layers = layers
        return layers

    def get_input_output_info(self) -> Tuple[Dict[str, Tuple[int, ...]], List[str]]:
        """
        Get declared graph inputs (not covered by an initializer) and output names.

        Returns:
            Tuple of (input name -> static shape, output names)

        Raises:
            MalformedInput: If an input has a symbolic or unknown dimension
        """
        initializer_names = set(self.initializer_names)
        input_info = {}

        for input_tensor in self.graph.input:
            if input_tensor.name in initializer_names:
                continue

            shape = []
            for dim in input_tensor.type.tensor_type.shape.dim:
                if dim.HasField("dim_value") and dim.dim_value > 0:
                    shape.append(int(dim.dim_value))
                else:
                    raise MalformedInput(
                        f"Graph input '{input_tensor.name}' has a non-static dimension "
                        f"({dim.dim_param or 'unknown'})"
                    )
            input_info[input_tensor.name] = tuple(shape)

        self.input_info = input_info
        self.output_names = [output.name for output in self.graph.output]
        return input_info, self.output_names

    def replace_graph(
        self, layers: List[Dict[str, Any]], weights: Dict[str, RawTensor]
    ) -> None:
        """Install an optimized node list and initializer set."""
        self.layers = layers
        for name in weights:
            if name not in self.initializer_names:
                self.initializer_names.append(name)
        self.weights = weights
