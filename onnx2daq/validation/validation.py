"""
Translation validation: compare a lowered model against its ONNX source.
"""

import logging
from typing import Dict, Optional

import numpy as np
import onnx

from ..types import LoweredModel
from .executor import DaqExecutor

logger = logging.getLogger(__name__)


def to_nhwc(array: np.ndarray) -> np.ndarray:
    return array.transpose(0, 2, 3, 1) if array.ndim == 4 else array


def to_nchw(array: np.ndarray) -> np.ndarray:
    return array.transpose(0, 3, 1, 2) if array.ndim == 4 else array


def load_onnx_session(model: onnx.ModelProto):
    """Create an ONNX Runtime session for an in-memory model."""
    import onnxruntime as ort

    return ort.InferenceSession(
        model.SerializeToString(), providers=["CPUExecutionProvider"]
    )


def run_onnx_inference(model: onnx.ModelProto, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
    """Run the ONNX model on channel-first feeds."""
    session = load_onnx_session(model)
    output_names = [output.name for output in session.get_outputs()]
    results = session.run(
        output_names, {name: value.astype(np.float32) for name, value in feeds.items()}
    )
    return dict(zip(output_names, results))


def random_feeds(lowered: LoweredModel, seed: int = 0) -> Dict[str, np.ndarray]:
    """Random channel-first inputs for every graph input of `lowered`."""
    rng = np.random.default_rng(seed)
    return {
        graph_input.name: to_nchw(
            rng.standard_normal(graph_input.shape).astype(np.float32)
        )
        for graph_input in lowered.inputs
    }


def compare_inference(
    model: onnx.ModelProto,
    lowered: LoweredModel,
    feeds: Optional[Dict[str, np.ndarray]] = None,
    rtol: float = 1e-4,
    atol: float = 1e-4,
) -> dict:
    """
    Run both models on the same inputs and compare every graph output.

    Args:
        model: Source ONNX model
        lowered: Result of converting `model`
        feeds: Channel-first inputs; random when omitted
        rtol: Relative tolerance
        atol: Absolute tolerance

    Returns:
        Dict with "passed", "max_abs_diff" and per-output "outputs" pairs
    """
    if feeds is None:
        feeds = random_feeds(lowered)

    reference = run_onnx_inference(model, feeds)
    values = DaqExecutor(lowered).run({name: to_nhwc(v) for name, v in feeds.items()})

    results = {"passed": True, "max_abs_diff": 0.0, "outputs": {}}

    for (name, expected), resolved in zip(reference.items(), lowered.outputs):
        actual = to_nchw(values[resolved])
        if actual.size == expected.size:
            # a trailing Reshape is not lowered, apply it here
            actual = actual.reshape(expected.shape)

        if actual.shape != expected.shape:
            logger.error(f"Output {name}: shape {actual.shape} != {expected.shape}")
            results["passed"] = False
            results["outputs"][name] = (expected, actual)
            continue

        max_abs = float(np.max(np.abs(expected - actual))) if expected.size else 0.0
        results["max_abs_diff"] = max(results["max_abs_diff"], max_abs)
        if not np.allclose(expected, actual, rtol=rtol, atol=atol):
            logger.error(f"Output {name}: max abs diff {max_abs}")
            results["passed"] = False
        results["outputs"][name] = (expected, actual)

    logger.info(
        f"Validation {'passed' if results['passed'] else 'failed'} "
        f"(max abs diff {results['max_abs_diff']:.3g})"
    )
    return results
