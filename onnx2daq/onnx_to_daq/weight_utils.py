"""
Weight layout conversion from ONNX (channel-first) to the target layouts.
"""

import numpy as np
import logging

from ..types import RawTensor, LoweredTensor
from ..errors import UnsupportedConfiguration

logger = logging.getLogger(__name__)


def _as_4d(tensor: RawTensor) -> np.ndarray:
    if len(tensor.shape) != 4:
        raise UnsupportedConfiguration(
            f"Conv weight '{tensor.name}' must be 4-D, got shape {tensor.shape}"
        )
    return tensor.as_array()


def _lowered(name: str, array: np.ndarray) -> LoweredTensor:
    data = np.ascontiguousarray(array, dtype=np.float32).ravel()
    data.setflags(write=False)
    return LoweredTensor(name=name, shape=tuple(int(d) for d in array.shape), data=data)


def onnx_to_nnapi_vanilla(tensor: RawTensor, name: str) -> LoweredTensor:
    """
    Convert a vanilla conv weight [out_c, in_c, kh, kw] to [out_c, kh, kw, in_c].

    Args:
        tensor: Source weight
        name: Name of the converted tensor
    """
    converted = _as_4d(tensor).transpose(0, 2, 3, 1)
    logger.debug(f"Vanilla weight {tensor.name}: {tensor.shape} -> {converted.shape}")
    return _lowered(name, converted)


def onnx_to_nnapi_depthwise(tensor: RawTensor, name: str) -> LoweredTensor:
    """
    Convert a depthwise conv weight [out_c, 1, kh, kw] to [1, kh, kw, out_c].

    Args:
        tensor: Source weight
        name: Name of the converted tensor
    """
    converted = _as_4d(tensor).transpose(1, 2, 3, 0)
    logger.debug(f"Depthwise weight {tensor.name}: {tensor.shape} -> {converted.shape}")
    return _lowered(name, converted)


def copy_tensor(tensor: RawTensor, name: str) -> LoweredTensor:
    """Materialize a tensor without layout change."""
    return _lowered(name, tensor.as_array())
