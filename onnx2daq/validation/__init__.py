"""
Numerical validation of lowered models.
"""

from .executor import DaqExecutor
from .validation import compare_inference, run_onnx_inference, random_feeds

__all__ = [
    "DaqExecutor",
    "compare_inference",
    "run_onnx_inference",
    "random_feeds",
]
