"""
Graph optimization module.
"""

from .optimizer import GraphOptimizer, DEFAULT_PASSES
from .base_pass import OptimizationPass
from .passes import FuseBatchNormIntoConvPass

__all__ = [
    "GraphOptimizer",
    "DEFAULT_PASSES",
    "OptimizationPass",
    "FuseBatchNormIntoConvPass",
]
