"""
Graph optimization passes.
"""

from .fuse_bn_into_conv import FuseBatchNormIntoConvPass

__all__ = [
    "FuseBatchNormIntoConvPass",
]
