"""Pooled, shape-tagged float storage."""

from crossbatch.tensor.pool import TensorPool, default_pool
from crossbatch.tensor.shape import Shape
from crossbatch.tensor.tensor import AllocationMode, Tensor

__all__ = [
    "AllocationMode",
    "Shape",
    "Tensor",
    "TensorPool",
    "default_pool",
]
