"""Minibatch data pipeline: pooled shaped tensors, batch partitioning and cross-shuffling."""

from crossbatch.config import BatchingConfig, PoolConfig
from crossbatch.data import BatchesCollection, SamplesBatch, cross_shuffle
from crossbatch.exceptions import (
    ConfigurationError,
    CrossbatchError,
    IndexOutOfRangeError,
    InvalidShapeError,
    ParallelExecutionError,
    ShapeMismatchError,
)
from crossbatch.rng import ThreadSafeRandom, shared_random
from crossbatch.tensor import AllocationMode, Shape, Tensor, TensorPool, default_pool
from crossbatch.types import DatasetSample

__version__ = "0.0.1"

__all__ = [
    "AllocationMode",
    "BatchesCollection",
    "BatchingConfig",
    "ConfigurationError",
    "CrossbatchError",
    "DatasetSample",
    "IndexOutOfRangeError",
    "InvalidShapeError",
    "ParallelExecutionError",
    "PoolConfig",
    "SamplesBatch",
    "Shape",
    "ShapeMismatchError",
    "Tensor",
    "TensorPool",
    "ThreadSafeRandom",
    "cross_shuffle",
    "default_pool",
    "shared_random",
]
