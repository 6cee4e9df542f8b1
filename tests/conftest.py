"""Shared pytest fixtures for crossbatch tests."""

import pytest
import torch

from crossbatch.config import BatchingConfig, PoolConfig
from crossbatch.tensor import TensorPool

# Input and output widths of the dense fixture dataset.
INPUT_WIDTH = 4
OUTPUT_WIDTH = 2


@pytest.fixture()
def pool() -> TensorPool:
    """Private pool so tests can observe hits, misses and retained blocks."""
    return TensorPool(PoolConfig(max_retained_bytes=1 << 24))


@pytest.fixture()
def config() -> BatchingConfig:
    """Seeded, two-threaded config: reproducible and still exercises concurrency."""
    return BatchingConfig(batch_size=10, num_workers=2, seed=1234)


@pytest.fixture()
def dense_dataset() -> tuple[torch.Tensor, torch.Tensor]:
    """25 samples; row i of x is 4 consecutive ints from 4*i, row i of y is (1000+i, -i).

    Every row is unique, so rows can be traced through partitioning and shuffling.
    """
    samples = 25
    x = torch.arange(samples * INPUT_WIDTH, dtype=torch.float32).reshape(
        samples, INPUT_WIDTH
    )
    idx = torch.arange(samples, dtype=torch.float32)
    y = torch.stack([1000.0 + idx, -idx], dim=1)
    return x, y
