"""Type aliases and named tuples for crossbatch inter-module contracts."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import NamedTuple, Union

import numpy as np
import torch

# Anything torch.as_tensor accepts as a flat row of values.
ArrayLike = Union[torch.Tensor, np.ndarray, Sequence[float]]

RowPair = tuple[ArrayLike, ArrayLike]

RowFactory = Callable[[], RowPair]


class DatasetSample(NamedTuple):
    """A single sample read from a batch collection.

    x: 1-D float tensor view of the input row, length = input features.
    y: 1-D float tensor view of the output row, length = output features.

    Both are views into the owning batch's storage, not copies.
    """

    x: torch.Tensor
    y: torch.Tensor
