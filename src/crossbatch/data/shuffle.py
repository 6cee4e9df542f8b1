"""Epoch-boundary cross-shuffle of a list of batches.

The shuffle runs in three phases:

1. Fisher–Yates over the batch indices, then consecutive entries are paired
   up. With an odd batch count the last index sits this round out.
2. Each pair is cross-shuffled on a worker thread. Pairs touch disjoint
   batches, so the kernels share no mutable state. Every kernel draws from
   its own generator spawned from the shared source.
3. After all kernels have finished, the batch list itself is shuffled.

Rows only ever move between slots, so the multiset of rows and the row
count of each batch are unchanged.
"""

from __future__ import annotations

from collections.abc import MutableSequence

import numpy as np
import torch
from loguru import logger

from crossbatch.data.batch import SamplesBatch
from crossbatch.data.partition import run_parallel
from crossbatch.exceptions import ParallelExecutionError
from crossbatch.rng import ThreadSafeRandom, shared_random

__all__ = ["cross_shuffle", "cross_shuffle_pair"]


def cross_shuffle_pair(
    set_a: SamplesBatch, set_b: SamplesBatch, rng: np.random.Generator
) -> None:
    """Permute rows within and across two batches in place.

    A Fisher–Yates variant over two logical arrays: each step picks ``k`` in
    the shrinking window ``[0, bound)`` and two independent coin flips choose
    which batch plays ``target_a`` and which plays ``target_b`` (they may be
    the same batch). Row ``k`` of ``target_a`` and row ``bound`` of
    ``target_b`` then trade places through a scratch row.
    """
    bound = min(set_a.rows, set_b.rows)
    if bound <= 1:
        return
    xs = (set_a.x.as_matrix(), set_b.x.as_matrix())
    ys = (set_a.y.as_matrix(), set_b.y.as_matrix())
    temp_x = torch.empty(set_a.input_features, dtype=torch.float32)
    temp_y = torch.empty(set_a.output_features, dtype=torch.float32)

    # Draw everything up front: k for bound, bound - 1, ..., 2.
    ks = rng.integers(0, np.arange(bound, 1, -1))
    coins = rng.integers(0, 2, size=(len(ks), 2)).tolist()
    for step, k in enumerate(ks.tolist()):
        bound -= 1
        a, b = coins[step]
        x_a, y_a = xs[a], ys[a]
        x_b, y_b = xs[b], ys[b]

        temp_x.copy_(x_a[k])
        temp_y.copy_(y_a[k])
        x_a[k].copy_(x_b[bound])
        y_a[k].copy_(y_b[bound])
        x_b[bound].copy_(temp_x)
        y_b[bound].copy_(temp_y)


def cross_shuffle(
    batches: MutableSequence[SamplesBatch],
    rng: ThreadSafeRandom | None = None,
    *,
    num_workers: int | None = None,
    show_progress: bool = False,
) -> None:
    """Shuffle rows within and across batches, then shuffle the batch order.

    Args:
        batches: Batches to shuffle in place. All must share their feature
            widths.
        rng: Random source. Defaults to the process-wide shared source.
        num_workers: Threads used for the pair kernels.
        show_progress: Display a tqdm progress bar for the pair kernels.

    Raises:
        ParallelExecutionError: A pair kernel failed. The remaining kernels
            have completed, the batch order is untouched, and row contents
            may be partially shuffled.
    """
    rng = rng if rng is not None else shared_random()
    indexes = list(range(len(batches)))
    rng.shuffle_in_place(indexes)

    pairs = [(indexes[i], indexes[i + 1]) for i in range(0, len(indexes) - 1, 2)]
    streams = rng.spawn(len(pairs))
    logger.debug(f"Cross-shuffling {len(pairs)} batch pairs of {len(batches)} batches")

    def _kernel(work: tuple[tuple[int, int], np.random.Generator]) -> None:
        (a, b), stream = work
        cross_shuffle_pair(batches[a], batches[b], stream)

    try:
        run_parallel(
            _kernel,
            zip(pairs, streams),
            num_workers=num_workers,
            desc="cross-shuffle",
            show_progress=show_progress,
        )
    except ParallelExecutionError:
        logger.error("Cross-shuffle aborted: batch contents may be partially shuffled")
        raise

    rng.shuffle_in_place(batches)
