"""Partitioning and thread-pool fan-out shared by the batching code."""

from __future__ import annotations

import concurrent.futures
from collections.abc import Callable, Iterable, Sequence
from typing import TypeVar

from loguru import logger
from tqdm import tqdm

from crossbatch.config import default_num_workers
from crossbatch.exceptions import ParallelExecutionError

__all__ = ["partition", "partition_ranges", "run_parallel"]

T = TypeVar("T")
R = TypeVar("R")


def partition_ranges(total: int, size: int) -> list[tuple[int, int]]:
    """Split ``[0, total)`` into consecutive ``[start, end)`` runs of ``size``.

    The last run holds the remainder, so no run is ever empty.
    """
    return [(start, min(start + size, total)) for start in range(0, total, size)]


def partition(items: Sequence[T], size: int) -> list[Sequence[T]]:
    """Split ``items`` into consecutive chunks of ``size``, remainder last."""
    return [items[start:end] for start, end in partition_ranges(len(items), size)]


def run_parallel(
    fn: Callable[[T], R],
    items: Iterable[T],
    *,
    num_workers: int | None = None,
    desc: str = "Working",
    show_progress: bool = False,
    cleanup: Callable[[R], None] | None = None,
) -> list[R]:
    """Apply ``fn`` to every item on a thread pool and wait for all of them.

    Results come back in submission order. The call returns only after every
    worker has finished, so it doubles as a barrier between phases.

    Args:
        fn: Work for a single item.
        items: Independent units of work.
        num_workers: Thread count. Defaults to ``default_num_workers()``.
        desc: Phase name, used for the progress bar and error messages.
        show_progress: Display a tqdm progress bar.
        cleanup: Called on each successful result if any worker fails, so
            partially built results can hand back their resources.

    Raises:
        ParallelExecutionError: One or more workers raised. Carries every
            worker exception; the first is chained as ``__cause__``.
    """
    work = list(items)
    if not work:
        return []
    max_workers = min(num_workers or default_num_workers(), len(work))

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(fn, item) for item in work]
        for _ in tqdm(
            concurrent.futures.as_completed(futures),
            total=len(futures),
            desc=desc,
            unit="task",
            disable=not show_progress,
        ):
            pass

    errors = [f.exception() for f in futures if f.exception() is not None]
    if errors:
        for e in errors:
            logger.error(f"{desc} worker failed: {type(e).__name__}: {e}")
        if cleanup is not None:
            for f in futures:
                if f.exception() is None:
                    cleanup(f.result())
        raise ParallelExecutionError(desc, errors) from errors[0]
    return [f.result() for f in futures]
