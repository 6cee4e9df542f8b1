"""Thread-safe random source shared by the batching and shuffling code."""

from __future__ import annotations

import threading
from collections.abc import MutableSequence
from typing import Any

import numpy as np

__all__ = ["ThreadSafeRandom", "shared_random"]


class ThreadSafeRandom:
    """A ``numpy.random.Generator`` guarded by a lock.

    Every draw takes the lock, so one instance can be used from many worker
    threads without corrupting its state. For hot loops, :meth:`spawn`
    hands out independent child generators derived from the same seed
    sequence; a worker that owns a child needs no locking at all.

    Args:
        seed: Optional seed. With a fixed seed, the sequence of draws and
            of spawned children is reproducible.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._lock = threading.Lock()
        self._seed_sequence = np.random.SeedSequence(seed)
        self._generator = np.random.default_rng(self._seed_sequence)

    def next_int(self, max: int) -> int:  # noqa: A002
        """Uniform integer in ``[0, max)``."""
        if max <= 0:
            raise ValueError(f"max must be positive, got {max}")
        with self._lock:
            return int(self._generator.integers(max))

    def next_bool(self) -> bool:
        """Fair coin flip."""
        with self._lock:
            return bool(self._generator.integers(2))

    def shuffle_in_place(self, items: MutableSequence[Any]) -> None:
        """Fisher–Yates shuffle of ``items``, holding the lock for the whole pass."""
        with self._lock:
            n = len(items)
            while n > 1:
                k = int(self._generator.integers(n))
                n -= 1
                items[k], items[n] = items[n], items[k]

    def spawn(self, n: int) -> list[np.random.Generator]:
        """Derive ``n`` statistically independent child generators."""
        with self._lock:
            children = self._seed_sequence.spawn(n)
        return [np.random.default_rng(child) for child in children]


_shared: ThreadSafeRandom | None = None
_shared_lock = threading.Lock()


def shared_random() -> ThreadSafeRandom:
    """Process-wide random source used when callers do not supply one."""
    global _shared
    with _shared_lock:
        if _shared is None:
            _shared = ThreadSafeRandom()
        return _shared
