"""Thread-safe pool of reusable float32 storage blocks.

Blocks are bucketed by capacity, rounded up to the next power of two, so a
released block can serve any later request of up to its capacity. The pool
is the only persistent shared resource in crossbatch: batches built in
parallel rent and return blocks concurrently, so every bookkeeping step
happens under a single lock.
"""

from __future__ import annotations

import threading

import torch
from loguru import logger

from crossbatch.config import PoolConfig

__all__ = ["TensorPool", "default_pool"]

# Smallest block handed out, so tiny tensors share one bucket.
_MIN_CAPACITY = 16

_DTYPE = torch.float32
_ITEM_SIZE = torch.finfo(_DTYPE).bits // 8


def _bucket_capacity(size: int) -> int:
    """Round ``size`` up to the bucket capacity that serves it."""
    if size <= _MIN_CAPACITY:
        return _MIN_CAPACITY
    return 1 << (size - 1).bit_length()


class TensorPool:
    """Pool of flat ``torch.float32`` blocks.

    Args:
        config: Retention limits. Defaults to ``PoolConfig()``.
    """

    def __init__(self, config: PoolConfig | None = None) -> None:
        self._config = config if config is not None else PoolConfig()
        self._max_retained_bytes = self._config.resolve_max_retained_bytes()
        self._lock = threading.Lock()
        self._buckets: dict[int, list[torch.Tensor]] = {}
        self._retained_bytes = 0
        self.hits = 0
        self.misses = 0

    @property
    def retained_bytes(self) -> int:
        """Bytes currently held for reuse."""
        return self._retained_bytes

    @property
    def retained_blocks(self) -> int:
        with self._lock:
            return sum(len(blocks) for blocks in self._buckets.values())

    def rent(self, size: int) -> torch.Tensor:
        """Return a flat block with at least ``size`` elements.

        The contents of the returned block are undefined.
        """
        capacity = _bucket_capacity(size)
        with self._lock:
            blocks = self._buckets.get(capacity)
            if blocks:
                block = blocks.pop()
                self._retained_bytes -= capacity * _ITEM_SIZE
                self.hits += 1
                return block
            self.misses += 1
        logger.debug(f"Pool miss: allocating block of {capacity} elements")
        return torch.empty(capacity, dtype=_DTYPE)

    def give_back(self, block: torch.Tensor) -> None:
        """Return a block obtained from :meth:`rent`.

        Blocks that would exceed the retention limits are dropped and left
        to the garbage collector.
        """
        capacity = block.numel()
        if block.dtype != _DTYPE or capacity != _bucket_capacity(capacity):
            logger.warning(
                f"Ignoring foreign block (dtype={block.dtype}, numel={capacity})"
            )
            return
        nbytes = capacity * _ITEM_SIZE
        with self._lock:
            blocks = self._buckets.setdefault(capacity, [])
            if (
                len(blocks) >= self._config.max_blocks_per_bucket
                or self._retained_bytes + nbytes > self._max_retained_bytes
            ):
                dropped = True
            else:
                blocks.append(block)
                self._retained_bytes += nbytes
                dropped = False
        if dropped:
            logger.debug(f"Pool full: dropping block of {capacity} elements")

    def clear(self) -> None:
        """Drop every retained block."""
        with self._lock:
            dropped = sum(len(blocks) for blocks in self._buckets.values())
            self._buckets.clear()
            self._retained_bytes = 0
        if dropped:
            logger.debug(f"Pool cleared: dropped {dropped} blocks")

    def __repr__(self) -> str:
        return (
            f"TensorPool(retained_blocks={self.retained_blocks}, "
            f"retained_bytes={self._retained_bytes}, "
            f"hits={self.hits}, misses={self.misses})"
        )


_default: TensorPool | None = None
_default_lock = threading.Lock()


def default_pool() -> TensorPool:
    """Process-wide pool used when callers do not supply one."""
    global _default
    with _default_lock:
        if _default is None:
            _default = TensorPool()
        return _default
