"""Dataset partitioned into batches, iterated in circular order by a training loop."""

from __future__ import annotations

import bisect
import itertools
from collections.abc import Iterable, Iterator, Sequence
from types import TracebackType

import torch
from loguru import logger

from crossbatch.config import MIN_BATCH_SIZE, BatchingConfig
from crossbatch.data.batch import SamplesBatch
from crossbatch.data.partition import partition, partition_ranges, run_parallel
from crossbatch.data.shuffle import cross_shuffle
from crossbatch.exceptions import (
    ConfigurationError,
    IndexOutOfRangeError,
    ShapeMismatchError,
)
from crossbatch.rng import ThreadSafeRandom, shared_random
from crossbatch.tensor import TensorPool
from crossbatch.types import ArrayLike, DatasetSample, RowFactory, RowPair

__all__ = ["BatchesCollection"]


def _check_batch_size(size: int) -> None:
    if size < MIN_BATCH_SIZE:
        raise ConfigurationError(
            f"The batch size must be greater than or equal to {MIN_BATCH_SIZE}, got {size}"
        )


def _as_matrix(values: ArrayLike, name: str) -> torch.Tensor:
    m = torch.as_tensor(values, dtype=torch.float32)
    if m.dim() != 2:
        raise ShapeMismatchError(f"{name} must be a 2-D matrix, got {m.dim()} dimensions")
    return m


def _as_row(values: ArrayLike) -> torch.Tensor:
    return torch.as_tensor(values, dtype=torch.float32).reshape(-1)


class BatchesCollection:
    """An ordered set of :class:`SamplesBatch` covering a whole dataset.

    Build one with :meth:`from_dataset`, :meth:`from_generators` or
    :meth:`from_pairs`. The training loop iterates the batches, calls
    :meth:`cross_shuffle` between epochs and may change the target number
    of rows per batch through :attr:`batch_size`.

    Indexing and ``len`` work on samples: ``collection[i]`` is the ``i``-th
    sample and ``len(collection)`` is :attr:`count`. Iterating yields the
    batches, the unit a training loop consumes, so ``len(list(collection))``
    is the number of batches, not the number of samples.

    Not safe for concurrent use: re-partitioning and shuffling must not
    overlap with each other or with readers.

    Args:
        batches: Batches in iteration order. Must be non-empty and agree
            on their feature widths.
        rows_per_batch: Target rows per batch the batches were built with.
        config: Threading, seeding and progress settings.
        pool: Pool that batch storage is rented from.
    """

    def __init__(
        self,
        batches: Sequence[SamplesBatch],
        rows_per_batch: int,
        config: BatchingConfig | None = None,
        pool: TensorPool | None = None,
    ) -> None:
        if not batches:
            raise ValueError("A batches collection needs at least one batch")
        wx, wy = batches[0].input_features, batches[0].output_features
        for i, batch in enumerate(batches):
            if batch.input_features != wx or batch.output_features != wy:
                raise ShapeMismatchError(
                    f"Batch {i} has feature widths "
                    f"({batch.input_features}, {batch.output_features}), "
                    f"expected ({wx}, {wy})"
                )
        self._config = config if config is not None else BatchingConfig()
        self._pool = pool
        self._batches = list(batches)
        self._rows_per_batch = rows_per_batch
        self._count = sum(b.rows for b in self._batches)
        self._rng = (
            ThreadSafeRandom(self._config.seed)
            if self._config.seed is not None
            else shared_random()
        )
        self._reindex()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_dataset(
        cls,
        x: ArrayLike,
        y: ArrayLike,
        size: int | None = None,
        *,
        config: BatchingConfig | None = None,
        pool: TensorPool | None = None,
    ) -> BatchesCollection:
        """Partition dense ``(samples, features)`` matrices into batches.

        Rows keep their order: batch ``i`` holds rows ``[i * size, (i + 1) * size)``
        and the last batch takes the remainder.

        Args:
            x: Input matrix, one sample per row.
            y: Output matrix, one sample per row.
            size: Rows per batch. Defaults to ``config.batch_size``.
            config: Threading, seeding and progress settings.
            pool: Pool to rent batch storage from.

        Raises:
            ConfigurationError: ``size`` is below 10.
            ShapeMismatchError: ``x`` and ``y`` have different row counts.

        A ``config`` built with ``batch_size`` below 10 never gets here:
        :class:`BatchingConfig` rejects it with ``pydantic.ValidationError``.
        """
        config = config if config is not None else BatchingConfig()
        size = size if size is not None else config.batch_size
        _check_batch_size(size)
        xm, ym = _as_matrix(x, "x"), _as_matrix(y, "y")
        samples, wx = xm.shape
        wy = ym.shape[1]
        if samples != ym.shape[0]:
            raise ShapeMismatchError(
                f"The number of samples must be the same in both x and y, "
                f"got {samples} and {ym.shape[0]}"
            )

        def _build(bounds: tuple[int, int]) -> SamplesBatch:
            start, end = bounds
            return SamplesBatch.from_dense(xm[start:end], ym[start:end], wx, wy, pool=pool)

        batches = run_parallel(
            _build,
            partition_ranges(samples, size),
            num_workers=config.num_workers,
            desc="Batching",
            show_progress=config.show_progress,
            cleanup=SamplesBatch.release,
        )
        logger.info(
            f"Built {len(batches)} batches of up to {size} rows from {samples} samples"
        )
        return cls(batches, size, config, pool)

    @classmethod
    def from_generators(
        cls,
        factories: Iterable[RowFactory],
        size: int | None = None,
        *,
        config: BatchingConfig | None = None,
        pool: TensorPool | None = None,
    ) -> BatchesCollection:
        """Evaluate per-sample factories in parallel, then partition the rows.

        Samples keep the order the factories were given in, whatever order
        the threads finish in.
        """
        config = config if config is not None else BatchingConfig()
        size = size if size is not None else config.batch_size
        _check_batch_size(size)
        pairs = run_parallel(
            lambda factory: factory(),
            factories,
            num_workers=config.num_workers,
            desc="Generating",
            show_progress=config.show_progress,
        )
        return cls.from_pairs(pairs, size, config=config, pool=pool)

    @classmethod
    def from_pairs(
        cls,
        pairs: Iterable[RowPair],
        size: int | None = None,
        *,
        config: BatchingConfig | None = None,
        pool: TensorPool | None = None,
    ) -> BatchesCollection:
        """Partition a sequence of ``(input_row, output_row)`` pairs into batches.

        Raises:
            ConfigurationError: ``size`` is below 10.
            ShapeMismatchError: Rows disagree on their widths.
        """
        config = config if config is not None else BatchingConfig()
        size = size if size is not None else config.batch_size
        _check_batch_size(size)
        rows = [(_as_row(x), _as_row(y)) for x, y in pairs]
        if not rows:
            raise ValueError("The dataset must contain at least one sample")
        wx, wy = rows[0][0].numel(), rows[0][1].numel()
        for i, (rx, ry) in enumerate(rows):
            if rx.numel() != wx or ry.numel() != wy:
                raise ShapeMismatchError(
                    f"Sample {i} has widths ({rx.numel()}, {ry.numel()}), "
                    f"expected ({wx}, {wy})"
                )
        batches = cls._build_from_rows(rows, size, wx, wy, config, pool)
        logger.info(
            f"Built {len(batches)} batches of up to {size} rows from {len(rows)} samples"
        )
        return cls(batches, size, config, pool)

    @staticmethod
    def _build_from_rows(
        rows: Sequence[RowPair],
        size: int,
        wx: int,
        wy: int,
        config: BatchingConfig,
        pool: TensorPool | None,
    ) -> list[SamplesBatch]:
        return run_parallel(
            lambda chunk: SamplesBatch.from_rows(chunk, wx, wy, pool=pool),
            partition(rows, size),
            num_workers=config.num_workers,
            desc="Batching",
            show_progress=config.show_progress,
            cleanup=SamplesBatch.release,
        )

    # ------------------------------------------------------------------
    # Dataset interface
    # ------------------------------------------------------------------
    @property
    def batches(self) -> tuple[SamplesBatch, ...]:
        """Current batches, in iteration order."""
        return tuple(self._batches)

    @property
    def count(self) -> int:
        """Total number of samples."""
        return self._count

    @property
    def input_features(self) -> int:
        self._check_live()
        return self._batches[0].input_features

    @property
    def output_features(self) -> int:
        self._check_live()
        return self._batches[0].output_features

    @property
    def rows_per_batch(self) -> int:
        """Target rows per batch; only the remainder batch may hold fewer."""
        return self._rows_per_batch

    @property
    def batch_size(self) -> int:
        """Number of batches.

        Assigning a value re-partitions the dataset into batches of that
        many rows (see :meth:`set_batch_size`).
        """
        return len(self._batches)

    @batch_size.setter
    def batch_size(self, value: int) -> None:
        self.set_batch_size(value)

    @property
    def byte_size(self) -> int:
        """Bytes of row data across all input and output tensors."""
        return sum(b.nbytes for b in self._batches)

    def sample(self, i: int) -> DatasetSample:
        """Views of the ``i``-th sample's input and output rows.

        Samples are numbered through the batches in their current order.

        Raises:
            IndexOutOfRangeError: ``i`` is outside ``[0, count)``.
        """
        if i < 0 or i >= self._count:
            raise IndexOutOfRangeError(
                f"The target index {i} is not valid, the dataset has {self._count} samples"
            )
        b = bisect.bisect_right(self._offsets, i) - 1
        return self._batches[b].row(i - self._offsets[b])

    def __getitem__(self, i: int) -> DatasetSample:
        return self.sample(i)

    def __len__(self) -> int:
        return self._count

    def __iter__(self) -> Iterator[SamplesBatch]:
        return iter(tuple(self._batches))

    # ------------------------------------------------------------------
    # Re-partitioning
    # ------------------------------------------------------------------
    def set_batch_size(self, size: int) -> None:
        """Re-partition every sample into batches of ``size`` rows.

        Rows keep their current order. The rows of the old batches are read
        through views while the new batches are built, and the old batches
        are released only once every new batch exists: on failure the
        collection is left as it was.

        Raises:
            ConfigurationError: ``size`` is below 10.
            RuntimeError: The collection has been released.
        """
        self._check_live()
        _check_batch_size(size)
        rows = list(
            itertools.chain.from_iterable(
                zip(batch.x.as_matrix(), batch.y.as_matrix()) for batch in self._batches
            )
        )
        batches = self._build_from_rows(
            rows, size, self.input_features, self.output_features, self._config, self._pool
        )
        old, self._batches = self._batches, batches
        self._rows_per_batch = size
        self._reindex()
        for batch in old:
            batch.release()
        logger.info(
            f"Re-partitioned {self._count} samples into {len(batches)} batches "
            f"of up to {size} rows"
        )

    # ------------------------------------------------------------------
    # Shuffling
    # ------------------------------------------------------------------
    def cross_shuffle(self, rng: ThreadSafeRandom | None = None) -> None:
        """Shuffle samples within and across batches, then the batch order.

        Args:
            rng: Random source. Defaults to the collection's own source,
                seeded from ``config.seed`` when one is set.
        """
        self._check_live()
        try:
            cross_shuffle(
                self._batches,
                rng if rng is not None else self._rng,
                num_workers=self._config.num_workers,
                show_progress=self._config.show_progress,
            )
        finally:
            self._reindex()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def release(self) -> None:
        """Return every batch's storage to the pool."""
        for batch in self._batches:
            batch.release()
        self._batches = []
        self._count = 0
        self._reindex()

    def __enter__(self) -> BatchesCollection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._batches:
            self.release()

    def _check_live(self) -> None:
        if not self._batches:
            raise RuntimeError("The collection has been released")

    def _reindex(self) -> None:
        """Recompute the first sample index of each batch."""
        starts = itertools.accumulate((b.rows for b in self._batches), initial=0)
        self._offsets = list(starts)[:-1]

    def __repr__(self) -> str:
        return (
            f"BatchesCollection(count={self._count}, batches={len(self._batches)}, "
            f"rows_per_batch={self._rows_per_batch}, "
            f"features=({self.input_features}, {self.output_features}))"
            if self._batches
            else "BatchesCollection(released)"
        )
