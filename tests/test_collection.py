"""Tests for BatchesCollection construction, indexing and re-partitioning."""

from unittest.mock import patch

import pytest
import torch
from pydantic import ValidationError

from crossbatch.config import BatchingConfig
from crossbatch.data import BatchesCollection, SamplesBatch
from crossbatch.exceptions import (
    ConfigurationError,
    IndexOutOfRangeError,
    ParallelExecutionError,
    ShapeMismatchError,
)
from crossbatch.tensor import TensorPool

INPUT_WIDTH = 4
OUTPUT_WIDTH = 2

Dataset = tuple[torch.Tensor, torch.Tensor]


def _all_samples(collection: BatchesCollection) -> list[tuple[list[float], list[float]]]:
    return [
        (collection[i].x.tolist(), collection[i].y.tolist())
        for i in range(len(collection))
    ]


@pytest.fixture()
def collection(
    dense_dataset: Dataset, config: BatchingConfig, pool: TensorPool
) -> BatchesCollection:
    x, y = dense_dataset
    return BatchesCollection.from_dataset(x, y, 10, config=config, pool=pool)


class TestFromDataset:
    def test_partition_with_remainder(self, collection: BatchesCollection) -> None:
        assert [b.rows for b in collection] == [10, 10, 5]

    def test_row_order_preserved(
        self, collection: BatchesCollection, dense_dataset: Dataset
    ) -> None:
        x, y = dense_dataset
        third = collection.batches[2]
        assert torch.equal(third.row(0).x, x[20])
        assert torch.equal(third.row(0).y, y[20])

    def test_no_empty_batch_when_divisible(
        self, config: BatchingConfig, pool: TensorPool
    ) -> None:
        x, y = torch.zeros(20, 3), torch.zeros(20, 1)
        collection = BatchesCollection.from_dataset(x, y, 10, config=config, pool=pool)
        assert [b.rows for b in collection] == [10, 10]

    def test_dataset_properties(self, collection: BatchesCollection) -> None:
        assert collection.count == 25
        assert len(collection) == 25
        assert collection.input_features == INPUT_WIDTH
        assert collection.output_features == OUTPUT_WIDTH
        assert collection.batch_size == 3
        assert collection.rows_per_batch == 10

    def test_byte_size(self, collection: BatchesCollection) -> None:
        assert collection.byte_size == 4 * 25 * (INPUT_WIDTH + OUTPUT_WIDTH)

    def test_size_defaults_to_config(self, dense_dataset: Dataset, pool: TensorPool) -> None:
        x, y = dense_dataset
        config = BatchingConfig(batch_size=12, num_workers=2)
        collection = BatchesCollection.from_dataset(x, y, config=config, pool=pool)
        assert [b.rows for b in collection] == [12, 12, 1]

    def test_size_below_minimum(self, dense_dataset: Dataset) -> None:
        x, y = dense_dataset
        with pytest.raises(ConfigurationError, match="greater than or equal to 10"):
            BatchesCollection.from_dataset(x, y, 5)

    def test_config_below_minimum_is_a_validation_error(self) -> None:
        with pytest.raises(ValidationError):
            BatchingConfig(batch_size=5)

    def test_row_count_mismatch(self, dense_dataset: Dataset) -> None:
        x, y = dense_dataset
        with pytest.raises(ShapeMismatchError, match="same in both x and y"):
            BatchesCollection.from_dataset(x, y[:-1], 10)

    def test_not_a_matrix(self) -> None:
        with pytest.raises(ShapeMismatchError, match="2-D"):
            BatchesCollection.from_dataset(torch.zeros(20), torch.zeros(20, 1), 10)

    def test_empty_dataset(self) -> None:
        with pytest.raises(ValueError):
            BatchesCollection.from_dataset(torch.zeros(0, 3), torch.zeros(0, 1), 10)


class TestFromPairsAndGenerators:
    def test_from_pairs(
        self, dense_dataset: Dataset, config: BatchingConfig, pool: TensorPool
    ) -> None:
        x, y = dense_dataset
        collection = BatchesCollection.from_pairs(
            zip(x.tolist(), y.tolist()), 10, config=config, pool=pool
        )
        assert [b.rows for b in collection] == [10, 10, 5]
        assert collection[13].x.tolist() == x[13].tolist()

    def test_from_generators_keeps_submission_order(
        self, dense_dataset: Dataset, config: BatchingConfig, pool: TensorPool
    ) -> None:
        x, y = dense_dataset
        factories = [lambda i=i: (x[i], y[i]) for i in range(len(x))]
        collection = BatchesCollection.from_generators(
            factories, 10, config=config, pool=pool
        )
        assert _all_samples(collection) == [
            (x[i].tolist(), y[i].tolist()) for i in range(len(x))
        ]

    def test_ragged_pairs_rejected(self, config: BatchingConfig) -> None:
        pairs = [([1.0, 2.0], [0.0])] * 10 + [([1.0], [0.0])]
        with pytest.raises(ShapeMismatchError, match="Sample 10"):
            BatchesCollection.from_pairs(pairs, 10, config=config)

    def test_failing_generator_aggregated(self, config: BatchingConfig) -> None:
        def _broken() -> tuple[list[float], list[float]]:
            raise OSError("source unavailable")

        factories = [lambda: ([1.0], [1.0])] * 10 + [_broken]
        with pytest.raises(ParallelExecutionError) as info:
            BatchesCollection.from_generators(factories, 10, config=config)
        assert isinstance(info.value.errors[0], OSError)

    def test_generator_size_below_minimum(self) -> None:
        with pytest.raises(ConfigurationError):
            BatchesCollection.from_generators([], 9)

    def test_empty_pairs(self) -> None:
        with pytest.raises(ValueError, match="at least one sample"):
            BatchesCollection.from_pairs([], 10)


class TestSample:
    def test_matches_source_rows(
        self, collection: BatchesCollection, dense_dataset: Dataset
    ) -> None:
        x, y = dense_dataset
        for i in range(25):
            sample = collection.sample(i)
            assert torch.equal(sample.x, x[i])
            assert torch.equal(sample.y, y[i])

    @pytest.mark.parametrize("index", [-1, 25, 100])
    def test_out_of_range(self, collection: BatchesCollection, index: int) -> None:
        with pytest.raises(IndexOutOfRangeError):
            collection.sample(index)

    def test_unpacks_as_pair(self, collection: BatchesCollection) -> None:
        x, y = collection[0]
        assert x.numel() == INPUT_WIDTH
        assert y.numel() == OUTPUT_WIDTH


class TestSetBatchSize:
    def test_repartition_preserves_order_and_count(
        self, collection: BatchesCollection
    ) -> None:
        before = _all_samples(collection)
        collection.set_batch_size(12)
        assert [b.rows for b in collection] == [12, 12, 1]
        assert sum(b.rows for b in collection) == 25
        assert collection.rows_per_batch == 12
        assert _all_samples(collection) == before

    def test_batch_size_setter(self, collection: BatchesCollection) -> None:
        collection.batch_size = 20
        assert collection.batch_size == 2
        assert [b.rows for b in collection] == [20, 5]

    def test_noop_resize_is_idempotent(self, collection: BatchesCollection) -> None:
        before = _all_samples(collection)
        collection.set_batch_size(collection.rows_per_batch)
        assert [b.rows for b in collection] == [10, 10, 5]
        assert _all_samples(collection) == before

    def test_single_batch(self, collection: BatchesCollection) -> None:
        collection.set_batch_size(100)
        assert [b.rows for b in collection] == [25]

    def test_below_minimum(self, collection: BatchesCollection) -> None:
        with pytest.raises(ConfigurationError):
            collection.set_batch_size(5)
        with pytest.raises(ConfigurationError):
            collection.batch_size = 9
        assert [b.rows for b in collection] == [10, 10, 5]

    def test_old_batches_released(self, collection: BatchesCollection) -> None:
        old = collection.batches
        collection.set_batch_size(12)
        assert all(b.x.released and b.y.released for b in old)

    def test_failure_leaves_collection_intact(
        self, collection: BatchesCollection
    ) -> None:
        before = _all_samples(collection)
        old = collection.batches
        real_from_rows = SamplesBatch.from_rows

        def _flaky(*args, **kwargs):  # type: ignore[no-untyped-def]
            # Fail the chunk that starts at sample 12, whose first input value is 48.
            if args[0][0][0][0].item() == 48.0:
                raise MemoryError("out of memory")
            return real_from_rows(*args, **kwargs)

        with patch.object(SamplesBatch, "from_rows", side_effect=_flaky):
            with pytest.raises(ParallelExecutionError):
                collection.set_batch_size(12)
        assert collection.batches == old
        assert collection.rows_per_batch == 10
        assert _all_samples(collection) == before


class TestLifecycle:
    def test_release_returns_storage(
        self, dense_dataset: Dataset, config: BatchingConfig, pool: TensorPool
    ) -> None:
        x, y = dense_dataset
        with BatchesCollection.from_dataset(x, y, 10, config=config, pool=pool) as c:
            batches = c.batches
        assert all(b.x.released for b in batches)
        assert pool.retained_blocks == 6

    def test_released_collection_is_empty(self, collection: BatchesCollection) -> None:
        collection.release()
        assert len(collection) == 0
        assert collection.count == 0
        assert collection.batch_size == 0
        with pytest.raises(IndexOutOfRangeError):
            collection.sample(0)
        with pytest.raises(RuntimeError, match="has been released"):
            collection.set_batch_size(10)
        with pytest.raises(RuntimeError, match="has been released"):
            collection.cross_shuffle()
        with pytest.raises(RuntimeError, match="has been released"):
            _ = collection.input_features
        assert repr(collection) == "BatchesCollection(released)"

    def test_iteration_yields_batches(self, collection: BatchesCollection) -> None:
        assert len(collection) == 25
        assert [b.rows for b in collection] == [10, 10, 5]
        assert list(collection) == list(collection.batches)

    def test_repr(self, collection: BatchesCollection) -> None:
        assert repr(collection) == (
            "BatchesCollection(count=25, batches=3, rows_per_batch=10, features=(4, 2))"
        )

    def test_mismatched_batches_rejected(self, pool: TensorPool) -> None:
        a = SamplesBatch.from_rows([([1.0, 2.0], [1.0])], pool=pool)
        b = SamplesBatch.from_rows([([1.0], [1.0])], pool=pool)
        with pytest.raises(ShapeMismatchError, match="Batch 1"):
            BatchesCollection([a, b], 10)
