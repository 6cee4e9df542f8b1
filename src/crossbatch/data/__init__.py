"""Data pipeline for crossbatch."""

from crossbatch.data.batch import SamplesBatch
from crossbatch.data.collection import BatchesCollection
from crossbatch.data.partition import partition, partition_ranges, run_parallel
from crossbatch.data.shuffle import cross_shuffle, cross_shuffle_pair

__all__ = [
    "BatchesCollection",
    "SamplesBatch",
    "cross_shuffle",
    "cross_shuffle_pair",
    "partition",
    "partition_ranges",
    "run_parallel",
]
