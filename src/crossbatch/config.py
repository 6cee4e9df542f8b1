"""Pydantic frozen configuration models for crossbatch."""

from __future__ import annotations

import os
from typing import Literal

import psutil  # type: ignore[import-untyped]
from loguru import logger
from pydantic import BaseModel, Field, model_validator

# Smallest number of rows a batch may be partitioned into.
MIN_BATCH_SIZE = 10

# Share of available RAM the tensor pool may keep cached when set to "auto".
_AUTO_POOL_FRACTION = 0.1


def default_num_workers() -> int:
    """Thread count used when none is configured."""
    cpu_count = os.cpu_count() or 1
    return min(32, cpu_count + 4)


class BatchingConfig(BaseModel, frozen=True):
    """Configuration for building, re-partitioning and shuffling batches.

    All fields are validated at construction time. Frozen: no mutation after creation.
    An out-of-range field raises ``pydantic.ValidationError`` (a ``ValueError``);
    a batch size below 10 passed directly to a collection entry point raises
    :class:`~crossbatch.exceptions.ConfigurationError` instead.
    """

    batch_size: int = Field(default=32, ge=MIN_BATCH_SIZE)
    num_workers: int | None = Field(default=None, ge=1)
    seed: int | None = None
    show_progress: bool = False

    @model_validator(mode="after")
    def _resolve_num_workers(self) -> BatchingConfig:
        """num_workers=None means one thread per core plus a few for I/O stalls."""
        if self.num_workers is None:
            # Use object.__setattr__ because model is frozen
            object.__setattr__(self, "num_workers", default_num_workers())
        return self


class PoolConfig(BaseModel, frozen=True):
    """Configuration for the tensor storage pool.

    max_retained_bytes caps how much released storage the pool keeps for
    reuse. "auto" sizes the cap from the RAM available when the pool is
    created.
    """

    max_retained_bytes: int | Literal["auto"] = "auto"
    max_blocks_per_bucket: int = Field(default=64, ge=0)

    def resolve_max_retained_bytes(self) -> int:
        """Return the byte cap, measuring available RAM for "auto"."""
        if self.max_retained_bytes != "auto":
            return self.max_retained_bytes
        try:
            available_bytes = psutil.virtual_memory().available
        except Exception as e:
            logger.warning(f"Auto pool cap: RAM probe failed ({e}). Pool retention disabled.")
            return 0
        cap = int(available_bytes * _AUTO_POOL_FRACTION)
        logger.debug(
            f"Auto pool cap: Available RAM={available_bytes / 1e9:.2f}GB, "
            f"cap={cap / 1e9:.2f}GB"
        )
        return cap
