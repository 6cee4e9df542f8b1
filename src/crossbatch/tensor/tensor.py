"""Shape-tagged tensors over pooled storage.

A :class:`Tensor` is a handle: an NCHW :class:`Shape` plus a reference to a
reference-counted storage block rented from a :class:`TensorPool`.
:meth:`Tensor.reshape` returns a second handle on the same storage (an
alias, not a copy). Each handle is released exactly once; the block goes
back to the pool when the last handle sharing it is released, so a reshaped
view and its origin can be released in any order.
"""

from __future__ import annotations

import threading
from enum import Enum
from types import TracebackType

import torch

from crossbatch.exceptions import ShapeMismatchError
from crossbatch.tensor.pool import TensorPool, default_pool
from crossbatch.tensor.shape import Shape
from crossbatch.types import ArrayLike

__all__ = ["AllocationMode", "Tensor"]

# Limits for the rows preview in Tensor.__repr__
_PREVIEW_MAX_ROWS = 10
_PREVIEW_MAX_ITEMS = 30000


class AllocationMode(Enum):
    """How a freshly allocated tensor is initialised."""

    DEFAULT = "default"  # contents undefined
    CLEAN = "clean"  # zero-filled


class _Storage:
    """A pooled block shared by every tensor handle that aliases it."""

    __slots__ = ("block", "pool", "_refs", "lock")

    def __init__(self, block: torch.Tensor, pool: TensorPool) -> None:
        self.block = block
        self.pool = pool
        self._refs = 1
        self.lock = threading.Lock()

    @property
    def refs(self) -> int:
        return self._refs

    def acquire(self) -> _Storage:
        with self.lock:
            self._refs += 1
        return self

    def release(self) -> None:
        with self.lock:
            self._refs -= 1
            last = self._refs == 0
        if last:
            self.pool.give_back(self.block)


def _as_flat(values: ArrayLike) -> torch.Tensor:
    return torch.as_tensor(values, dtype=torch.float32).reshape(-1)


class Tensor:
    """An NCHW float32 tensor backed by pooled storage.

    Use the factory classmethods (:meth:`allocate`, :meth:`new`, :meth:`like`,
    :meth:`from_vector`, :meth:`from_matrix`) rather than the constructor.
    Release each handle with :meth:`release`, or use it as a context manager.

    Example:
        >>> with Tensor.new(2, 3, mode=AllocationMode.CLEAN) as t:
        ...     view = t.reshape(3, 2)
        ...     view.release()
    """

    __slots__ = ("shape", "_storage", "_released")

    def __init__(self, shape: Shape, storage: _Storage) -> None:
        self.shape = shape
        self._storage = storage
        self._released = False

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------
    @classmethod
    def allocate(
        cls,
        shape: Shape,
        mode: AllocationMode = AllocationMode.DEFAULT,
        pool: TensorPool | None = None,
    ) -> Tensor:
        """Rent storage for ``shape`` from ``pool`` (the default pool if None)."""
        shape = Shape.of(*shape)
        pool = pool if pool is not None else default_pool()
        tensor = cls(shape, _Storage(pool.rent(shape.nchw), pool))
        if mode is AllocationMode.CLEAN:
            tensor.span.zero_()
        return tensor

    @classmethod
    def new(
        cls,
        *dims: int,
        mode: AllocationMode = AllocationMode.DEFAULT,
        pool: TensorPool | None = None,
    ) -> Tensor:
        """Allocate a ``(n, l)`` or ``(n, c, h, w)`` tensor."""
        return cls.allocate(Shape.of(*dims), mode, pool)

    @classmethod
    def like(
        cls,
        other: Tensor,
        mode: AllocationMode = AllocationMode.DEFAULT,
        pool: TensorPool | None = None,
    ) -> Tensor:
        """Allocate a tensor with the same shape as ``other``."""
        return cls.allocate(other.shape, mode, pool)

    @classmethod
    def from_vector(
        cls,
        values: ArrayLike,
        *dims: int,
        pool: TensorPool | None = None,
    ) -> Tensor:
        """Copy a flat sequence of values into a new tensor.

        Without ``dims`` the result has shape ``(1, 1, 1, len(values))``;
        otherwise ``dims`` is ``(n, l)`` or ``(n, c, h, w)``.

        Raises:
            ShapeMismatchError: ``values`` does not hold exactly the number
                of elements the requested shape needs.
        """
        flat = _as_flat(values)
        shape = Shape.of(*dims) if dims else Shape.of(1, flat.numel())
        if flat.numel() != shape.nchw:
            raise ShapeMismatchError(
                f"The input vector has {flat.numel()} values, "
                f"shape {shape} needs {shape.nchw}"
            )
        tensor = cls.allocate(shape, pool=pool)
        tensor.span.copy_(flat)
        return tensor

    @classmethod
    def from_matrix(
        cls,
        matrix: ArrayLike,
        c: int | None = None,
        h: int | None = None,
        w: int | None = None,
        *,
        pool: TensorPool | None = None,
    ) -> Tensor:
        """Copy a 2-D ``(rows, columns)`` source into a new tensor.

        With no ``c, h, w`` the shape is ``(rows, 1, 1, columns)``; otherwise
        the columns are reinterpreted as ``c * h * w`` values per sample.
        """
        m = torch.as_tensor(matrix, dtype=torch.float32)
        if m.dim() != 2:
            raise ShapeMismatchError(f"Expected a 2-D matrix, got {m.dim()} dimensions")
        rows, columns = m.shape
        if c is None and h is None and w is None:
            shape = Shape.of(rows, columns)
        elif c is None or h is None or w is None:
            raise ShapeMismatchError("c, h and w must be given together")
        else:
            shape = Shape.of(rows, c, h, w)
            if shape.chw != columns:
                raise ShapeMismatchError(
                    f"The input shape {shape} doesn't match the {columns} columns "
                    "of the given matrix"
                )
        tensor = cls.allocate(shape, pool=pool)
        tensor.span.copy_(m.reshape(-1))
        return tensor

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def released(self) -> bool:
        return self._released

    @property
    def references(self) -> int:
        """Number of live handles sharing this tensor's storage."""
        return self._storage.refs

    @property
    def span(self) -> torch.Tensor:
        """Flat view of the ``nchw`` live elements."""
        if self._released:
            raise RuntimeError("The tensor has already been released")
        return self._storage.block[: self.shape.nchw]

    def as_matrix(self) -> torch.Tensor:
        """``(n, chw)`` view: one row per sample."""
        return self.span.view(self.shape.n, self.shape.chw)

    def as_nchw(self) -> torch.Tensor:
        """``(n, c, h, w)`` view."""
        return self.span.view(*self.shape)

    def shares_storage_with(self, other: Tensor) -> bool:
        return self._storage is other._storage

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def reshape(self, *dims: int) -> Tensor:
        """Return an alias of this tensor with a new ``(n, l)`` or ``(n, c, h, w)`` shape.

        The returned handle shares storage with this one and must be released
        separately.

        Raises:
            ShapeMismatchError: The new shape has a different element count.
        """
        if self._released:
            raise RuntimeError("The tensor has already been released")
        shape = Shape.of(*dims)
        if shape.nchw != self.shape.nchw:
            raise ShapeMismatchError(
                f"The reshaped size is invalid: {shape} has {shape.nchw} elements, "
                f"{self.shape} has {self.shape.nchw}"
            )
        return Tensor(shape, self._storage.acquire())

    def overwrite(self, source: Tensor) -> None:
        """Copy every element of ``source`` into this tensor."""
        if source.shape != self.shape:
            raise ShapeMismatchError(
                f"The shape of the input tensor {source.shape} doesn't match "
                f"the current shape {self.shape}"
            )
        self.span.copy_(source.span)

    def duplicate(self) -> Tensor:
        """Copy this tensor into fresh storage from the same pool."""
        tensor = Tensor.allocate(self.shape, pool=self._storage.pool)
        tensor.span.copy_(self.span)
        return tensor

    def equals(self, other: object, tolerance: float = 1e-4) -> bool:
        """Shape-exact, element-wise comparison within ``tolerance``."""
        if not isinstance(other, Tensor):
            return False
        if other.shape != self.shape:
            return False
        diff = (self.span - other.span).abs()
        return bool((diff <= tolerance).all().item())

    def release(self) -> None:
        """Release this handle; storage returns to the pool with its last handle."""
        with self._storage.lock:
            if self._released:
                raise RuntimeError("The tensor has already been released")
            self._released = True
        self._storage.release()

    def __enter__(self) -> Tensor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self._released:
            self.release()

    def __repr__(self) -> str:
        if self._released:
            return f"Tensor(shape={self.shape}, released)"
        chw = max(self.shape.chw, 1)
        rows = min(_PREVIEW_MAX_ROWS, _PREVIEW_MAX_ITEMS // chw, self.shape.n)
        preview = self.as_matrix()[:rows].tolist() if rows > 0 else []
        suffix = ", ..." if rows < self.shape.n else ""
        return f"Tensor(shape={self.shape}, rows={preview}{suffix})"

