"""NCHW shape descriptor."""

from __future__ import annotations

from typing import NamedTuple

from crossbatch.exceptions import InvalidShapeError

# Largest element count a single tensor may hold (signed 32-bit index space).
MAX_ELEMENTS = 2**31 - 1


class Shape(NamedTuple):
    """Sample count, channels, height and width of a tensor."""

    n: int
    c: int
    h: int
    w: int

    @property
    def nchw(self) -> int:
        """Total element count."""
        return self.n * self.c * self.h * self.w

    @property
    def chw(self) -> int:
        """Elements per sample."""
        return self.c * self.h * self.w

    @classmethod
    def of(cls, *dims: int) -> Shape:
        """Build a validated shape from ``(n, l)`` or ``(n, c, h, w)``.

        The two-argument form is a flat per-sample layout, ``(n, 1, 1, l)``.

        Raises:
            InvalidShapeError: Wrong arity, a negative or non-integer
                dimension, or more than ``MAX_ELEMENTS`` elements.
        """
        if len(dims) == 2:
            dims = (dims[0], 1, 1, dims[1])
        elif len(dims) != 4:
            raise InvalidShapeError(
                f"A shape needs 2 (n, l) or 4 (n, c, h, w) dimensions, got {len(dims)}"
            )
        for d in dims:
            if isinstance(d, bool) or not isinstance(d, int):
                raise InvalidShapeError(f"Shape dimensions must be integers, got {dims}")
            if d < 0:
                raise InvalidShapeError(f"Shape dimensions can't be negative, got {dims}")
        shape = cls(*dims)
        if shape.nchw > MAX_ELEMENTS:
            raise InvalidShapeError(
                f"Shape {tuple(shape)} has {shape.nchw} elements, "
                f"more than the maximum of {MAX_ELEMENTS}"
            )
        return shape

    def __str__(self) -> str:
        return f"({self.n}, {self.c}, {self.h}, {self.w})"
