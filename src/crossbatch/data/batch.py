"""A single batch of paired input/output rows."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import torch

from crossbatch.exceptions import IndexOutOfRangeError, InvalidShapeError, ShapeMismatchError
from crossbatch.tensor import Tensor, TensorPool
from crossbatch.types import ArrayLike, DatasetSample, RowPair

__all__ = ["SamplesBatch"]


def _as_row(values: ArrayLike) -> torch.Tensor:
    return torch.as_tensor(values, dtype=torch.float32).reshape(-1)


def _check_width(width: int, name: str) -> None:
    if width <= 0:
        raise InvalidShapeError(f"{name} must be positive, got {width}")


@dataclass(eq=False)
class SamplesBatch:
    """Dense ``(rows, features)`` input and output tensors for one batch.

    A batch always owns its storage: both factories copy their sources.

    Attributes:
        x: Input tensor of shape ``(rows, 1, 1, input_features)``.
        y: Output tensor of shape ``(rows, 1, 1, output_features)``.
    """

    x: Tensor
    y: Tensor

    def __post_init__(self) -> None:
        if self.x.shape.n != self.y.shape.n:
            raise ShapeMismatchError(
                f"x has {self.x.shape.n} rows but y has {self.y.shape.n}"
            )

    @property
    def rows(self) -> int:
        return self.x.shape.n

    @property
    def input_features(self) -> int:
        return self.x.shape.chw

    @property
    def output_features(self) -> int:
        return self.y.shape.chw

    @property
    def nbytes(self) -> int:
        return (self.x.shape.nchw + self.y.shape.nchw) * self.x.span.element_size()

    def row(self, i: int) -> DatasetSample:
        """Views of the ``i``-th input and output rows."""
        if not 0 <= i < self.rows:
            raise IndexOutOfRangeError(f"Row {i} is outside [0, {self.rows})")
        return DatasetSample(self.x.as_matrix()[i], self.y.as_matrix()[i])

    def release(self) -> None:
        self.x.release()
        self.y.release()

    @classmethod
    def from_dense(
        cls,
        x_slice: ArrayLike,
        y_slice: ArrayLike,
        input_width: int,
        output_width: int,
        *,
        pool: TensorPool | None = None,
    ) -> SamplesBatch:
        """Copy a run of rows out of row-major input and output slices.

        Args:
            x_slice: ``rows * input_width`` input values (flat or 2-D).
            y_slice: ``rows * output_width`` output values (flat or 2-D).
            input_width: Values per input row.
            output_width: Values per output row.
            pool: Pool to rent storage from.

        Raises:
            ShapeMismatchError: A slice is not a whole number of rows, or
                the two slices imply different row counts.
        """
        _check_width(input_width, "input_width")
        _check_width(output_width, "output_width")
        x_flat, y_flat = _as_row(x_slice), _as_row(y_slice)
        if x_flat.numel() % input_width or y_flat.numel() % output_width:
            raise ShapeMismatchError(
                f"Slice lengths ({x_flat.numel()}, {y_flat.numel()}) are not multiples "
                f"of the row widths ({input_width}, {output_width})"
            )
        rows = x_flat.numel() // input_width
        if rows != y_flat.numel() // output_width:
            raise ShapeMismatchError(
                f"x holds {rows} rows but y holds {y_flat.numel() // output_width}"
            )
        x = Tensor.new(rows, input_width, pool=pool)
        try:
            y = Tensor.new(rows, output_width, pool=pool)
        except Exception:
            x.release()
            raise
        try:
            x.span.copy_(x_flat)
            y.span.copy_(y_flat)
        except Exception:
            x.release()
            y.release()
            raise
        return cls(x, y)

    @classmethod
    def from_rows(
        cls,
        rows: Sequence[RowPair],
        input_width: int | None = None,
        output_width: int | None = None,
        *,
        pool: TensorPool | None = None,
    ) -> SamplesBatch:
        """Copy a sequence of ``(input_row, output_row)`` pairs into a new batch.

        Widths default to those of the first pair; every row must match them.
        """
        if len(rows) == 0:
            raise ValueError("Can't build a batch from an empty row sequence")
        first_x, first_y = rows[0]
        wx = input_width if input_width is not None else _as_row(first_x).numel()
        wy = output_width if output_width is not None else _as_row(first_y).numel()
        _check_width(wx, "input_width")
        _check_width(wy, "output_width")

        x = Tensor.new(len(rows), wx, pool=pool)
        y = Tensor.new(len(rows), wy, pool=pool)
        xm, ym = x.as_matrix(), y.as_matrix()
        try:
            for i, (row_x, row_y) in enumerate(rows):
                rx, ry = _as_row(row_x), _as_row(row_y)
                if rx.numel() != wx or ry.numel() != wy:
                    raise ShapeMismatchError(
                        f"Row {i} has widths ({rx.numel()}, {ry.numel()}), "
                        f"expected ({wx}, {wy})"
                    )
                xm[i].copy_(rx)
                ym[i].copy_(ry)
        except Exception:
            x.release()
            y.release()
            raise
        return cls(x, y)

    def __repr__(self) -> str:
        return (
            f"SamplesBatch(rows={self.rows}, input_features={self.input_features}, "
            f"output_features={self.output_features})"
        )
