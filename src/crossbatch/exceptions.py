"""Exception hierarchy for crossbatch.

Every error derives from :class:`CrossbatchError` and from the builtin kind
callers would naturally catch (``ValueError``, ``IndexError``,
``RuntimeError``), so existing ``except ValueError`` handlers keep working.
"""

from __future__ import annotations

from collections.abc import Sequence


class CrossbatchError(Exception):
    """Base class for all crossbatch errors."""


class ConfigurationError(CrossbatchError, ValueError):
    """A requested batch size is below the supported minimum."""


class ShapeMismatchError(CrossbatchError, ValueError):
    """Element or row counts of two sources do not line up."""


class IndexOutOfRangeError(CrossbatchError, IndexError):
    """A sample or batch index falls outside the valid range."""


class InvalidShapeError(CrossbatchError, ValueError):
    """A shape has negative dimensions or too many elements."""


class ParallelExecutionError(CrossbatchError, RuntimeError):
    """One or more workers of a parallel phase failed.

    Attributes:
        phase: Name of the phase that failed (e.g. ``"cross-shuffle"``).
        errors: The exceptions raised by the failing workers, in
            submission order.
    """

    def __init__(self, phase: str, errors: Sequence[BaseException]) -> None:
        self.phase = phase
        self.errors = list(errors)
        first = self.errors[0] if self.errors else None
        detail = f": {type(first).__name__}: {first}" if first is not None else ""
        super().__init__(
            f"{len(self.errors)} worker(s) failed during {phase}{detail}"
        )
