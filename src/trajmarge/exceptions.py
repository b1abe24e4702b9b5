"""Exceptions raised (or recorded) while testing genes for dynamic expression.

Only :class:`InputError` ever reaches the caller of
:func:`trajmarge.tl.test_dynamic`. The remaining classes describe per-unit
problems that are folded into the result collection instead of aborting the
batch.
"""

from __future__ import annotations

__all__ = [
    "TrajmargeError",
    "InputError",
    "TestUndefined",
    "WorkerError",
]


class TrajmargeError(Exception):
    """Base exception for all trajmarge errors."""


class InputError(TrajmargeError, ValueError):
    """Malformed or missing inputs, or an invalid configuration.

    Common causes:
    - counts that are negative or not integer valued
    - a pseudotime table whose row count does not match the number of cells
    - a missing or unsorted subject-id vector in GEE / GLMM mode
    - an unknown correlation structure, bias correction or test name
    """


class TestUndefined(TrajmargeError):
    """The requested test statistic cannot be computed for a fitted pair of models."""

    __test__ = False  # keep pytest from collecting this class


class WorkerError(TrajmargeError):
    """An uncaught exception raised while a worker processed one gene."""

    def __init__(self, gene: str, message: str) -> None:
        super().__init__(f"{gene}: {message}")
        self.gene = gene
        self.message = message
