"""trajmarge: adaptive negative binomial hinge-spline tests for dynamic gene expression along pseudotime."""

from importlib.metadata import version

from . import tl

__all__ = ["tl"]

__version__ = version("trajmarge")
