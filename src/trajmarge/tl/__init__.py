"""Tools: NB hinge-spline models and dynamic-expression tests."""

from .backend import GEEBackend, GLMBackend, GLMMBackend, make_backend
from .dynamic import GeneLineageRecord, test_dynamic
from .marge import MargeResult, marge
from .stats import TestResult, likelihood_ratio_test, score_test, wald_test

__all__ = [
    "GEEBackend",
    "GLMBackend",
    "GLMMBackend",
    "GeneLineageRecord",
    "MargeResult",
    "TestResult",
    "likelihood_ratio_test",
    "make_backend",
    "marge",
    "score_test",
    "test_dynamic",
    "wald_test",
]
