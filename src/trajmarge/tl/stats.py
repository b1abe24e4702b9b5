"""Likelihood-ratio, Wald and score tests of an adaptive model against its null."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.stats import chi2

from ..exceptions import TestUndefined
from .backend import FitFailure, FitResult, FittedModel
from .irls import ols_probe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestResult:
    """Outcome of one hypothesis test; undefined values are ``nan``."""

    __test__ = False

    statistic: float
    stat_type: str  # "LRT" | "Wald" | "Score"
    df: float
    p_value: float
    note: str = ""

    @classmethod
    def undefined(cls, stat_type: str, note: str, df: float = np.nan) -> "TestResult":
        return cls(np.nan, stat_type, df, np.nan, note)


def _chi2_pvalue(stat: float, df: float) -> float:
    return float(chi2.sf(stat, df))


def _full_rank(A: np.ndarray, rtol: float = 1e-10) -> bool:
    s = np.linalg.svd(A, compute_uv=False)
    return bool(s.size) and np.isfinite(s).all() and s[-1] > rtol * s[0]


def _pinv_solve(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.solve(A, b)
    except np.linalg.LinAlgError:
        return np.linalg.pinv(A) @ b


def extra_columns(alt: FittedModel, null: FittedModel) -> np.ndarray:
    """Indices of the alternative model's columns absent from the null design."""
    if alt.column_names and null.column_names:
        shared = set(null.column_names)
        return np.asarray(
            [i for i, name in enumerate(alt.column_names) if name not in shared], dtype=int
        )
    return np.arange(null.n_coef, alt.n_coef, dtype=int)


# ---------------------------------------------------------------------
# efficient score machinery
# ---------------------------------------------------------------------


class ScoreContext:
    """Quantities of a fitted model reused when scoring candidate columns.

    For candidate columns ``Z`` appended to the design, the efficient score
    statistic is ``U2' (J22 - J21 J11^-1 J12)^-1 U2`` with
    ``U2 = D2' V^-1 (y - mu)``, ``D = mu * X`` and ``V^-1`` the model's
    working precision.
    """

    def __init__(self, model: FittedModel) -> None:
        self.model = model
        self.W = model.precision
        D1 = model.mu[:, None] * model.X
        self.VinvD1 = self.W.solve(D1)
        J11 = D1.T @ self.VinvD1
        self.A = np.linalg.pinv(J11)
        self.s = self.W.solve(model.y - model.mu)

    def statistic(self, Z: np.ndarray) -> float:
        """Score statistic for adding the columns of ``Z`` (n, q)."""
        Z = np.asarray(Z, dtype=float)
        if Z.ndim == 1:
            Z = Z[:, None]
        D2 = self.model.mu[:, None] * Z
        U2 = D2.T @ self.s
        J21 = D2.T @ self.VinvD1
        J22 = D2.T @ self.W.solve(D2)
        info = J22 - J21 @ self.A @ J21.T
        stat = float(U2 @ _pinv_solve(info, U2))
        return stat if np.isfinite(stat) else np.nan


def score_statistic(model: FittedModel, Z: np.ndarray) -> float:
    """Model-based efficient score for appending the columns ``Z`` to ``model``."""
    return ScoreContext(model).statistic(Z)


# ---------------------------------------------------------------------
# tests
# ---------------------------------------------------------------------


def _unpack(alt: FitResult, null: FitResult, stat_type: str):
    if isinstance(alt, FitFailure) or isinstance(null, FitFailure):
        which = []
        if isinstance(alt, FitFailure):
            which.append(f"MARGE model: {alt.reason}")
        if isinstance(null, FitFailure):
            which.append(f"null model: {null.reason}")
        return None, TestResult.undefined(stat_type, "; ".join(which))
    return (alt.model, null.model), None


def likelihood_ratio_test(alt: FitResult, null: FitResult) -> TestResult:
    """LRT of nested NB models: ``2 (ll_alt - ll_null)`` against chi-square(df).

    ``df`` is the difference in the number of coefficients. A model with no
    extra terms gives statistic 0 and p-value 1; a (numerically) negative
    statistic is truncated at 0.
    """
    models, failed = _unpack(alt, null, "LRT")
    if failed is not None:
        return failed
    a, n = models
    df = a.n_coef - n.n_coef
    if df <= 0:
        return TestResult(0.0, "LRT", 0.0, 1.0, "no basis terms beyond the null model")
    stat = 2.0 * (a.loglik - n.loglik)
    note = ""
    if not np.isfinite(stat):
        return TestResult.undefined("LRT", "non-finite log-likelihood", float(df))
    if stat < 0:
        stat, note = 0.0, "negative statistic truncated at 0"
    return TestResult(float(stat), "LRT", float(df), _chi2_pvalue(stat, df), note)


def wald_test(alt: FitResult, null: FitResult, correction: Optional[str] = None) -> TestResult:
    """Wald test that the coefficients absent from the null model are all zero.

    Parameters
    ----------
    alt : FitResult
        Fit of the adaptive model.
    null : FitResult
        Fit of the intercept-only model.
    correction : {"kc", "df"}, optional
        When set, the bias-corrected sandwich covariance of ``alt`` is used;
        otherwise its model-based covariance.

    Returns
    -------
    TestResult
        Wald statistic with df equal to the number of tested coefficients.
        Undefined when the tested covariance block is rank deficient, which
        is always the case for a sandwich estimate from no more subjects
        than tested coefficients.
    """
    models, failed = _unpack(alt, null, "Wald")
    if failed is not None:
        return failed
    a, n = models
    idx = extra_columns(a, n)
    q = idx.size
    if q == 0:
        return TestResult(0.0, "Wald", 0.0, 1.0, "no basis terms beyond the null model")
    cov = a.cov
    notes = []
    if correction is not None:
        if a.cov_robust is None:
            notes.append("robust covariance unavailable, using model-based")
        else:
            cov = a.cov_robust
            K = a.precision.n_clusters
            if K <= q:
                return TestResult.undefined(
                    "Wald", f"{K} subjects cannot estimate a rank-{q} robust covariance", float(q)
                )
            if correction == "df" and K <= a.n_coef:
                notes.append(
                    f"df correction not applied: {K} subjects for {a.n_coef} coefficients"
                )
    b = a.coef[idx]
    C = cov[np.ix_(idx, idx)]
    if not _full_rank(C):
        return TestResult.undefined(
            "Wald", "singular covariance of the tested coefficients", float(q)
        )
    note = "; ".join(notes)
    stat = float(b @ np.linalg.solve(C, b))
    if not np.isfinite(stat):
        return TestResult.undefined("Wald", "non-finite Wald statistic", float(q))
    if stat < 0:
        stat, note = 0.0, "; ".join(filter(None, [note, "negative statistic truncated at 0"]))
    return TestResult(stat, "Wald", float(q), _chi2_pvalue(stat, q), note)


def robust_score_statistic(null: FittedModel, Z: np.ndarray) -> float:
    """Robust (sandwich) score statistic for adding ``Z`` to a fitted GEE null.

    Raises
    ------
    TestUndefined
        If an OLS probe of the response on the null design has non-finite
        coefficients, or if there are no more subjects than columns in ``Z``
        (the score covariance then has rank below the number of columns).
    """
    probe = ols_probe(null.X, null.y)
    if not np.isfinite(probe).all():
        raise TestUndefined("OLS probe on the null design returned non-finite coefficients")
    W = null.precision
    q = np.asarray(Z).reshape(null.n_obs, -1).shape[1]
    if W.n_clusters <= q:
        raise TestUndefined(
            f"{W.n_clusters} subjects cannot estimate a rank-{q} score covariance"
        )
    r = null.y - null.mu
    D1 = null.mu[:, None] * null.X
    D2 = null.mu[:, None] * np.asarray(Z, dtype=float).reshape(null.n_obs, -1)
    VS = W.solve(r)  # V^-1 r, per-observation
    VinvD1 = W.solve(D1)
    AWA = np.linalg.pinv(D1.T @ VinvD1)
    J2 = D2.T @ VinvD1
    u1 = W.cluster_sums(D1 * VS[:, None])  # (K, p)
    u2 = W.cluster_sums(D2 * VS[:, None])  # (K, q)
    e = u2 - u1 @ (J2 @ AWA).T
    U = e.sum(axis=0)
    Sigma2 = e.T @ e
    stat = float(U @ _pinv_solve(Sigma2, U))
    if not np.isfinite(stat):
        raise TestUndefined("non-finite score statistic")
    return max(stat, 0.0)


def score_test(alt: FitResult, null: FitResult) -> TestResult:
    """Score test of the adaptive design using only the null fit (GEE)."""
    models, failed = _unpack(alt, null, "Score")
    if failed is not None:
        return failed
    a, n = models
    idx = extra_columns(a, n)
    if idx.size == 0:
        return TestResult(0.0, "Score", 0.0, 1.0, "no basis terms beyond the null model")
    try:
        stat = robust_score_statistic(n, a.X[:, idx])
    except TestUndefined as exc:
        logger.debug("score test undefined: %s", exc)
        return TestResult.undefined("Score", str(exc), float(idx.size))
    return TestResult(stat, "Score", float(idx.size), _chi2_pvalue(stat, idx.size))


def run_test(
    kind: str,
    alt: FitResult,
    null: FitResult,
    correction: Optional[str] = None,
) -> TestResult:
    """Dispatch on ``kind`` in ``{"lrt", "wald", "score"}``."""
    if kind == "lrt":
        return likelihood_ratio_test(alt, null)
    if kind == "wald":
        return wald_test(alt, null, correction)
    if kind == "score":
        return score_test(alt, null)
    raise ValueError(f"Unknown test {kind!r}; expected one of 'lrt', 'wald', 'score'.")


__all__ = [
    "TestResult",
    "ScoreContext",
    "score_statistic",
    "robust_score_statistic",
    "likelihood_ratio_test",
    "wald_test",
    "score_test",
    "run_test",
    "extra_columns",
]
