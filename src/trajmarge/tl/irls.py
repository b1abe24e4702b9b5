"""Weighted least squares step shared by the iteratively reweighted fits."""

from __future__ import annotations

import numpy as np


def solve_wls(X: np.ndarray, z: np.ndarray, w: np.ndarray) -> np.ndarray:
    """Solve ``X^T W X beta = X^T W z`` for diagonal ``W = diag(w)``.

    Raises
    ------
    np.linalg.LinAlgError
        If the weighted cross-product matrix is singular.
    """
    XtWX = X.T @ (X * w[:, None])
    return np.linalg.solve(XtWX, X.T @ (w * z))


def ols_probe(X: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Least-squares coefficients with ``nan`` for aliased columns.

    A rank-deficient ``X`` leaves some coefficients unidentified; those are
    reported as ``nan`` (the convention of R's ``lm``), so callers can gate on
    ``np.isfinite``.

    Parameters
    ----------
    X : (n, p) design matrix
    y : (n,) response

    Returns
    -------
    np.ndarray
        (p,) coefficient vector.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if not (np.isfinite(X).all() and np.isfinite(y).all()):
        return np.full(X.shape[1], np.nan)
    coef, _, rank, _ = np.linalg.lstsq(X, y, rcond=None)
    if rank < X.shape[1]:
        # a column in the span of the preceding ones has a ~0 diagonal in R
        _, R = np.linalg.qr(X)
        diag = np.zeros(X.shape[1])
        d = np.abs(np.diag(R))
        diag[: d.size] = d
        tol = diag.max(initial=0.0) * max(X.shape) * np.finfo(float).eps
        coef = np.where(diag > tol, coef, np.nan)
    return coef
