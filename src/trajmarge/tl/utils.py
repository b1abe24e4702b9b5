"""Utility functions: coefficient tables, fitted values and piecewise slopes."""

from typing import Sequence

import numpy as np
import pandas as pd
from scipy.stats import norm

from .backend import FittedModel
from .basis import BasisTerm, design_matrix


def coefficient_table(model: FittedModel, robust: bool = False) -> pd.DataFrame:
    """Tidy coefficient summary of a fitted model.

    Parameters
    ----------
    model : FittedModel
        The fitted model.
    robust : bool, optional
        Use the sandwich covariance when the model carries one (default: False).

    Returns
    -------
    pd.DataFrame
        Columns ``term``, ``estimate``, ``std_error``, ``z_value``, ``p_value``.
    """
    cov = model.cov_robust if robust and model.cov_robust is not None else model.cov
    se = np.sqrt(np.clip(np.diag(cov), 0.0, None))
    with np.errstate(divide="ignore", invalid="ignore"):
        z = np.where(se > 0, model.coef / se, np.nan)
    names = model.column_names or tuple(f"b{i}" for i in range(model.n_coef))
    return pd.DataFrame(
        {
            "term": list(names),
            "estimate": model.coef,
            "std_error": se,
            "z_value": z,
            "p_value": 2.0 * norm.sf(np.abs(z)),
        }
    )


def fitted_values(model: FittedModel, t: np.ndarray) -> pd.DataFrame:
    """Per-cell fitted values on the link and response scales.

    ``link_se`` is the standard error of the linear predictor from the
    model-based coefficient covariance.
    """
    t = np.asarray(t, dtype=float)
    X = model.X
    link_se = np.sqrt(np.clip(np.einsum("ij,jk,ik->i", X, model.cov, X), 0.0, None))
    return pd.DataFrame(
        {
            "pseudotime": t,
            "observed": model.y,
            "link_fit": np.log(model.mu),
            "link_se": link_se,
            "fitted": model.mu,
        }
    )


def _breakpoints(terms: Sequence[BasisTerm], t: np.ndarray) -> np.ndarray:
    lo, hi = float(np.min(t)), float(np.max(t))
    knots = [term.knot for term in terms if lo < term.knot < hi]
    return np.unique(np.concatenate([[lo, hi], knots]))


def gene_dynamics(
    terms: Sequence[BasisTerm], coef: np.ndarray, t: np.ndarray, tol: float = 1e-8
) -> pd.DataFrame:
    """Slope of the linear predictor on every segment between consecutive knots.

    The linear predictor of a hinge model in one variable is linear between
    knots, so each slope is the secant over its segment.

    Parameters
    ----------
    terms : Sequence[BasisTerm]
        Selected basis terms (single predictor).
    coef : np.ndarray
        Coefficients, intercept first.
    t : np.ndarray
        Observed pseudotime values.
    tol : float, optional
        Slopes with absolute value at most ``tol`` are labelled ``flat``.

    Returns
    -------
    pd.DataFrame
        Columns ``segment``, ``start``, ``end``, ``slope``, ``trend``.
    """
    t = np.asarray(t, dtype=float)
    bp = _breakpoints(terms, t)
    if bp.size < 2:
        return pd.DataFrame(columns=["segment", "start", "end", "slope", "trend"])
    eta = design_matrix(bp[:, None], terms) @ np.asarray(coef, dtype=float)
    slope = np.diff(eta) / np.diff(bp)
    trend = np.where(slope > tol, "increasing", np.where(slope < -tol, "decreasing", "flat"))
    return pd.DataFrame(
        {
            "segment": np.arange(1, bp.size),
            "start": bp[:-1],
            "end": bp[1:],
            "slope": slope,
            "trend": trend,
        }
    )


def slope_data(terms: Sequence[BasisTerm], coef: np.ndarray, t: np.ndarray) -> pd.DataFrame:
    """Per-cell slope of the linear predictor, with the segment each cell falls in.

    Returns
    -------
    pd.DataFrame
        Columns ``pseudotime``, ``segment`` (as numbered by
        :func:`gene_dynamics`), ``breakpoint`` (start of that segment) and
        ``slope``. When ``t`` spans no interval every cell gets segment ``0``
        and slope 0.
    """
    t = np.asarray(t, dtype=float)
    dyn = gene_dynamics(terms, coef, t)
    if dyn.empty:
        return pd.DataFrame({"pseudotime": t, "segment": 0, "breakpoint": np.nan, "slope": 0.0})
    seg = np.clip(np.searchsorted(dyn["end"].to_numpy(), t, side="left"), 0, len(dyn) - 1)
    return pd.DataFrame(
        {
            "pseudotime": t,
            "segment": dyn["segment"].to_numpy()[seg],
            "breakpoint": dyn["start"].to_numpy()[seg],
            "slope": dyn["slope"].to_numpy()[seg],
        }
    )
