"""MARGE: adaptive hinge-spline search for negative binomial models.

The forward pass greedily adds mirror pairs of hinge functions, ranked by the
efficient score statistic of the current fit; the backward pass removes
terms one at a time (smallest Wald chi-square first) and keeps the subset
with the smallest generalized cross-validation criterion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .backend import FitFailure, FitResult, FitSuccess, FittedModel, GLMBackend, ModelBackend
from .basis import (
    BasisTerm,
    SpanChecker,
    candidate_knots,
    column_names,
    design_matrix,
    fixed_knots,
    mirror_pair,
)
from .stats import ScoreContext

logger = logging.getLogger(__name__)


@dataclass
class MargeResult:
    """Selected basis and final fit of one MARGE search."""

    fit: FitResult
    terms: Tuple[BasisTerm, ...] = ()
    design: Optional[np.ndarray] = None
    forward_scores: List[float] = field(default_factory=list)
    gcv_path: List[Tuple[int, float]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return isinstance(self.fit, FitSuccess)

    @property
    def model(self) -> Optional[FittedModel]:
        return self.fit.model if isinstance(self.fit, FitSuccess) else None

    @property
    def column_names(self) -> Tuple[str, ...]:
        return column_names(self.terms)


def gcv(model: FittedModel, pen: float = 2.0) -> float:
    """Generalized cross-validation ``dev / (n (1 - C/n)^2)``, ``C = p + pen (p-1) / 2``."""
    n = model.n_obs
    p = model.n_coef
    C = p + pen * (p - 1) / 2.0
    if C >= n:
        return np.inf
    return float(model.deviance / (n * (1.0 - C / n) ** 2))


def _named(res: FitResult, terms: Sequence[BasisTerm]) -> FitResult:
    if isinstance(res, FitSuccess):
        res.model.column_names = column_names(terms)
    return res


def _as_predictors(x: np.ndarray) -> np.ndarray:
    X = np.asarray(x, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    if X.ndim != 2:
        raise ValueError("predictors must be a vector or an (n, d) matrix.")
    return X


def _wald_chi2(model: FittedModel) -> np.ndarray:
    var = np.diag(model.cov)[1:]
    coef = model.coef[1:]
    return np.where(var > 0, coef * coef / np.where(var > 0, var, 1.0), 0.0)


def forward_pass(
    Xp: np.ndarray,
    y: np.ndarray,
    offset: Optional[np.ndarray],
    subject: Optional[np.ndarray],
    backend: ModelBackend,
    M: int,
    knots: Sequence[np.ndarray],
    *,
    is_int: bool = False,
    score_tol: float = 1e-5,
) -> MargeResult:
    """Grow the basis from the intercept-only model.

    Parameters
    ----------
    Xp : (n, d) np.ndarray
        Predictor matrix.
    y : np.ndarray
        Counts.
    offset, subject : np.ndarray, optional
        Log-scale offset and cluster ids passed through to ``backend``.
    backend : ModelBackend
        Backend used for every intermediate fit.
    M : int
        Maximum number of non-intercept terms.
    knots : sequence of np.ndarray
        Candidate knots of every predictor.
    is_int : bool, optional
        Allow products with existing terms on other predictors (default: False).
    score_tol : float, optional
        Stop once the best candidate scores below this (default: 1e-5).

    Returns
    -------
    MargeResult
        Terms and fit of the largest valid model; ``fit`` is a FitFailure only
        if the intercept-only model could not be fitted.
    """
    terms: List[BasisTerm] = []
    B = design_matrix(Xp, terms)
    res = _named(backend.fit(B, y, offset, subject), terms)
    out = MargeResult(fit=res, terms=(), design=B)
    if isinstance(res, FitFailure):
        out.notes.append(f"intercept-only fit failed: {res.reason}")
        return out
    current = res.model
    d = Xp.shape[1]

    while len(terms) < M:
        ctx = ScoreContext(current)
        checker = SpanChecker(B)
        existing = set(terms)
        parents: List[Optional[BasisTerm]] = [None]
        if is_int:
            parents += [t for t in terms if t.degree < 2]
        slots = M - len(terms)
        best_score, best_pair = -np.inf, None
        for parent in parents:
            for v in range(d):
                if parent is not None and v in parent.variables:
                    continue
                for k in knots[v]:
                    pair = [
                        (term, col)
                        for term, col in checker.filter_pair(mirror_pair(Xp, k, v, parent))
                        if term not in existing
                    ]
                    if not pair:
                        continue
                    options = [pair] if len(pair) <= slots else [[half] for half in pair]
                    for cand in options:
                        s = ctx.statistic(np.column_stack([c for _, c in cand]))
                        if np.isfinite(s) and s > best_score:
                            best_score, best_pair = s, cand
        if best_pair is None:
            out.notes.append("no valid candidate basis function")
            break
        if best_score < score_tol:
            break
        new_terms = terms + [term for term, _ in best_pair]
        B_new = np.column_stack([B] + [col for _, col in best_pair])
        res = _named(backend.fit(B_new, y, offset, subject), new_terms)
        if isinstance(res, FitFailure):
            out.notes.append(f"forward pass stopped at {len(terms)} terms: {res.reason}")
            break
        terms, B, current = new_terms, B_new, res.model
        out.forward_scores.append(float(best_score))
        logger.debug(
            "forward step: %s (score %.4g)", ", ".join(t.name for t, _ in best_pair), best_score
        )

    out.fit = FitSuccess(current)
    out.terms = tuple(terms)
    out.design = B
    return out


def backward_pass(
    forward: MargeResult,
    Xp: np.ndarray,
    y: np.ndarray,
    offset: Optional[np.ndarray],
    subject: Optional[np.ndarray],
    backend: ModelBackend,
    *,
    pen: float = 2.0,
) -> MargeResult:
    """Prune the forward model and keep the subset with the smallest GCV.

    Every subset is refitted with the NB size of the forward model, so their
    deviances share one scale; the selected subset is then refitted with
    ``backend``. A term that is the parent of a remaining term is never
    dropped. Ties in GCV go to the smaller model.
    """
    if not forward.ok:
        return forward
    best_terms = list(forward.terms)
    best_model = forward.model
    best_gcv = gcv(best_model, pen)
    prune = backend.with_theta(best_model.theta)
    out = MargeResult(
        fit=forward.fit,
        forward_scores=list(forward.forward_scores),
        gcv_path=[(len(best_terms), best_gcv)],
        notes=list(forward.notes),
    )
    cur_terms, cur_model = list(best_terms), best_model
    while cur_terms:
        chi2_stats = _wald_chi2(cur_model)
        droppable = [
            i for i, t in enumerate(cur_terms) if not any(o.parent == t for o in cur_terms)
        ]
        j = min(droppable, key=lambda i: chi2_stats[i])
        cand_terms = cur_terms[:j] + cur_terms[j + 1 :]
        res = _named(prune.fit(design_matrix(Xp, cand_terms), y, offset, subject), cand_terms)
        if isinstance(res, FitFailure):
            out.notes.append(f"backward pass stopped at {len(cur_terms)} terms: {res.reason}")
            break
        cur_terms, cur_model = cand_terms, res.model
        g = gcv(cur_model, pen)
        out.gcv_path.append((len(cur_terms), g))
        if g <= best_gcv:
            best_terms, best_model, best_gcv = list(cur_terms), cur_model, g

    if prune is not backend and best_model is not forward.model:
        res = _named(backend.fit(best_model.X, y, offset, subject), best_terms)
        if isinstance(res, FitSuccess):
            best_model = res.model
        else:
            out.notes.append(f"refit of the selected terms failed: {res.reason}")

    out.fit = FitSuccess(best_model)
    out.terms = tuple(best_terms)
    out.design = best_model.X
    return out


def marge(
    t: np.ndarray,
    y: np.ndarray,
    offset: Optional[np.ndarray] = None,
    subject: Optional[np.ndarray] = None,
    backend: Optional[ModelBackend] = None,
    M: int = 5,
    *,
    approx_knot: bool = True,
    rng: Optional[np.random.Generator] = None,
    adaptive: bool = True,
    is_int: bool = False,
    max_knots: int = 50,
    score_tol: float = 1e-5,
    pen: float = 2.0,
) -> MargeResult:
    """Fit an NB hinge-spline model of ``y`` on pseudotime ``t``.

    Parameters
    ----------
    t : np.ndarray
        Pseudotime (n,) or predictor matrix (n, d).
    y : np.ndarray
        Non-negative counts (n,).
    offset : np.ndarray, optional
        Log-scale offset added to the linear predictor.
    subject : np.ndarray, optional
        Grouped subject ids; required by the GEE and GLMM backends.
    backend : ModelBackend, optional
        Backend of the final model (default: ``GLMBackend()``). The search
        itself runs on ``backend.search_backend``; when that differs (GLMM),
        the selected basis is refitted with ``backend``.
    M : int, optional
        Maximum number of basis terms (default: 5).
    approx_knot : bool, optional
        Thin and sub-sample the knot space (default: True).
    rng : np.random.Generator, optional
        Generator for knot sub-sampling.
    adaptive : bool, optional
        When False, skip the search and use the fixed basis of
        :func:`~trajmarge.tl.basis.fixed_knots` (default: True).
    is_int : bool, optional
        Allow interaction terms (default: False).
    max_knots : int, optional
        Candidate-knot limit in approximate mode (default: 50).
    score_tol : float, optional
        Forward-pass stopping threshold (default: 1e-5).
    pen : float, optional
        GCV penalty per knot (default: 2).

    Returns
    -------
    MargeResult
        The selected terms and the final fit.
    """
    backend = backend if backend is not None else GLMBackend()
    Xp = _as_predictors(t)
    y = np.asarray(y, dtype=float).ravel()
    if Xp.shape[0] != y.size:
        raise ValueError("predictors and response must have the same length.")
    if M < 0:
        raise ValueError("M must be non-negative.")

    if not adaptive:
        terms = fixed_knots(Xp[:, 0])[:M]
        B = design_matrix(Xp, terms)
        res = _named(backend.fit(B, y, offset, subject), terms)
        return MargeResult(fit=res, terms=tuple(terms), design=B)

    search = backend.search_backend
    search_subject = subject if search is backend else None
    rng = rng if rng is not None else np.random.default_rng()
    knots = [
        candidate_knots(
            Xp[:, v], approx_knot=approx_knot, rng=rng, max_knots=max_knots, n_pred=Xp.shape[1]
        )
        for v in range(Xp.shape[1])
    ]
    fwd = forward_pass(
        Xp, y, offset, search_subject, search, M, knots, is_int=is_int, score_tol=score_tol
    )
    result = backward_pass(fwd, Xp, y, offset, search_subject, search, pen=pen)
    if search is not backend and result.ok:
        B = design_matrix(Xp, result.terms)
        result.fit = _named(backend.fit(B, y, offset, subject), result.terms)
        result.design = B
        if isinstance(result.fit, FitFailure):
            result.notes.append(f"{backend.name} refit failed: {result.fit.reason}")
    logger.debug(
        "selected %d terms: %s", len(result.terms), ", ".join(t.name for t in result.terms)
    )
    return result
