"""Truncated-power hinge basis functions and candidate knot spaces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, List, Literal, Optional, Sequence, Tuple

import numpy as np

Direction = Literal["+", "-"]


def hinge(x: np.ndarray, knot: float, direction: Direction) -> np.ndarray:
    """Evaluate ``max(0, x - knot)`` (``+``) or ``max(0, knot - x)`` (``-``)."""
    x = np.asarray(x, dtype=float)
    if direction == "+":
        return np.maximum(x - knot, 0.0)
    if direction == "-":
        return np.maximum(knot - x, 0.0)
    raise ValueError(f"direction must be '+' or '-', got {direction!r}.")


@dataclass(frozen=True)
class BasisTerm:
    """One hinge function, optionally multiplied by the term it was derived from.

    Parameters
    ----------
    knot : float
        Knot location on the predictor's scale.
    direction : {"+", "-"}
        ``+`` is ``max(0, x - knot)``, ``-`` is ``max(0, knot - x)``.
    var : int
        Column of the predictor matrix the hinge acts on.
    parent : BasisTerm, optional
        Parent term; ``None`` for terms grown from the intercept.
    """

    knot: float
    direction: Direction
    var: int = 0
    parent: Optional["BasisTerm"] = None

    @property
    def variables(self) -> FrozenSet[int]:
        """Predictor columns used anywhere in the product."""
        inherited = self.parent.variables if self.parent is not None else frozenset()
        return inherited | {self.var}

    @property
    def degree(self) -> int:
        """Number of hinge factors in the product."""
        return 1 if self.parent is None else self.parent.degree + 1

    @property
    def name(self) -> str:
        k = f"{self.knot:.6g}"
        own = f"h(x{self.var}-{k})" if self.direction == "+" else f"h({k}-x{self.var})"
        return own if self.parent is None else f"{self.parent.name}*{own}"

    def evaluate(self, X: np.ndarray) -> np.ndarray:
        """Evaluate the term over the rows of the (n, d) predictor matrix ``X``."""
        X = np.asarray(X, dtype=float)
        col = hinge(X[:, self.var], self.knot, self.direction)
        if self.parent is not None:
            col = col * self.parent.evaluate(X)
        return col


def mirror_pair(
    X: np.ndarray, knot: float, var: int = 0, parent: Optional[BasisTerm] = None
) -> List[Tuple[BasisTerm, np.ndarray]]:
    """Both mirror hinges at ``knot`` with their evaluated columns."""
    out = []
    for direction in ("+", "-"):
        term = BasisTerm(knot=float(knot), direction=direction, var=var, parent=parent)
        out.append((term, term.evaluate(X)))
    return out


def design_matrix(X: np.ndarray, terms: Sequence[BasisTerm]) -> np.ndarray:
    """Intercept column followed by one column per term."""
    X = np.asarray(X, dtype=float)
    cols = [np.ones(X.shape[0])] + [t.evaluate(X) for t in terms]
    return np.column_stack(cols)


def column_names(terms: Sequence[BasisTerm]) -> Tuple[str, ...]:
    return ("Intercept",) + tuple(t.name for t in terms)


# ---------------------------------------------------------------------
# knot spaces
# ---------------------------------------------------------------------


def _min_span(n: int, d: int = 1, alpha: float = 0.05) -> int:
    """Friedman (1991) minimum number of observations between knots."""
    return max(int(np.floor(-np.log2(-np.log(1.0 - alpha) / (d * n)) / 2.5)), 1)


def _end_span(n: int, d: int = 1, alpha: float = 0.05) -> int:
    """Friedman (1991) number of observations excluded at either end."""
    return max(int(np.ceil(3.0 - np.log2(alpha / d))), 1)


def candidate_knots(
    x: np.ndarray,
    *,
    approx_knot: bool = True,
    rng: Optional[np.random.Generator] = None,
    max_knots: int = 50,
    n_pred: int = 1,
) -> np.ndarray:
    """Candidate knot locations for one predictor.

    All unique values except the maximum are candidates (a knot at the
    maximum only reproduces the linear term of a knot at the minimum). With
    ``approx_knot`` the candidates are thinned with the min-span / end-span
    rules and, if more than ``max_knots`` remain, sub-sampled without
    replacement. The minimum is always kept so a purely linear trend can be
    represented.

    Parameters
    ----------
    x : np.ndarray
        Predictor values (finite).
    approx_knot : bool, optional
        Reduce the knot space (default: True).
    rng : np.random.Generator, optional
        Generator used for sub-sampling; a fresh default generator when ``None``.
    max_knots : int, optional
        Upper limit on the number of candidates in approximate mode (default: 50).
    n_pred : int, optional
        Number of predictors in the model, used by the span rules (default: 1).

    Returns
    -------
    np.ndarray
        Sorted candidate knots.
    """
    xs = np.sort(np.asarray(x, dtype=float))
    uniq = np.unique(xs)
    if uniq.size < 2:
        return np.empty(0, dtype=float)
    if not approx_knot:
        return uniq[:-1]

    n = xs.size
    end = _end_span(n, n_pred)
    span = _min_span(n, n_pred)
    inner = xs[end : n - end : span] if n > 2 * end else xs[:0]
    knots = np.unique(np.concatenate([[uniq[0]], inner]))
    knots = knots[knots < uniq[-1]]
    if knots.size > max_knots:
        rng = rng if rng is not None else np.random.default_rng()
        keep = rng.choice(np.arange(1, knots.size), size=max_knots - 1, replace=False)
        knots = np.sort(np.concatenate([knots[:1], knots[keep]]))
    return knots


def fixed_knots(x: np.ndarray, n_knots: int = 4) -> List[BasisTerm]:
    """Non-adaptive basis: a linear term from the minimum plus evenly spaced ``+`` hinges."""
    x = np.asarray(x, dtype=float)
    lo, hi = float(np.min(x)), float(np.max(x))
    if hi <= lo:
        return []
    interior = np.linspace(lo, hi, n_knots + 2)[1:-1]
    return [BasisTerm(lo, "+")] + [BasisTerm(float(k), "+") for k in interior]


# ---------------------------------------------------------------------
# degeneracy checks
# ---------------------------------------------------------------------


class SpanChecker:
    """Tests whether new columns add a direction to the span of a design.

    Keeps an orthonormal basis ``Q`` of the current design; a column whose
    residual after projection on ``Q`` is tiny relative to its norm is
    linearly dependent.
    """

    def __init__(self, B: np.ndarray, tol: float = 1e-8) -> None:
        self.tol = float(tol)
        Q, R = np.linalg.qr(np.asarray(B, dtype=float))
        keep = np.abs(np.diag(R)) > self.tol * max(np.abs(np.diag(R)).max(initial=0.0), 1.0)
        self.Q = Q[:, keep]

    def residual(self, col: np.ndarray, Q: Optional[np.ndarray] = None) -> np.ndarray:
        Q = self.Q if Q is None else Q
        return col - Q @ (Q.T @ col)

    def is_degenerate(self, col: np.ndarray, Q: Optional[np.ndarray] = None) -> bool:
        """Constant, all-zero, non-finite, or dependent on the current span."""
        if not np.isfinite(col).all():
            return True
        scale = float(np.linalg.norm(col))
        if scale <= self.tol or np.ptp(col) <= self.tol:
            return True
        return float(np.linalg.norm(self.residual(col, Q))) <= self.tol * scale * 1e2

    def filter_pair(
        self, pair: Sequence[Tuple[BasisTerm, np.ndarray]]
    ) -> List[Tuple[BasisTerm, np.ndarray]]:
        """Keep the halves of a mirror pair that are jointly non-degenerate."""
        kept: List[Tuple[BasisTerm, np.ndarray]] = []
        Q = self.Q
        for term, col in pair:
            if self.is_degenerate(col, Q):
                continue
            r = self.residual(col, Q)
            Q = np.column_stack([Q, r / np.linalg.norm(r)])
            kept.append((term, col))
        return kept
