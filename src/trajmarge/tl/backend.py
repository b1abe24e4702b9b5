"""Negative binomial model backends: GLM (IRLS), GEE and random-intercept GLMM.

Every backend shares one contract::

    backend.fit(X, y, offset, subject) -> FitSuccess | FitFailure

Numerical trouble (singular systems, non-finite coefficients, bad inputs) is
reported as a :class:`FitFailure` instead of being raised, so callers can
treat it as an ordinary outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import ClassVar, Optional, Tuple, Union

import numpy as np
from scipy.linalg import fractional_matrix_power
from scipy.optimize import minimize

from .fam import NegBin, theta_ml
from .irls import solve_wls

logger = logging.getLogger(__name__)

COR_STRUCTURES = ("ar1", "independence", "exchangeable")
BIAS_CORRECTIONS = ("kc", "df")

_ETA_CLIP = 40.0


# ======================
# Typed fit results
# ======================


@dataclass(frozen=True)
class FitFailure:
    """A fit that did not produce a usable model.

    ``reason`` is one of ``non_convergence``, ``non_finite``, ``singular``,
    ``invalid_input`` or ``error``.
    """

    reason: str
    message: str
    backend: str = ""

    def __str__(self) -> str:
        return f"{self.backend} fit failed ({self.reason}): {self.message}"


@dataclass(frozen=True)
class FitSuccess:
    model: "FittedModel"


FitResult = Union[FitSuccess, FitFailure]


# ==================================
# Working covariance (block diagonal)
# ==================================


def cluster_starts(subject: np.ndarray) -> np.ndarray:
    """Start index of every run of equal ids (ids must be grouped)."""
    s = np.asarray(subject)
    change = np.ones(s.size, dtype=bool)
    change[1:] = s[1:] != s[:-1]
    return np.flatnonzero(change)


@dataclass
class WorkingCovariance:
    """Inverse working covariance ``V^-1 = A^-1/2 R^-1 A^-1/2 / phi``.

    ``A`` is the diagonal of variance-function values and ``R`` the working
    correlation of each cluster. ``R^-1`` is applied from its closed form, so
    no ``n x n`` matrix is ever built.
    """

    variance: np.ndarray
    starts: np.ndarray
    structure: str = "independence"
    alpha: float = 0.0
    phi: float = 1.0

    @property
    def n(self) -> int:
        return int(self.variance.size)

    @property
    def sizes(self) -> np.ndarray:
        return np.diff(np.append(self.starts, self.n))

    @property
    def n_clusters(self) -> int:
        return int(self.starts.size)

    def _rinv(self, U: np.ndarray) -> np.ndarray:
        a = float(self.alpha)
        if self.structure == "independence" or a == 0.0:
            return U
        shape = (-1,) + (1,) * (U.ndim - 1)
        if self.structure == "exchangeable":
            sums = np.add.reduceat(U, self.starts, axis=0)
            coef = (a / (1.0 + (self.sizes - 1) * a)).reshape(shape)
            return (U - np.repeat(coef * sums, self.sizes, axis=0)) / (1.0 - a)
        if self.structure == "ar1":
            is_start = np.zeros(self.n, dtype=bool)
            is_start[self.starts] = True
            is_end = np.zeros(self.n, dtype=bool)
            is_end[np.append(self.starts[1:], self.n) - 1] = True
            c = np.full(self.n, 1.0 + a * a)
            c[is_start | is_end] = 1.0
            c[is_start & is_end] = 1.0 - a * a
            out = c.reshape(shape) * U
            prev = ~is_start[1:]
            out[1:][prev] -= a * U[:-1][prev]
            nxt = ~is_end[:-1]
            out[:-1][nxt] -= a * U[1:][nxt]
            return out / (1.0 - a * a)
        raise ValueError(f"Unknown correlation structure {self.structure!r}.")

    def solve(self, M: np.ndarray) -> np.ndarray:
        """Apply ``V^-1`` to a vector or to the columns of a matrix."""
        M = np.asarray(M, dtype=float)
        s = 1.0 / np.sqrt(self.phi * self.variance)
        if M.ndim == 2:
            s = s[:, None]
        return s * self._rinv(s * M)

    def correlation_block(self, m: int) -> np.ndarray:
        """Dense working correlation matrix for a cluster of size ``m``."""
        a = float(self.alpha)
        if self.structure == "exchangeable":
            return (1.0 - a) * np.eye(m) + a * np.ones((m, m))
        if self.structure == "ar1":
            idx = np.arange(m)
            return a ** np.abs(idx[:, None] - idx[None, :])
        return np.eye(m)

    def block(self, i: int) -> np.ndarray:
        """Dense ``V_i^-1`` for cluster ``i``."""
        lo = int(self.starts[i])
        hi = int(self.starts[i + 1]) if i + 1 < self.n_clusters else self.n
        s = 1.0 / np.sqrt(self.phi * self.variance[lo:hi])
        Rinv = np.linalg.inv(self.correlation_block(hi - lo))
        return s[:, None] * Rinv * s[None, :]

    def cluster_sums(self, M: np.ndarray) -> np.ndarray:
        """Sum the rows of ``M`` within each cluster."""
        return np.add.reduceat(np.asarray(M, dtype=float), self.starts, axis=0)


def estimate_correlation(
    e: np.ndarray, starts: np.ndarray, structure: str, p: int, phi: float
) -> float:
    """Moment estimate of the working correlation parameter from Pearson residuals.

    Parameters
    ----------
    e : np.ndarray
        Pearson residuals ``(y - mu) / sqrt(v(mu))``.
    starts : np.ndarray
        Cluster start indices.
    structure : str
        ``independence``, ``exchangeable`` or ``ar1``.
    p : int
        Number of regression coefficients.
    phi : float
        Scale estimate.

    Returns
    -------
    float
        The correlation parameter (0 for independence).
    """
    n = e.size
    sizes = np.diff(np.append(starts, n))
    if structure == "exchangeable":
        sums = np.add.reduceat(e, starts)
        sumsq = np.add.reduceat(e * e, starts)
        num = float(np.sum(sums * sums - sumsq) / 2.0)
        n_pairs = float(np.sum(sizes * (sizes - 1)) / 2.0)
        if n_pairs <= 0:
            return 0.0
        alpha = num / (max(n_pairs - p, 1.0) * phi)
        lower = -1.0 / (sizes.max() - 1) + 1e-3 if sizes.max() > 1 else -0.95
        return float(np.clip(alpha, lower, 0.95))
    if structure == "ar1":
        is_start = np.zeros(n, dtype=bool)
        is_start[starts] = True
        same = ~is_start[1:]
        n_adj = int(same.sum())
        if n_adj == 0:
            return 0.0
        num = float(np.sum((e[:-1] * e[1:])[same]))
        alpha = num / (max(n_adj - p, 1) * phi)
        return float(np.clip(alpha, -0.95, 0.95))
    return 0.0


# ======================
# Unified fit result
# ======================


@dataclass
class FittedModel:
    """A fitted negative binomial model over one design matrix."""

    backend: str
    coef: np.ndarray  # (p,)
    cov: np.ndarray  # (p,p) model-based covariance
    loglik: float
    deviance: float
    mu: np.ndarray  # (n,) fitted means
    X: np.ndarray  # (n,p) design
    y: np.ndarray
    offset: np.ndarray
    theta: float  # NB size
    converged: bool
    precision: WorkingCovariance
    column_names: Tuple[str, ...] = ()
    cov_robust: Optional[np.ndarray] = None
    phi: float = 1.0
    cor_alpha: Optional[float] = None
    sigma2: Optional[float] = None
    ranef: Optional[np.ndarray] = None
    n_iter: int = 0
    notes: str = ""

    @property
    def n_coef(self) -> int:
        return int(self.coef.size)

    @property
    def n_obs(self) -> int:
        return int(self.y.size)

    @property
    def std_errors(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.cov), 0.0, None))


def _prepare(
    X: np.ndarray, y: np.ndarray, offset: Optional[np.ndarray]
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    y = np.asarray(y, dtype=float).ravel()
    n = y.size
    offset = np.zeros(n) if offset is None else np.asarray(offset, dtype=float).ravel()
    if X.shape[0] != n or offset.size != n:
        raise ValueError("design, response and offset must have the same number of rows.")
    if n <= X.shape[1]:
        raise ValueError(f"{n} observations cannot identify {X.shape[1]} coefficients.")
    if not (np.isfinite(X).all() and np.isfinite(y).all() and np.isfinite(offset).all()):
        raise ValueError("design, response and offset must be finite.")
    if np.any(y < 0):
        raise ValueError("counts must be non-negative.")
    if not np.any(y > 0):
        raise ValueError("all counts are zero.")
    return X, y, offset


def _guarded(backend: "ModelBackend", X, y, offset, subject) -> FitResult:
    """Run a backend's ``_fit`` and convert numerical trouble into a FitFailure."""
    try:
        X, y, offset = _prepare(X, y, offset)
        if backend.needs_subject:
            if subject is None:
                raise ValueError(f"{backend.name} fits require subject ids.")
            subject = np.asarray(subject)
            if subject.size != y.size:
                raise ValueError("subject ids must be aligned with the response.")
    except ValueError as exc:
        return FitFailure("invalid_input", str(exc), backend.name)
    try:
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            out = backend._fit(X, y, offset, subject)
    except np.linalg.LinAlgError as exc:
        return FitFailure("singular", str(exc), backend.name)
    except (FloatingPointError, OverflowError) as exc:
        return FitFailure("non_finite", str(exc), backend.name)
    except ValueError as exc:
        return FitFailure("error", str(exc), backend.name)
    if isinstance(out, FitFailure):
        return out
    if not (np.isfinite(out.coef).all() and np.isfinite(out.loglik)):
        return FitFailure("non_finite", "non-finite coefficients or log-likelihood", backend.name)
    if not out.converged:
        logger.debug("%s fit did not converge: %s", backend.name, out.notes)
    return FitSuccess(out)


def _irls(
    X: np.ndarray,
    y: np.ndarray,
    offset: np.ndarray,
    fam: NegBin,
    mu: np.ndarray,
    max_iter: int,
    tol: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, bool, int]:
    """NB IRLS for fixed theta with step halving; returns beta, cov, mu, converged, iterations."""
    eta = np.log(mu)
    dev_old = fam.deviance(y, mu)
    beta = None
    converged = False
    it = 0
    for it in range(1, int(max_iter) + 1):
        w = fam.weights(mu)
        z = fam.working_response(eta - offset, y, mu)
        beta_new = solve_wls(X, z, w)
        eta_new = offset + X @ beta_new
        mu_new = np.exp(np.clip(eta_new, -_ETA_CLIP, _ETA_CLIP))
        dev = fam.deviance(y, mu_new)
        # step halving (glm2) when the deviance is non-finite or increases
        halvings = 0
        while beta is not None and (not np.isfinite(dev) or dev > dev_old + 1e-10) and halvings < 10:
            beta_new = 0.5 * (beta_new + beta)
            eta_new = offset + X @ beta_new
            mu_new = np.exp(np.clip(eta_new, -_ETA_CLIP, _ETA_CLIP))
            dev = fam.deviance(y, mu_new)
            halvings += 1
        if not np.isfinite(beta_new).all():
            raise FloatingPointError("IRLS produced non-finite coefficients.")
        beta, eta, mu = beta_new, eta_new, mu_new
        if abs(dev - dev_old) / (abs(dev) + 0.1) < tol:
            converged = True
            break
        dev_old = dev
    w = fam.weights(mu)
    XtWX = X.T @ (X * w[:, None])
    cov = np.linalg.inv(XtWX)
    return beta, cov, mu, converged, it


class ModelBackend:
    """Shared behaviour of the three backends."""

    name: ClassVar[str] = ""
    needs_subject: ClassVar[bool] = False

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        offset: Optional[np.ndarray] = None,
        subject: Optional[np.ndarray] = None,
    ) -> FitResult:
        """Fit the model; never raises for numerical problems."""
        return _guarded(self, X, y, offset, subject)

    @property
    def search_backend(self) -> "ModelBackend":
        """Backend used to score and refit candidate bases during model search."""
        return self

    def with_theta(self, theta: float) -> "ModelBackend":
        """Backend that refits with the NB size held at ``theta``.

        Used when pruning, so that deviances of different subsets are
        comparable. Backends whose size is already fixed return themselves.
        """
        return self

    def _fit(self, X, y, offset, subject):  # pragma: no cover - abstract
        raise NotImplementedError


# ============================
# GLM backend
# ============================


@dataclass
class GLMBackend(ModelBackend):
    """NB2 GLM: IRLS for the coefficients alternated with ML theta (``glm.nb``).

    With ``theta`` set, the size is held fixed and only the coefficients are
    estimated (``glm(family = negative.binomial(theta))``).
    """

    name: ClassVar[str] = "GLM"

    max_iter: int = 25
    max_outer: int = 25
    tol: float = 1e-8
    theta_bounds: Tuple[float, float] = (1e-4, 1e5)
    theta: Optional[float] = None

    def with_theta(self, theta: float) -> "GLMBackend":
        return replace(self, theta=float(theta))

    def _fit(self, X, y, offset, subject) -> FittedModel:
        if self.theta is not None:
            return self._fit_fixed(X, y, offset)
        # Poisson-like start, then alternate
        theta = self.theta_bounds[1]
        mu = NegBin.init_mu(y)
        beta, cov, mu, conv_inner, n_it = _irls(
            X, y, offset, NegBin(theta), mu, self.max_iter, self.tol
        )
        theta = theta_ml(y, mu, self.theta_bounds)
        ll_old = NegBin(theta).llk(y, mu)
        converged = False
        for _ in range(int(self.max_outer)):
            beta, cov, mu, conv_inner, it = _irls(
                X, y, offset, NegBin(theta), mu, self.max_iter, self.tol
            )
            n_it += it
            theta_new = theta_ml(y, mu, self.theta_bounds)
            ll = NegBin(theta_new).llk(y, mu)
            delta = abs(ll - ll_old) / (abs(ll_old) + 0.1) + abs(np.log(theta_new / theta))
            theta, ll_old = theta_new, ll
            if delta < 1e-6 and conv_inner:
                converged = True
                break
            if not np.isfinite(ll):
                raise FloatingPointError("non-finite log-likelihood during theta estimation.")
        fam = NegBin(theta)
        notes = "" if converged else "alternation limit reached"
        if theta >= self.theta_bounds[1] * (1 - 1e-3):
            notes = "; ".join(filter(None, [notes, "theta at upper bound"]))
        return FittedModel(
            backend=self.name,
            coef=beta,
            cov=cov,
            loglik=fam.llk(y, mu),
            deviance=fam.deviance(y, mu),
            mu=mu,
            X=X,
            y=y,
            offset=offset,
            theta=theta,
            converged=converged,
            precision=WorkingCovariance(variance=fam.V(mu), starts=np.arange(y.size)),
            n_iter=n_it,
            notes=notes,
        )

    def _fit_fixed(self, X, y, offset) -> FittedModel:
        fam = NegBin(self.theta)
        beta, cov, mu, converged, n_it = _irls(
            X, y, offset, fam, NegBin.init_mu(y), self.max_iter * self.max_outer, self.tol
        )
        return FittedModel(
            backend=self.name,
            coef=beta,
            cov=cov,
            loglik=fam.llk(y, mu),
            deviance=fam.deviance(y, mu),
            mu=mu,
            X=X,
            y=y,
            offset=offset,
            theta=fam.theta,
            converged=converged,
            precision=WorkingCovariance(variance=fam.V(mu), starts=np.arange(y.size)),
            n_iter=n_it,
            notes="" if converged else "iteration limit reached",
        )


# ============================
# GEE backend
# ============================


@dataclass
class GEEBackend(ModelBackend):
    """NB GEE with an estimated scale and a working correlation per subject.

    The NB size is fixed (``theta=50``); the scale ``phi`` and the working
    correlation parameter are moment estimates updated at every iteration.
    """

    name: ClassVar[str] = "GEE"
    needs_subject: ClassVar[bool] = True

    cor_structure: str = "ar1"
    theta: float = 50.0
    sandwich: bool = False
    bias_correction: Optional[str] = None
    max_iter: int = 50
    tol: float = 1e-6

    def __post_init__(self) -> None:
        if self.cor_structure not in COR_STRUCTURES:
            raise ValueError(f"cor_structure must be one of {COR_STRUCTURES}.")
        if self.bias_correction is not None and self.bias_correction not in BIAS_CORRECTIONS:
            raise ValueError(f"bias_correction must be one of {BIAS_CORRECTIONS} or None.")

    def _working(self, X, y, mu, starts) -> WorkingCovariance:
        n, p = X.shape
        fam = NegBin(self.theta)
        v = fam.V(mu)
        e = (y - mu) / np.sqrt(v)
        phi = float(np.sum(e * e) / max(n - p, 1))
        phi = max(phi, 1e-8)
        alpha = estimate_correlation(e, starts, self.cor_structure, p, phi)
        return WorkingCovariance(v, starts, self.cor_structure, alpha, phi)

    def _fit(self, X, y, offset, subject) -> FittedModel:
        starts = cluster_starts(subject)
        fam = NegBin(self.theta)
        beta, _, mu, _, _ = _irls(X, y, offset, fam, NegBin.init_mu(y), 25, 1e-8)

        converged = False
        it = 0
        for it in range(1, int(self.max_iter) + 1):
            W = self._working(X, y, mu, starts)
            D = mu[:, None] * X
            VinvD = W.solve(D)
            M = D.T @ VinvD
            U = VinvD.T @ (y - mu)
            step = np.linalg.solve(M, U)
            beta = beta + step
            if not np.isfinite(beta).all():
                raise FloatingPointError("GEE produced non-finite coefficients.")
            mu = np.exp(np.clip(offset + X @ beta, -_ETA_CLIP, _ETA_CLIP))
            if np.max(np.abs(step)) < self.tol * max(1.0, float(np.max(np.abs(beta)))):
                converged = True
                break

        W = self._working(X, y, mu, starts)
        D = mu[:, None] * X
        M = D.T @ W.solve(D)
        cov = np.linalg.inv(M)
        cov_robust = None
        notes = [] if converged else ["iteration limit reached"]
        if self.sandwich or self.bias_correction is not None:
            cov_robust = sandwich_covariance(D, y - mu, W, cov, self.bias_correction)
            if self.bias_correction == "df" and W.n_clusters <= X.shape[1]:
                notes.append(
                    f"df correction not applied: {W.n_clusters} subjects for "
                    f"{X.shape[1]} coefficients"
                )
        return FittedModel(
            backend=self.name,
            coef=beta,
            cov=cov,
            loglik=fam.llk(y, mu),
            deviance=fam.deviance(y, mu),
            mu=mu,
            X=X,
            y=y,
            offset=offset,
            theta=self.theta,
            converged=converged,
            precision=W,
            cov_robust=cov_robust,
            phi=W.phi,
            cor_alpha=W.alpha,
            n_iter=it,
            notes="; ".join(notes),
        )


def sandwich_covariance(
    D: np.ndarray,
    resid: np.ndarray,
    W: WorkingCovariance,
    bread: np.ndarray,
    correction: Optional[str] = None,
) -> np.ndarray:
    """Robust (sandwich) covariance ``M^-1 (sum_i u_i u_i') M^-1``.

    Parameters
    ----------
    D : (n, p) np.ndarray
        Derivative matrix ``d mu / d beta``.
    resid : (n,) np.ndarray
        Raw residuals ``y - mu``.
    W : WorkingCovariance
        Working covariance of the fit.
    bread : (p, p) np.ndarray
        Model-based covariance ``M^-1``.
    correction : {"kc", "df"}, optional
        ``kc`` inflates each cluster's residuals by ``(I - H_ii)^-1/2``
        (Kauermann & Carroll, 2001); ``df`` multiplies the result by
        ``K / (K - p)`` for ``K`` clusters, and is skipped when ``K <= p``.

    Returns
    -------
    np.ndarray
        (p, p) covariance matrix.
    """
    K = W.n_clusters
    p = D.shape[1]
    if correction == "kc":
        u = np.empty((K, p))
        ends = np.append(W.starts[1:], W.n)
        for i, (lo, hi) in enumerate(zip(W.starts, ends)):
            Di = D[lo:hi]
            Vi_inv = W.block(i)
            H = Di @ bread @ Di.T @ Vi_inv
            adj = np.real(fractional_matrix_power(np.eye(hi - lo) - H, -0.5))
            u[i] = Di.T @ (Vi_inv @ (adj @ resid[lo:hi]))
    else:
        s = W.solve(resid)
        u = W.cluster_sums(D * s[:, None])
    meat = u.T @ u
    out = bread @ meat @ bread
    if correction == "df" and K > p:
        out = out * K / (K - p)
    return 0.5 * (out + out.T)


# ============================
# GLMM backend
# ============================


def numerical_hessian(func, x: np.ndarray, eps: float = 1e-4) -> np.ndarray:
    """Central finite-difference Hessian of a scalar function at ``x``."""
    x = np.asarray(x, dtype=float)
    n = x.size
    hess = np.zeros((n, n))
    for i in range(n):
        for j in range(i, n):
            pp, pm, mp, mm = (x.copy() for _ in range(4))
            pp[i] += eps
            pp[j] += eps
            pm[i] += eps
            pm[j] -= eps
            mp[i] -= eps
            mp[j] += eps
            mm[i] -= eps
            mm[j] -= eps
            hess[i, j] = (func(pp) - func(pm) - func(mp) + func(mm)) / (4.0 * eps * eps)
            hess[j, i] = hess[i, j]
    return hess



@dataclass
class GLMMBackend(ModelBackend):
    """NB2 GLMM with one random intercept per subject.

    The marginal likelihood is integrated with the Laplace approximation
    (Newton search for each subject's mode) and maximised over
    ``(beta, log theta, log sigma)`` with BFGS. The coefficient covariance is
    the inverse finite-difference Hessian of the negative marginal
    log-likelihood in ``beta``, with ``theta`` and ``sigma`` held at their
    estimates.
    """

    name: ClassVar[str] = "GLMM"
    needs_subject: ClassVar[bool] = True

    max_iter: int = 200
    newton_iter: int = 50
    theta_bounds: Tuple[float, float] = (1e-4, 1e5)
    sigma_init: float = 0.5
    glm: GLMBackend = field(default_factory=GLMBackend)

    @property
    def search_backend(self) -> ModelBackend:
        return self.glm

    def _fit(self, X, y, offset, subject) -> Union[FittedModel, FitFailure]:
        n, p = X.shape
        groups, codes = np.unique(np.asarray(subject), return_inverse=True)
        G = groups.size
        start = self.glm.fit(X, y, offset)
        if isinstance(start, FitFailure):
            return FitFailure(start.reason, f"starting GLM: {start.message}", self.name)
        init = start.model
        log_lo, log_hi = np.log(self.theta_bounds[0]), np.log(self.theta_bounds[1])
        x0 = np.concatenate(
            [init.coef, [np.clip(np.log(init.theta), log_lo, log_hi), np.log(self.sigma_init)]]
        )
        b_warm = np.zeros(G)

        def laplace(params: np.ndarray):
            beta = params[:p]
            theta = float(np.exp(np.clip(params[p], log_lo, log_hi)))
            sigma2 = float(np.exp(2.0 * np.clip(params[p + 1], -10.0, 5.0)))
            eta_f = offset + X @ beta
            b = b_warm.copy()
            for _ in range(int(self.newton_iter)):
                mu = np.exp(np.clip(eta_f + b[codes], -_ETA_CLIP, _ETA_CLIP))
                g = np.bincount(codes, (y - mu) * theta / (theta + mu), G) - b / sigma2
                h = -np.bincount(codes, mu * theta * (theta + y) / (theta + mu) ** 2, G) - 1.0 / sigma2
                delta = g / h
                b = np.clip(b - delta, -_ETA_CLIP, _ETA_CLIP)
                if np.max(np.abs(delta)) < 1e-10:
                    break
            mu = np.exp(np.clip(eta_f + b[codes], -_ETA_CLIP, _ETA_CLIP))
            h = -np.bincount(codes, mu * theta * (theta + y) / (theta + mu) ** 2, G) - 1.0 / sigma2
            ll = NegBin(theta).llk(y, mu) + float(
                np.sum(-0.5 * b * b / sigma2 - 0.5 * np.log(sigma2) - 0.5 * np.log(-h))
            )
            return -ll, b, mu, theta, sigma2

        def objective(params: np.ndarray) -> float:
            nll, b, _, _, _ = laplace(params)
            if not np.isfinite(nll):
                return 1e100
            b_warm[:] = b
            return nll

        res = minimize(
            objective, x0, method="BFGS", options={"maxiter": int(self.max_iter), "gtol": 1e-5}
        )
        if not np.isfinite(res.x).all():
            raise FloatingPointError("GLMM optimisation produced non-finite parameters.")
        nll, b, mu, theta, sigma2 = laplace(res.x)

        def nll_beta(beta: np.ndarray) -> float:
            return laplace(np.concatenate([beta, res.x[p:]]))[0]

        hess = numerical_hessian(nll_beta, res.x[:p])
        cov = np.linalg.inv(hess)
        cov = 0.5 * (cov + cov.T)
        fam = NegBin(theta)
        return FittedModel(
            backend=self.name,
            coef=res.x[:p].copy(),
            cov=cov,
            loglik=-nll,
            deviance=fam.deviance(y, mu),
            mu=mu,
            X=X,
            y=y,
            offset=offset,
            theta=theta,
            converged=bool(res.success),
            precision=WorkingCovariance(variance=fam.V(mu), starts=cluster_starts(subject)),
            sigma2=sigma2,
            ranef=b,
            n_iter=int(res.nit),
            notes="" if res.success else str(res.message),
        )


def make_backend(
    is_gee: bool = False,
    is_glmm: bool = False,
    cor_structure: str = "ar1",
    bias_correction: Optional[str] = None,
) -> ModelBackend:
    """Select the backend for a whole run.

    Parameters
    ----------
    is_gee : bool, optional
        Use the GEE backend (default: False).
    is_glmm : bool, optional
        Use the GLMM backend (default: False).
    cor_structure : str, optional
        GEE working correlation (default: "ar1").
    bias_correction : {"kc", "df"}, optional
        GEE sandwich bias correction; requesting one turns the sandwich on.

    Returns
    -------
    ModelBackend
        The backend instance.
    """
    if is_gee and is_glmm:
        raise ValueError("Choose at most one of the GEE and GLMM frameworks.")
    if is_gee:
        return GEEBackend(
            cor_structure=cor_structure,
            sandwich=bias_correction is not None,
            bias_correction=bias_correction,
        )
    if is_glmm:
        return GLMMBackend()
    return GLMBackend()
