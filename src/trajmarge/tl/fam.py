"""Negative Binomial (NB2) family with log link."""

from __future__ import annotations

import warnings

import numpy as np
from scipy.optimize import minimize_scalar
from scipy.special import gammaln


class NegBin:
    """Negative Binomial (NB2) family (Poisson–Gamma mixture).

    We assume: Y_i ~ NB(mu_i, theta), with Var(Y_i) = mu_i + mu_i^2 / theta.
    ``theta`` is the size parameter (``glm.nb`` convention); the dispersion
    is ``alpha = 1 / theta``.

    Notes
    -----
    - The link is always log, so ``d mu / d eta = mu``.
    - Large ``theta`` approaches the Poisson family.

    Parameters
    ----------
    theta : float, optional
        Size parameter (default: 1.0).
    """

    def __init__(self, theta: float = 1.0) -> None:
        """Initialize NegBin family with size parameter theta."""
        self.theta = float(max(theta, np.finfo(float).tiny))

    @property
    def alpha(self) -> float:
        """NB2 dispersion ``1 / theta``."""
        return 1.0 / self.theta

    # --- Variance function ---
    def V(self, mu: np.ndarray) -> np.ndarray:
        """Var(Y|mu) = mu + mu^2 / theta.

        Parameters
        ----------
        mu : np.ndarray
            Mean vector.

        Returns
        -------
        np.ndarray
            Variance vector (same shape as mu)
        """
        return mu + np.power(mu, 2) / self.theta

    # --- IRLS pieces for the log link ---
    def weights(self, mu: np.ndarray) -> np.ndarray:
        """Working weights (d mu / d eta)^2 / Var(Y) = mu^2 / (mu + mu^2 / theta)."""
        return (mu * mu) / (self.V(mu) + 1e-12)

    @staticmethod
    def working_response(eta: np.ndarray, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        """Pseudo response z = eta + (y - mu) / mu."""
        return eta + (y - mu) / (mu + 1e-12)

    # --- Log-likelihood / log-pmf ---
    def lp(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        """Log-probability of each observation.

        Parameters
        ----------
        y : np.ndarray
            Observed non-negative integer counts.
        mu : np.ndarray
            Mean vector (same shape as y).

        Returns
        -------
        np.ndarray
            Log-probability vector (same shape as y and mu)
        """
        r = self.theta
        y = np.asarray(y, dtype=float)
        mu = np.clip(np.asarray(mu, dtype=float), 1e-300, None)
        return (
            gammaln(y + r)
            - gammaln(r)
            - gammaln(y + 1.0)
            + r * (np.log(r) - np.log(r + mu))
            + y * (np.log(mu) - np.log(r + mu))
        )

    def llk(self, y: np.ndarray, mu: np.ndarray) -> float:
        """Sum of log pmf values (log-likelihood)."""
        return float(np.sum(self.lp(y, mu)))

    # --- Deviance (NB2) ---
    # per-observation deviance contribution:
    # D_i = 2 * [ y_i * log(y_i / mu_i) - (y_i + theta) * log( (y_i + theta) / (mu_i + theta) ) ]
    # with the convention 0 * log(0/.) := 0
    def D(self, y: np.ndarray, mu: np.ndarray) -> np.ndarray:
        """Per-observation deviance contributions.

        Parameters
        ----------
        y : np.ndarray
            Observed non-negative integer counts.
        mu : np.ndarray
            Mean vector (same shape as y).

        Returns
        -------
        np.ndarray
            Per-observation deviance contributions (same shape as y).
        """
        n = self.theta
        y = np.asarray(y, dtype=float)
        mu = np.asarray(mu, dtype=float)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            term1 = y * (np.log(y) - np.log(mu))
            term2 = (y + n) * (np.log(y + n) - np.log(mu + n))

        # y == 0: y * log(y / mu) -> 0
        term1 = np.where(y > 0, term1, 0.0)
        term2 = np.where(np.isfinite(term2), term2, 0.0)
        return np.maximum(2.0 * (term1 - term2), 0.0)

    def deviance(self, y: np.ndarray, mu: np.ndarray) -> float:
        """Total deviance."""
        return float(np.sum(self.D(y, mu)))

    # --- Initialization for mu ---
    @staticmethod
    def init_mu(y: np.ndarray) -> np.ndarray:
        """Starting means ``y + 0.1`` (as in ``glm.fit`` for count families)."""
        return np.asarray(y, dtype=float) + 0.1



def theta_ml(
    y: np.ndarray, mu: np.ndarray, bounds: tuple[float, float] = (1e-4, 1e5)
) -> float:
    """Maximum-likelihood size parameter for fixed means.

    The search runs on ``log(theta)`` inside ``bounds``; under-dispersed data
    end up at the upper bound.

    Parameters
    ----------
    y : np.ndarray
        Observed counts.
    mu : np.ndarray
        Fitted means.
    bounds : tuple[float, float], optional
        Lower and upper limits for theta (default: (1e-4, 1e5)).

    Returns
    -------
    float
        The estimated theta.
    """
    lo, hi = np.log(bounds[0]), np.log(bounds[1])

    def _nll(log_theta: float) -> float:
        return -NegBin(np.exp(log_theta)).llk(y, mu)

    res = minimize_scalar(_nll, bounds=(lo, hi), method="bounded", options={"xatol": 1e-6})
    return float(np.exp(res.x))
