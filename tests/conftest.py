"""Fixtures for testing."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def simulate_nb2(rng: np.random.Generator, mu: np.ndarray, theta: float) -> np.ndarray:
    """NB2 counts with mean ``mu`` and size ``theta`` (Gamma-Poisson mixture)."""
    rate = rng.gamma(shape=theta, scale=np.asarray(mu, dtype=float) / theta)
    return rng.poisson(rate).astype(float)


def hinge_mean(t: np.ndarray, knot: float = 0.5, low: float = 2.0, slope: float = 30.0):
    """Flat mean up to ``knot``, then linear increase."""
    return low + slope * np.maximum(t - knot, 0.0)


# ---------------------------------------------------------------------
# Global marks / utilities
# ---------------------------------------------------------------------

pytestmark = pytest.mark.filterwarnings("ignore::RuntimeWarning")


@pytest.fixture(scope="session")
def rng():
    """Session-scoped RNG for deterministic tests."""
    return np.random.default_rng(1234)


@pytest.fixture
def hinge_series():
    """A single lineage whose mean bends upward at t = 0.5."""
    r = np.random.default_rng(7)
    t = np.sort(r.uniform(0, 1, 200))
    y = simulate_nb2(r, hinge_mean(t), theta=5.0)
    return t, y


@pytest.fixture
def flat_series():
    """Counts with a constant mean along pseudotime."""
    r = np.random.default_rng(11)
    t = np.sort(r.uniform(0, 1, 150))
    y = simulate_nb2(r, np.full(t.size, 6.0), theta=5.0)
    return t, y


@pytest.fixture
def clustered_series():
    """Hinge-shaped counts from 10 subjects with subject-level shifts."""
    r = np.random.default_rng(21)
    n_subjects, per = 10, 15
    subject = np.repeat(np.arange(n_subjects), per)
    t = np.tile(np.linspace(0, 1, per), n_subjects)
    shift = r.normal(0, 0.3, n_subjects)[subject]
    y = simulate_nb2(r, hinge_mean(t, knot=0.4, slope=20.0) * np.exp(shift), theta=8.0)
    return t, y, subject


@pytest.fixture
def two_lineage_data():
    """Four genes on two lineages of 25 cells each.

    Gene ``rise`` increases along lineage A; on lineage B every gene is
    exactly constant (4 counts per cell).
    """
    n = 50
    pt = pd.DataFrame(
        {
            "A": np.r_[np.linspace(0, 1, 25), np.full(25, np.nan)],
            "B": np.r_[np.full(25, np.nan), np.linspace(0, 1, 25)],
        }
    )
    r = np.random.default_rng(5)
    rise = np.r_[np.round(np.linspace(1, 60, 25)), np.full(25, 4.0)]
    other = np.r_[r.poisson(5, 25), np.full(25, 4.0)]
    fall = np.r_[np.round(np.linspace(50, 2, 25)), np.full(25, 4.0)]
    flat = np.full(n, 4.0)
    counts = pd.DataFrame(
        np.vstack([rise, other, fall, flat]).astype(float),
        index=["rise", "other", "fall", "flat"],
        columns=[f"c{i}" for i in range(n)],
    )
    return counts, pt


@pytest.fixture(autouse=True)
def _restore_package_logger():
    """Keep handlers/level set on the ``trajmarge`` logger from leaking across tests."""
    import logging

    logger = logging.getLogger("trajmarge")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
