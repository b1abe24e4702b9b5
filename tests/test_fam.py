import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.stats import nbinom

from trajmarge.tl.fam import NegBin, theta_ml
from trajmarge.tl.irls import ols_probe, solve_wls


def rng(seed=0):
    return np.random.default_rng(seed)


def test_lp_matches_scipy():
    r = rng(1)
    y = r.integers(0, 30, size=50).astype(float)
    mu = r.uniform(0.1, 10.0, size=50)
    theta = 3.0
    ref = nbinom.logpmf(y, n=theta, p=theta / (theta + mu))
    assert_allclose(NegBin(theta).lp(y, mu), ref, rtol=1e-10, atol=1e-10)


def test_variance_and_weights():
    fam = NegBin(theta=2.0)
    mu = np.array([0.5, 1.0, 4.0])
    assert_allclose(fam.V(mu), mu + mu**2 / 2.0)
    assert_allclose(fam.weights(mu), mu**2 / (mu + mu**2 / 2.0), rtol=1e-9)
    assert fam.alpha == 0.5


def test_deviance_is_zero_at_saturation_and_nonnegative():
    fam = NegBin(theta=4.0)
    y = np.array([0.0, 1.0, 3.0, 10.0])
    assert_allclose(fam.D(y, np.where(y > 0, y, 1e-12)), 0.0, atol=1e-8)
    d = fam.D(y, np.full(4, 2.5))
    assert np.all(d >= 0)
    assert d[0] > 0


def test_theta_ml_recovers_size():
    r = rng(2)
    mu = np.full(20000, 5.0)
    y = r.negative_binomial(3.0, 3.0 / (3.0 + mu)).astype(float)
    assert abs(theta_ml(y, mu) - 3.0) < 0.3


def test_theta_ml_hits_upper_bound_without_overdispersion():
    y = np.full(50, 4.0)
    mu = np.full(50, 4.0)
    assert theta_ml(y, mu, bounds=(1e-4, 1e5)) > 1e4


def test_solve_wls_matches_weighted_lstsq():
    r = rng(3)
    X = np.column_stack([np.ones(40), r.normal(size=40)])
    z = r.normal(size=40)
    w = r.uniform(0.5, 2.0, size=40)
    beta = solve_wls(X, z, w)
    sw = np.sqrt(w)
    ref = np.linalg.lstsq(X * sw[:, None], z * sw, rcond=None)[0]
    assert beta.shape == (2,)
    assert_allclose(beta, ref, rtol=1e-10)


def test_solve_wls_raises_on_singular_design():
    X = np.column_stack([np.ones(10), np.ones(10)])
    with pytest.raises(np.linalg.LinAlgError):
        solve_wls(X, np.ones(10), np.ones(10))


def test_ols_probe_flags_aliased_columns():
    r = rng(4)
    x = r.normal(size=30)
    y = r.normal(size=30)
    full = ols_probe(np.column_stack([np.ones(30), x]), y)
    assert np.isfinite(full).all()
    aliased = ols_probe(np.column_stack([np.ones(30), x, x]), y)
    assert np.isfinite(aliased[:2]).all()
    assert np.isnan(aliased[2])
    assert np.isnan(ols_probe(np.ones((5, 1)), np.array([1.0, np.nan, 2.0, 3.0, 4.0]))).all()
