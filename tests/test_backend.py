import numpy as np
import pytest
from numpy.testing import assert_allclose

from trajmarge.tl.backend import (
    FitFailure,
    FitSuccess,
    GEEBackend,
    GLMBackend,
    GLMMBackend,
    WorkingCovariance,
    _irls,
    cluster_starts,
    estimate_correlation,
    make_backend,
    numerical_hessian,
)
from trajmarge.tl.fam import NegBin

# -------------------------
# Helpers / tiny generators
# -------------------------


def rng(seed=0):
    return np.random.default_rng(seed)


def simulate(seed, n=1500, b0=1.0, b1=1.5, theta=4.0):
    r = rng(seed)
    t = r.uniform(0, 1, n)
    X = np.column_stack([np.ones(n), t])
    mu = np.exp(b0 + b1 * t)
    y = r.negative_binomial(theta, theta / (theta + mu)).astype(float)
    return X, y


def dense_precision(W: WorkingCovariance) -> np.ndarray:
    n = W.n
    V = np.zeros((n, n))
    ends = np.append(W.starts[1:], n)
    for lo, hi in zip(W.starts, ends):
        s = np.sqrt(W.phi * W.variance[lo:hi])
        V[lo:hi, lo:hi] = s[:, None] * W.correlation_block(hi - lo) * s[None, :]
    return np.linalg.inv(V)


# -----------
# GLM
# -----------


def test_glm_recovers_coefficients_and_size():
    X, y = simulate(1)
    res = GLMBackend().fit(X, y)
    assert isinstance(res, FitSuccess)
    m = res.model
    assert m.converged
    assert_allclose(m.coef, [1.0, 1.5], atol=0.2)
    assert 2.5 < m.theta < 6.0
    assert_allclose(m.loglik, NegBin(m.theta).llk(y, m.mu))
    assert m.cov.shape == (2, 2)
    assert np.all(m.std_errors > 0)


def test_glm_with_fixed_theta():
    X, y = simulate(2, n=500)
    free = GLMBackend()
    fixed = free.with_theta(2.0)
    assert fixed is not free and fixed.theta == 2.0 and free.theta is None
    m = fixed.fit(X, y).model
    assert m.theta == 2.0
    beta, _, _, _, _ = _irls(X, y, np.zeros(y.size), NegBin(2.0), NegBin.init_mu(y), 100, 1e-12)
    assert_allclose(m.coef, beta, atol=1e-4)
    assert m.loglik <= free.fit(X, y).model.loglik + 1e-8
    gee = GEEBackend()
    assert gee.with_theta(2.0) is gee


def test_glm_offset_shifts_intercept():
    X, y = simulate(2)
    base = GLMBackend().fit(X, y).model
    shifted = GLMBackend().fit(X, y, offset=np.full(y.size, np.log(2.0))).model
    assert_allclose(shifted.coef[0], base.coef[0] - np.log(2.0), atol=1e-4)
    assert_allclose(shifted.coef[1], base.coef[1], atol=1e-4)


@pytest.mark.parametrize(
    "y, X",
    [
        (np.zeros(20), np.ones((20, 1))),
        (-np.ones(20), np.ones((20, 1))),
        (np.ones(2), np.ones((2, 3))),
        (np.r_[np.nan, np.ones(19)], np.ones((20, 1))),
    ],
)
def test_glm_invalid_inputs_are_failures(y, X):
    res = GLMBackend().fit(X, y)
    assert isinstance(res, FitFailure)
    assert res.reason == "invalid_input"
    assert "GLM" in str(res)


# -----------------------
# Working covariance
# -----------------------


@pytest.mark.parametrize("structure", ["independence", "exchangeable", "ar1"])
def test_working_covariance_matches_dense_inverse(structure):
    r = rng(3)
    subject = np.repeat([0, 1, 2, 3], [4, 1, 6, 3])
    n = subject.size
    W = WorkingCovariance(
        variance=r.uniform(0.5, 3.0, n),
        starts=cluster_starts(subject),
        structure=structure,
        alpha=0.4,
        phi=1.7,
    )
    ref = dense_precision(W)
    M = r.normal(size=(n, 3))
    assert_allclose(W.solve(M), ref @ M, rtol=1e-10, atol=1e-10)
    assert_allclose(W.solve(M[:, 0]), ref @ M[:, 0], rtol=1e-10, atol=1e-10)
    assert_allclose(W.block(2), ref[5:11, 5:11], rtol=1e-10, atol=1e-10)


def test_cluster_starts_and_sums():
    subject = np.array(["a", "a", "b", "c", "c", "c"])
    starts = cluster_starts(subject)
    assert_allclose(starts, [0, 2, 3])
    W = WorkingCovariance(np.ones(6), starts)
    assert_allclose(W.cluster_sums(np.arange(6.0)), [1.0, 2.0, 12.0])


def test_estimate_correlation():
    starts = np.arange(0, 40, 4)
    e = np.repeat(rng(4).normal(size=10), 4)  # perfectly correlated within clusters
    assert estimate_correlation(e, starts, "independence", 2, 1.0) == 0.0
    assert estimate_correlation(e, starts, "exchangeable", 2, float(np.mean(e**2))) > 0.5
    assert estimate_correlation(e, starts, "ar1", 2, float(np.mean(e**2))) > 0.5


# -----------
# GEE
# -----------


def test_gee_independence_matches_fixed_size_glm():
    X, y = simulate(5, n=400)
    subject = np.repeat(np.arange(40), 10)
    gee = GEEBackend(cor_structure="independence").fit(X, y, subject=subject).model
    beta, _, _, _, _ = _irls(X, y, np.zeros(y.size), NegBin(50.0), NegBin.init_mu(y), 100, 1e-12)
    assert_allclose(gee.coef, beta, atol=1e-5)
    assert gee.cor_alpha == 0.0
    assert gee.phi > 0


def test_gee_requires_subject():
    X, y = simulate(6, n=100)
    res = GEEBackend().fit(X, y)
    assert isinstance(res, FitFailure)
    assert res.reason == "invalid_input"


def test_gee_sandwich_and_df_correction(clustered_series):
    t, y, subject = clustered_series
    X = np.column_stack([np.ones(t.size), t])
    plain = GEEBackend(cor_structure="exchangeable", sandwich=True).fit(X, y, subject=subject)
    df = GEEBackend(cor_structure="exchangeable", bias_correction="df").fit(X, y, subject=subject)
    kc = GEEBackend(cor_structure="exchangeable", bias_correction="kc").fit(X, y, subject=subject)
    for res in (plain, df, kc):
        assert isinstance(res, FitSuccess)
        cov = res.model.cov_robust
        assert_allclose(cov, cov.T)
        assert np.all(np.diag(cov) > 0)
    K, p = 10, 2
    assert_allclose(df.model.cov_robust, plain.model.cov_robust * K / (K - p), rtol=1e-8)
    assert not np.allclose(kc.model.cov_robust, plain.model.cov_robust)


def test_gee_rejects_unknown_structure():
    with pytest.raises(ValueError):
        GEEBackend(cor_structure="toeplitz")


# -----------
# GLMM
# -----------


def test_glmm_random_intercept(clustered_series):
    t, y, subject = clustered_series
    X = np.column_stack([np.ones(t.size), t])
    backend = GLMMBackend()
    assert isinstance(backend.search_backend, GLMBackend)
    res = backend.fit(X, y, subject=subject)
    assert isinstance(res, FitSuccess)
    m = res.model
    assert m.backend == "GLMM"
    assert m.sigma2 > 0
    assert m.ranef.shape == (10,)
    assert np.isfinite(m.loglik)
    assert m.coef[1] > 0
    glm = GLMBackend().fit(X, y).model
    assert_allclose(m.coef[1], glm.coef[1], atol=0.5)
    assert_allclose(m.cov, m.cov.T)
    assert np.all(np.linalg.eigvalsh(m.cov) > 0)


def test_numerical_hessian_of_quadratic():
    A = np.array([[3.0, 1.0], [1.0, 2.0]])
    H = numerical_hessian(lambda x: 0.5 * x @ A @ x + x.sum(), np.array([0.3, -1.2]))
    assert_allclose(H, A, atol=1e-5)


def test_make_backend_dispatch():
    assert isinstance(make_backend(), GLMBackend)
    gee = make_backend(is_gee=True, cor_structure="exchangeable", bias_correction="kc")
    assert isinstance(gee, GEEBackend)
    assert gee.sandwich and gee.bias_correction == "kc"
    assert isinstance(make_backend(is_glmm=True), GLMMBackend)
    with pytest.raises(ValueError):
        make_backend(is_gee=True, is_glmm=True)
