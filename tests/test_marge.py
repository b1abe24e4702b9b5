from dataclasses import dataclass
from typing import ClassVar

import numpy as np
import pytest
from numpy.testing import assert_allclose

from trajmarge.tl.backend import FitFailure, GEEBackend, GLMBackend, GLMMBackend
from trajmarge.tl.marge import marge


@pytest.mark.parametrize("M", [1, 2, 3, 5])
def test_model_size_bound(hinge_series, M):
    t, y = hinge_series
    res = marge(t, y, M=M, rng=np.random.default_rng(0))
    assert res.ok
    assert len(res.terms) <= M
    assert res.model.n_coef == len(res.terms) + 1
    assert res.model.column_names[0] == "Intercept"


def test_backward_gcv_never_exceeds_forward(hinge_series):
    t, y = hinge_series
    res = marge(t, y, M=5, rng=np.random.default_rng(0))
    forward_gcv = res.gcv_path[0][1]
    best = min(g for _, g in res.gcv_path)
    assert best <= forward_gcv
    assert len(res.terms) == min(k for k, g in res.gcv_path if g == best)


def test_pruning_shares_the_forward_theta(hinge_series, monkeypatch):
    t, y = hinge_series
    thetas = []
    original = GLMBackend._fit_fixed

    def spy(self, X, y, offset):
        thetas.append(self.theta)
        return original(self, X, y, offset)

    monkeypatch.setattr(GLMBackend, "_fit_fixed", spy)
    res = marge(t, y, M=4, rng=np.random.default_rng(0))
    assert len(thetas) == len(res.gcv_path) - 1
    assert len(set(thetas)) == 1
    # the selected model is refitted with its own ML theta
    assert res.model.theta == pytest.approx(
        GLMBackend().fit(res.model.X, y).model.theta, rel=1e-6
    )


@pytest.mark.parametrize("seed", range(10))
def test_rising_trend_survives_pruning(seed):
    r = np.random.default_rng(seed)
    t = np.linspace(0, 1, 25)
    y = r.poisson(np.linspace(2, 40, 25)).astype(float)
    res = marge(t, y, M=5, rng=np.random.default_rng(seed))
    assert res.ok
    assert len(res.terms) >= 1
    null = GLMBackend().fit(np.ones((25, 1)), y).model
    assert res.model.loglik - null.loglik > 5


def test_flat_series_keep_few_terms():
    r = np.random.default_rng(99)
    t = np.linspace(0, 1, 100)
    sizes = []
    for i in range(40):
        y = r.negative_binomial(5.0, 5.0 / 11.0, t.size).astype(float)
        sizes.append(len(marge(t, y, M=5, rng=np.random.default_rng(i)).terms))
    sizes = np.asarray(sizes)
    assert np.mean(sizes == 0) > 0.3
    assert sizes.mean() < 2


def test_hinge_signal_is_found(hinge_series):
    t, y = hinge_series
    res = marge(t, y, M=3, rng=np.random.default_rng(0))
    null = GLMBackend().fit(np.ones((t.size, 1)), y).model
    assert len(res.terms) >= 1
    assert res.model.loglik - null.loglik > 20
    assert res.forward_scores[0] > 30


def test_constant_series_selects_no_terms():
    t = np.linspace(0, 1, 40)
    y = np.full(40, 4.0)
    res = marge(t, y, M=5, rng=np.random.default_rng(0))
    assert res.ok
    assert res.terms == ()
    assert_allclose(res.model.mu, 4.0, rtol=1e-6)


def test_search_is_reproducible(hinge_series):
    t, y = hinge_series
    a = marge(t, y, M=4, rng=np.random.default_rng(42))
    b = marge(t, y, M=4, rng=np.random.default_rng(42))
    assert a.terms == b.terms
    assert_allclose(a.model.coef, b.model.coef)


def test_exhaustive_knots(hinge_series):
    t, y = hinge_series
    res = marge(t[::4], y[::4], M=2, approx_knot=False)
    assert res.ok
    assert len(res.terms) <= 2


def test_gee_search(clustered_series):
    t, y, subject = clustered_series
    res = marge(t, y, subject=subject, backend=GEEBackend(), M=3, rng=np.random.default_rng(1))
    assert res.ok
    assert res.model.backend == "GEE"
    assert 1 <= len(res.terms) <= 3
    assert res.model.cor_alpha is not None


def test_glmm_refits_selected_basis(clustered_series):
    t, y, subject = clustered_series
    res = marge(t, y, subject=subject, backend=GLMMBackend(), M=3, rng=np.random.default_rng(1))
    assert res.ok
    assert res.model.backend == "GLMM"
    assert res.model.n_coef == len(res.terms) + 1
    assert res.model.sigma2 > 0


def test_glmm_fixed_basis(clustered_series):
    t, y, subject = clustered_series
    res = marge(t, y, subject=subject, backend=GLMMBackend(), adaptive=False)
    assert res.ok
    assert len(res.terms) == 5
    assert [term.direction for term in res.terms] == ["+"] * 5


@dataclass
class FlakyGLM(GLMBackend):
    """Fits the first ``good`` designs, then fails."""

    name: ClassVar[str] = "GLM"
    good: int = 1
    calls: int = 0

    def fit(self, X, y, offset=None, subject=None):
        self.calls += 1
        if self.calls > self.good:
            return FitFailure("singular", "injected", self.name)
        return super().fit(X, y, offset, subject)


def test_forward_failure_keeps_last_valid_model(hinge_series):
    t, y = hinge_series
    res = marge(t, y, backend=FlakyGLM(good=1), M=5, rng=np.random.default_rng(0))
    assert res.ok
    assert res.terms == ()
    assert any("singular" in note for note in res.notes)


def test_intercept_failure_is_reported(hinge_series):
    t, y = hinge_series
    res = marge(t, y, backend=FlakyGLM(good=0), M=5)
    assert not res.ok
    assert isinstance(res.fit, FitFailure)
