import numpy as np
import pytest
from numpy.testing import assert_allclose

from trajmarge.tl.basis import (
    BasisTerm,
    SpanChecker,
    candidate_knots,
    column_names,
    design_matrix,
    fixed_knots,
    hinge,
    mirror_pair,
)


def test_hinge_directions():
    x = np.array([0.0, 0.5, 1.0])
    assert_allclose(hinge(x, 0.5, "+"), [0.0, 0.0, 0.5])
    assert_allclose(hinge(x, 0.5, "-"), [0.5, 0.0, 0.0])
    with pytest.raises(ValueError):
        hinge(x, 0.5, "*")


def test_term_product_and_names():
    X = np.column_stack([np.linspace(0, 1, 5), np.linspace(1, 0, 5)])
    root = BasisTerm(0.25, "+", var=0)
    child = BasisTerm(0.5, "-", var=1, parent=root)
    assert child.degree == 2
    assert child.variables == frozenset({0, 1})
    assert_allclose(child.evaluate(X), hinge(X[:, 0], 0.25, "+") * hinge(X[:, 1], 0.5, "-"))
    assert root.name == "h(x0-0.25)"
    assert child.name == "h(x0-0.25)*h(0.5-x1)"
    assert column_names([root]) == ("Intercept", "h(x0-0.25)")


def test_design_matrix_and_mirror_pair():
    X = np.linspace(0, 1, 11)[:, None]
    pair = mirror_pair(X, 0.3)
    assert [t.direction for t, _ in pair] == ["+", "-"]
    B = design_matrix(X, [t for t, _ in pair])
    assert B.shape == (11, 3)
    assert_allclose(B[:, 0], 1.0)
    assert_allclose(B[:, 1] - B[:, 2], X[:, 0] - 0.3)


def test_candidate_knots_exhaustive():
    x = np.array([0.3, 0.1, 0.2, 0.2, 0.9])
    knots = candidate_knots(x, approx_knot=False)
    assert_allclose(knots, [0.1, 0.2, 0.3])
    assert candidate_knots(np.ones(10)).size == 0


def test_candidate_knots_approx_is_thinned_and_seeded():
    x = np.random.default_rng(0).uniform(0, 1, 2000)
    a = candidate_knots(x, approx_knot=True, rng=np.random.default_rng(3), max_knots=20)
    b = candidate_knots(x, approx_knot=True, rng=np.random.default_rng(3), max_knots=20)
    assert a.size == 20
    assert_allclose(a, b)
    assert a[0] == x.min()
    assert np.all(np.diff(a) > 0)
    assert a[-1] < x.max()


def test_fixed_knots_layout():
    t = np.linspace(2.0, 7.0, 30)
    terms = fixed_knots(t)
    assert len(terms) == 5
    assert all(term.direction == "+" for term in terms)
    assert terms[0].knot == 2.0
    assert_allclose([term.knot for term in terms[1:]], [3.0, 4.0, 5.0, 6.0])


def test_span_checker_rejects_degenerate_columns():
    x = np.linspace(0, 1, 20)
    B = np.column_stack([np.ones(20), x])
    checker = SpanChecker(B)
    assert checker.is_degenerate(np.full(20, 3.0))
    assert checker.is_degenerate(np.zeros(20))
    assert checker.is_degenerate(2.0 * x + 1.0)
    assert checker.is_degenerate(np.r_[np.nan, x[1:]])
    assert not checker.is_degenerate(hinge(x, 0.5, "+"))


def test_filter_pair_drops_zero_and_dependent_halves():
    X = np.linspace(0, 1, 20)[:, None]
    checker = SpanChecker(np.ones((20, 1)))
    kept = checker.filter_pair(mirror_pair(X, 0.0))
    # the "-" hinge at the minimum is identically zero
    assert [t.direction for t, _ in kept] == ["+"]

    # once x is in the design, a mirror pair adds only one new direction
    checker = SpanChecker(np.column_stack([np.ones(20), X[:, 0]]))
    kept = checker.filter_pair(mirror_pair(X, 0.5))
    assert len(kept) == 1
