"""Tests for log fold change shrinkage."""
import pytest
import numpy as np

from lfc_shrink import MIN_PRIOR_SCALE, estimate_prior_variance, shrink_lfc


@pytest.mark.parametrize("method", ["cauchy", "normal"])
def test_larger_standard_error_shrinks_more(method):
    mle = np.array([1.5, 1.5])
    se = np.array([0.2, 2.0])
    result = shrink_lfc(mle, se, method=method, prior_scale=1.0)
    assert abs(result.lfc[1]) < abs(result.lfc[0])


@pytest.mark.parametrize("method", ["cauchy", "normal"])
def test_shrinkage_never_increases_magnitude(method):
    rng = np.random.RandomState(0)
    mle = rng.normal(0, 2, size=500)
    se = rng.uniform(0.05, 2.0, size=500)
    result = shrink_lfc(mle, se, method=method)
    assert np.all(np.abs(result.lfc) <= np.abs(mle) + 1e-9)
    assert np.all(np.sign(result.lfc[mle != 0]) * np.sign(mle[mle != 0]) >= 0)


def test_normal_prior_closed_form():
    result = shrink_lfc(np.array([2.0]), np.array([1.0]), method="normal", prior_scale=1.0)
    assert result.lfc[0] == pytest.approx(1.0)
    assert result.posterior_sd[0] == pytest.approx(np.sqrt(0.5))


def test_cauchy_leaves_strong_effects_nearly_untouched():
    result = shrink_lfc(np.array([5.0, 0.3]), np.array([0.1, 1.0]), prior_scale=1.0)
    assert result.lfc[0] == pytest.approx(5.0, abs=0.01)
    assert abs(result.lfc[1]) < 0.3


def test_cauchy_is_antisymmetric():
    mle = np.array([0.8, -0.8, 3.0, -3.0])
    se = np.array([0.5, 0.5, 1.2, 1.2])
    result = shrink_lfc(mle, se, prior_scale=0.7)
    np.testing.assert_allclose(result.lfc[0], -result.lfc[1])
    np.testing.assert_allclose(result.lfc[2], -result.lfc[3])


def test_missing_inputs_stay_missing():
    mle = np.array([1.0, np.nan, 2.0])
    se = np.array([0.5, 0.5, np.nan])
    result = shrink_lfc(mle, se, prior_scale=1.0)
    assert np.isfinite(result.lfc[0])
    assert np.isnan(result.lfc[1:]).all()
    assert np.isnan(result.lower[1:]).all()
    assert np.isnan(result.upper[1:]).all()


def test_interval_brackets_estimate():
    rng = np.random.RandomState(1)
    mle = rng.normal(0, 1.5, size=200)
    se = rng.uniform(0.1, 1.0, size=200)
    result = shrink_lfc(mle, se, level=0.9)
    ok = np.isfinite(result.posterior_sd)
    assert ok.sum() > 150
    assert np.all(result.lower[ok] < result.lfc[ok])
    assert np.all(result.upper[ok] > result.lfc[ok])
    assert result.level == 0.9


def test_prior_variance_recovered():
    rng = np.random.RandomState(2)
    true_lfc = rng.normal(0, 1.0, size=4000)
    se = np.full(4000, 0.3)
    mle = true_lfc + rng.normal(0, 0.3, size=4000)
    assert estimate_prior_variance(mle, se) == pytest.approx(1.0, rel=0.1)


def test_pure_noise_collapses_prior():
    rng = np.random.RandomState(3)
    se = np.full(2000, 0.5)
    mle = rng.normal(0, 0.5, size=2000) * 0.8
    assert estimate_prior_variance(mle, se) == 0.0
    result = shrink_lfc(mle, se, method="normal")
    assert result.prior_scale == MIN_PRIOR_SCALE
    assert np.max(np.abs(result.lfc)) < 0.01


def test_unknown_method():
    with pytest.raises(ValueError):
        shrink_lfc(np.array([1.0]), np.array([1.0]), method="ashr")
