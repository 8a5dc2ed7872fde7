# test_permutation_test.py
import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent))
from otu_selectivity.errors import InsufficientSamples
from otu_selectivity.training.permutation_test import (
    empirical_p_values,
    permutation_p_values,
    significance,
)
from otu_selectivity.training.selectivity_ratio import estimate, fold_mean_ratio, standardize_xy


def _test_against_estimate(X, y, n_folds=10, seed=0, **kwargs):
    sr = estimate(X, y, n_folds=n_folds, random_state=seed)
    result = permutation_p_values(
        X, y, sr.ratio, n_components=sr.nlv, folds=sr.folds, random_state=seed, **kwargs
    )
    return sr, result


def test_empirical_p_values():
    null = np.array([[0.1, 5.0, 1.0], [0.2, 6.0, 1.0], [0.3, 7.0, 1.0], [2.0, 8.0, 1.0]])
    p = empirical_p_values(null, np.array([1.0, -5.5, np.nan]))
    np.testing.assert_allclose(p[:2], [0.25, 0.75])
    assert np.isnan(p[2])


def test_empirical_p_values_without_trials():
    p = empirical_p_values(np.empty((0, 2)), np.array([1.0, 2.0]))
    assert np.isnan(p).all()


def test_significance_threshold():
    flags = significance(np.array([0.01, 0.1, 0.5, np.nan]), alpha=0.1)
    assert flags.tolist() == [True, False, False, False]


def test_strong_signal_is_significant():
    rng = np.random.default_rng(0)
    X = rng.normal(size=(40, 6))
    y = 2.0 * X[:, 0] + 0.3 * rng.normal(size=40)
    _, result = _test_against_estimate(X, y, n_permutations=200)
    assert result.n_completed == 200
    assert result.null_ratios.shape == (200, 6)
    assert result.p_values[0] < 0.05
    assert np.median(result.p_values[1:]) > 0.1


def test_null_uses_the_components_of_the_estimate():
    rng = np.random.default_rng(8)
    X = rng.normal(size=(4, 5))
    y = rng.normal(size=4)
    sr = estimate(X, y, n_folds=5, random_state=0)
    assert sr.nlv == 2  # three rows per subsample
    result = permutation_p_values(X, y, sr.ratio, n_permutations=10, folds=sr.folds, random_state=0)
    assert result.n_components == sr.nlv
    result = permutation_p_values(
        X, y, sr.ratio, n_permutations=10, n_components=sr.nlv, folds=sr.folds, random_state=0,
    )
    assert result.n_components == sr.nlv


def test_null_statistic_matches_observed_on_unshuffled_response():
    rng = np.random.default_rng(9)
    X = rng.normal(size=(6, 4))
    y = X[:, 0] + rng.normal(size=6)
    sr = estimate(X, y, n_folds=5, random_state=0)
    Xs, ys = standardize_xy(X, y)
    np.testing.assert_allclose(fold_mean_ratio(Xs, ys, sr.folds, sr.nlv, "target_projection"), sr.ratio, rtol=1e-10)


@pytest.mark.parametrize("n_rows", [6, 20])
def test_calibration_under_random_response(n_rows):
    alpha = 0.1
    flagged = []
    for seed in range(40):
        rng = np.random.default_rng(100 + seed)
        X = rng.normal(size=(n_rows, 8))
        y = rng.normal(size=n_rows)
        _, result = _test_against_estimate(X, y, n_folds=5, seed=seed, n_permutations=100)
        flagged.append(significance(result.p_values, alpha))
    rate = np.mean(np.concatenate(flagged))
    assert abs(rate - alpha) < 0.06


def test_results_do_not_depend_on_workers():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(20, 4))
    y = X[:, 1] + rng.normal(size=20)
    sr = estimate(X, y, n_folds=5, random_state=0)
    common = dict(n_permutations=30, random_state=3, n_components=sr.nlv, folds=sr.folds)
    a = permutation_p_values(X, y, sr.ratio, n_jobs=1, batch_size=7, **common)
    b = permutation_p_values(X, y, sr.ratio, n_jobs=2, batch_size=30, **common)
    np.testing.assert_allclose(a.null_ratios, b.null_ratios, rtol=1e-10)
    np.testing.assert_array_equal(a.p_values, b.p_values)


def test_time_budget_stops_at_batch_boundary():
    rng = np.random.default_rng(4)
    X = rng.normal(size=(20, 4))
    y = rng.normal(size=20)
    result = permutation_p_values(
        X, y, np.ones(4), n_permutations=50, random_state=0, max_seconds=0.0, batch_size=10,
    )
    assert result.n_requested == 50
    assert result.n_completed == 10
    assert np.isfinite(result.p_values).all()


def test_observed_ratio_shape_is_checked():
    X = np.random.default_rng(5).normal(size=(10, 3))
    with pytest.raises(ValueError, match="observed_ratio"):
        permutation_p_values(X, X[:, 0], np.ones(4), n_permutations=5)


def test_too_many_components_for_the_data():
    X = np.random.default_rng(6).normal(size=(4, 3))
    with pytest.raises(InsufficientSamples):
        permutation_p_values(X, X[:, 0], np.ones(3), n_permutations=5, n_components=4)
    folds = [np.arange(3), np.arange(1, 4)]
    with pytest.raises(InsufficientSamples):
        permutation_p_values(X, X[:, 0], np.ones(3), n_permutations=5, n_components=3, folds=folds)
