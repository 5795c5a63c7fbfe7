"""Tests for k-fold cross-validation of the whole fitting procedure."""

import warnings
warnings.filterwarnings("ignore")

import numpy as np
import pytest

from predrules import PredictionRuleEnsemble, cross_validate
from predrules.cross_validation import concordance_index


def test_gaussian_cross_validation():
    rng = np.random.RandomState(21)
    n = 90
    X = rng.uniform(0, 1, (n, 3))
    y = 2.0 * (X[:, 0] > 0.5) + rng.normal(0, 0.3, n)
    model = PredictionRuleEnsemble(ntrees=20, nfolds=5)
    result = cross_validate(model, X, y, k_folds=3, seed=1)

    assert np.isfinite(result["mean_error"])
    assert result["standard_error"] >= 0
    assert set(result["fold_assignments"]) == {0, 1, 2}
    assert result["fold_predictions"].shape == (n,)
    assert result["metrics"]["mse"] < np.var(y)
    # The estimator passed in is left unfitted.
    assert not hasattr(model, "ensemble_")


def test_binomial_cross_validation_metrics():
    rng = np.random.RandomState(22)
    n = 120
    X = rng.uniform(0, 1, (n, 3))
    y = (X[:, 0] + rng.normal(0, 0.2, n) > 0.5).astype(int)
    result = cross_validate(
        PredictionRuleEnsemble(family="binomial", ntrees=20, nfolds=5, nlambda=30),
        X, y, k_folds=3,
    )
    metrics = result["metrics"]
    assert {"brier", "log_loss", "accuracy", "auc"} <= set(metrics)
    assert metrics["auc"] > 0.7
    assert np.all((result["fold_predictions"] >= 0) & (result["fold_predictions"] <= 1))


def test_concordance_index():
    time = np.array([1.0, 2.0, 3.0, 4.0])
    status = np.array([1, 1, 1, 0])
    assert concordance_index(time, status, [4.0, 3.0, 2.0, 1.0]) == pytest.approx(1.0)
    assert concordance_index(time, status, [1.0, 2.0, 3.0, 4.0]) == pytest.approx(0.0)
    assert concordance_index(time, status, [1.0, 1.0, 1.0, 1.0]) == pytest.approx(0.5)
    assert np.isnan(concordance_index(time, np.zeros(4), [1.0, 2.0, 3.0, 4.0]))


def test_gaussian_rows_with_missing_values_are_dropped():
    rng = np.random.RandomState(23)
    n = 90
    X = rng.uniform(0, 1, (n, 3))
    y = 2.0 * (X[:, 0] > 0.5) + rng.normal(0, 0.3, n)
    X[0, 2] = np.nan
    y[1] = np.nan
    with pytest.warns(UserWarning, match="Dropping 2 of 90"):
        result = cross_validate(PredictionRuleEnsemble(ntrees=20, nfolds=5), X, y, k_folds=3)
    assert np.isfinite(result["mean_error"])
    assert result["fold_predictions"].shape == (n - 2,)
    assert np.all(np.isfinite(list(result["metrics"].values())))


def test_binomial_missing_label_is_dropped():
    rng = np.random.RandomState(24)
    n = 120
    X = rng.uniform(0, 1, (n, 3))
    y = np.where(X[:, 0] + rng.normal(0, 0.2, n) > 0.5, "yes", "no").astype(object)
    y[5] = None
    with pytest.warns(UserWarning, match="Dropping 1 of 120"):
        result = cross_validate(
            PredictionRuleEnsemble(family="binomial", ntrees=20, nfolds=5, nlambda=30),
            X, y, k_folds=3,
        )
    assert len(result["fold_assignments"]) == n - 1
    assert np.all(np.isfinite(list(result["metrics"].values())))
