"""K-fold cross-validated prediction error of a PredictionRuleEnsemble."""

import logging
import warnings

import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.metrics import (
    accuracy_score,
    brier_score_loss,
    log_loss,
    mean_absolute_error,
    mean_poisson_deviance,
    mean_squared_error,
    roc_auc_score,
)
from sklearn.model_selection import KFold, StratifiedKFold

from .data import FeatureSpace, missing_response
from .families import get_family
from .penalized import cv_summary

logger = logging.getLogger(__name__)


def concordance_index(time, status, risk):
    """Harrell's C: fraction of comparable pairs ordered correctly by ``risk``.

    A pair is comparable when the shorter time is an event; ties in risk
    count one half.
    """
    time, status, risk = (np.asarray(a, dtype=np.float64) for a in (time, status, risk))
    earlier = (time[:, None] < time[None, :]) & (status[:, None] == 1)
    if not earlier.any():
        return np.nan
    higher = risk[:, None] > risk[None, :]
    tied = risk[:, None] == risk[None, :]
    return float((np.sum(earlier & higher) + 0.5 * np.sum(earlier & tied)) / np.sum(earlier))


def _regression_metrics(y, pred, classes):
    return {
        "mse": mean_squared_error(y, pred),
        "mae": mean_absolute_error(y, pred),
    }


def _binomial_metrics(y, pred, classes):
    metrics = {
        "brier": brier_score_loss(y, pred),
        "log_loss": log_loss(y, np.column_stack([1.0 - pred, pred]), labels=[0.0, 1.0]),
        "accuracy": accuracy_score(y, (pred > 0.5).astype(np.float64)),
    }
    if len(np.unique(y)) == 2:
        metrics["auc"] = roc_auc_score(y, pred)
    return metrics


def _multinomial_metrics(y, pred, classes):
    labels = np.argmax(y, axis=1)
    return {
        "log_loss": log_loss(labels, pred, labels=np.arange(y.shape[1])),
        "accuracy": accuracy_score(labels, np.argmax(pred, axis=1)),
    }


def _poisson_metrics(y, pred, classes):
    return {
        "poisson_deviance": mean_poisson_deviance(y, np.maximum(pred, 1e-10)),
        "mae": mean_absolute_error(y, pred),
    }


def _cox_metrics(y, pred, classes):
    return {"concordance": concordance_index(y[:, 0], y[:, 1], pred)}


_METRICS = {
    "gaussian": _regression_metrics,
    "binomial": _binomial_metrics,
    "multinomial": _multinomial_metrics,
    "poisson": _poisson_metrics,
    "cox": _cox_metrics,
    "mgaussian": _regression_metrics,
}


def _take(data, rows):
    if isinstance(data, (pd.DataFrame, pd.Series)):
        return data.iloc[rows]
    return data[rows]


def cross_validate(estimator, X, y, k_folds=10, seed=42, sample_weight=None):
    """Estimate out-of-sample error by refitting ``estimator`` on k folds.

    Each fold refits a clone of the estimator (including tree generation)
    on the other folds and predicts the held-out rows.
    Rows with a missing predictor or response are dropped first, with a
    warning; per-row outputs cover the remaining rows only.

    Parameters
    ----------
    estimator : PredictionRuleEnsemble
        Unfitted or fitted; only its parameters are used.
    X : array-like or DataFrame of shape (n_samples, n_features)
    y : array-like
    k_folds : int, default=10
    seed : int, default=42
        Seeds the fold assignment.
    sample_weight : array-like of shape (n_samples,), optional

    Returns
    -------
    result : dict
        ``mean_error`` / ``standard_error``: weighted mean and standard
        error over folds of the held-out deviance per unit weight;
        ``fold_assignments``: fold index per row; ``fold_predictions``:
        held-out predictions on the response scale; ``metrics``:
        family-specific scores on the pooled held-out predictions.
    """
    family = get_family(estimator.family)
    if not isinstance(X, pd.DataFrame):
        X = np.asarray(X)
    y_values = y.to_numpy() if isinstance(y, (pd.Series, pd.DataFrame)) else np.asarray(y)
    w = (np.ones(len(y_values)) if sample_weight is None
         else np.asarray(sample_weight, dtype=np.float64).ravel())

    space = FeatureSpace.from_data(X)
    incomplete = space.missing_mask(space.encode(X)) | missing_response(y_values)
    if incomplete.any():
        keep = np.flatnonzero(~incomplete)
        if not len(keep):
            raise ValueError("No complete rows left after dropping missing values")
        warnings.warn(
            f"Dropping {int(incomplete.sum())} of {len(y_values)} rows with missing "
            f"predictor or response values."
        )
        X, y_values, w = _take(X, keep), y_values[keep], w[keep]

    y_internal, classes = family.prepare(y_values)
    n = len(y_internal)

    labels = family.fold_labels(y_internal)
    if labels is None:
        splits = KFold(n_splits=k_folds, shuffle=True, random_state=seed).split(np.zeros(n))
    else:
        splits = StratifiedKFold(n_splits=k_folds, shuffle=True,
                                 random_state=seed).split(np.zeros(n), labels)

    folds = np.empty(n, dtype=int)
    n_outputs = y_internal.shape[1] if family.multi_response else None
    predictions = np.full((n, n_outputs) if n_outputs else n, np.nan)
    errors = np.full((k_folds, 1), np.nan)
    fold_weights = np.zeros(k_folds)

    for k, (train, test) in enumerate(splits):
        logger.info("Cross-validation fold %d/%d", k + 1, k_folds)
        folds[test] = k
        model = clone(estimator)
        model.fit(_take(X, train), _take(y_values, train), sample_weight=w[train])
        eta = model.predict(_take(X, test), type="link")
        predictions[test] = family.linkinv(eta)

        complete = ~np.isnan(eta) if eta.ndim == 1 else ~np.isnan(eta).any(axis=1)
        rows = test[complete]
        if len(rows):
            errors[k, 0] = family.deviance(y_internal[rows], eta[complete], w[rows]) / w[rows].sum()
            fold_weights[k] = w[rows].sum()

    cvm, cvsd = cv_summary(errors, fold_weights)
    complete = ~np.isnan(predictions) if predictions.ndim == 1 else ~np.isnan(predictions).any(axis=1)
    metrics = _METRICS[family.name](y_internal[complete], predictions[complete], classes)
    return {
        "mean_error": float(cvm[0]),
        "standard_error": float(cvsd[0]),
        "fold_assignments": folds,
        "fold_predictions": predictions,
        "metrics": {name: float(value) for name, value in metrics.items()},
    }
