"""
Response families.

Each supported family is one entry of ``FAMILIES``: a frozen bundle of the
functions the ensemble needs (null fit, inverse link, negative gradient,
IRLS working response, deviance, fold stratification) plus the tag of the
penalized solver used for it.  The table is looked up once per fit with
:func:`get_family`; call sites never branch on the family name.

Internal response layouts:

    gaussian     (n,)    float
    binomial     (n,)    float in {0, 1}
    multinomial  (n, K)  one-hot class indicators
    poisson      (n,)    non-negative counts
    cox          (n, 2)  [time, status]
    mgaussian    (n, q)  float

The linear predictor ``eta`` is 2-D for multinomial and mgaussian and 1-D
otherwise.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from scipy.special import expit, logit, softmax, xlogy

from .exceptions import ConfigurationError

_EPS = 1e-10


# ---------------------------------------------------------------------------
# Response preparation
# ---------------------------------------------------------------------------


def _as_float_vector(y, name):
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 2 and y.shape[1] == 1:
        y = y.ravel()
    if y.ndim != 1:
        raise ValueError(f"{name} response must be 1-dimensional, got shape {y.shape}")
    return y


def _prepare_gaussian(y):
    return _as_float_vector(y, "gaussian"), None


def _prepare_binomial(y):
    y = np.asarray(y).ravel()
    classes = np.unique(y)
    if len(classes) != 2:
        raise ValueError(
            f"binomial response must have exactly 2 classes, got {len(classes)}: {classes}"
        )
    return (y == classes[1]).astype(np.float64), classes


def _prepare_multinomial(y):
    y = np.asarray(y).ravel()
    classes, codes = np.unique(y, return_inverse=True)
    if len(classes) < 2:
        raise ValueError(
            f"multinomial response must have at least 2 classes, got {classes}"
        )
    onehot = np.zeros((len(y), len(classes)))
    onehot[np.arange(len(y)), codes] = 1.0
    return onehot, classes


def _prepare_poisson(y):
    y = _as_float_vector(y, "poisson")
    if np.any(y < 0):
        raise ValueError("poisson response must be non-negative")
    return y, None


def _prepare_cox(y):
    if getattr(y, "dtype", None) is not None and y.dtype.names:
        y = np.column_stack([y["time"], y["status"]])
    y = np.asarray(y, dtype=np.float64)
    if y.ndim != 2 or y.shape[1] != 2:
        raise ValueError(
            f"cox response must have shape (n_samples, 2) [time, status], got {y.shape}"
        )
    if not np.all(np.isin(y[:, 1], (0.0, 1.0))):
        raise ValueError("cox status column must be coded 0 (censored) / 1 (event)")
    if np.any(y[:, 0] < 0):
        raise ValueError("cox survival times must be non-negative")
    return y, None


def _prepare_mgaussian(y):
    y = np.asarray(y, dtype=np.float64)
    if y.ndim != 2:
        raise ValueError(f"mgaussian response must be 2-dimensional, got shape {y.shape}")
    return y, None


# ---------------------------------------------------------------------------
# Null fits
# ---------------------------------------------------------------------------


def _weighted_mean(y, w):
    return np.average(y, axis=0, weights=w)


def _init_gaussian(y, w):
    return np.full(len(y), _weighted_mean(y, w))


def _init_binomial(y, w):
    p = np.clip(_weighted_mean(y, w), _EPS, 1 - _EPS)
    return np.full(len(y), logit(p))


def _init_multinomial(y, w):
    p = np.clip(_weighted_mean(y, w), _EPS, None)
    eta = np.log(p)
    return np.tile(eta - eta.mean(), (len(y), 1))


def _init_poisson(y, w):
    return np.full(len(y), np.log(max(_weighted_mean(y, w), _EPS)))


def _init_cox(y, w):
    return np.zeros(len(y))


def _init_mgaussian(y, w):
    return np.tile(_weighted_mean(y, w), (len(y), 1))


# ---------------------------------------------------------------------------
# Cox partial likelihood (Breslow ties)
# ---------------------------------------------------------------------------


def _cox_terms(y, eta, w):
    """Risk-set sums for the Breslow partial likelihood.

    Returns the per-observation risk ``r = w * exp(eta)``, the cumulative
    hazard increments ``A`` and ``B`` (sum of d/R and d/R^2 over event times
    up to each observation's time), the weighted event counts ``d`` and risk
    set totals ``R`` per unique time.
    """
    time, status = y[:, 0], y[:, 1]
    eta = eta - eta.max() if len(eta) else eta
    r = w * np.exp(eta)
    unique_times, inverse = np.unique(time, return_inverse=True)
    r_by_time = np.bincount(inverse, weights=r, minlength=len(unique_times))
    d = np.bincount(inverse, weights=w * status, minlength=len(unique_times))
    R = np.cumsum(r_by_time[::-1])[::-1]
    ratio = np.where(d > 0, d / np.maximum(R, _EPS), 0.0)
    ratio2 = np.where(d > 0, d / np.maximum(R, _EPS) ** 2, 0.0)
    A = np.cumsum(ratio)[inverse]
    B = np.cumsum(ratio2)[inverse]
    return r, A, B, d, R, eta


def _cox_negative_gradient(y, eta, w):
    r, A, _, _, _, _ = _cox_terms(y, eta, w)
    # Martingale residuals; the shift applied inside _cox_terms cancels in r * A.
    return y[:, 1] - r * A / np.maximum(w, _EPS)


def _cox_irls(y, eta, w):
    r, A, B, _, _, _ = _cox_terms(y, eta, w)
    grad = w * y[:, 1] - r * A
    hess = np.maximum(r * A - r ** 2 * B, _EPS)
    return eta + grad / hess, hess


def _cox_deviance(y, eta, w):
    _, _, _, d, R, shifted = _cox_terms(y, eta, w)
    # The overflow shift inside _cox_terms cancels between the two terms.
    loglik = np.sum(w * y[:, 1] * shifted) - np.sum(d[d > 0] * np.log(R[d > 0]))
    saturated = -np.sum(xlogy(d, d))
    return float(2.0 * (saturated - loglik))


# ---------------------------------------------------------------------------
# Other family functions
# ---------------------------------------------------------------------------


def _identity(eta):
    return eta


def _gaussian_gradient(y, eta, w):
    return y - eta


def _binomial_gradient(y, eta, w):
    return y - expit(eta)


def _multinomial_gradient(y, eta, w):
    return y - softmax(eta, axis=1)


def _poisson_gradient(y, eta, w):
    return y - np.exp(eta)


def _gaussian_irls(y, eta, w):
    return y, w


def _poisson_irls(y, eta, w):
    mu = np.exp(eta)
    return eta + (y - mu) / np.maximum(mu, _EPS), w * mu


def _gaussian_deviance(y, eta, w):
    resid = y - eta
    if resid.ndim == 2:
        return float(np.sum(w[:, None] * resid ** 2))
    return float(np.sum(w * resid ** 2))


def _binomial_deviance(y, eta, w):
    p = np.clip(expit(eta), _EPS, 1 - _EPS)
    return float(-2.0 * np.sum(w * (xlogy(y, p) + xlogy(1 - y, 1 - p))))


def _multinomial_deviance(y, eta, w):
    p = np.clip(softmax(eta, axis=1), _EPS, None)
    return float(-2.0 * np.sum(w[:, None] * xlogy(y, p)))


def _poisson_deviance(y, eta, w):
    mu = np.exp(eta)
    return float(2.0 * np.sum(w * (xlogy(y, y) - xlogy(y, mu) - (y - mu))))


def _stratify_binomial(y):
    return y.astype(int)


def _stratify_multinomial(y):
    return np.argmax(y, axis=1)


def _stratify_poisson(y):
    edges = np.unique(np.quantile(y, [0.25, 0.5, 0.75]))
    return np.digitize(y, edges)


def _stratify_cox(y):
    return y[:, 1].astype(int)


@dataclass(frozen=True)
class Family:
    """Functions defining one response family."""

    name: str
    solver: str
    has_intercept: bool
    multi_response: bool
    prepare: Callable
    init_eta: Callable
    linkinv: Callable
    negative_gradient: Callable
    deviance: Callable
    irls: Optional[Callable] = None
    stratify: Optional[Callable] = None
    node_models: bool = False
    raw_tree_response: bool = True

    def fold_labels(self, y):
        """Labels used to stratify cross-validation folds, or None."""
        return None if self.stratify is None else self.stratify(y)


FAMILIES = {
    "gaussian": Family(
        name="gaussian", solver="irls", has_intercept=True, multi_response=False,
        prepare=_prepare_gaussian, init_eta=_init_gaussian, linkinv=_identity,
        negative_gradient=_gaussian_gradient, deviance=_gaussian_deviance,
        irls=_gaussian_irls, node_models=True,
    ),
    "binomial": Family(
        name="binomial", solver="logistic", has_intercept=True, multi_response=False,
        prepare=_prepare_binomial, init_eta=_init_binomial, linkinv=expit,
        negative_gradient=_binomial_gradient, deviance=_binomial_deviance,
        stratify=_stratify_binomial, node_models=True,
    ),
    "multinomial": Family(
        name="multinomial", solver="logistic", has_intercept=True, multi_response=True,
        prepare=_prepare_multinomial, init_eta=_init_multinomial,
        linkinv=lambda eta: softmax(eta, axis=1),
        negative_gradient=_multinomial_gradient, deviance=_multinomial_deviance,
        stratify=_stratify_multinomial,
    ),
    "poisson": Family(
        name="poisson", solver="irls", has_intercept=True, multi_response=False,
        prepare=_prepare_poisson, init_eta=_init_poisson, linkinv=np.exp,
        negative_gradient=_poisson_gradient, deviance=_poisson_deviance,
        irls=_poisson_irls, stratify=_stratify_poisson, node_models=True,
    ),
    "cox": Family(
        name="cox", solver="irls", has_intercept=False, multi_response=False,
        prepare=_prepare_cox, init_eta=_init_cox, linkinv=np.exp,
        negative_gradient=_cox_negative_gradient, deviance=_cox_deviance,
        irls=_cox_irls, stratify=_stratify_cox, raw_tree_response=False,
    ),
    "mgaussian": Family(
        name="mgaussian", solver="multitask", has_intercept=True, multi_response=True,
        prepare=_prepare_mgaussian, init_eta=_init_mgaussian, linkinv=_identity,
        negative_gradient=_gaussian_gradient, deviance=_gaussian_deviance,
    ),
}


def get_family(name):
    """Look up a family by name, raising ConfigurationError if unknown."""
    try:
        return FAMILIES[name]
    except (KeyError, TypeError):
        raise ConfigurationError(
            f"family must be one of {sorted(FAMILIES)}, got {name!r}"
        ) from None
