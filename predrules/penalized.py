"""
Cross-validated lasso over the base-learner design matrix.

Objective, for every family::

    (1 / W) * NLL(b0, beta) + lambda * sum_j |beta_j|

with ``W`` the total observation weight.  Solvers (chosen once from the
family table):

    irls       gaussian, poisson, cox: IRLS outer loop around a weighted
               sklearn ``Lasso`` (one pass for gaussian)
    logistic   binomial, multinomial: sklearn ``LogisticRegression`` with an
               L1 penalty, ``C = 1 / (lambda * W)``
    multitask  mgaussian: sklearn ``MultiTaskLasso`` (one group per learner
               across the response columns)

Per-learner penalty factors and normalisation are applied by scaling
design columns by ``s_j = column_scale_j / penalty_factor_j``: a scaled
column is fitted with coefficient ``beta_j / s_j``, i.e. an effective L1 penalty of
``lambda / s_j * |beta_j|``.  Reported coefficients are always on the
unscaled columns.

References:
    - Friedman, Hastie & Tibshirani (2010) "Regularization Paths for
      Generalized Linear Models via Coordinate Descent", JSS
    - Simon et al. (2011) "Regularization Paths for Cox's Proportional
      Hazards Model via Coordinate Descent", JSS
"""

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import sklearn as _sklearn
from joblib import Parallel, delayed
from packaging.version import Version
from scipy import sparse
from sklearn.linear_model import Lasso, LogisticRegression, MultiTaskLasso
from sklearn.model_selection import KFold, StratifiedKFold

from .exceptions import ConfigurationError, SingularDesignWarning

logger = logging.getLogger(__name__)

PENALTY_SELECTIONS = ("lambda.min", "lambda.1se")

# scikit-learn >= 1.8 deprecated the ``penalty`` parameter on
# LogisticRegression.  The penalty type is now inferred from ``l1_ratio``.
_SKLEARN_PENALTY_DEPRECATED = Version(_sklearn.__version__) >= Version("1.8")

_INFEASIBLE = (ValueError, FloatingPointError, ArithmeticError, np.linalg.LinAlgError)
_MIN_PENALTY_FACTOR = 1e-4
# Columns penalized less than this do not set the top of the lambda sequence.
_FAVOURED_PENALTY = 1e-2


def _make_logistic(*, C=1.0, solver="saga", max_iter=10000, random_state=42,
                   tol=1e-4, warm_start=False):
    """Create an L1 LogisticRegression compatible with sklearn >= 1.8."""
    if _SKLEARN_PENALTY_DEPRECATED:
        return LogisticRegression(
            C=C,
            l1_ratio=1,
            solver=solver,
            max_iter=max_iter,
            random_state=random_state,
            tol=tol,
            warm_start=warm_start,
        )
    return LogisticRegression(
        penalty="l1",
        C=C,
        solver=solver,
        max_iter=max_iter,
        random_state=random_state,
        tol=tol,
        warm_start=warm_start,
    )


def _check_finite(*arrays):
    for a in arrays:
        if a is not None and not np.all(np.isfinite(a)):
            raise FloatingPointError("non-finite coefficients")


# ---------------------------------------------------------------------------
# Path solvers
# ---------------------------------------------------------------------------


class _PathSolver:
    """Fit the penalized objective along a decreasing lambda sequence."""

    def __init__(self, family, tol=1e-7, max_iter=10000, random_state=42,
                 max_irls=25):
        self.family = family
        self.tol = tol
        self.max_iter = max_iter
        self.random_state = random_state
        self.max_irls = max_irls

    def path(self, X, y, w, lambdas, stop_early=False):
        """Coefficients and intercepts at each feasible lambda.

        Fitting stops at the first lambda where the solver fails; only the
        feasible prefix is returned, with ``failed`` set.  With
        ``stop_early`` the path also ends once the deviance explained
        saturates (glmnet's rule).

        Returns
        -------
        coefs, intercepts : list
        failed : bool
        """
        family = self.family
        null_dev = family.deviance(y, family.init_eta(y, w), w)
        coefs, intercepts = [], []
        previous_ratio = 0.0
        self._start(X, y, w)
        for k, lam in enumerate(lambdas):
            try:
                coef, intercept = self._fit_one(X, y, w, lam)
                _check_finite(coef, intercept)
            except _INFEASIBLE as exc:
                logger.debug("Solver failed at lambda=%g: %s", lam, exc)
                return coefs, intercepts, True
            coefs.append(coef)
            intercepts.append(intercept)
            if not stop_early or null_dev <= 0:
                continue
            eta = linear_predictor(X, coef, intercept)
            ratio = 1.0 - family.deviance(y, eta, w) / null_dev
            if k >= 4 and (ratio >= 0.999 or ratio - previous_ratio < 1e-5 * abs(ratio)):
                logger.debug("Path saturated after %d lambdas", k + 1)
                break
            previous_ratio = ratio
        return coefs, intercepts, False

    def _start(self, X, y, w):
        pass

    def _fit_one(self, X, y, w, lam):
        raise NotImplementedError


class _IRLSLassoSolver(_PathSolver):
    """Weighted lasso on the IRLS working response (gaussian, poisson, cox)."""

    def _start(self, X, y, w):
        family = self.family
        self._eta = family.init_eta(y, w)
        self._coef = np.zeros(X.shape[1])
        self._intercept = float(self._eta[0]) if family.has_intercept else None
        self._lasso = Lasso(
            alpha=1.0,
            fit_intercept=family.has_intercept,
            warm_start=True,
            tol=self.tol,
            max_iter=self.max_iter,
        )

    def _fit_one(self, X, y, w, lam):
        family = self.family
        total = w.sum()
        for _ in range(self.max_irls):
            z, h = family.irls(y, self._eta, w)
            self._lasso.set_params(alpha=lam * total / h.sum())
            self._lasso.fit(X, z, sample_weight=h)
            coef = self._lasso.coef_.copy()
            intercept = float(self._lasso.intercept_) if family.has_intercept else None
            _check_finite(coef)
            delta = np.max(np.abs(coef - self._coef), initial=0.0)
            if intercept is not None:
                delta = max(delta, abs(intercept - self._intercept))
            self._coef, self._intercept = coef, intercept
            self._eta = linear_predictor(X, coef, intercept)
            if delta < 1e-6:
                break
        return self._coef, self._intercept


class _LogisticSolver(_PathSolver):
    """L1 logistic / multinomial regression (binomial, multinomial)."""

    def _start(self, X, y, w):
        # saga treats the intercept differently on sparse input; fit dense.
        self._X = X.toarray() if sparse.issparse(X) else np.asarray(X)
        self._labels = y.astype(int) if y.ndim == 1 else np.argmax(y, axis=1)
        self._n_classes = 2 if y.ndim == 1 else y.shape[1]
        self._model = _make_logistic(
            solver="saga",
            max_iter=self.max_iter,
            random_state=self.random_state,
            tol=max(self.tol, 1e-6),
            warm_start=True,
        )

    def _fit_one(self, X, y, w, lam):
        self._model.set_params(C=1.0 / (lam * w.sum()))
        self._model.fit(self._X, self._labels, sample_weight=w)
        if self._n_classes == 2:
            return self._model.coef_[0].copy(), float(self._model.intercept_[0])

        # A class absent from a training fold gets a zero coefficient row and
        # an intercept that drives its probability to ~0.
        coef = np.zeros((X.shape[1], self._n_classes))
        intercept = np.full(self._n_classes, -30.0)
        present = self._model.classes_
        coef[:, present] = self._model.coef_.T
        intercept[present] = self._model.intercept_
        return coef, intercept


class _MultiTaskSolver(_PathSolver):
    """Group lasso across response columns (mgaussian)."""

    def _start(self, X, y, w):
        Xd = X.toarray() if sparse.issparse(X) else np.asarray(X)
        n = len(w)
        self._x_mean = np.average(Xd, axis=0, weights=w)
        self._y_mean = np.average(y, axis=0, weights=w)
        root = np.sqrt(w * n / w.sum())[:, None]
        self._Xc = (Xd - self._x_mean) * root
        self._Yc = (y - self._y_mean) * root
        self._model = MultiTaskLasso(
            alpha=1.0,
            fit_intercept=False,
            warm_start=True,
            tol=self.tol,
            max_iter=self.max_iter,
        )

    def _fit_one(self, X, y, w, lam):
        self._model.set_params(alpha=lam)
        self._model.fit(self._Xc, self._Yc)
        coef = self._model.coef_.T.copy()
        return coef, self._y_mean - self._x_mean @ coef


_SOLVERS = {
    "irls": _IRLSLassoSolver,
    "logistic": _LogisticSolver,
    "multitask": _MultiTaskSolver,
}


def linear_predictor(X, coef, intercept):
    """``intercept + X @ coef`` for dense or sparse X."""
    if X.shape[1] == 0:
        eta = np.zeros((X.shape[0],) + np.shape(coef)[1:])
    else:
        eta = np.asarray(X @ coef)
    return eta if intercept is None else eta + intercept


def lambda_max(family, X, y, w, columns=None):
    """Smallest lambda at which every coefficient is zero.

    ``columns`` restricts the maximum to a boolean mask of design columns.
    """
    if X.shape[1] == 0:
        return 0.0
    gradient = family.negative_gradient(y, family.init_eta(y, w), w)
    weighted = gradient * (w[:, None] if gradient.ndim == 2 else w)
    score = np.asarray(X.T @ weighted)
    if score.ndim == 2:
        per_column = (np.linalg.norm(score, axis=1) if family.solver == "multitask"
                      else np.max(np.abs(score), axis=1))
    else:
        per_column = np.abs(score)
    if columns is not None and np.any(columns):
        per_column = per_column[columns]
    return float(np.max(per_column) / w.sum())


# ---------------------------------------------------------------------------
# Fitted path
# ---------------------------------------------------------------------------


@dataclass
class PenaltyPath:
    """Coefficient path with its cross-validation curve.

    ``coefs`` has shape (n_lambdas, p) or (n_lambdas, p, K) and is expressed
    on the unscaled design columns; ``intercepts`` is None for cox.
    """

    lambdas: np.ndarray
    coefs: np.ndarray
    intercepts: Optional[np.ndarray]
    cvm: np.ndarray
    cvsd: np.ndarray
    index_min: int
    index_1se: int

    @property
    def nonzero(self):
        active = self.coefs != 0
        if active.ndim == 3:
            active = np.any(active, axis=2)
        return np.count_nonzero(active, axis=1)

    @property
    def lambda_min(self):
        return float(self.lambdas[self.index_min])

    @property
    def lambda_1se(self):
        return float(self.lambdas[self.index_1se])

    def index(self, penalty):
        """Path index for ``'lambda.min'``, ``'lambda.1se'`` or a lambda value."""
        if isinstance(penalty, str):
            if penalty == "lambda.min":
                return self.index_min
            if penalty == "lambda.1se":
                return self.index_1se
            raise ConfigurationError(
                f"penalty must be one of {PENALTY_SELECTIONS} or a number, got {penalty!r}"
            )
        if penalty < 0:
            raise ConfigurationError(f"penalty must be non-negative, got {penalty}")
        with np.errstate(divide="ignore"):
            distance = np.abs(np.log(np.maximum(self.lambdas, 1e-300))
                              - np.log(max(penalty, 1e-300)))
        return int(np.argmin(distance))

    def select(self, penalty):
        """Coefficients, intercept and lambda at ``penalty``."""
        k = self.index(penalty)
        intercept = None if self.intercepts is None else self.intercepts[k]
        return self.coefs[k], intercept, float(self.lambdas[k])

    def to_dict(self):
        return {
            "lambdas": self.lambdas.tolist(),
            "cvm": self.cvm.tolist(),
            "cvsd": self.cvsd.tolist(),
            "nonzero": self.nonzero.tolist(),
            "index_min": self.index_min,
            "index_1se": self.index_1se,
        }


def select_indices(cvm, cvsd, nonzero):
    """``lambda.min`` and ``lambda.1se`` indices on a decreasing lambda path.

    ``lambda.1se`` is the largest lambda whose CV error is within one
    standard error of the minimum and which keeps no more learners than
    ``lambda.min``.
    """
    if np.all(np.isnan(cvm)):
        return 0, 0
    index_min = int(np.nanargmin(cvm))
    limit = cvm[index_min] + (0.0 if np.isnan(cvsd[index_min]) else cvsd[index_min])
    for k in range(index_min + 1):
        if cvm[k] <= limit and nonzero[k] <= nonzero[index_min]:
            return index_min, k
    return index_min, index_min


def _fold_errors(solver, family, X, y, w, train, test, lambdas):
    """Held-out mean deviance of one fold at every lambda (NaN past failure)."""
    coefs, intercepts, _ = solver.path(X[train], y[train], w[train], lambdas)
    errors = np.full(len(lambdas), np.nan)
    X_test, y_test, w_test = X[test], y[test], w[test]
    for k, (coef, intercept) in enumerate(zip(coefs, intercepts)):
        eta = linear_predictor(X_test, coef, intercept)
        errors[k] = family.deviance(y_test, eta, w_test) / w_test.sum()
    return errors


class PenalizedFitter:
    """Cross-validated lasso path with ``lambda.min`` / ``lambda.1se`` selection.

    Parameters
    ----------
    family : Family
    nlambda : int, default=100
    lambda_min_ratio : float or None, default=None
        Smallest lambda as a fraction of ``lambda_max``; 1e-4 when there are
        more rows than columns, else 1e-2.
    nfolds : int, default=10
    penalty_selection : {'lambda.min', 'lambda.1se'}, default='lambda.1se'
    random_state : int, default=42
        Seeds the fold assignment and the saga solver.
    tol : float, default=1e-7
    max_iter : int, default=10000
    n_jobs : int or None, default=None
        Folds fitted in parallel via joblib.
    """

    def __init__(self, family, nlambda=100, lambda_min_ratio=None, nfolds=10,
                 penalty_selection="lambda.1se", random_state=42, tol=1e-7,
                 max_iter=10000, n_jobs=None):
        if penalty_selection not in PENALTY_SELECTIONS:
            raise ConfigurationError(
                f"penalty_selection must be one of {PENALTY_SELECTIONS}, "
                f"got {penalty_selection!r}"
            )
        if nfolds < 2:
            raise ConfigurationError(f"nfolds must be at least 2, got {nfolds}")
        if nlambda < 1:
            raise ConfigurationError(f"nlambda must be positive, got {nlambda}")
        self.family = family
        self.nlambda = nlambda
        self.lambda_min_ratio = lambda_min_ratio
        self.nfolds = nfolds
        self.penalty_selection = penalty_selection
        self.random_state = random_state
        self.tol = tol
        self.max_iter = max_iter
        self.n_jobs = n_jobs

    def _solver(self):
        return _SOLVERS[self.family.solver](
            self.family, tol=self.tol, max_iter=self.max_iter,
            random_state=self.random_state,
        )

    def fold_ids(self, y):
        """Deterministic fold index per row, stratified for discrete families."""
        n = len(y)
        nfolds = min(self.nfolds, n)
        labels = self.family.fold_labels(y)
        folds = np.empty(n, dtype=int)
        if labels is None:
            splitter = KFold(n_splits=nfolds, shuffle=True, random_state=self.random_state)
            splits = splitter.split(np.zeros(n))
        else:
            splitter = StratifiedKFold(n_splits=nfolds, shuffle=True,
                                       random_state=self.random_state)
            splits = splitter.split(np.zeros(n), labels)
        for k, (_, test) in enumerate(splits):
            folds[test] = k
        return folds

    def lambda_sequence(self, X, y, w, penalty_factor=None):
        columns = None if penalty_factor is None else penalty_factor >= _FAVOURED_PENALTY
        top = lambda_max(self.family, X, y, w, columns)
        if top <= 0:
            return np.zeros(0)
        ratio = self.lambda_min_ratio
        if ratio is None:
            ratio = 1e-4 if X.shape[0] > X.shape[1] else 1e-2
        return top * np.logspace(0.0, math.log10(ratio), self.nlambda)

    def fit(self, X, y, sample_weight=None, penalty_factor=None, column_scale=None):
        """Fit the path on all rows, cross-validate it and select a lambda.

        Parameters
        ----------
        X : ndarray or sparse matrix of shape (n_samples, p)
            Unscaled design matrix.
        y : ndarray
            Response in the family's internal layout.
        sample_weight : ndarray of shape (n_samples,), optional
        penalty_factor : ndarray of shape (p,), optional
            Relative penalty per column; 0 leaves a column (almost)
            unpenalized.
        column_scale : ndarray of shape (p,), optional
            Fit-time column multipliers (normalisation).

        Returns
        -------
        self
            With ``path_``, ``coef_``, ``intercept_`` and ``lambda_``.
        """
        family = self.family
        n, p = X.shape
        w = np.ones(n) if sample_weight is None else np.asarray(sample_weight, dtype=np.float64)
        scale = np.ones(p) if column_scale is None else np.asarray(column_scale, dtype=np.float64)
        if penalty_factor is not None:
            penalty_factor = np.asarray(penalty_factor, dtype=np.float64)
            scale = scale / np.maximum(penalty_factor, _MIN_PENALTY_FACTOR)
        if p:
            Xs = X.multiply(scale).tocsc() if sparse.issparse(X) else X * scale
        else:
            Xs = X

        lambdas = self.lambda_sequence(Xs, y, w, penalty_factor)
        if len(lambdas) == 0:
            logger.info("Empty candidate set: fitting an intercept-only ensemble")
            self.path_ = self._intercept_only(y, w, p)
        else:
            self.path_ = self._fit_path(Xs, y, w, lambdas)
        self.path_.coefs = self._unscale(self.path_.coefs, scale)

        self.coef_, self.intercept_, self.lambda_ = self.path_.select(self.penalty_selection)
        logger.info(
            "Step 5: Selected %s = %.4g (%d non-zero of %d)",
            self.penalty_selection, self.lambda_,
            self.path_.nonzero[self.path_.index(self.penalty_selection)], p,
        )
        return self

    def _fit_path(self, X, y, w, lambdas):
        family = self.family
        coefs, intercepts, failed = self._solver().path(X, y, w, lambdas, stop_early=True)
        if not coefs:
            warnings.warn(
                "Penalized fit failed at every penalty; falling back to an "
                "intercept-only ensemble.",
                SingularDesignWarning,
            )
            return self._intercept_only(y, w, X.shape[1])
        if failed:
            warnings.warn(
                f"Penalized fit failed below lambda={lambdas[len(coefs) - 1]:.4g}; "
                f"using the path up to the last feasible penalty.",
                SingularDesignWarning,
            )
        lambdas = lambdas[:len(coefs)]

        logger.info("Step 4: Cross-validating %d lambdas over %d folds",
                    len(lambdas), self.nfolds)
        folds = self.fold_ids(y)
        Xr = X.tocsr() if sparse.issparse(X) else X
        fold_range = np.unique(folds)
        errors = Parallel(n_jobs=self.n_jobs)(
            delayed(_fold_errors)(
                self._solver(), family, Xr, y, w,
                folds != k, folds == k, lambdas,
            )
            for k in fold_range
        )
        errors = np.vstack(errors)
        fold_weights = np.array([w[folds == k].sum() for k in fold_range])
        cvm, cvsd = cv_summary(errors, fold_weights)

        coefs = np.stack(coefs)
        intercepts = None if intercepts[0] is None else np.array(intercepts)
        path = PenaltyPath(lambdas, coefs, intercepts, cvm, cvsd, 0, 0)
        path.index_min, path.index_1se = select_indices(cvm, cvsd, path.nonzero)
        return path

    def _intercept_only(self, y, w, p):
        family = self.family
        eta = family.init_eta(y, w)
        shape = (1, p) + ((eta.shape[1],) if eta.ndim == 2 else ())
        intercepts = np.array([eta[0]]) if family.has_intercept else None
        nan = np.array([np.nan])
        return PenaltyPath(np.zeros(1), np.zeros(shape), intercepts, nan, nan, 0, 0)

    @staticmethod
    def _unscale(coefs, scale):
        if coefs.shape[1] == 0:
            return coefs
        if coefs.ndim == 3:
            return coefs * scale[None, :, None]
        return coefs * scale[None, :]


def cv_summary(errors, fold_weights):
    """Weighted mean CV error and its standard error per lambda."""
    valid = ~np.isnan(errors)
    weights = fold_weights[:, None] * valid
    totals = weights.sum(axis=0)
    filled = np.where(valid, errors, 0.0)
    with np.errstate(invalid="ignore", divide="ignore"):
        cvm = (filled * weights).sum(axis=0) / totals
        spread = (((filled - cvm) ** 2) * weights).sum(axis=0) / totals
        n_valid = valid.sum(axis=0)
        cvsd = np.sqrt(spread / np.maximum(n_valid - 1, 1))
    cvm[totals == 0] = np.nan
    cvsd[totals == 0] = np.nan
    return cvm, cvsd
