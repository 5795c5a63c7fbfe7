"""
PredictionRuleEnsemble: scikit-learn style prediction rule ensembles.

Pipeline (one ``fit`` call):

    1. Grow ``ntrees`` randomized trees on subsamples, bagging the response
       (``learnrate == 0``) or boosting on the family's working response
       (``learnrate > 0``), and extract one rule per non-root node.
    2. Add winsorized linear terms (and optional hinge functions) for the
       numeric predictors, plus any confirmatory terms.
    3. Drop redundant rules and freeze the candidate set.
    4. Fit a cross-validated lasso over the candidates and keep the
       coefficients at ``lambda.min`` or ``lambda.1se``.

Linear terms are normalised to ``0.4 / sd`` so that, a priori, they carry
the same influence as a typical rule (Friedman & Popescu 2008, sec. 5).
Confirmatory terms enter with a penalty factor of ``confirmatory_penalty``
and are reported in ``confirmatory_status_``.

Supported families: gaussian, binomial, multinomial, poisson, cox
(``y`` of shape (n, 2) ``[time, status]`` or a structured array with
``time`` / ``status`` fields) and mgaussian (``y`` of shape (n, q)).

References:
    - Friedman & Popescu (2008) "Predictive Learning via Rule Ensembles",
      Annals of Applied Statistics
    - Fokkema (2020) "Fitting Prediction Rule Ensembles with R Package pre",
      JSS
    - Hothorn, Hornik & Zeileis (2006) "Unbiased Recursive Partitioning: A
      Conditional Inference Framework", JCGS
"""

import logging
import numbers
import warnings

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.base import BaseEstimator
from sklearn.utils.validation import check_is_fitted

from .accumulator import EnsembleAccumulator, resolve_depths
from .data import FeatureSpace, missing_response, subset_rows
from .ensemble import Ensemble
from .exceptions import ConfigurationError
from .families import get_family
from .feature_matrix import build_feature_matrix
from .inductors import make_inductor
from .learners import (
    assemble_candidates,
    hinge_functions,
    infer_learner,
    linear_terms,
)
from .penalized import PENALTY_SELECTIONS, PenalizedFitter, linear_predictor
from .sampling import validate_sample_fraction

logger = logging.getLogger(__name__)

LEARNER_CHOICES = ("rules", "linear", "both")


def _column_moments(X):
    """Column means and standard deviations of a dense or CSC matrix."""
    if X.shape[1] == 0:
        return np.zeros(0), np.zeros(0)
    if sparse.issparse(X):
        mean = np.asarray(X.mean(axis=0)).ravel()
        sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
        return mean, np.sqrt(np.maximum(sq - mean ** 2, 0.0))
    return X.mean(axis=0), X.std(axis=0)


class PredictionRuleEnsemble(BaseEstimator):
    """Sparse ensemble of decision rules and linear terms.

    Parameters
    ----------
    family : str, default='gaussian'
        One of 'gaussian', 'binomial', 'multinomial', 'poisson', 'cox',
        'mgaussian'.

    ntrees : int, default=500
        Number of trees grown to generate candidate rules.

    sample_fraction : float or callable, default=0.5
        Fraction of rows drawn without replacement per tree; 1.0 draws a
        bootstrap sample.  A callable ``(n, weights, rng) -> indices`` is
        also accepted.

    max_depth : int, sequence of int or callable, default=3
        Maximum tree depth: one value for every tree, one per tree, or a
        policy ``(ntrees, rng) -> depths`` such as :func:`maxdepth_sampler`.

    learnrate : float, default=0.01
        Boosting shrinkage; 0 grows independent (bagged) trees.

    tree_strategy : {'ctree', 'cart', 'mob'}, default='ctree'

    penalty_selection : {'lambda.1se', 'lambda.min'}, default='lambda.1se'

    learner_types : {'both', 'rules', 'linear'}, default='both'

    include_complements : bool, default=False
        Also add the complement of every extracted rule.  Complement
        removal is skipped when set.

    remove_duplicates, remove_complements : bool, default=True
        Drop rules whose training column duplicates (or complements) an
        earlier rule's.

    winsor_fraction : float, default=0.025
        Linear terms are clipped at these lower/upper quantiles.

    normalize : bool, default=True
        Scale linear terms to ``0.4 / sd`` when fitting.

    n_knots : int, default=0
        Interior quantile knots per numeric predictor for hinge functions
        (0 disables them).

    confirmatory : list of str, optional
        Descriptions of terms that enter with (near) zero penalty: variable
        names for linear terms, rule strings such as ``"x1 <= 0.5 & x2 > 1.0"``
        or hinges ``"h(x1 - 0.5)"``.

    confirmatory_penalty : float, default=1e-3
        Penalty factor of confirmatory terms.  Must be > 0.

    min_split, min_bucket, mtry, mincriterion
        Tree growing controls (see :mod:`predrules.inductors`).

    nfolds : int, default=10
    nlambda : int, default=100
    lambda_min_ratio : float, optional

    sparse : {'auto', True, False}, default='auto'
        Design matrix format (see :func:`build_feature_matrix`).

    density_threshold : float, default=0.1

    random_state : int, default=42
        Base seed; tree ``i`` uses ``RandomState(random_state + i)``.

    n_jobs : int or None, default=None
        Cores for bagged trees and CV folds.

    Attributes
    ----------
    ensemble_ : Ensemble
    family_ : Family
    space_ : FeatureSpace
    classes_ : ndarray or None
    n_rules_ : int
        Rules extracted before candidate assembly.
    n_candidates_ : int
    tree_sizes_ : ndarray of int
    fitted_values_ : ndarray
        Response-scale predictions on the (complete-case) training rows.
    confirmatory_status_ : list of dict
    confirmatory_all_active_ : bool

    Examples
    --------
    >>> from predrules import PredictionRuleEnsemble
    >>> pre = PredictionRuleEnsemble(family="binomial", ntrees=100)
    >>> pre.fit(X_train, y_train)
    >>> pre.get_rules().head()
    >>> proba = pre.predict_proba(X_test)[:, 1]
    """

    def __init__(
        self,
        family="gaussian",
        ntrees=500,
        sample_fraction=0.5,
        max_depth=3,
        learnrate=0.01,
        tree_strategy="ctree",
        penalty_selection="lambda.1se",
        learner_types="both",
        include_complements=False,
        remove_duplicates=True,
        remove_complements=True,
        winsor_fraction=0.025,
        normalize=True,
        n_knots=0,
        confirmatory=None,
        confirmatory_penalty=1e-3,
        min_split=20,
        min_bucket=7,
        mtry=None,
        mincriterion=0.95,
        nfolds=10,
        nlambda=100,
        lambda_min_ratio=None,
        sparse="auto",
        density_threshold=0.1,
        random_state=42,
        n_jobs=None,
    ):
        self.family = family
        self.ntrees = ntrees
        self.sample_fraction = sample_fraction
        self.max_depth = max_depth
        self.learnrate = learnrate
        self.tree_strategy = tree_strategy
        self.penalty_selection = penalty_selection
        self.learner_types = learner_types
        self.include_complements = include_complements
        self.remove_duplicates = remove_duplicates
        self.remove_complements = remove_complements
        self.winsor_fraction = winsor_fraction
        self.normalize = normalize
        self.n_knots = n_knots
        self.confirmatory = confirmatory
        self.confirmatory_penalty = confirmatory_penalty
        self.min_split = min_split
        self.min_bucket = min_bucket
        self.mtry = mtry
        self.mincriterion = mincriterion
        self.nfolds = nfolds
        self.nlambda = nlambda
        self.lambda_min_ratio = lambda_min_ratio
        self.sparse = sparse
        self.density_threshold = density_threshold
        self.random_state = random_state
        self.n_jobs = n_jobs

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_params(self):
        """Check hyper-parameters; raises ConfigurationError before any tree is grown."""
        family = get_family(self.family)
        if not isinstance(self.ntrees, numbers.Integral) or self.ntrees < 0:
            raise ConfigurationError(f"ntrees must be a non-negative integer, got {self.ntrees}")
        if not 0 <= self.learnrate <= 1:
            raise ConfigurationError(f"learnrate must be in [0, 1], got {self.learnrate}")
        validate_sample_fraction(self.sample_fraction)
        if self.penalty_selection not in PENALTY_SELECTIONS:
            raise ConfigurationError(
                f"penalty_selection must be one of {PENALTY_SELECTIONS}, "
                f"got {self.penalty_selection!r}"
            )
        if self.learner_types not in LEARNER_CHOICES:
            raise ConfigurationError(
                f"learner_types must be one of {LEARNER_CHOICES}, got {self.learner_types!r}"
            )
        if not 0 <= self.winsor_fraction < 0.5:
            raise ConfigurationError(
                f"winsor_fraction must be in [0, 0.5), got {self.winsor_fraction}"
            )
        if self.confirmatory_penalty <= 0:
            raise ConfigurationError(
                f"confirmatory_penalty must be > 0, got {self.confirmatory_penalty}"
            )
        if self.nfolds < 2:
            raise ConfigurationError(f"nfolds must be at least 2, got {self.nfolds}")
        if self.sparse not in ("auto", True, False):
            raise ConfigurationError(f"sparse must be 'auto', True or False, got {self.sparse!r}")
        inductor = make_inductor(
            self.tree_strategy,
            family=family,
            boosting=self.learnrate > 0,
            min_split=self.min_split,
            min_bucket=self.min_bucket,
            mtry=self.mtry,
            mincriterion=self.mincriterion,
        )
        depths = resolve_depths(self.max_depth, self.ntrees, self.random_state)
        return family, inductor, depths

    def _validate_inputs(self, X, y, sample_weight, feature_names):
        """Encode X, drop incomplete rows and prepare the response."""
        space = FeatureSpace.from_data(X, feature_names)
        columns = space.encode(X)
        n = len(next(iter(columns.values()))) if columns else len(X)
        if len(y) != n:
            raise ValueError(
                f"X and y have incompatible shapes: "
                f"X has {n} samples, y has {len(y)}"
            )
        if n == 0:
            raise ValueError("X must have at least one sample")

        if sample_weight is None:
            w = np.ones(n)
        else:
            w = np.asarray(sample_weight, dtype=np.float64).ravel()
            if w.shape[0] != n:
                raise ValueError(
                    f"sample_weight has {w.shape[0]} entries, expected {n}"
                )
            if np.any(w < 0) or not np.all(np.isfinite(w)):
                raise ValueError("sample_weight must be finite and non-negative")

        incomplete = space.missing_mask(columns) | missing_response(y)
        if incomplete.any():
            keep = ~incomplete
            if not keep.any():
                raise ValueError("No complete rows left after dropping missing values")
            warnings.warn(
                f"Dropping {int(incomplete.sum())} of {n} rows with missing "
                f"predictor or response values."
            )
            columns = subset_rows(columns, keep)
            y = y[keep]
            w = w[keep]

        y_internal, classes = self.family_.prepare(y)
        if w.sum() <= 0:
            raise ValueError("sample_weight must have a positive sum")
        return space, columns, y_internal, classes, w

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def fit(self, X, y, sample_weight=None, feature_names=None):
        """Fit the rule ensemble.

        Parameters
        ----------
        X : array-like or DataFrame of shape (n_samples, n_features)
            Non-numeric DataFrame columns are treated as categorical.
        y : array-like
            Response in the layout of the chosen family.
        sample_weight : array-like of shape (n_samples,), optional
        feature_names : list of str, optional
            Column names for array input (default ``X1..Xp``).

        Returns
        -------
        self
        """
        self.family_, inductor, depths = self._validate_params()
        if not isinstance(X, pd.DataFrame):
            X = np.asarray(X)
        if isinstance(y, (pd.Series, pd.DataFrame)):
            y = y.to_numpy()
        else:
            y = np.asarray(y)
        space, columns, y_internal, classes, w = self._validate_inputs(
            X, y, sample_weight, feature_names
        )
        self.space_ = space
        self.classes_ = classes
        self.feature_names_ = list(space.names)
        self.n_features_in_ = len(space.names)

        rules = []
        self.tree_sizes_ = np.zeros(0, dtype=int)
        if self.learner_types in ("rules", "both") and self.ntrees > 0:
            accumulator = EnsembleAccumulator(
                self.family_, inductor, self.ntrees, self.sample_fraction, depths,
                self.learnrate, include_complements=self.include_complements,
                random_state=self.random_state, n_jobs=self.n_jobs,
            )
            rules = accumulator.run(space, columns, y_internal, w)
            self.tree_sizes_ = accumulator.tree_sizes_
        self.n_rules_ = len(rules)

        terms = []
        if self.learner_types in ("linear", "both"):
            terms = linear_terms(space, columns, self.winsor_fraction, self.normalize)
            terms += hinge_functions(space, columns, self.n_knots)

        learners = assemble_candidates(
            rules + terms, columns,
            remove_duplicates=self.remove_duplicates,
            remove_complements=self.remove_complements and not self.include_complements,
        )
        penalty_factor = np.ones(len(learners))
        self.confirmatory_ = []
        descriptions = {learner.description: j for j, learner in enumerate(learners)}
        for text in self.confirmatory or []:
            learner = infer_learner(text, space, columns, self.winsor_fraction)
            j = descriptions.get(learner.description)
            if j is None:
                j = len(learners)
                learners.append(learner)
                descriptions[learner.description] = j
                penalty_factor = np.append(penalty_factor, 1.0)
            penalty_factor[j] = self.confirmatory_penalty
            self.confirmatory_.append(learner.description)
        self.n_candidates_ = len(learners)

        column_scale = np.array([getattr(learner, "scale", 1.0) for learner in learners])
        X_design = build_feature_matrix(
            learners, columns,
            sparse_output=self.sparse, density_threshold=self.density_threshold,
        )
        logger.info(
            "Step 3: Design matrix %d x %d (%s)",
            X_design.shape[0], X_design.shape[1],
            "sparse" if sparse.issparse(X_design) else "dense",
        )

        fitter = PenalizedFitter(
            self.family_,
            nlambda=self.nlambda,
            lambda_min_ratio=self.lambda_min_ratio,
            nfolds=self.nfolds,
            penalty_selection=self.penalty_selection,
            random_state=self.random_state,
            n_jobs=self.n_jobs,
        )
        fitter.fit(X_design, y_internal, sample_weight=w,
                   penalty_factor=penalty_factor, column_scale=column_scale)

        mean, sd = _column_moments(X_design)
        support = np.array([
            mean[j] if learner.kind == "rule" else np.nan
            for j, learner in enumerate(learners)
        ])
        self.ensemble_ = Ensemble(
            self.family_, learners, fitter.coef_, fitter.intercept_, space,
            classes=classes, learner_sd=sd, learner_support=support,
            path=fitter.path_, penalty=self.penalty_selection, lambda_=fitter.lambda_,
        )
        self.path_ = fitter.path_
        self.fitted_values_ = self.family_.linkinv(
            linear_predictor(X_design, fitter.coef_, fitter.intercept_)
        )
        self._verify_confirmatory()
        return self

    def _verify_confirmatory(self):
        """Check that all confirmatory terms have non-zero coefficients."""
        coef = self.ensemble_.coefficients
        index = {learner.description: j for j, learner in enumerate(self.ensemble_.learners)}
        self.confirmatory_status_ = []
        for description in self.confirmatory_:
            c = coef[index[description]]
            self.confirmatory_status_.append({
                "name": description,
                "active": bool(np.any(c != 0)),
            })
        self.confirmatory_all_active_ = all(s["active"] for s in self.confirmatory_status_)
        if not self.confirmatory_all_active_:
            inactive = [s["name"] for s in self.confirmatory_status_ if not s["active"]]
            warnings.warn(
                f"Confirmatory terms {inactive} have zero coefficients at "
                f"{self.penalty_selection}; consider a smaller confirmatory_penalty."
            )

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def _encode(self, X):
        check_is_fitted(self, "ensemble_")
        if not isinstance(X, pd.DataFrame):
            X = np.asarray(X)
        return self.space_.encode(X)

    def predict(self, X, type="response", penalty=None):
        """Predict for new data.

        Parameters
        ----------
        X : array-like or DataFrame of shape (n_samples, n_features)
        type : {'response', 'link', 'class'}, default='response'
        penalty : {'lambda.min', 'lambda.1se'} or float, optional
            Use the coefficients at another point of the penalty path.

        Returns
        -------
        ndarray of shape (n_samples,) or (n_samples, K)
        """
        return self.ensemble_.predict(self._encode(X), type=type, penalty=penalty)

    def predict_proba(self, X, penalty=None):
        """Class probabilities (binomial and multinomial families).

        Returns
        -------
        proba : ndarray of shape (n_samples, n_classes)
            Columns follow ``classes_``.
        """
        check_is_fitted(self, "ensemble_")
        if self.classes_ is None:
            raise ValueError(f"predict_proba is not available for family {self.family!r}")
        p = self.predict(X, type="response", penalty=penalty)
        if p.ndim == 1:
            return np.column_stack([1.0 - p, p])
        return p

    def contributions(self, X, penalty=None):
        """Per-learner contributions to the linear predictor (DataFrame)."""
        return self.ensemble_.contributions(self._encode(X), penalty=penalty)

    # ------------------------------------------------------------------
    # Interpretability
    # ------------------------------------------------------------------

    def get_rules(self, penalty=None, include_zero=False):
        """Selected base learners as a DataFrame (see :meth:`Ensemble.get_rules`)."""
        check_is_fitted(self, "ensemble_")
        return self.ensemble_.get_rules(penalty=penalty, include_zero=include_zero)

    def rule_importance(self, penalty=None):
        check_is_fitted(self, "ensemble_")
        return self.ensemble_.rule_importance(penalty=penalty)

    def variable_importance(self, penalty=None):
        check_is_fitted(self, "ensemble_")
        return self.ensemble_.variable_importance(penalty=penalty)
