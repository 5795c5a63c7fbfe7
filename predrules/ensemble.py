"""
Fitted prediction rule ensemble: prediction, inspection and persistence.

An :class:`Ensemble` is the frozen output of a fit: the ordered base
learners, one coefficient (row) per learner, the intercept and everything
needed to evaluate the learners on new data.  It is independent of the
estimator that produced it and can be written to / read from JSON.
"""

import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd

from .data import FeatureSpace
from .families import get_family
from .feature_matrix import build_feature_matrix
from .learners import parse_learner
from .penalized import linear_predictor

logger = logging.getLogger(__name__)

PREDICTION_TYPES = ("response", "link", "class")


class Ensemble:
    """Ordered base learners with their coefficients.

    Parameters
    ----------
    family : Family
    learners : list of base learners
    coefficients : ndarray of shape (n_learners,) or (n_learners, K)
    intercept : float, ndarray of shape (K,) or None
        None for cox (no intercept).
    space : FeatureSpace
    classes : ndarray, optional
        Class labels (binomial / multinomial).
    learner_sd : ndarray of shape (n_learners,), optional
        Standard deviation of each learner column on the training rows.
    learner_support : ndarray of shape (n_learners,), optional
        Fraction of training rows on which each rule fires.
    path : PenaltyPath, optional
        The full coefficient path; required for ``penalty`` overrides.
    penalty : str
        The selection rule that produced ``coefficients``.
    lambda_ : float, optional
    """

    def __init__(self, family, learners, coefficients, intercept, space,
                 classes=None, learner_sd=None, learner_support=None, path=None,
                 penalty="lambda.1se", lambda_=None):
        coefficients = np.asarray(coefficients, dtype=np.float64)
        if len(learners) != len(coefficients):
            raise ValueError(
                f"incompatible shapes: {len(learners)} learners, "
                f"{len(coefficients)} coefficients"
            )
        self.family = family
        self.learners = list(learners)
        self.coefficients = coefficients
        self.intercept = intercept
        self.space = space
        self.classes = classes
        n = len(self.learners)
        self.learner_sd = np.ones(n) if learner_sd is None else np.asarray(learner_sd)
        self.learner_support = (np.full(n, np.nan) if learner_support is None
                                else np.asarray(learner_support))
        self.path = path
        self.penalty = penalty
        self.lambda_ = lambda_

    def __len__(self):
        return len(self.learners)

    @property
    def multi_response(self):
        return self.coefficients.ndim == 2

    # ------------------------------------------------------------------
    # Coefficients
    # ------------------------------------------------------------------

    def coefficients_at(self, penalty=None):
        """Coefficients and intercept at ``penalty`` (default: the fitted one)."""
        if penalty is None or penalty == self.penalty:
            return self.coefficients, self.intercept
        if self.path is None:
            raise ValueError(
                "This ensemble carries no penalty path; only the fitted "
                f"penalty ({self.penalty}) is available"
            )
        coef, intercept, _ = self.path.select(penalty)
        return coef, intercept

    def _active(self, coef):
        nonzero = coef != 0
        if nonzero.ndim == 2:
            nonzero = nonzero.any(axis=1)
        return np.flatnonzero(nonzero)

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def link(self, columns, penalty=None):
        """Linear predictor; only learners with nonzero coefficients are evaluated."""
        coef, intercept = self.coefficients_at(penalty)
        active = self._active(coef)
        X = build_feature_matrix([self.learners[j] for j in active], columns,
                                 sparse_output=False)
        return linear_predictor(X, coef[active], intercept)

    def predict(self, columns, type="response", penalty=None):
        """Predict from encoded predictor columns.

        Parameters
        ----------
        columns : dict of str -> ndarray
            Output of ``space.encode(X)``.
        type : {'response', 'link', 'class'}, default='response'
            ``'response'`` applies the inverse link (probabilities, rates,
            relative risks); ``'class'`` returns labels for binomial and
            multinomial ensembles.
        penalty : {'lambda.min', 'lambda.1se'} or float, optional

        Returns
        -------
        ndarray
            NaN (or None for class labels) on rows with a missing value in
            any variable used by an active learner.
        """
        if type not in PREDICTION_TYPES:
            raise ValueError(f"type must be one of {PREDICTION_TYPES}, got {type!r}")
        eta = self.link(columns, penalty)
        if type == "link":
            return eta
        response = self.family.linkinv(eta)
        if type == "response":
            return response
        if self.classes is None:
            raise ValueError(f"type='class' is not available for family {self.family.name!r}")

        missing = np.isnan(response) if response.ndim == 1 else np.isnan(response).any(axis=1)
        if response.ndim == 1:
            index = (response > 0.5).astype(int)
        else:
            index = np.argmax(np.nan_to_num(response, nan=-1.0), axis=1)
        labels = np.asarray(self.classes)[index]
        if missing.any():
            labels = labels.astype(object)
            labels[missing] = None
        return labels

    def contributions(self, columns, penalty=None):
        """Per-learner contributions ``coef_j * learner_j(row)``.

        Returns a DataFrame with an ``intercept`` column followed by one
        column per active learner, so that row sums equal the linear
        predictor.  Multi-response ensembles get a column MultiIndex
        ``(response, learner)``.
        """
        coef, intercept = self.coefficients_at(penalty)
        active = self._active(coef)
        learners = [self.learners[j] for j in active]
        X = build_feature_matrix(learners, columns, sparse_output=False)
        names = [learner.description for learner in learners]
        n = X.shape[0]
        b0 = 0.0 if intercept is None else intercept

        if coef.ndim == 1:
            frame = pd.DataFrame(X * coef[active], columns=names)
            frame.insert(0, "intercept", np.full(n, b0))
            return frame

        responses = (self.classes if self.classes is not None
                     else [f"y{k + 1}" for k in range(coef.shape[1])])
        frames = {}
        for k, response in enumerate(responses):
            frame = pd.DataFrame(X * coef[active, k], columns=names)
            frame.insert(0, "intercept", np.full(n, np.asarray(b0)[k]))
            frames[str(response)] = frame
        return pd.concat(frames, axis=1)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_rules(self, penalty=None, include_zero=False):
        """Base learners with their coefficients as a DataFrame.

        Columns: ``description``, ``type``, ``coefficient`` (one column per
        response for multi-response families, ``coefficient.<label>``),
        ``support`` (rules only) and ``importance``.  Rows follow the
        candidate order.
        """
        coef, _ = self.coefficients_at(penalty)
        importance = self._importance(coef)
        keep = np.arange(len(self.learners)) if include_zero else self._active(coef)
        data = {
            "description": [self.learners[j].description for j in keep],
            "type": [self.learners[j].kind for j in keep],
        }
        if coef.ndim == 1:
            data["coefficient"] = coef[keep]
        else:
            responses = (self.classes if self.classes is not None
                         else [f"y{k + 1}" for k in range(coef.shape[1])])
            for k, response in enumerate(responses):
                data[f"coefficient.{response}"] = coef[keep, k]
        data["support"] = self.learner_support[keep]
        data["importance"] = importance[keep]
        return pd.DataFrame(data)

    def _importance(self, coef):
        magnitude = np.abs(coef) if coef.ndim == 1 else np.abs(coef).sum(axis=1)
        return magnitude * self.learner_sd

    def rule_importance(self, penalty=None):
        """Learners with nonzero coefficients sorted by importance.

        Importance is ``|coef_j| * sd_j`` with ``sd_j`` the standard deviation
        of the learner's training column (Friedman & Popescu 2008, sec. 6),
        summed over responses for multi-response families.

        Returns
        -------
        rules : list of dict
            Each dict has keys ``description``, ``type``, ``coefficient``
            and ``importance``.
        """
        coef, _ = self.coefficients_at(penalty)
        importance = self._importance(coef)
        rules = []
        for j in self._active(coef):
            learner = self.learners[j]
            rules.append({
                "description": learner.description,
                "type": learner.kind,
                "coefficient": coef[j].tolist() if coef.ndim == 2 else float(coef[j]),
                "importance": float(importance[j]),
            })
        rules.sort(key=lambda r: r["importance"], reverse=True)
        return rules

    def variable_importance(self, penalty=None):
        """Per-variable importance: each learner's importance split equally
        across the variables it uses.

        Returns
        -------
        importance : dict of str -> float
            Every predictor in the feature space, sorted descending.
        """
        totals = dict.fromkeys(self.space.names, 0.0)
        lookup = {learner.description: learner for learner in self.learners}
        for rule in self.rule_importance(penalty):
            learner = lookup[rule["description"]]
            share = rule["importance"] / len(learner.variables)
            for variable in learner.variables:
                totals[variable] += share
        return dict(sorted(totals.items(), key=lambda item: item[1], reverse=True))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self):
        """JSON-serialisable representation."""
        bounds = {
            learner.variable: [learner.lower, learner.upper]
            for learner in self.learners if learner.kind == "linear"
        }
        intercept = self.intercept
        if intercept is not None:
            intercept = np.asarray(intercept).tolist()
        return {
            "family": self.family.name,
            "learners": [
                {
                    "description": learner.description,
                    "type": learner.kind,
                    "coefficient": np.asarray(c).tolist(),
                    "sd": float(sd),
                    "support": None if np.isnan(s) else float(s),
                }
                for learner, c, sd, s in zip(self.learners, self.coefficients,
                                              self.learner_sd, self.learner_support)
            ],
            "intercept": intercept,
            "classes": None if self.classes is None else np.asarray(self.classes).tolist(),
            "winsor_bounds": bounds,
            "feature_space": self.space.to_dict(),
            "penalty": self.penalty,
            "lambda": self.lambda_,
            "path": None if self.path is None else self.path.to_dict(),
        }

    @classmethod
    def from_dict(cls, d):
        """Rebuild an ensemble by parsing the persisted learner descriptions."""
        family = get_family(d["family"])
        space = FeatureSpace.from_dict(d["feature_space"])
        bounds = {name: tuple(b) for name, b in d.get("winsor_bounds", {}).items()}
        rows = d["learners"]
        learners = [parse_learner(r["description"], r["type"], space, bounds) for r in rows]
        width = family.multi_response
        if rows:
            coefficients = np.array([r["coefficient"] for r in rows], dtype=np.float64)
        else:
            n_out = len(d["intercept"]) if width and d["intercept"] is not None else 0
            coefficients = np.zeros((0, n_out)) if width else np.zeros(0)
        intercept = d["intercept"]
        if isinstance(intercept, list):
            intercept = np.asarray(intercept, dtype=np.float64)
        classes = None if d.get("classes") is None else np.asarray(d["classes"])
        support = np.array([np.nan if r.get("support") is None else r["support"] for r in rows])
        return cls(
            family, learners, coefficients, intercept, space, classes=classes,
            learner_sd=np.array([r.get("sd", 1.0) for r in rows]),
            learner_support=support,
            penalty=d.get("penalty", "lambda.1se"), lambda_=d.get("lambda"),
        )


def save_ensemble(ensemble, path):
    """Write an ensemble to a JSON file."""
    Path(path).write_text(json.dumps(ensemble.to_dict(), indent=2, default=str))
    logger.info("Saved ensemble with %d learners to %s", len(ensemble), path)


def load_ensemble(path):
    """Read an ensemble written by :func:`save_ensemble`."""
    return Ensemble.from_dict(json.loads(Path(path).read_text()))
