"""Design matrix construction from a frozen list of base learners."""

import logging

import numpy as np
from scipy import sparse

from .data import n_rows

logger = logging.getLogger(__name__)


def evaluate_learners(learners, columns):
    """Evaluate each learner, returning one float64 column per learner."""
    n_samples = n_rows(columns)
    evaluated = []
    for i, learner in enumerate(learners):
        try:
            col = np.asarray(learner.evaluate(columns), dtype=np.float64)
        except KeyError as exc:
            raise ValueError(
                f"Learner {i} ('{learner.description}') needs missing column {exc}"
            ) from exc
        if col.shape != (n_samples,):
            raise ValueError(
                f"Learner {i} ('{learner.description}') returned shape {col.shape}, "
                f"expected ({n_samples},)"
            )
        evaluated.append(col)
    return evaluated


def build_feature_matrix(learners, columns, *, sparse_output="auto",
                         density_threshold=0.1, column_scale=None):
    """Build the (n_samples, n_learners) design matrix.

    Column ``j`` holds learner ``j`` evaluated on every row: 0/1 for rules,
    real values for linear terms and hinges, NaN where an input is missing.

    Parameters
    ----------
    learners : list of base learners
        The frozen candidate set; column order follows it exactly.
    columns : dict of str -> ndarray
        Encoded predictor columns.
    sparse_output : {'auto', True, False}, default='auto'
        ``'auto'`` returns a CSC matrix when the fraction of nonzero rule
        indicators is below ``density_threshold``.
    density_threshold : float, default=0.1
    column_scale : ndarray of shape (n_learners,), optional
        Multiplier applied to each column (fit-time normalisation and
        penalty weighting).

    Returns
    -------
    X : ndarray or scipy.sparse.csc_matrix
    """
    n_samples = n_rows(columns)
    if not learners:
        return np.zeros((n_samples, 0))

    evaluated = evaluate_learners(learners, columns)
    if column_scale is not None:
        evaluated = [col * s for col, s in zip(evaluated, column_scale)]

    if sparse_output == "auto":
        rule_cols = [col for col, l in zip(evaluated, learners) if l.kind == "rule"]
        if rule_cols:
            density = np.mean([np.count_nonzero(col) / max(n_samples, 1) for col in rule_cols])
        else:
            density = 1.0
        sparse_output = density < density_threshold
        logger.debug("Rule density %.3f -> sparse=%s", density, sparse_output)

    if sparse_output:
        # Column-wise sparse stacking avoids a dense (n_samples, n_learners) copy.
        return sparse.hstack(
            [sparse.csc_matrix(col.reshape(-1, 1)) for col in evaluated], format="csc"
        )
    return np.column_stack(evaluated)
