"""Tests for design matrix construction."""

import warnings
warnings.filterwarnings("ignore")

import numpy as np
import pytest
from scipy import sparse

from predrules.feature_matrix import build_feature_matrix
from predrules.learners import LinearTerm, Rule
from predrules.tree import Split


@pytest.fixture
def columns():
    rng = np.random.RandomState(7)
    return {"x1": rng.uniform(0, 1, 200), "x2": rng.uniform(0, 1, 200)}


@pytest.fixture
def narrow_rules():
    """Rules firing on roughly 5% of rows each."""
    return [
        Rule((Split("x1", "<=", 0.05),)),
        Rule((Split("x2", ">", 0.95),)),
        Rule((Split("x1", ">", 0.9), Split("x2", "<=", 0.5))),
    ]


def test_column_order_follows_learners(columns, narrow_rules):
    X = build_feature_matrix(narrow_rules, columns, sparse_output=False)
    assert X.shape == (200, 3)
    for j, rule in enumerate(narrow_rules):
        np.testing.assert_array_equal(X[:, j], rule.evaluate(columns))


def test_auto_sparse_for_low_density_rules(columns, narrow_rules):
    X = build_feature_matrix(narrow_rules, columns)
    assert sparse.issparse(X) and X.format == "csc"
    dense = build_feature_matrix(narrow_rules, columns, sparse_output=False)
    np.testing.assert_array_equal(X.toarray(), dense)


def test_auto_dense_for_wide_rules(columns):
    rules = [Rule((Split("x1", "<=", 0.5),))]
    X = build_feature_matrix(rules, columns)
    assert isinstance(X, np.ndarray)
    assert sparse.issparse(build_feature_matrix(rules, columns, sparse_output=True))


def test_linear_terms_only_are_dense(columns):
    terms = [LinearTerm("x1", 0.1, 0.9), LinearTerm("x2", -np.inf, np.inf)]
    X = build_feature_matrix(terms, columns)
    assert isinstance(X, np.ndarray)
    np.testing.assert_array_equal(X[:, 0], np.clip(columns["x1"], 0.1, 0.9))
    np.testing.assert_array_equal(X[:, 1], columns["x2"])


def test_column_scale(columns, narrow_rules):
    X = build_feature_matrix(narrow_rules, columns, sparse_output=False,
                             column_scale=[1.0, 2.0, 0.5])
    np.testing.assert_array_equal(X[:, 1], 2.0 * narrow_rules[1].evaluate(columns))


def test_empty_learner_list(columns):
    X = build_feature_matrix([], columns)
    assert X.shape == (200, 0)


def test_missing_values_propagate():
    columns = {"x1": np.array([0.1, np.nan, 0.9])}
    X = build_feature_matrix([Rule((Split("x1", "<=", 0.5),))], columns, sparse_output=False)
    assert X[0, 0] == 1.0 and np.isnan(X[1, 0]) and X[2, 0] == 0.0


def test_unknown_variable_raises(columns):
    with pytest.raises(ValueError, match="missing column"):
        build_feature_matrix([Rule((Split("x9", "<=", 0.5),))], columns)


class _ShortLearner:
    kind = "rule"
    description = "short"

    def evaluate(self, columns):
        return np.ones(3)


def test_wrong_length_learner_output_raises(columns):
    with pytest.raises(ValueError, match="returned shape"):
        build_feature_matrix([_ShortLearner()], columns)
