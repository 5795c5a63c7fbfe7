"""Tests for row sampling, depth policies and the bagging/boosting loop."""

import warnings
warnings.filterwarnings("ignore")

import numpy as np
import pytest

from predrules.accumulator import EnsembleAccumulator, maxdepth_sampler, resolve_depths
from predrules.data import FeatureSpace
from predrules.exceptions import ConfigurationError
from predrules.families import get_family
from predrules.inductors import ConditionalInferenceTree
from predrules.sampling import draw_sample, iteration_rng, validate_sample_fraction


@pytest.fixture
def regression_data():
    rng = np.random.RandomState(42)
    n = 120
    X = rng.uniform(0, 1, (n, 3))
    y = 2.0 * (X[:, 0] > 0.5) + X[:, 1] + rng.normal(0, 0.2, n)
    space = FeatureSpace.from_data(X)
    return space, space.encode(X), y


def test_subsample_without_replacement():
    sample = draw_sample(100, np.ones(100), 0.5, np.random.RandomState(0))
    assert sample.weights.sum() == 50
    assert set(np.unique(sample.weights)) == {0.0, 1.0}
    assert len(sample.rows) == 50


def test_bootstrap_sample():
    sample = draw_sample(100, np.ones(100), 1.0, np.random.RandomState(0))
    assert sample.weights.sum() == 100
    assert sample.weights.max() > 1


def test_subsample_skips_zero_weight_rows():
    weights = np.ones(100)
    weights[:60] = 0.0
    sample = draw_sample(100, weights, 0.5, np.random.RandomState(0))
    assert sample.weights.sum() == 40
    assert np.all(sample.rows >= 60)


def test_bootstrap_skips_zero_weight_rows():
    weights = np.ones(100)
    weights[:60] = 0.0
    sample = draw_sample(100, weights, 1.0, np.random.RandomState(0))
    assert sample.weights.sum() == 100
    assert np.all(sample.rows >= 60)


def test_callable_sample_fraction():
    def first_ten(n, weights, rng):
        return np.arange(10)

    sample = draw_sample(30, np.ones(30), first_ten, np.random.RandomState(0))
    np.testing.assert_array_equal(sample.rows, np.arange(10))


def test_iteration_streams_are_reproducible():
    a = draw_sample(50, np.ones(50), 0.5, iteration_rng(42, 3))
    b = draw_sample(50, np.ones(50), 0.5, iteration_rng(42, 3))
    c = draw_sample(50, np.ones(50), 0.5, iteration_rng(42, 4))
    np.testing.assert_array_equal(a.weights, b.weights)
    assert not np.array_equal(a.weights, c.weights)


@pytest.mark.parametrize("fraction", [0.0, -0.1, 1.5])
def test_invalid_sample_fraction(fraction):
    with pytest.raises(ConfigurationError, match="sample_fraction"):
        validate_sample_fraction(fraction)


def test_maxdepth_sampler():
    sampler = maxdepth_sampler()
    depths = sampler(500, np.random.RandomState(0))
    assert depths.shape == (500,)
    assert depths.min() >= 1
    assert 1.5 < depths.mean() < 3.5
    with pytest.raises(ConfigurationError, match="av_no_term_nodes"):
        maxdepth_sampler(av_no_term_nodes=2)


def test_resolve_depths():
    np.testing.assert_array_equal(resolve_depths(3, 4, 0), [3, 3, 3, 3])
    np.testing.assert_array_equal(resolve_depths([1, 2], 2, 0), [1, 2])
    assert len(resolve_depths(maxdepth_sampler(), 7, 0)) == 7
    with pytest.raises(ConfigurationError, match="expected ntrees"):
        resolve_depths([1, 2], 3, 0)
    with pytest.raises(ConfigurationError, match="positive integer"):
        resolve_depths(0, 3, 0)
    with pytest.raises(ConfigurationError, match="positive integer"):
        resolve_depths(lambda ntrees, rng: np.zeros(ntrees), 3, 0)


def _accumulator(learnrate, n_jobs=None, ntrees=10):
    return EnsembleAccumulator(
        get_family("gaussian"), ConditionalInferenceTree(), ntrees, 0.5,
        np.full(ntrees, 2), learnrate, random_state=42, n_jobs=n_jobs,
    )


def test_boosting_moves_eta_towards_response(regression_data):
    space, columns, y = regression_data
    accumulator = _accumulator(0.5)
    rules = accumulator.run(space, columns, y, np.ones(len(y)))
    assert rules
    assert len(accumulator.tree_sizes_) == 10
    null_loss = np.mean((y - y.mean()) ** 2)
    assert np.mean((y - accumulator.eta_) ** 2) < null_loss


def test_bagging_independent_of_n_jobs(regression_data):
    space, columns, y = regression_data
    sequential = _accumulator(0.0, n_jobs=1).run(space, columns, y, np.ones(len(y)))
    parallel = _accumulator(0.0, n_jobs=2).run(space, columns, y, np.ones(len(y)))
    assert [r.description for r in sequential] == [r.description for r in parallel]


def test_rules_reference_known_variables(regression_data):
    space, columns, y = regression_data
    rules = _accumulator(0.01).run(space, columns, y, np.ones(len(y)))
    for rule in rules:
        assert set(rule.variables) <= set(space.names)
        assert 1 <= len(rule) <= 2


def test_zero_trees(regression_data):
    space, columns, y = regression_data
    accumulator = _accumulator(0.01, ntrees=0)
    assert accumulator.run(space, columns, y, np.ones(len(y))) == []
    assert accumulator.n_degenerate_ == 0
