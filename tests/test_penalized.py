"""Tests for the cross-validated lasso path."""

import warnings
warnings.filterwarnings("ignore")

import numpy as np
import pytest
from scipy import sparse

from predrules import penalized
from predrules.exceptions import ConfigurationError, SingularDesignWarning
from predrules.families import get_family
from predrules.penalized import PenalizedFitter, lambda_max, select_indices


@pytest.fixture
def regression():
    rng = np.random.RandomState(0)
    n, p = 150, 8
    X = rng.normal(size=(n, p))
    y = 3.0 * X[:, 0] - 2.0 * X[:, 1] + rng.normal(0, 0.5, n)
    return X, y


@pytest.fixture
def rule_design():
    """Sparse 0/1 columns with a signal on the first two."""
    rng = np.random.RandomState(1)
    n, p = 200, 12
    X = (rng.uniform(size=(n, p)) < 0.08).astype(float)
    y = 2.0 * X[:, 0] - 1.5 * X[:, 1] + rng.normal(0, 0.3, n)
    return X, y


def test_recovers_signal_signs(regression):
    X, y = regression
    fitter = PenalizedFitter(get_family("gaussian"), nfolds=5).fit(X, y)
    assert fitter.coef_[0] > 1.0
    assert fitter.coef_[1] < -0.5
    assert fitter.intercept_ == pytest.approx(y.mean(), abs=0.5)


def test_lambda_max_zeroes_every_coefficient(regression):
    X, y = regression
    fitter = PenalizedFitter(get_family("gaussian"), nfolds=5).fit(X, y)
    path = fitter.path_
    assert path.lambdas[0] == pytest.approx(lambda_max(get_family("gaussian"), X, y, np.ones(len(y))))
    np.testing.assert_allclose(path.coefs[0], 0.0, atol=1e-8)
    assert np.all(np.diff(path.lambdas) < 0)


def test_1se_is_no_denser_than_min(regression):
    X, y = regression
    family = get_family("gaussian")
    one_se = PenalizedFitter(family, nfolds=5, penalty_selection="lambda.1se").fit(X, y)
    minimum = PenalizedFitter(family, nfolds=5, penalty_selection="lambda.min").fit(X, y)
    path = one_se.path_
    assert path.nonzero[path.index_1se] <= path.nonzero[path.index_min]
    assert one_se.lambda_ >= minimum.lambda_
    assert np.count_nonzero(one_se.coef_) <= np.count_nonzero(minimum.coef_)
    assert np.all(np.isfinite(path.cvm)) and np.all(path.cvsd >= 0)


def test_select_indices():
    cvsd = np.full(5, 0.5)
    assert select_indices(np.array([5.0, 3.0, 2.0, 2.1, 2.5]), cvsd, np.arange(5)) == (2, 2)
    assert select_indices(np.array([3.0, 2.4, 2.0]), cvsd[:3], np.arange(3)) == (2, 1)
    # Within one standard error but denser than lambda.min: not eligible.
    assert select_indices(np.array([2.2, 2.0]), cvsd[:2], np.array([5, 3])) == (1, 1)


def test_penalty_lookup(regression):
    X, y = regression
    path = PenalizedFitter(get_family("gaussian"), nfolds=5).fit(X, y).path_
    assert path.index("lambda.min") == path.index_min
    assert path.index(path.lambdas[7]) == 7
    with pytest.raises(ConfigurationError):
        path.index("lambda.best")


def test_dense_and_sparse_designs_agree(rule_design):
    X, y = rule_design
    family = get_family("gaussian")
    dense = PenalizedFitter(family, nfolds=5).fit(X, y)
    sparse_fit = PenalizedFitter(family, nfolds=5).fit(sparse.csc_matrix(X), y)
    np.testing.assert_allclose(dense.coef_, sparse_fit.coef_, atol=1e-3)
    assert dense.intercept_ == pytest.approx(sparse_fit.intercept_, abs=1e-3)


def test_penalty_factor_keeps_column(regression):
    X, y = regression
    factor = np.ones(X.shape[1])
    factor[5] = 0.0
    fitter = PenalizedFitter(get_family("gaussian"), nfolds=5).fit(X, y, penalty_factor=factor)
    assert fitter.coef_[5] != 0.0


def test_column_scale_reports_unscaled_coefficients(regression):
    X, y = regression
    scale = np.full(X.shape[1], 2.0)
    fitter = PenalizedFitter(get_family("gaussian"), nfolds=5,
                             penalty_selection="lambda.min").fit(X, y, column_scale=scale)
    prediction = fitter.intercept_ + X @ fitter.coef_
    assert np.corrcoef(prediction, y)[0, 1] > 0.9


def test_empty_design_is_intercept_only(regression):
    _, y = regression
    fitter = PenalizedFitter(get_family("gaussian")).fit(np.zeros((len(y), 0)), y)
    assert fitter.coef_.shape == (0,)
    assert fitter.intercept_ == pytest.approx(y.mean())


def test_cox_has_no_intercept():
    rng = np.random.RandomState(2)
    n = 150
    X = rng.normal(size=(n, 4))
    time = rng.exponential(np.exp(-X[:, 0]))
    y = np.column_stack([time, (rng.uniform(size=n) < 0.8).astype(float)])
    fitter = PenalizedFitter(get_family("cox"), nfolds=5,
                             penalty_selection="lambda.min").fit(X, y)
    assert fitter.intercept_ is None
    assert fitter.coef_[0] > 0


def test_binomial_and_multinomial_shapes():
    rng = np.random.RandomState(3)
    n = 150
    X = rng.normal(size=(n, 4))
    y01 = (X[:, 0] + rng.normal(0, 0.5, n) > 0).astype(float)
    binomial = PenalizedFitter(get_family("binomial"), nfolds=5).fit(X, y01)
    assert binomial.coef_.shape == (4,)
    assert binomial.coef_[0] > 0

    labels = np.digitize(X[:, 0], [-0.5, 0.5])
    onehot, _ = get_family("multinomial").prepare(labels)
    multinomial = PenalizedFitter(get_family("multinomial"), nfolds=5).fit(X, onehot)
    assert multinomial.coef_.shape == (4, 3)
    assert multinomial.intercept_.shape == (3,)


def test_mgaussian_group_sparsity(regression):
    X, y = regression
    Y = np.column_stack([y, -y])
    fitter = PenalizedFitter(get_family("mgaussian"), nfolds=5).fit(X, Y)
    assert fitter.coef_.shape == (X.shape[1], 2)
    zero_rows = np.all(fitter.coef_ == 0, axis=1)
    nonzero_rows = np.all(fitter.coef_ != 0, axis=1)
    assert np.all(zero_rows | nonzero_rows)


def test_solver_failure_truncates_path(monkeypatch, regression):
    X, y = regression
    original = penalized._IRLSLassoSolver._fit_one

    def failing(self, X, y, w, lam):
        self._calls = getattr(self, "_calls", 0) + 1
        if self._calls > 3:
            raise FloatingPointError("singular")
        return original(self, X, y, w, lam)

    monkeypatch.setattr(penalized._IRLSLassoSolver, "_fit_one", failing)
    with pytest.warns(SingularDesignWarning):
        fitter = PenalizedFitter(get_family("gaussian"), nfolds=5).fit(X, y)
    assert len(fitter.path_.lambdas) == 3
    assert np.all(np.isfinite(fitter.path_.cvm))


def test_fold_ids_are_stratified_and_deterministic():
    y = np.array([0.0] * 40 + [1.0] * 10)
    fitter = PenalizedFitter(get_family("binomial"), nfolds=5, random_state=7)
    folds = fitter.fold_ids(y)
    np.testing.assert_array_equal(folds, fitter.fold_ids(y))
    for k in range(5):
        assert np.sum(y[folds == k]) == 2


def test_invalid_settings():
    with pytest.raises(ConfigurationError, match="penalty_selection"):
        PenalizedFitter(get_family("gaussian"), penalty_selection="lambda.best")
    with pytest.raises(ConfigurationError, match="nfolds"):
        PenalizedFitter(get_family("gaussian"), nfolds=1)
