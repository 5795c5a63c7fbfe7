"""End-to-end tests for PredictionRuleEnsemble across families."""

import warnings
warnings.filterwarnings("ignore")

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from predrules import PredictionRuleEnsemble


@pytest.fixture
def regression_data():
    rng = np.random.RandomState(42)
    n = 100
    X = rng.uniform(0, 1, (n, 4))
    y = 2.0 * (X[:, 0] > 0.5) + X[:, 1] + rng.normal(0, 0.3, n)
    return X, y


@pytest.fixture
def classification_data():
    rng = np.random.RandomState(0)
    n = 200
    X = rng.uniform(0, 1, (n, 3))
    p = expit(4.0 * (X[:, 0] > 0.5) - 2.0)
    y = np.where(rng.uniform(size=n) < p, "yes", "no")
    return X, y


def _fast(**kwargs):
    params = dict(ntrees=50, nfolds=5, random_state=42)
    params.update(kwargs)
    return PredictionRuleEnsemble(**params)


def test_gaussian_end_to_end(regression_data):
    X, y = regression_data
    model = _fast().fit(X[:96], y[:96])
    pred = model.predict(X[96:])
    assert pred.shape == (4,)
    spread = 2 * y.std()
    assert np.all(pred > y.min() - spread) and np.all(pred < y.max() + spread)
    assert model.n_rules_ > 0
    assert len(model.get_rules()) > 0
    assert np.all(np.isfinite(model.path_.cvm))
    assert model.feature_names_ == ["X1", "X2", "X3", "X4"]


def test_fit_is_deterministic(regression_data):
    X, y = regression_data
    a = _fast().fit(X, y).get_rules()
    b = _fast().fit(X, y).get_rules()
    assert list(a["description"]) == list(b["description"])
    np.testing.assert_array_equal(a["coefficient"].to_numpy(), b["coefficient"].to_numpy())


def test_predict_matches_fitted_values(regression_data):
    X, y = regression_data
    model = _fast().fit(X, y)
    np.testing.assert_allclose(model.predict(X), model.fitted_values_)


def _three_class_data():
    rng = np.random.RandomState(5)
    n = 180
    X = rng.uniform(0, 1, (n, 3))
    y = np.array(["a", "b", "c"])[np.digitize(X[:, 0] + rng.normal(0, 0.1, n), [0.33, 0.66])]
    return X, y


@pytest.mark.parametrize("family", ["gaussian", "binomial", "multinomial"])
def test_sparse_and_dense_designs_agree(regression_data, classification_data, family):
    X, y = {
        "gaussian": regression_data,
        "binomial": classification_data,
        "multinomial": _three_class_data(),
    }[family]
    dense = _fast(family=family, nlambda=30, sparse=False).fit(X, y)
    sparse_fit = _fast(family=family, nlambda=30, sparse=True).fit(X, y)
    np.testing.assert_allclose(dense.ensemble_.coefficients,
                               sparse_fit.ensemble_.coefficients, atol=1e-3)


def test_linear_only(regression_data):
    X, y = regression_data
    model = _fast(learner_types="linear").fit(X, y)
    assert model.n_rules_ == 0
    assert set(model.get_rules(include_zero=True)["type"]) == {"linear"}


def test_no_learners_predicts_mean(regression_data):
    X, y = regression_data
    model = _fast(ntrees=0, learner_types="rules").fit(X, y)
    assert model.n_candidates_ == 0
    np.testing.assert_allclose(model.predict(X[:5]), np.full(5, y.mean()))
    assert len(model.get_rules()) == 0


def test_no_learners_binomial_predicts_base_rate(classification_data):
    X, y = classification_data
    model = _fast(family="binomial", ntrees=0, learner_types="rules").fit(X, y)
    proba = model.predict_proba(X[:3])
    np.testing.assert_allclose(proba[:, 1], np.mean(y == "yes"))


def test_binomial_labels_and_probabilities(classification_data):
    X, y = classification_data
    model = _fast(family="binomial", nlambda=30).fit(X, y)
    assert list(model.classes_) == ["no", "yes"]
    proba = model.predict_proba(X)
    assert proba.shape == (len(y), 2)
    assert np.all((proba >= 0) & (proba <= 1))
    np.testing.assert_allclose(proba.sum(axis=1), 1.0)
    labels = model.predict(X, type="class")
    assert set(labels) <= {"no", "yes"}
    assert np.mean(labels == y) > 0.6


def test_predict_proba_requires_classification(regression_data):
    X, y = regression_data
    model = _fast().fit(X, y)
    with pytest.raises(ValueError, match="predict_proba"):
        model.predict_proba(X)


def test_multinomial_probabilities_sum_to_one():
    X, y = _three_class_data()
    n = len(y)
    model = _fast(family="multinomial", nlambda=30).fit(X, y)
    proba = model.predict_proba(X)
    assert proba.shape == (n, 3)
    np.testing.assert_allclose(proba.sum(axis=1), 1.0)
    rules = model.get_rules()
    assert {"coefficient.a", "coefficient.b", "coefficient.c"} <= set(rules.columns)


def test_complements_double_the_rules(regression_data):
    X, y = regression_data
    plain = _fast().fit(X, y)
    paired = _fast(include_complements=True, remove_complements=False).fit(X, y)
    assert paired.n_rules_ == 2 * plain.n_rules_


def test_requested_complements_survive_assembly(regression_data):
    X, y = regression_data
    plain = _fast().fit(X, y)
    paired = _fast(include_complements=True).fit(X, y)
    assert paired.n_candidates_ > plain.n_candidates_
    descriptions = list(paired.get_rules(include_zero=True)["description"])
    assert any(d.startswith("not (") for d in descriptions)


def test_dataframe_with_categorical_column():
    rng = np.random.RandomState(3)
    n = 150
    frame = pd.DataFrame({
        "age": rng.uniform(20, 70, n),
        "color": rng.choice(["red", "green", "blue"], n),
    })
    y = np.where(frame["color"] == "red", 3.0, 0.0) + rng.normal(0, 0.3, n)
    model = _fast().fit(frame, y)
    rules = model.get_rules()
    assert any("color in" in d or "color not in" in d for d in rules["description"])
    new = pd.DataFrame({"age": [30.0, 30.0], "color": ["red", "blue"]})
    pred = model.predict(new)
    assert pred[0] > pred[1] + 1.0
    importance = model.variable_importance()
    assert list(importance)[0] == "color"


def test_poisson_predictions_positive():
    rng = np.random.RandomState(4)
    n = 150
    X = rng.uniform(0, 1, (n, 3))
    y = rng.poisson(np.exp(0.5 + 1.0 * (X[:, 0] > 0.5)))
    model = _fast(family="poisson").fit(X, y)
    assert np.all(model.predict(X) > 0)


def test_cox_has_no_intercept():
    rng = np.random.RandomState(6)
    n = 150
    X = rng.uniform(0, 1, (n, 3))
    time = rng.exponential(np.exp(-1.5 * (X[:, 0] > 0.5)))
    y = np.column_stack([time, (rng.uniform(size=n) < 0.8).astype(float)])
    model = _fast(family="cox").fit(X, y)
    assert model.ensemble_.intercept is None
    risk = model.predict(X)
    assert np.all(risk > 0)


def test_mgaussian_shapes(regression_data):
    X, y = regression_data
    Y = np.column_stack([y, 0.5 * y + X[:, 2]])
    model = _fast(family="mgaussian").fit(X, Y)
    assert model.predict(X).shape == (len(y), 2)
    assert {"coefficient.y1", "coefficient.y2"} <= set(model.get_rules().columns)


@pytest.mark.parametrize("strategy", ["cart", "mob"])
def test_other_tree_strategies(regression_data, strategy):
    X, y = regression_data
    model = _fast(tree_strategy=strategy).fit(X, y)
    assert model.n_rules_ > 0
    assert np.all(np.isfinite(model.predict(X)))


def test_bagging_with_random_depths(regression_data):
    from predrules import maxdepth_sampler

    X, y = regression_data
    model = _fast(learnrate=0.0, max_depth=maxdepth_sampler()).fit(X, y)
    assert len(model.tree_sizes_) == 50


def test_confirmatory_terms_are_kept(regression_data):
    X, y = regression_data
    model = _fast(confirmatory=["X2", "X1 > 0.5"]).fit(X, y)
    assert [s["name"] for s in model.confirmatory_status_] == ["X2", "X1 > 0.5"]
    assert model.confirmatory_all_active_


def test_missing_rows_are_dropped(regression_data):
    X, y = regression_data
    X = X.copy()
    X[0, 1] = np.nan
    y = y.copy()
    y[1] = np.nan
    with pytest.warns(UserWarning, match="Dropping 2 of 100"):
        model = _fast().fit(X, y)
    assert len(model.fitted_values_) == 98
    pred = model.predict(X[:3])
    assert np.isfinite(pred[2])


def test_mostly_zero_sample_weights(regression_data):
    X, y = regression_data
    weights = np.ones(len(y))
    weights[:60] = 0.0
    model = _fast().fit(X, y, sample_weight=weights)
    assert model.n_rules_ > 0
    assert np.all(np.isfinite(model.predict(X)))


def test_penalty_override(regression_data):
    X, y = regression_data
    model = _fast().fit(X, y)
    at_min = _fast(penalty_selection="lambda.min").fit(X, y)
    np.testing.assert_allclose(model.predict(X, penalty="lambda.min"), at_min.predict(X))
    assert len(model.get_rules(penalty="lambda.min")) >= len(model.get_rules())


def test_contributions_sum_to_link(regression_data):
    X, y = regression_data
    model = _fast().fit(X, y)
    frame = model.contributions(X[:10])
    assert frame.columns[0] == "intercept"
    np.testing.assert_allclose(frame.sum(axis=1).to_numpy(), model.predict(X[:10], type="link"))


def test_rule_importance_sorted(regression_data):
    X, y = regression_data
    model = _fast().fit(X, y)
    importance = [r["importance"] for r in model.rule_importance()]
    assert importance == sorted(importance, reverse=True)
    assert set(model.variable_importance()) == {"X1", "X2", "X3", "X4"}
