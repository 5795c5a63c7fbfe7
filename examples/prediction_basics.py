"""
Prediction Basics: predict() and predict_proba()
=================================================
Demonstrates the core prediction pipeline of PredictionRuleEnsemble:
    1. Fit a binomial ensemble on synthetic credit data
    2. predict(type="class")    -> class labels
    3. predict_proba()          -> [P(good), P(default)]
    4. predict(penalty=...)     -> the same ensemble at lambda.min
    5. Cross-validated error of the whole procedure

Usage: python examples/prediction_basics.py
"""

import warnings
warnings.filterwarnings("ignore")

import numpy as np
from sklearn.metrics import accuracy_score, confusion_matrix, roc_auc_score
from sklearn.model_selection import train_test_split

from predrules import PredictionRuleEnsemble, cross_validate


def generate_credit_data(n_samples=1000, random_state=42):
    """Generate synthetic credit scoring data."""
    rng = np.random.RandomState(random_state)
    n = n_samples
    X = np.column_stack([
        rng.uniform(0, 5, n),       # country_risk
        rng.exponential(30, n),      # payment_delay
        rng.lognormal(8, 1.5, n),   # tx_volume
        rng.beta(2, 5, n),          # cash_ratio
        rng.beta(1.5, 8, n),        # night_tx_ratio
        rng.uniform(0, 20, n),      # tenure
    ])
    feature_names = ["country_risk", "payment_delay", "tx_volume",
                     "cash_ratio", "night_tx_ratio", "tenure"]

    logit = (0.8 * (X[:, 3] > 0.4) + 0.5 * (X[:, 4] > 0.15)
             + 0.1 * (X[:, 0] > 2.5) + rng.normal(0, 0.3, n) - 0.8)
    y = np.where(logit > 0, "default", "good")
    return X, y, feature_names


def main():
    print("=" * 60)
    print("PredictionRuleEnsemble - Prediction Basics")
    print("=" * 60)

    # ── Generate data and split ──────────────────────────────────
    X, y, fn = generate_credit_data(n_samples=1000)
    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=0.3, random_state=42, stratify=y
    )
    print(f"\nData: {X_train.shape[0]} train / {X_test.shape[0]} test, "
          f"{np.mean(y == 'default'):.1%} default rate")

    # ── Fit ──────────────────────────────────────────────────────
    print("\n[1] Fitting a binomial rule ensemble...")
    pre = PredictionRuleEnsemble(family="binomial", ntrees=200, nfolds=5)
    pre.fit(X_train, y_train, feature_names=fn)
    print(f"    Rules generated:  {pre.n_rules_}")
    print(f"    Candidates:       {pre.n_candidates_}")
    print(f"    Selected terms:   {len(pre.get_rules())}")
    print(f"    lambda.1se:       {pre.path_.lambda_1se:.5f}")

    # ── Class labels ─────────────────────────────────────────────
    print("\n[2] predict(type='class') -> labels")
    y_pred = pre.predict(X_test, type="class")
    print(f"    Classes:  {list(pre.classes_)}")
    print(f"    Accuracy: {accuracy_score(y_test, y_pred):.4f}")

    # ── Probabilities ────────────────────────────────────────────
    print("\n[3] predict_proba() -> probabilities (columns follow classes_)")
    proba = pre.predict_proba(X_test)
    positive = list(pre.classes_).index("default")
    print(f"    Shape:   {proba.shape}")
    print(f"    Row sums to 1: {np.allclose(proba.sum(axis=1), 1.0)}")
    auc = roc_auc_score(y_test == "default", proba[:, positive])
    print(f"    AUC:     {auc:.4f}")

    cm = confusion_matrix(y_test, y_pred, labels=["good", "default"])
    print(f"    TN={cm[0, 0]:4d}  FP={cm[0, 1]:4d}")
    print(f"    FN={cm[1, 0]:4d}  TP={cm[1, 1]:4d}")

    # ── Other penalties ──────────────────────────────────────────
    print("\n[4] Same path, lambda.min instead of lambda.1se")
    proba_min = pre.predict_proba(X_test, penalty="lambda.min")
    print(f"    Selected terms:   {len(pre.get_rules(penalty='lambda.min'))}")
    print(f"    AUC:     {roc_auc_score(y_test == 'default', proba_min[:, positive]):.4f}")

    # ── Cross-validation ─────────────────────────────────────────
    print("\n[5] 5-fold cross-validation of the full procedure")
    result = cross_validate(
        PredictionRuleEnsemble(family="binomial", ntrees=100, nfolds=5),
        X, y, k_folds=5,
    )
    print(f"    Deviance: {result['mean_error']:.4f} (se {result['standard_error']:.4f})")
    for name, value in result["metrics"].items():
        print(f"    {name:<9} {value:.4f}")

    print()


if __name__ == "__main__":
    main()
