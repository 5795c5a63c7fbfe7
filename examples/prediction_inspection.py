"""
Prediction Inspection: Understanding What Drives Predictions
=============================================================
Demonstrates how to inspect and explain a fitted rule ensemble:
    1. Selected rules and linear terms with their importance
    2. Variable importance
    3. Per-sample contributions (which terms fire for a given sample)
    4. Confirmatory terms kept in the model regardless of selection
    5. Saving the ensemble to JSON and reloading it

Usage: python examples/prediction_inspection.py
"""

import warnings
warnings.filterwarnings("ignore")

import os
import tempfile

import numpy as np
import pandas as pd

from predrules import PredictionRuleEnsemble, load_ensemble, save_ensemble


def generate_claims_data(n_samples=800, random_state=42):
    """Synthetic insurance claim counts with a categorical region."""
    rng = np.random.RandomState(random_state)
    n = n_samples
    frame = pd.DataFrame({
        "driver_age": rng.uniform(18, 80, n),
        "vehicle_age": rng.uniform(0, 20, n),
        "bonus_malus": rng.uniform(50, 150, n),
        "region": rng.choice(["urban", "suburban", "rural"], n),
    })
    rate = np.exp(
        -1.0
        + 0.6 * (frame["driver_age"] < 25)
        + 0.4 * (frame["region"] == "urban")
        + 0.01 * (frame["bonus_malus"] - 100)
    )
    y = rng.poisson(rate)
    return frame, y


def main():
    print("=" * 65)
    print("PredictionRuleEnsemble - Prediction Inspection")
    print("=" * 65)

    X, y = generate_claims_data()
    pre = PredictionRuleEnsemble(
        family="poisson",
        ntrees=200,
        nfolds=5,
        confirmatory=["bonus_malus"],
    )
    pre.fit(X, y)

    # ── Selected terms ───────────────────────────────────────────
    print("\n[1] Selected terms (by importance)")
    for rule in pre.rule_importance()[:10]:
        print(f"    {rule['importance']:8.4f}  {rule['coefficient']:+8.4f}  "
              f"[{rule['type']:<6}] {rule['description']}")

    # ── Variable importance ──────────────────────────────────────
    print("\n[2] Variable importance")
    for name, value in pre.variable_importance().items():
        print(f"    {name:<12} {value:.4f}")

    # ── Per-sample contributions ─────────────────────────────────
    print("\n[3] Contributions to the log rate, first sample")
    contributions = pre.contributions(X.iloc[:1]).iloc[0]
    for name, value in contributions[contributions != 0].items():
        print(f"    {value:+8.4f}  {name}")
    print(f"    expected claims: {pre.predict(X.iloc[:1])[0]:.4f}")

    # ── Confirmatory terms ───────────────────────────────────────
    print("\n[4] Confirmatory terms")
    for status in pre.confirmatory_status_:
        state = "active" if status["active"] else "ZERO"
        print(f"    {status['name']:<12} {state}")

    # ── Persistence ──────────────────────────────────────────────
    print("\n[5] Save / load")
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "claims.json")
        save_ensemble(pre.ensemble_, path)
        loaded = load_ensemble(path)
        same = np.allclose(loaded.predict(loaded.space.encode(X)), pre.predict(X))
        print(f"    {len(loaded)} learners reloaded, identical predictions: {same}")

    print()


if __name__ == "__main__":
    main()
