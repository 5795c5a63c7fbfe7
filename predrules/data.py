"""Minimal predictor encoding for numpy arrays and pandas DataFrames."""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

NUMERIC = "numeric"
CATEGORICAL = "categorical"


class FeatureSpace:
    """Names, kinds and category levels of the predictor columns.

    Numeric columns are carried as float64 arrays (NaN = missing).
    Categorical columns are carried as object arrays of level labels
    (None = missing) together with the sorted training levels.

    Parameters
    ----------
    names : list of str
    kinds : list of {'numeric', 'categorical'}
    levels : dict of str -> list
        Training levels for each categorical column.
    """

    def __init__(self, names, kinds, levels=None):
        if len(names) != len(kinds):
            raise ValueError("names and kinds must have the same length")
        if len(set(names)) != len(names):
            raise ValueError("feature names must be unique")
        self.names = list(names)
        self.kinds = list(kinds)
        self.levels = dict(levels or {})

    @classmethod
    def from_data(cls, X, feature_names=None):
        """Infer the feature space from training data."""
        if isinstance(X, pd.DataFrame):
            names = [str(c) for c in X.columns]
            kinds = []
            levels = {}
            for name, col in zip(names, X.columns):
                series = X[col]
                if pd.api.types.is_bool_dtype(series) or pd.api.types.is_numeric_dtype(series):
                    kinds.append(NUMERIC)
                else:
                    kinds.append(CATEGORICAL)
                    levels[name] = sorted(str(v) for v in series.dropna().unique())
            return cls(names, kinds, levels)

        X = np.asarray(X)
        if X.ndim != 2:
            raise ValueError(f"X must be 2-dimensional, got shape {X.shape}")
        if feature_names is None:
            feature_names = [f"X{i + 1}" for i in range(X.shape[1])]
        if len(feature_names) != X.shape[1]:
            raise ValueError(
                f"feature_names has {len(feature_names)} entries, "
                f"X has {X.shape[1]} columns"
            )
        return cls([str(n) for n in feature_names], [NUMERIC] * X.shape[1])

    @property
    def numeric_names(self):
        return [n for n, k in zip(self.names, self.kinds) if k == NUMERIC]

    def kind(self, name):
        return self.kinds[self.names.index(name)]

    def encode(self, X):
        """Return a dict mapping feature name to its column array."""
        if isinstance(X, pd.DataFrame):
            missing = [n for n in self.names if n not in X.columns.astype(str)]
            if missing:
                raise ValueError(f"X is missing columns: {missing}")
            frame = X.copy()
            frame.columns = frame.columns.astype(str)
            raw = {name: frame[name].to_numpy() for name in self.names}
        else:
            X = np.asarray(X)
            if X.ndim != 2 or X.shape[1] != len(self.names):
                raise ValueError(
                    f"X must have shape (n_samples, {len(self.names)}), got {X.shape}"
                )
            raw = {name: X[:, j] for j, name in enumerate(self.names)}

        columns = {}
        for name, kind in zip(self.names, self.kinds):
            values = raw[name]
            if kind == NUMERIC:
                columns[name] = pd.to_numeric(pd.Series(values), errors="coerce").to_numpy(
                    dtype=np.float64
                )
            else:
                series = pd.Series(values, dtype=object)
                columns[name] = np.array(
                    [None if pd.isna(v) else str(v) for v in series], dtype=object
                )
        return columns

    def missing_mask(self, columns):
        """Boolean mask of rows with any missing predictor value."""
        n = len(next(iter(columns.values()))) if columns else 0
        mask = np.zeros(n, dtype=bool)
        for name, kind in zip(self.names, self.kinds):
            col = columns[name]
            mask |= np.isnan(col) if kind == NUMERIC else pd.isna(col)
        return mask

    def to_dict(self):
        return {"names": self.names, "kinds": self.kinds, "levels": self.levels}

    @classmethod
    def from_dict(cls, d):
        return cls(d["names"], d["kinds"], d.get("levels"))


def n_rows(columns):
    """Number of rows in an encoded column dict."""
    return len(next(iter(columns.values()))) if columns else 0


def subset_rows(columns, rows):
    return {name: col[rows] for name, col in columns.items()}


def missing_response(y):
    """Boolean mask of rows with a missing response value."""
    if getattr(y, "dtype", None) is not None and y.dtype.names:
        return np.isnan(np.asarray(y["time"], dtype=np.float64)) | np.isnan(
            np.asarray(y["status"], dtype=np.float64)
        )
    missing = pd.isna(np.asarray(y, dtype=object))
    return missing.any(axis=1) if missing.ndim == 2 else missing


def category_codes(column, levels):
    """Integer codes of a categorical column (-1 for missing/unseen)."""
    lookup = {level: i for i, level in enumerate(levels)}
    return np.array([lookup.get(v, -1) for v in column], dtype=np.int64)


def coded_columns(space, columns):
    """Numeric columns as float arrays, categorical columns as integer codes.

    This is the representation the tree inductors split on.
    """
    coded = {}
    for name, kind in zip(space.names, space.kinds):
        if kind == NUMERIC:
            coded[name] = np.asarray(columns[name], dtype=np.float64)
        else:
            coded[name] = category_codes(columns[name], space.levels[name])
    return coded
