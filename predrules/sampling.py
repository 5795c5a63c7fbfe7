"""Per-iteration row sampling for the tree ensemble."""

import numpy as np

from .exceptions import ConfigurationError


class Sample:
    """Row weights drawn for one tree-growing iteration.

    ``weights[i]`` is the number of times row ``i`` was drawn (bootstrap) or
    1/0 membership (subsample), multiplied by the observation weight.
    """

    __slots__ = ("weights", "seed")

    def __init__(self, weights, seed):
        self.weights = weights
        self.seed = seed

    @property
    def rows(self):
        return np.flatnonzero(self.weights > 0)


def iteration_rng(seed, iteration):
    """Independent random stream for one iteration."""
    return np.random.RandomState(seed + iteration)


def validate_sample_fraction(sample_fraction):
    if callable(sample_fraction):
        return
    if not 0 < sample_fraction <= 1:
        raise ConfigurationError(
            f"sample_fraction must be in (0, 1] or a callable, got {sample_fraction}"
        )


def draw_sample(n, weights, sample_fraction, rng, seed=None):
    """Draw the sample for one iteration.

    Parameters
    ----------
    n : int
        Number of training rows.
    weights : ndarray of shape (n,)
        Observation weights.
    sample_fraction : float or callable
        ``< 1``: subsample of ``round(sample_fraction * n)`` rows without
        replacement; ``== 1``: bootstrap of size ``n``.  A callable
        ``(n, weights, rng) -> indices`` returns a multiset of row indices.
    rng : numpy.random.RandomState
        The iteration's own random stream.

    Returns
    -------
    Sample
    """
    p = None
    if not np.allclose(weights, weights[0]):
        p = weights / weights.sum()

    if callable(sample_fraction):
        idx = np.asarray(sample_fraction(n, weights, rng), dtype=np.int64)
        counts = np.bincount(idx, minlength=n).astype(np.float64)
    elif sample_fraction >= 1:
        idx = rng.choice(n, size=n, replace=True, p=p)
        counts = np.bincount(idx, minlength=n).astype(np.float64)
    else:
        size = max(1, int(round(sample_fraction * n)))
        if p is not None:
            # Zero-weight rows cannot be drawn without replacement.
            size = min(size, np.count_nonzero(p))
        idx = rng.choice(n, size=size, replace=False, p=p)
        counts = np.zeros(n)
        counts[idx] = 1.0

    # Unequal observation weights already shaped the draw probabilities.
    sample_weights = counts if p is not None else counts * weights
    return Sample(sample_weights, seed)
