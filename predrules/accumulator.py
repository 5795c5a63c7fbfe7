"""
Ensemble accumulation: grow ``ntrees`` trees and collect their rules.

Bagging (``learnrate == 0``) iterations are independent and run through
joblib; boosting (``learnrate > 0``) is a sequential loop that moves the
link-space prediction ``eta`` by ``learnrate`` times each tree's prediction
and refits the next tree to the family's negative gradient at ``eta``.
Every iteration draws from its own ``RandomState(seed + i)``, so the rules
do not depend on execution order or ``n_jobs``.
"""

import logging

import numpy as np
from joblib import Parallel, delayed

from .data import coded_columns
from .exceptions import ConfigurationError
from .learners import extract_rules
from .sampling import draw_sample, iteration_rng

logger = logging.getLogger(__name__)


def maxdepth_sampler(av_no_term_nodes=4, av_tree_depth=None):
    """Depth policy drawing a random maximum depth per tree.

    The number of terminal nodes is ``2 + floor(E)`` with ``E`` exponential
    with mean ``av_no_term_nodes - 2`` (Friedman & Popescu 2008, sec. 3.3);
    the depth is the smallest one that can hold that many nodes.

    Parameters
    ----------
    av_no_term_nodes : float, default=4
    av_tree_depth : int, optional
        If given, overrides ``av_no_term_nodes`` with ``2 ** av_tree_depth``.

    Returns
    -------
    sampler : callable(ntrees, rng) -> ndarray of int
    """
    if av_tree_depth is not None:
        av_no_term_nodes = 2 ** av_tree_depth
    if av_no_term_nodes <= 2:
        raise ConfigurationError(
            f"av_no_term_nodes must be greater than 2, got {av_no_term_nodes}"
        )

    def sampler(ntrees, rng):
        draws = rng.exponential(scale=av_no_term_nodes - 2, size=ntrees)
        return np.ceil(np.log2(2 + np.floor(draws))).astype(int)

    return sampler


def resolve_depths(max_depth, ntrees, seed):
    """Maximum depth of every tree, validated before anything is grown."""
    if callable(max_depth):
        depths = np.asarray(max_depth(ntrees, np.random.RandomState(seed)))
    elif np.ndim(max_depth) == 0:
        depths = np.full(ntrees, max_depth)
    else:
        depths = np.asarray(max_depth)
        if len(depths) != ntrees:
            raise ConfigurationError(
                f"max_depth sequence has {len(depths)} entries, expected ntrees={ntrees}"
            )
    depths = np.asarray(depths).ravel()
    if len(depths) != ntrees:
        raise ConfigurationError(
            f"depth policy produced {len(depths)} depths, expected {ntrees}"
        )
    if ntrees and (np.any(depths <= 0) or np.any(depths != np.floor(depths))):
        raise ConfigurationError(
            f"max_depth must produce positive integer depths, got {depths[:10]}"
        )
    return depths.astype(int)


def _grow_iteration(i, inductor, space, coded, columns, response, weights,
                    sample_fraction, depth, seed, include_complements):
    """Grow one tree on its own sample (joblib-friendly)."""
    rng = iteration_rng(seed, i)
    sample = draw_sample(len(weights), weights, sample_fraction, rng, seed=seed + i)
    tree = inductor.grow(space, coded, response, sample.weights, depth, rng)
    return tree, extract_rules(tree, include_complements)


class EnsembleAccumulator:
    """Drives the tree-growing loop and collects candidate rules.

    Parameters
    ----------
    family : Family
    inductor : TreeInductor
    ntrees : int
    sample_fraction : float or callable
    depths : ndarray of int, shape (ntrees,)
    learnrate : float
    include_complements : bool
    random_state : int
    n_jobs : int or None
    """

    def __init__(self, family, inductor, ntrees, sample_fraction, depths,
                 learnrate, include_complements=False, random_state=42,
                 n_jobs=None):
        self.family = family
        self.inductor = inductor
        self.ntrees = ntrees
        self.sample_fraction = sample_fraction
        self.depths = depths
        self.learnrate = learnrate
        self.include_complements = include_complements
        self.random_state = random_state
        self.n_jobs = n_jobs

    def run(self, space, columns, y, weights):
        """Grow every tree and return the rules in (iteration, node id) order.

        Sets ``eta_`` (final link-space boosting prediction), ``n_degenerate_``
        (single-leaf trees) and ``tree_sizes_``.
        """
        coded = coded_columns(space, columns)
        family = self.family
        eta = family.init_eta(y, weights)
        args = (space, coded, columns)

        logger.info(
            "Step 1: Growing %d trees (%s, learnrate=%g)",
            self.ntrees, type(self.inductor).__name__, self.learnrate,
        )

        results = []
        if self.learnrate > 0:
            for i in range(self.ntrees):
                working = family.negative_gradient(y, eta, weights)
                tree, rules = _grow_iteration(
                    i, self.inductor, *args, working, weights, self.sample_fraction,
                    self.depths[i], self.random_state, self.include_complements,
                )
                if tree.n_nodes > 1:
                    eta = eta + self.learnrate * tree.predict(columns)
                results.append((tree.n_nodes, rules))
        else:
            if family.raw_tree_response:
                response = y
            else:
                response = family.negative_gradient(y, eta, weights)
            batches = Parallel(n_jobs=self.n_jobs)(
                delayed(_grow_iteration)(
                    i, self.inductor, *args, response, weights, self.sample_fraction,
                    self.depths[i], self.random_state, self.include_complements,
                )
                for i in range(self.ntrees)
            )
            # Trees are dropped here; only their rules are kept.
            results = [(tree.n_nodes, rules) for tree, rules in batches]

        self.eta_ = eta
        self.tree_sizes_ = np.array([size for size, _ in results], dtype=int)
        self.n_degenerate_ = int(np.sum(self.tree_sizes_ == 1))
        if self.n_degenerate_:
            logger.info("%d of %d trees were single leaves", self.n_degenerate_, self.ntrees)

        rules = [rule for _, batch in results for rule in batch]
        logger.info("Step 2: Extracted %d rules", len(rules))
        return rules
