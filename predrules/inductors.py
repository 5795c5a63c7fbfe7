"""
Tree inductors: conditional inference, CART and model-based trees.

All inductors share one capability::

    grow(space, coded, response, weights, max_depth, rng) -> Tree

``coded`` holds the full training predictors (numeric as float, categorical
as integer codes), ``weights`` the sample weights of the current iteration
(zero for rows outside the sample) and ``response`` the working response,
shape (n,) or (n, q).  A node whose response is constant is never split, so a
degenerate sample yields a single-leaf tree rather than an error.

References:
    - Hothorn, Hornik & Zeileis (2006) "Unbiased Recursive Partitioning:
      A Conditional Inference Framework", JCGS
    - Zeileis, Hothorn & Hornik (2008) "Model-Based Recursive Partitioning",
      JCGS
    - Breiman et al. (1984) "Classification and Regression Trees"
"""

import logging

import numpy as np
from scipy import stats
from scipy.special import logit, xlogy
from sklearn.tree import DecisionTreeRegressor

from .data import NUMERIC
from .exceptions import ConfigurationError
from .tree import Split, Tree

logger = logging.getLogger(__name__)

_EPS = 1e-10


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _ordered_cuts(x, w, min_bucket):
    """Sort a node's values and list the admissible cut positions.

    A cut after sorted position ``k`` sends ``xs[:k + 1]`` left; only the last
    position of each run of tied values is a candidate, and both sides must
    carry at least ``min_bucket`` weight.
    """
    order = np.argsort(x, kind="mergesort")
    xs = x[order]
    ws = w[order]
    cw = np.cumsum(ws)
    k = np.flatnonzero(xs[:-1] < xs[1:])
    k = k[(cw[k] >= min_bucket) & (cw[-1] - cw[k] >= min_bucket)]
    return order, xs, ws, cw, k


def _level_ranks(codes, score, w, n_levels):
    """Rank of each level by its weighted mean score; absent levels rank last."""
    totals = np.bincount(codes, weights=w * score, minlength=n_levels)
    counts = np.bincount(codes, weights=w, minlength=n_levels)
    present = np.flatnonzero(counts > 0)
    means = totals[present] / counts[present]
    rank = np.full(n_levels, n_levels, dtype=np.float64)
    rank[present[np.argsort(means, kind="mergesort")]] = np.arange(len(present))
    return rank


def _leading_score(h, w):
    """One-dimensional summary of a (possibly multivariate) response."""
    if h.shape[1] == 1:
        return h[:, 0]
    center = np.average(h, axis=0, weights=w)
    cov = np.cov((h - center).T, aweights=w)
    _, vecs = np.linalg.eigh(np.atleast_2d(cov))
    return h @ vecs[:, -1]


def _split_pair(space, name, threshold, rank=None):
    """The two child conditions for a cut of ``name`` at ``threshold``."""
    if space.kind(name) == NUMERIC:
        return Split(name, "<=", float(threshold)), Split(name, ">", float(threshold))
    levels = space.levels[name]
    left = frozenset(levels[i] for i in range(len(levels)) if rank[i] <= threshold)
    right = frozenset(levels) - left
    return Split(name, "in", left), Split(name, "in", right)


def _float64_cut(x, threshold):
    """Float64 cut routing every value of ``x`` as sklearn did.

    sklearn compares float32-rounded inputs, so values close to its
    threshold can land on the other side of a plain float64 comparison.
    """
    values = np.unique(x)
    left = values[values.astype(np.float32).astype(np.float64) <= threshold]
    if len(left) in (0, len(values)):
        return float(threshold)
    low, high = left[-1], values[len(left)]
    mid = low / 2.0 + high / 2.0
    return float(mid if low <= mid < high else low)


def _bonferroni(p, m):
    """Adjusted p-value ``1 - (1 - p)^m``."""
    return -np.expm1(m * np.log1p(-min(p, 1.0 - 1e-16)))


# ---------------------------------------------------------------------------
# Base inductor
# ---------------------------------------------------------------------------


class TreeInductor:
    """Recursive binary partitioning driven by a split-selection strategy.

    Parameters
    ----------
    min_split : float, default=20
        Minimum node weight required to attempt a split.
    min_bucket : float, default=7
        Minimum weight of each child.
    mtry : int or None, default=None
        Number of randomly drawn candidate variables per node (all if None).
    """

    def __init__(self, min_split=20, min_bucket=7, mtry=None):
        self.min_split = min_split
        self.min_bucket = min_bucket
        self.mtry = mtry

    def grow(self, space, coded, response, weights, max_depth, rng):
        response = np.asarray(response, dtype=np.float64)
        H = response.reshape(len(response), -1)
        rows = np.flatnonzero(weights > 0)
        tree = Tree()
        self._grow_node(tree, space, coded, H, weights, rows, -1, None, 0, max_depth, rng)
        return tree

    def _grow_node(self, tree, space, coded, H, weights, rows, parent, split,
                   depth, max_depth, rng):
        w = weights[rows]
        h = H[rows]
        total = w.sum()
        node_id = tree.add_node(parent, split, self._node_value(h, w), total)

        if depth >= max_depth or total < self.min_split or len(rows) < 2:
            return
        if np.all(np.ptp(h, axis=0) <= _EPS):
            logger.debug("Node %d has a constant response, not splitting", node_id)
            return

        chosen = self._choose_split(space, coded, h, w, rows, rng)
        if chosen is None:
            return
        first, second, goes_first = chosen
        self._grow_node(tree, space, coded, H, weights, rows[goes_first], node_id,
                        first, depth + 1, max_depth, rng)
        self._grow_node(tree, space, coded, H, weights, rows[~goes_first], node_id,
                        second, depth + 1, max_depth, rng)

    def _node_value(self, h, w):
        return np.average(h, axis=0, weights=w)

    def _candidate_variables(self, space, rng):
        names = space.names
        if self.mtry is None or self.mtry >= len(names):
            return names
        picked = np.sort(rng.choice(len(names), size=self.mtry, replace=False))
        return [names[i] for i in picked]

    def _choose_split(self, space, coded, h, w, rows, rng):
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Conditional inference trees
# ---------------------------------------------------------------------------


def _response_moments(h, w):
    total = w.sum()
    mean = w @ h / total
    centered = h - mean
    cov = (centered * w[:, None]).T @ centered / total
    return mean, cov


def _linear_statistic(g, h, w, mean_h, cov_h):
    """Quadratic form of the Strasser-Weber linear statistic and its df."""
    total = w.sum()
    if total <= 1:
        return 0.0, 0
    wg_rows = g * w[:, None]
    wg = wg_rows.sum(axis=0)
    T = wg_rows.T @ h
    mu = np.outer(wg, mean_h)
    cov = (total * np.kron(cov_h, wg_rows.T @ g)
           - np.kron(cov_h, np.outer(wg, wg))) / (total - 1)
    rank = np.linalg.matrix_rank(cov, hermitian=True)
    if rank == 0:
        return 0.0, 0
    diff = (T - mu).ravel(order="F")
    return float(diff @ np.linalg.pinv(cov, hermitian=True) @ diff), int(rank)


class ConditionalInferenceTree(TreeInductor):
    """Unbiased recursive partitioning with permutation-test variable selection.

    At each node every candidate variable is tested for independence from
    the response with the asymptotic chi-square distribution of the
    quadratic linear statistic; the variable with the smallest
    Bonferroni-adjusted p-value is split if that p-value is below
    ``1 - mincriterion``.  Categorical variables are tested on their full
    dummy coding, so many-level factors are not favoured.
    """

    def __init__(self, min_split=20, min_bucket=7, mtry=None, mincriterion=0.95):
        super().__init__(min_split=min_split, min_bucket=min_bucket, mtry=mtry)
        self.mincriterion = mincriterion

    def _choose_split(self, space, coded, h, w, rows, rng):
        mean_h, cov_h = _response_moments(h, w)
        tested = []
        for name in self._candidate_variables(space, rng):
            x = coded[name][rows]
            if space.kind(name) == NUMERIC:
                g = x[:, None]
            else:
                present = np.unique(x)
                if len(present) < 2:
                    continue
                g = (x[:, None] == present[None, :]).astype(np.float64)
            stat, df = _linear_statistic(g, h, w, mean_h, cov_h)
            if df == 0:
                continue
            tested.append((name, stats.chi2.sf(stat, df), stat))

        if not tested:
            return None
        m = len(tested)
        name, p, _ = min(tested, key=lambda t: (_bonferroni(t[1], m), -t[2]))
        if _bonferroni(p, m) > 1.0 - self.mincriterion:
            return None
        return self._best_cut(space, name, coded[name][rows], h, w, mean_h, cov_h)

    def _best_cut(self, space, name, x, h, w, mean_h, cov_h):
        rank = None
        if space.kind(name) != NUMERIC:
            rank = _level_ranks(x, _leading_score(h, w), w, len(space.levels[name]))
            x = rank[x]

        order, xs, ws, cw, k = _ordered_cuts(x, w, self.min_bucket)
        if len(k) == 0:
            return None
        total = cw[-1]
        cum_h = np.cumsum(ws[:, None] * h[order], axis=0)
        n_left = cw[k]
        diff = cum_h[k] - n_left[:, None] * mean_h
        cov_pinv = np.linalg.pinv(cov_h, hermitian=True)
        stat = (np.einsum("ij,jk,ik->i", diff, cov_pinv, diff)
                * (total - 1) / (n_left * (total - n_left)))
        threshold = xs[k[np.argmax(stat)]]

        first, second = _split_pair(space, name, threshold, rank)
        return first, second, x <= threshold


# ---------------------------------------------------------------------------
# Model-based trees
# ---------------------------------------------------------------------------


def _gaussian_segment_loss(sw, swy, swy2):
    return swy2 - swy ** 2 / sw


def _binomial_segment_loss(sw, swy, swy2):
    m = np.clip(swy / sw, _EPS, 1 - _EPS)
    return -2.0 * (xlogy(swy, m) + xlogy(sw - swy, 1 - m))


def _poisson_segment_loss(sw, swy, swy2):
    # Terms constant across candidate cuts are dropped.
    return -2.0 * xlogy(swy, np.maximum(swy / sw, _EPS))


_SEGMENT_LOSS = {
    "gaussian": _gaussian_segment_loss,
    "binomial": _binomial_segment_loss,
    "poisson": _poisson_segment_loss,
}


class ModelBasedTree(TreeInductor):
    """Model-based recursive partitioning of an intercept-only GLM.

    The node model is fitted by weighted mean; its score contributions
    ``w * (y - mu)`` are tested for instability along every candidate
    variable (double-max fluctuation test for numeric variables, chi-square
    LM test for categorical ones).  The cut minimises the summed segment
    deviance of the two child models.

    Parameters
    ----------
    alpha : float, default=0.05
        Significance level of the Bonferroni-adjusted instability test.
    node_family : {'gaussian', 'binomial', 'poisson'}, default='gaussian'
    """

    def __init__(self, min_split=20, min_bucket=7, mtry=None, alpha=0.05,
                 node_family="gaussian"):
        super().__init__(min_split=min_split, min_bucket=min_bucket, mtry=mtry)
        if node_family not in _SEGMENT_LOSS:
            raise ConfigurationError(
                f"model-based trees support {sorted(_SEGMENT_LOSS)} node models, "
                f"got {node_family!r}"
            )
        self.alpha = alpha
        self.node_family = node_family

    def _node_value(self, h, w):
        m = np.average(h, axis=0, weights=w)
        if self.node_family == "binomial":
            return logit(np.clip(m, _EPS, 1 - _EPS))
        if self.node_family == "poisson":
            return np.log(np.maximum(m, _EPS))
        return m

    def _choose_split(self, space, coded, h, w, rows, rng):
        y = h[:, 0]
        total = w.sum()
        resid = y - w @ y / total
        sigma2 = w @ resid ** 2 / total
        if sigma2 <= _EPS:
            return None
        scores = w * resid

        tested = []
        for name in self._candidate_variables(space, rng):
            x = coded[name][rows]
            if space.kind(name) == NUMERIC:
                order = np.argsort(x, kind="mergesort")
                xs = x[order]
                ends = np.flatnonzero(xs[:-1] < xs[1:])
                if len(ends) == 0:
                    continue
                process = np.cumsum(scores[order])[ends]
                stat = np.max(np.abs(process)) / np.sqrt(total * sigma2)
                p = stats.kstwobign.sf(stat)
            else:
                n_levels = len(space.levels[name])
                level_scores = np.bincount(x, weights=scores, minlength=n_levels)
                level_weights = np.bincount(x, weights=w, minlength=n_levels)
                present = level_weights > 0
                if present.sum() < 2:
                    continue
                stat = np.sum(level_scores[present] ** 2 / level_weights[present]) / sigma2
                p = stats.chi2.sf(stat, present.sum() - 1)
            tested.append((name, p, stat))

        if not tested:
            return None
        m = len(tested)
        name, p, _ = min(tested, key=lambda t: (_bonferroni(t[1], m), -t[2]))
        if _bonferroni(p, m) > self.alpha:
            return None
        return self._best_cut(space, name, coded[name][rows], y, w)

    def _best_cut(self, space, name, x, y, w):
        rank = None
        if space.kind(name) != NUMERIC:
            rank = _level_ranks(x, y, w, len(space.levels[name]))
            x = rank[x]

        order, xs, ws, cw, k = _ordered_cuts(x, w, self.min_bucket)
        if len(k) == 0:
            return None
        ys = y[order]
        cwy = np.cumsum(ws * ys)
        cwy2 = np.cumsum(ws * ys ** 2)
        loss = _SEGMENT_LOSS[self.node_family]
        objective = (loss(cw[k], cwy[k], cwy2[k])
                     + loss(cw[-1] - cw[k], cwy[-1] - cwy[k], cwy2[-1] - cwy2[k]))
        threshold = xs[k[np.argmin(objective)]]

        first, second = _split_pair(space, name, threshold, rank)
        return first, second, x <= threshold


# ---------------------------------------------------------------------------
# CART
# ---------------------------------------------------------------------------


class CARTTree(TreeInductor):
    """Variance-reduction trees grown by scikit-learn.

    Categorical variables are replaced by the rank of each level's mean
    response in the sample, which makes the best ordered cut the best
    binary partition of the levels; cuts are mapped back to level sets.
    """

    def grow(self, space, coded, response, weights, max_depth, rng):
        response = np.asarray(response, dtype=np.float64)
        rows = np.flatnonzero(weights > 0)
        H = response.reshape(len(response), -1)[rows]
        w = weights[rows]
        tree = Tree()
        if len(rows) < 2 or np.all(np.ptp(H, axis=0) <= _EPS):
            tree.add_node(-1, None, self._node_value(H, w), w.sum())
            return tree

        score = _leading_score(H, w)
        columns = []
        ranks = {}
        for name, kind in zip(space.names, space.kinds):
            x = coded[name][rows]
            if kind == NUMERIC:
                columns.append(x)
            else:
                ranks[name] = _level_ranks(x, score, w, len(space.levels[name]))
                columns.append(ranks[name][x])

        estimator = DecisionTreeRegressor(
            max_depth=max_depth,
            min_samples_split=max(2, int(self.min_split)),
            min_samples_leaf=max(1, int(self.min_bucket)),
            max_features=self.mtry,
            random_state=rng.randint(np.iinfo(np.int32).max),
        )
        design = np.column_stack(columns)
        estimator.fit(design, H if H.shape[1] > 1 else H[:, 0], sample_weight=w)
        self._convert(estimator.tree_, space, ranks, design, tree)
        return tree

    def _convert(self, fitted, space, ranks, design, tree):
        """Copy a fitted sklearn tree into the arena in preorder."""
        stack = [(0, -1, None)]
        while stack:
            source, parent, split = stack.pop()
            node_id = tree.add_node(parent, split, fitted.value[source][:, 0],
                                    fitted.weighted_n_node_samples[source])
            left = fitted.children_left[source]
            right = fitted.children_right[source]
            if left == -1:
                continue
            feature = fitted.feature[source]
            name = space.names[feature]
            threshold = fitted.threshold[source]
            if name not in ranks:
                threshold = _float64_cut(design[:, feature], threshold)
            first, second = _split_pair(space, name, threshold, ranks.get(name))
            stack.append((right, node_id, second))
            stack.append((left, node_id, first))


TREE_STRATEGIES = {
    "ctree": ConditionalInferenceTree,
    "cart": CARTTree,
    "mob": ModelBasedTree,
}


def make_inductor(strategy, *, family, boosting, min_split=20, min_bucket=7,
                  mtry=None, mincriterion=0.95):
    """Build the inductor for ``strategy`` configured for ``family``."""
    if strategy not in TREE_STRATEGIES:
        raise ConfigurationError(
            f"tree_strategy must be one of {sorted(TREE_STRATEGIES)}, got {strategy!r}"
        )
    common = dict(min_split=min_split, min_bucket=min_bucket, mtry=mtry)
    if strategy == "ctree":
        return ConditionalInferenceTree(mincriterion=mincriterion, **common)
    if strategy == "mob":
        if not family.node_models:
            raise ConfigurationError(
                f"tree_strategy='mob' is not available for family {family.name!r}"
            )
        node_family = "gaussian" if boosting else family.name
        return ModelBasedTree(alpha=1.0 - mincriterion, node_family=node_family, **common)
    return CARTTree(**common)
