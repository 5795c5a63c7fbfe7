"""Arena-backed decision tree shared by all inductors.

Nodes live in a flat list and refer to each other by integer id.  Every
non-root node stores the :class:`Split` that must hold to reach it from its
parent and its parent's id, so the conjunction describing a node is a simple
walk up the parent ids.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Union

import numpy as np

_NEGATED_OPS = {"<=": ">", ">": "<=", "in": "not in", "not in": "in"}


def format_threshold(value):
    """Shortest string that round-trips the threshold exactly."""
    return repr(float(value))


def format_levels(levels):
    return "{" + ", ".join(repr(str(v)) for v in sorted(levels)) + "}"


@dataclass(frozen=True)
class Split:
    """One condition: ``variable op value``."""

    variable: str
    op: str
    value: Union[float, FrozenSet[str]]

    def __post_init__(self):
        if self.op not in _NEGATED_OPS:
            raise ValueError(f"Unknown split operator {self.op!r}")

    def __str__(self):
        if self.op in ("in", "not in"):
            return f"{self.variable} {self.op} {format_levels(self.value)}"
        return f"{self.variable} {self.op} {format_threshold(self.value)}"

    def negate(self):
        return Split(self.variable, _NEGATED_OPS[self.op], self.value)

    def evaluate(self, columns):
        """Evaluate on encoded columns: 1.0 / 0.0, NaN where the value is missing."""
        x = columns[self.variable]
        if self.op in ("in", "not in"):
            missing = np.array([v is None for v in x], dtype=bool)
            hit = np.isin(x, list(self.value))
            if self.op == "not in":
                hit = ~hit
        else:
            x = np.asarray(x, dtype=np.float64)
            missing = np.isnan(x)
            with np.errstate(invalid="ignore"):
                hit = x <= self.value if self.op == "<=" else x > self.value
        out = hit.astype(np.float64)
        out[missing] = np.nan
        return out


@dataclass
class TreeNode:
    id: int
    parent: int
    split: Optional[Split]
    value: np.ndarray
    weight: float
    children: List[int] = field(default_factory=list)

    @property
    def is_leaf(self):
        return not self.children


class Tree:
    """Binary tree stored as an arena of :class:`TreeNode`."""

    def __init__(self):
        self.nodes = []

    def add_node(self, parent, split, value, weight):
        node = TreeNode(len(self.nodes), parent, split, np.atleast_1d(value), float(weight))
        self.nodes.append(node)
        if parent >= 0:
            self.nodes[parent].children.append(node.id)
        return node.id

    @property
    def n_nodes(self):
        return len(self.nodes)

    @property
    def depth(self):
        return max((len(self.path(n.id)) for n in self.nodes), default=0)

    def path(self, node_id):
        """Splits from the root down to ``node_id``."""
        splits = []
        node = self.nodes[node_id]
        while node.parent >= 0:
            splits.append(node.split)
            node = self.nodes[node.parent]
        return splits[::-1]

    def apply(self, columns):
        """Leaf id reached by every row.

        Rows whose split variable is missing follow the second child.
        """
        n = len(next(iter(columns.values())))
        position = np.zeros(n, dtype=np.int64)
        # Preorder ids: parents are always visited before their children.
        for node in self.nodes:
            if node.is_leaf:
                continue
            at_node = position == node.id
            if not at_node.any():
                continue
            first, second = node.children
            goes_first = self.nodes[first].split.evaluate(columns) == 1.0
            position[at_node & goes_first] = first
            position[at_node & ~goes_first] = second
        return position

    def predict(self, columns):
        """Leaf values, shape (n,) or (n, q) for multivariate leaves."""
        leaves = self.apply(columns)
        values = np.vstack([node.value for node in self.nodes])
        out = values[leaves]
        return out[:, 0] if out.shape[1] == 1 else out
