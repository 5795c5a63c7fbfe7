"""
Base learners: rules, winsorized linear terms and hinge functions.

Every learner exposes ``kind``, ``description``, ``variables`` and
``evaluate(columns)``; ``columns`` is the name -> array mapping produced by
:meth:`predrules.data.FeatureSpace.encode`.  Descriptions are exact: a rule's
description can be parsed back into the same splits, which is what the
persisted ensemble relies on.
"""

import ast
import logging
import re
import warnings
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .data import NUMERIC
from .tree import Split, format_threshold

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Learner types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    """Conjunction of splits along one root-to-node path."""

    splits: Tuple[Split, ...]
    negated: bool = False

    kind = "rule"

    @property
    def description(self):
        conjunction = " & ".join(str(s) for s in self.splits)
        return f"not ({conjunction})" if self.negated else conjunction

    @property
    def variables(self):
        return tuple(dict.fromkeys(s.variable for s in self.splits))

    def __len__(self):
        return len(self.splits)

    def evaluate(self, columns):
        out = np.ones(len(columns[self.splits[0].variable]))
        for split in self.splits:
            out = out * split.evaluate(columns)
        return 1.0 - out if self.negated else out

    def complement(self):
        """Rule firing exactly where this one does not."""
        if len(self.splits) == 1 and not self.negated:
            return Rule((self.splits[0].negate(),))
        return Rule(self.splits, negated=not self.negated)


@dataclass(frozen=True)
class LinearTerm:
    """Winsorized numeric predictor ``clip(x, lower, upper)``.

    ``scale`` is the fit-time normalisation multiplier; it only changes the
    penalty a term receives, never its evaluated value.
    """

    variable: str
    lower: float
    upper: float
    scale: float = 1.0

    kind = "linear"

    @property
    def description(self):
        return self.variable

    @property
    def variables(self):
        return (self.variable,)

    def evaluate(self, columns):
        return np.clip(np.asarray(columns[self.variable], dtype=np.float64),
                       self.lower, self.upper)


@dataclass(frozen=True)
class HingeFunction:
    """``max(0, x - knot)`` (direction=1) or ``max(0, knot - x)`` (direction=-1)."""

    variable: str
    knot: float
    direction: int = 1

    kind = "hinge"

    @property
    def description(self):
        knot = format_threshold(self.knot)
        if self.direction > 0:
            return f"h({self.variable} - {knot})"
        return f"h({knot} - {self.variable})"

    @property
    def variables(self):
        return (self.variable,)

    def evaluate(self, columns):
        x = np.asarray(columns[self.variable], dtype=np.float64)
        return np.maximum(0.0, self.direction * (x - self.knot))


LEARNER_TYPES = {"rule": Rule, "linear": LinearTerm, "hinge": HingeFunction}


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def extract_rules(tree, include_complements=False):
    """One rule per non-root node of ``tree``, in ascending node id.

    Parameters
    ----------
    tree : Tree
    include_complements : bool, default=False
        Also emit the logical complement right after each rule.

    Returns
    -------
    rules : list of Rule
        Empty for a single-leaf tree.
    """
    rules = []
    for node in tree.nodes[1:]:
        rule = Rule(tuple(tree.path(node.id)))
        rules.append(rule)
        if include_complements:
            rules.append(rule.complement())
    return rules


def winsor_bounds(x, winsor_fraction):
    if winsor_fraction <= 0:
        return -np.inf, np.inf
    lower, upper = np.quantile(x, [winsor_fraction, 1.0 - winsor_fraction])
    return float(lower), float(upper)


def linear_terms(space, columns, winsor_fraction=0.025, normalize=True):
    """One winsorized linear term per non-constant numeric predictor.

    With ``normalize`` the term's fit-time scale is ``0.4 / sd`` of the
    winsorized column (Friedman & Popescu 2008, sec. 5), leaving binary
    columns unscaled.
    """
    terms = []
    for name in space.numeric_names:
        x = np.asarray(columns[name], dtype=np.float64)
        lower, upper = winsor_bounds(x, winsor_fraction)
        clipped = np.clip(x, lower, upper)
        sd = clipped.std()
        if sd <= 0:
            logger.debug("Skipping linear term for constant predictor %s", name)
            continue
        scale = 1.0
        if normalize and len(np.unique(clipped)) > 2:
            scale = 0.4 / sd
        terms.append(LinearTerm(name, lower, upper, scale))
    return terms


def hinge_functions(space, columns, n_knots):
    """Pairs of opposite hinges at ``n_knots`` interior quantiles per predictor."""
    if n_knots <= 0:
        return []
    probs = np.linspace(0.0, 1.0, n_knots + 2)[1:-1]
    hinges = []
    for name in space.numeric_names:
        x = np.asarray(columns[name], dtype=np.float64)
        for knot in np.unique(np.quantile(x, probs)):
            if knot <= x.min() or knot >= x.max():
                continue
            hinges.append(HingeFunction(name, float(knot), 1))
            hinges.append(HingeFunction(name, float(knot), -1))
    return hinges


def assemble_candidates(learners, columns, remove_duplicates=True,
                        remove_complements=True):
    """Drop redundant rules, keeping the first occurrence.

    Rules are removed when their description was already seen, when they are
    constant on the training rows, when (``remove_duplicates``) their
    training column equals an earlier rule's, or when
    (``remove_complements``) it is the exact complement of one.
    Non-rule learners pass through unless their description repeats.
    """
    kept = []
    seen_descriptions = set()
    seen_columns = set()
    n_dropped = 0
    for learner in learners:
        if learner.description in seen_descriptions:
            n_dropped += 1
            continue
        if learner.kind == "rule":
            col = learner.evaluate(columns)
            support = col.mean()
            if support <= 0.0 or support >= 1.0:
                n_dropped += 1
                continue
            key = np.packbits(col.astype(bool)).tobytes()
            complement_key = np.packbits(~col.astype(bool)).tobytes()
            if remove_duplicates and key in seen_columns:
                n_dropped += 1
                continue
            if remove_complements and complement_key in seen_columns:
                n_dropped += 1
                continue
            seen_columns.add(key)
        seen_descriptions.add(learner.description)
        kept.append(learner)
    logger.info("Candidate assembly: kept %d, dropped %d", len(kept), n_dropped)
    return kept


# ---------------------------------------------------------------------------
# Parsing descriptions
# ---------------------------------------------------------------------------

_CONDITION_PATTERN = re.compile(r"^(?P<name>.+?) (?P<op><=|>|not in|in) (?P<value>.+)$")
_HINGE_PATTERN = re.compile(r"^h\((?P<left>.+) - (?P<right>.+)\)$")


def _parse_float(text):
    try:
        return float(text)
    except ValueError:
        return None


def parse_split(text):
    """Parse one ``name op value`` condition."""
    match = _CONDITION_PATTERN.match(text.strip())
    if match is None:
        raise ValueError(f"Failed to parse rule condition: '{text.strip()}'")
    name, op, value = match.group("name"), match.group("op"), match.group("value")
    if op in ("in", "not in"):
        try:
            levels = ast.literal_eval(value)
        except (ValueError, SyntaxError):
            raise ValueError(f"Failed to parse level set in condition: '{text}'") from None
        return Split(name, op, frozenset(str(v) for v in levels))
    threshold = _parse_float(value)
    if threshold is None:
        raise ValueError(f"Failed to parse threshold in condition: '{text}'")
    return Split(name, op, threshold)


def parse_rule(description):
    """Rebuild a Rule from its description."""
    text = description.strip()
    negated = text.startswith("not (") and text.endswith(")")
    if negated:
        text = text[len("not ("):-1]
    return Rule(tuple(parse_split(cond) for cond in text.split(" & ")), negated=negated)


def parse_learner(description, kind, space, bounds=None):
    """Rebuild a learner from its persisted ``(description, kind)`` pair.

    Parameters
    ----------
    description : str
    kind : {'rule', 'linear', 'hinge'}
    space : FeatureSpace
        Used to check that referenced variables exist.
    bounds : dict of str -> (float, float), optional
        Winsorizing bounds of linear terms.
    """
    if kind == "rule":
        learner = parse_rule(description)
    elif kind == "linear":
        lower, upper = (bounds or {}).get(description, (-np.inf, np.inf))
        learner = LinearTerm(description, float(lower), float(upper))
    elif kind == "hinge":
        match = _HINGE_PATTERN.match(description.strip())
        if match is None:
            raise ValueError(f"Failed to parse hinge function: '{description}'")
        left, right = match.group("left"), match.group("right")
        knot = _parse_float(right)
        if knot is not None and left in space.names:
            learner = HingeFunction(left, knot, 1)
        else:
            learner = HingeFunction(right, float(left), -1)
    else:
        raise ValueError(f"Unknown learner type {kind!r}")

    unknown = [v for v in learner.variables if v not in space.names]
    if unknown:
        raise ValueError(f"Learner '{description}' references unknown variables {unknown}")
    return learner


def infer_learner(description, space, columns, winsor_fraction):
    """Build a user-specified (confirmatory) learner from its description.

    A bare numeric variable name becomes a linear term with training
    winsorizing bounds; ``h(...)`` a hinge; anything else a rule.
    """
    text = description.strip()
    if text in space.names:
        if space.kind(text) != NUMERIC:
            raise ValueError(
                f"Confirmatory term '{text}' names a categorical variable; "
                f"give a rule such as \"{text} in {{'a'}}\" instead"
            )
        lower, upper = winsor_bounds(np.asarray(columns[text], dtype=np.float64),
                                     winsor_fraction)
        return LinearTerm(text, lower, upper)
    if text.startswith("h(") and _HINGE_PATTERN.match(text):
        return parse_learner(text, "hinge", space)
    rule = parse_learner(text, "rule", space)
    if rule.evaluate(columns).std() == 0:
        warnings.warn(f"Confirmatory rule '{text}' is constant on the training data")
    return rule
