"""predrules: sparse prediction rule ensembles of decision rules and linear terms."""

from .accumulator import maxdepth_sampler
from .cross_validation import cross_validate
from .ensemble import Ensemble, load_ensemble, save_ensemble
from .estimator import PredictionRuleEnsemble
from .exceptions import ConfigurationError, SingularDesignWarning
from .families import FAMILIES, get_family

# Single-source version: prefer installed package metadata (kept in sync with
# pyproject.toml via [tool.setuptools.dynamic] -> _version.__version__), fall
# back to _version.py for editable / development installs.
try:
    from importlib.metadata import version as _meta_version

    __version__ = _meta_version("predrules")
except Exception:
    from ._version import __version__

__all__ = [
    "PredictionRuleEnsemble",
    "Ensemble",
    "save_ensemble",
    "load_ensemble",
    "cross_validate",
    "maxdepth_sampler",
    "get_family",
    "FAMILIES",
    "ConfigurationError",
    "SingularDesignWarning",
]
