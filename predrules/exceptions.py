"""Exception and warning types raised by predrules."""


class ConfigurationError(ValueError):
    """Invalid hyper-parameter combination, raised before any tree is grown."""


class SingularDesignWarning(UserWarning):
    """The penalized fit failed at small penalties; the path was truncated."""
