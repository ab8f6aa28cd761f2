"""Exceptions raised by zidepy.

Non-convergence of the weight model or of a single gene's GLM is reported
through flags on the returned objects, never through these exceptions.
"""


class ZidepyError(Exception):
    """Base class for all zidepy errors."""


class InputValidationError(ZidepyError, ValueError):
    """Invalid count matrix, labels or parameters."""


class DesignError(InputValidationError):
    """Rank-deficient design or reduced design not nested in the full one."""


class DispersionTrendError(ZidepyError, RuntimeError):
    """The parametric mean-dispersion trend could not be fitted.

    Callers may retry with a narrower (higher-count) gene subset.
    """
