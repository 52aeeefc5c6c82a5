"""
errors.py — Exception taxonomy for the analysis engine.

Fatal errors (``ConfigurationError``, ``ShapeMismatchError``) abort the
current dataset only; ``diff_expr`` moves on to the next one.
Recoverable errors (``EstimationError``) are carried inside an
``Outcome`` and replaced by a neutral fallback value by the stage that
raised them.
"""


class CrossmetaError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(CrossmetaError, ValueError):
    """A required column, selection, or parameter is missing or invalid."""


class ShapeMismatchError(CrossmetaError, ValueError):
    """Matrix and metadata disagree on the number or names of samples/features."""


class EstimationError(CrossmetaError, RuntimeError):
    """A numerical estimation step failed to converge or was undefined."""


class DegenerateDesignError(CrossmetaError, RuntimeError):
    """The fitted model has no residual degrees of freedom."""
