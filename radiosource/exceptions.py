"""
Exception hierarchy for radio source estimation.

Invalid configuration arguments raise the builtin ``ValueError``. The
exceptions below cover the estimator life cycle:

- LockedError: a mutator or ``estimate()`` was called while running.
- NotReadyError: ``estimate()`` was called without enough valid input.
- RadioSourceEstimationError: a non-robust solve failed numerically.
- RobustEstimatorError: the consensus loop found no usable model.
"""


class RadioSourceError(Exception):
    """Base class for all radio source estimation errors."""


class LockedError(RadioSourceError):
    """Raised when an estimator is modified while an estimation is running."""

    def __init__(self, message: str = "estimator is locked while estimating"):
        super().__init__(message)


class NotReadyError(RadioSourceError):
    """Raised when ``estimate()`` is called on an estimator that is not ready."""

    def __init__(self, message: str = "estimator is not ready"):
        super().__init__(message)


class RadioSourceEstimationError(RadioSourceError):
    """Raised when a (non-robust) solve fails, e.g. singular geometry."""


class RobustEstimatorError(RadioSourceError):
    """Raised when robust estimation cannot produce a consensus model."""
