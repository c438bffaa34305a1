"""
Configuration defaults and robust stage settings.

The module-level constants are the defaults used by every robust estimator.
``RobustStageConfig`` bundles the settings of one robust estimation stage so
that a sequential estimator can be configured per stage in a single call:

    >>> from radiosource.types import RobustMethod
    >>> ranging = RobustStageConfig(method=RobustMethod.RANSAC, threshold=0.5)
    >>> rssi = RobustStageConfig(method=RobustMethod.LMEDS)
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from radiosource.types import RobustMethod

DEFAULT_ROBUST_METHOD = RobustMethod.PROMEDS
DEFAULT_THRESHOLD = 0.1
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_REFINE_RESULT = True
DEFAULT_KEEP_COVARIANCE = True
DEFAULT_KEEP_INLIERS = False
DEFAULT_KEEP_RESIDUALS = False
DEFAULT_USE_READING_POSITION_COVARIANCES = True

# Fallback standard deviations when a reading carries none
DEFAULT_DISTANCE_STANDARD_DEVIATION = 1e-3  # meters
DEFAULT_RSSI_STANDARD_DEVIATION = 1.0  # dB


def validate_threshold(threshold: float) -> float:
    if not np.isfinite(threshold) or threshold <= 0:
        raise ValueError(f"threshold must be positive, got {threshold}")
    return float(threshold)


def validate_confidence(confidence: float) -> float:
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    return float(confidence)


def validate_max_iterations(max_iterations: int) -> int:
    if (
        not np.isfinite(max_iterations)
        or int(max_iterations) != max_iterations
        or max_iterations < 1
    ):
        raise ValueError(f"max_iterations must be an integer >= 1, got {max_iterations}")
    return int(max_iterations)


def validate_progress_delta(progress_delta: float) -> float:
    if not 0.0 <= progress_delta <= 1.0:
        raise ValueError(f"progress_delta must be in [0, 1], got {progress_delta}")
    return float(progress_delta)


@dataclass(frozen=True)
class RobustStageConfig:
    """
    Settings of one robust estimation stage.

    Attributes:
        method: Robust method family. Defaults to PROMedS.
        threshold: Inlier threshold for threshold methods (RANSAC, MSAC,
                   PROSAC), in the unit of the stage residual (meters for
                   ranging, dB for RSSI). Ignored by median methods.
        confidence: Probability that at least one drawn subset is
                    outlier-free, in (0, 1).
        max_iterations: Upper bound on the number of drawn subsets (>= 1).
        preliminary_subset_size: Subset size, or None for the stage minimum.
                                 Estimators reject values below their minimum.
    """

    method: RobustMethod = DEFAULT_ROBUST_METHOD
    threshold: float = DEFAULT_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    preliminary_subset_size: Optional[int] = None

    def __post_init__(self) -> None:
        """Validate settings."""
        if not isinstance(self.method, RobustMethod):
            raise ValueError(f"method must be a RobustMethod, got {self.method!r}")
        validate_threshold(self.threshold)
        validate_confidence(self.confidence)
        validate_max_iterations(self.max_iterations)
        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 1:
            raise ValueError(
                f"preliminary_subset_size must be positive, got {self.preliminary_subset_size}"
            )
