"""
Ranging (trilateration) radio source estimation.

Given N >= d+1 readings with measured distances from known receiver
positions p_i, estimate the source position x such that ||x - p_i|| = d_i.

Linear stage, inhomogeneous (default):
    Subtracting the reference (first) equation from the others gives
        2(p_i - p_0)' x = ||p_i||^2 - ||p_0||^2 - d_i^2 + d_0^2
    solved by weighted LS with weights 1 / (4 d_i^2 s_i^2 + 4 d_0^2 s_0^2).

Linear stage, homogeneous:
    Each reading gives a row [-2 p_i', 1, ||p_i||^2 - d_i^2] acting on the
    lifted vector w [x, ||x||^2, 1]; the right singular vector for the
    smallest singular value is de-homogenized.

Nonlinear stage (default on):
    Levenberg-Marquardt on the weighted ranging residuals, started from the
    linear solution or the initial position. Only this stage produces a
    covariance.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from radiosource.estimators.base import (
    EstimationResult,
    RadioSourceEstimator,
    RadioSourceEstimatorListener,
    RangingSettingsMixin,
)
from radiosource.estimators.least_squares import (
    homogeneous_least_squares,
    weighted_least_squares,
)
from radiosource.estimators.nonlinear_least_squares import levenberg_marquardt
from radiosource.exceptions import RadioSourceEstimationError
from radiosource.rf.measurement_models import (
    MIN_DISTANCE,
    distances_to,
    effective_standard_deviation,
    ranging_jacobian,
)
from radiosource.types import Reading

logger = logging.getLogger(__name__)


@dataclass
class RangingSolution:
    """Position fitted to ranging measurements.

    Attributes:
        position: Estimated position (d,).
        covariance: Position covariance (d, d), or None.
        chi_sq: Weighted sum of squared ranging residuals, or None when only
            the linear stage ran.
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    chi_sq: Optional[float] = None


def ranging_arrays(
    readings: Sequence[Reading],
    fallback_std: float,
    use_position_covariances: bool = True,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Stack the ranging part of a set of readings.

    Args:
        readings: Readings with distances.
        fallback_std: Distance std dev for readings that carry none.
        use_position_covariances: Whether receiver position covariances
            inflate the distance standard deviations.

    Returns:
        Tuple of receiver positions (N, d), distances (N,) and effective
        distance standard deviations (N,).
    """
    receivers = np.vstack([r.position for r in readings])
    distances = np.array([r.distance for r in readings], dtype=float)
    stds = np.array(
        [
            effective_standard_deviation(
                r.distance_standard_deviation,
                fallback_std,
                r.position_covariance if use_position_covariances else None,
            )
            for r in readings
        ]
    )
    return receivers, distances, stds


def linear_ranging_position(
    receivers: np.ndarray,
    distances: np.ndarray,
    stds: Optional[np.ndarray] = None,
    homogeneous: bool = False,
) -> np.ndarray:
    """
    Closed-form position from ranging measurements.

    Args:
        receivers: Receiver positions (N, d), N >= d+1.
        distances: Measured distances (N,).
        stds: Distance standard deviations (N,), or None for unweighted.
        homogeneous: Use the homogeneous (SVD) formulation.

    Returns:
        Estimated position (d,).

    Raises:
        numpy.linalg.LinAlgError: If the receiver geometry is degenerate
            (e.g. colinear receivers in 2D, coplanar receivers in 3D).

    Example:
        >>> receivers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
        >>> distances = np.linalg.norm(receivers - [3.0, 4.0], axis=1)
        >>> np.allclose(linear_ranging_position(receivers, distances), [3.0, 4.0])
        True
    """
    n, d = receivers.shape
    if n < d + 1:
        raise np.linalg.LinAlgError(f"need at least {d + 1} readings, got {n}")
    sqr_norms = np.sum(receivers**2, axis=1)
    sqr_distances = distances**2

    if homogeneous:
        A = np.hstack(
            [-2.0 * receivers, np.ones((n, 1)), (sqr_norms - sqr_distances)[:, None]]
        )
        if stds is not None:
            # Row residual std is about 2 d_i s_i
            row_stds = np.maximum(2.0 * np.maximum(distances, MIN_DISTANCE) * stds, MIN_DISTANCE)
            A = A / row_stds[:, None]
        v = homogeneous_least_squares(A)
        if abs(v[-1]) <= 1e-12 * np.linalg.norm(v):
            raise np.linalg.LinAlgError("homogeneous solution lies at infinity")
        return v[:d] / v[-1]

    A = 2.0 * (receivers[1:] - receivers[0])
    b = sqr_norms[1:] - sqr_norms[0] - sqr_distances[1:] + sqr_distances[0]
    weights = None
    if stds is not None:
        variances = 4.0 * sqr_distances[1:] * stds[1:] ** 2 + 4.0 * sqr_distances[0] * stds[0] ** 2
        weights = 1.0 / np.maximum(variances, MIN_DISTANCE**2)
    position, _ = weighted_least_squares(A, b, weights, return_covariance=False)
    return position


def solve_ranging(
    receivers: np.ndarray,
    distances: np.ndarray,
    stds: np.ndarray,
    initial_position: Optional[np.ndarray] = None,
    homogeneous: bool = False,
    non_linear: bool = True,
    return_covariance: bool = True,
) -> RangingSolution:
    """
    Estimate a position from ranging measurements.

    With the nonlinear stage enabled and an initial position given, the
    linear stage is skipped and Levenberg-Marquardt starts from the initial
    position.

    Raises:
        numpy.linalg.LinAlgError: If the linear stage is degenerate.
    """
    if non_linear and initial_position is not None:
        start = np.asarray(initial_position, dtype=float)
    else:
        start = linear_ranging_position(receivers, distances, stds, homogeneous)

    if not non_linear:
        return RangingSolution(position=start)

    fit = levenberg_marquardt(
        h=lambda x: distances_to(x, receivers),
        jacobian=lambda x: ranging_jacobian(x, receivers),
        y=distances,
        x0=start,
        sigmas=stds,
        return_covariance=return_covariance,
    )
    return RangingSolution(position=fit.x, covariance=fit.covariance, chi_sq=fit.chi_sq)


class RangingRadioSourceEstimator(RangingSettingsMixin, RadioSourceEstimator):
    """
    Non-robust ranging estimator of a radio source position.

    Needs d+1 readings at distinct receiver positions. Every reading must
    carry a distance.

    Args:
        readings: Ranging readings of one radio source.
        initial_position: Initial guess for the nonlinear stage, or None to
            start from the linear solution.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.

    Example:
        >>> ap = WifiAccessPoint("00:11:22:33:44:55")
        >>> readings = [Reading(ap, p, distance=np.linalg.norm(p - source))
        ...             for p in receivers]
        >>> estimator = RangingRadioSourceEstimator(readings)
        >>> located = estimator.estimate()
    """

    requires_distance = True

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        initial_position=None,
        listener: Optional[RadioSourceEstimatorListener] = None,
        dims: Optional[int] = None,
    ):
        self._init_ranging_settings()
        super().__init__(readings, initial_position, listener, dims)

    @property
    def min_readings(self) -> int:
        return self.dims + 1

    def _estimate(self) -> EstimationResult:
        receivers, distances, stds = ranging_arrays(
            self._readings,
            self._fallback_distance_standard_deviation,
            self._use_reading_position_covariances,
        )
        try:
            solution = solve_ranging(
                receivers,
                distances,
                stds,
                initial_position=self._initial_position,
                homogeneous=self._homogeneous_linear_solver_used,
                non_linear=self._non_linear_solver_enabled,
            )
        except np.linalg.LinAlgError as e:
            raise RadioSourceEstimationError(f"ranging solve failed: {e}") from e

        return EstimationResult(
            position=solution.position,
            position_covariance=solution.covariance,
            covariance=solution.covariance,
            chi_sq=solution.chi_sq,
        )
