"""
Joint ranging and RSSI radio source estimation.

Each reading carries both a distance and an RSSI. The position is first
obtained from the linear ranging solution (or the initial position), the
transmitted power and path-loss exponent from the path-loss closed form at
that position, and then a single Levenberg-Marquardt refines position,
power and exponent together on the stacked residuals:

    r = [d_i - ||x - p_i||              ] / s_d,i
        [rssi_i - (P + k*g_i(x))        ] / s_rssi,i
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from radiosource.estimators.base import (
    EstimationResult,
    PathLossSettingsMixin,
    RadioSourceEstimator,
    RadioSourceEstimatorListener,
    RangingSettingsMixin,
)
from radiosource.estimators.nonlinear_least_squares import levenberg_marquardt
from radiosource.exceptions import RadioSourceEstimationError
from radiosource.rf.measurement_models import (
    distances_to,
    expected_rssi,
    ranging_jacobian,
    rssi_jacobian,
)
from radiosource.rf.ranging import linear_ranging_position, ranging_arrays
from radiosource.rf.rssi import (
    PathLossSolution,
    path_loss_closed_form,
    result_from_path_loss,
    rssi_arrays,
)
from radiosource.types import Reading

logger = logging.getLogger(__name__)


def solve_ranging_and_rssi(
    receivers: np.ndarray,
    distances: np.ndarray,
    distance_stds: np.ndarray,
    rssi: np.ndarray,
    rssi_stds: np.ndarray,
    frequency: Optional[float] = None,
    estimate_power: bool = True,
    estimate_exponent: bool = False,
    initial_position: Optional[np.ndarray] = None,
    initial_power_dbm: Optional[float] = None,
    initial_exponent: float = 2.0,
    homogeneous: bool = False,
    non_linear: bool = True,
    return_covariance: bool = True,
) -> PathLossSolution:
    """
    Estimate position, and the enabled power/exponent, from both measurements.

    Args:
        receivers: Receiver positions (N, d).
        distances: Measured distances (N,).
        distance_stds: Distance standard deviations (N,).
        rssi: Measured RSSI (N,) in dBm.
        rssi_stds: RSSI standard deviations (N,).
        frequency: Carrier frequency in Hz, or None.
        estimate_power: Whether P is unknown.
        estimate_exponent: Whether k is unknown.
        initial_position: Starting position, or None for the linear ranging
            solution.
        initial_power_dbm: Initial or known power.
        initial_exponent: Initial or known exponent.
        homogeneous: Use the homogeneous linear ranging formulation.
        non_linear: Whether to run the joint Levenberg-Marquardt.
        return_covariance: Whether to compute the covariance.

    Returns:
        PathLossSolution with the position always estimated.

    Raises:
        numpy.linalg.LinAlgError: If the system is degenerate.
    """
    if not estimate_power and initial_power_dbm is None:
        raise ValueError("a known transmitted power is required when it is not estimated")

    d = receivers.shape[1]
    if initial_position is not None and non_linear:
        position = np.asarray(initial_position, dtype=float)
    else:
        position = linear_ranging_position(receivers, distances, distance_stds, homogeneous)

    power = initial_power_dbm
    exponent = initial_exponent
    if estimate_power and power is None:
        power, _, _ = path_loss_closed_form(
            receivers, rssi, rssi_stds, position, None, exponent, frequency,
            estimate_power=True, estimate_exponent=False,
        )

    if not non_linear:
        if estimate_exponent:
            power, exponent, _ = path_loss_closed_form(
                receivers, rssi, rssi_stds, position, power, exponent, frequency,
                estimate_power=estimate_power, estimate_exponent=True,
            )
        return PathLossSolution(
            position=position,
            transmitted_power_dbm=power,
            path_loss_exponent=exponent,
            estimate_position=True,
            estimate_power=estimate_power,
            estimate_exponent=estimate_exponent,
        )

    n_extra = int(estimate_power) + int(estimate_exponent)

    def unpack(theta: np.ndarray) -> Tuple[np.ndarray, float, float]:
        x = theta[:d]
        offset = d
        p = power
        k = exponent
        if estimate_power:
            p = theta[offset]
            offset += 1
        if estimate_exponent:
            k = theta[offset]
        return x, p, k

    def h(theta: np.ndarray) -> np.ndarray:
        x, p, k = unpack(theta)
        return np.concatenate(
            [distances_to(x, receivers), expected_rssi(x, receivers, p, k, frequency)]
        )

    def jacobian(theta: np.ndarray) -> np.ndarray:
        x, _, k = unpack(theta)
        ranging = np.hstack([ranging_jacobian(x, receivers), np.zeros((len(receivers), n_extra))])
        path_loss = rssi_jacobian(
            x, receivers, k, frequency,
            wrt_position=True, wrt_power=estimate_power, wrt_path_loss=estimate_exponent,
        )
        return np.vstack([ranging, path_loss])

    theta0 = [position]
    if estimate_power:
        theta0.append([power])
    if estimate_exponent:
        theta0.append([exponent])

    fit = levenberg_marquardt(
        h,
        jacobian,
        np.concatenate([distances, rssi]),
        np.concatenate(theta0),
        sigmas=np.concatenate([distance_stds, rssi_stds]),
        return_covariance=return_covariance,
    )
    x, p, k = unpack(fit.x)
    return PathLossSolution(
        position=x,
        transmitted_power_dbm=float(p),
        path_loss_exponent=float(k),
        covariance=fit.covariance,
        chi_sq=fit.chi_sq,
        estimate_position=True,
        estimate_power=estimate_power,
        estimate_exponent=estimate_exponent,
    )


class RangingAndRssiRadioSourceEstimator(
    RangingSettingsMixin, PathLossSettingsMixin, RadioSourceEstimator
):
    """
    Non-robust joint ranging and RSSI estimator.

    Every reading must carry both a distance and an RSSI. Needs
    ``d + 1 + power + exponent`` readings at distinct positions.

    Args:
        readings: Ranging and RSSI readings of one radio source.
        initial_position: Initial guess for the joint refinement, or None to
            start from the linear ranging solution.
        initial_transmitted_power_dbm: Initial guess, or the known power when
            power estimation is disabled.
        initial_path_loss_exponent: Initial guess, or the known exponent.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.
    """

    requires_distance = True
    requires_rssi = True

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = 2.0,
        listener: Optional[RadioSourceEstimatorListener] = None,
        dims: Optional[int] = None,
    ):
        self._init_ranging_settings()
        super().__init__(readings, initial_position, listener, dims)
        self._init_path_loss_settings(initial_transmitted_power_dbm, initial_path_loss_exponent)

    @property
    def min_readings(self) -> int:
        return self.dims + 1 + self._path_loss_unknowns()

    def is_ready(self) -> bool:
        return self._path_loss_ready() and super().is_ready()

    def _estimate(self) -> EstimationResult:
        receivers, distances, distance_stds = ranging_arrays(
            self._readings,
            self._fallback_distance_standard_deviation,
            self._use_reading_position_covariances,
        )
        _, rssi, rssi_stds = rssi_arrays(self._readings, self._fallback_rssi_standard_deviation)
        try:
            solution = solve_ranging_and_rssi(
                receivers,
                distances,
                distance_stds,
                rssi,
                rssi_stds,
                frequency=self._readings[0].source.frequency,
                estimate_power=self._transmitted_power_estimation_enabled,
                estimate_exponent=self._path_loss_estimation_enabled,
                initial_position=self._initial_position,
                initial_power_dbm=self._initial_transmitted_power_dbm,
                initial_exponent=self._initial_path_loss_exponent,
                homogeneous=self._homogeneous_linear_solver_used,
                non_linear=self._non_linear_solver_enabled,
            )
        except np.linalg.LinAlgError as e:
            raise RadioSourceEstimationError(f"ranging and RSSI solve failed: {e}") from e

        return result_from_path_loss(solution)
