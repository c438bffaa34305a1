"""
RSSI (path-loss) radio source estimation.

Model:
    rssi_i = P + k*c0 - 10*k*log10(||x - p_i||)

where P is the transmitted power (dBm), k the path-loss exponent, x the
source position and c0 the free-space constant (0 when the frequency is
unknown). Any non-empty subset of {x, P, k} can be estimated; the others
are held at their known values.

With x fixed the model is linear in (P, k):
    rssi_i = P + k * g_i,  g_i = c0 - 10*log10(d_i)
so power-only, exponent-only and power+exponent estimation have a weighted
LS closed form. Any combination including the position is refined with
Levenberg-Marquardt started from the RSSI-weighted centroid of the
receivers (or the initial position).
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from radiosource.estimators.base import (
    DEFAULT_POSITION_ESTIMATION_ENABLED,
    EstimationResult,
    PathLossSettingsMixin,
    RadioSourceEstimator,
    RadioSourceEstimatorListener,
)
from radiosource.estimators.least_squares import weighted_least_squares
from radiosource.estimators.nonlinear_least_squares import levenberg_marquardt
from radiosource.exceptions import RadioSourceEstimationError
from radiosource.rf.measurement_models import (
    MIN_DISTANCE,
    distances_to,
    expected_rssi,
    friis_constant_db,
    rssi_jacobian,
)
from radiosource.types import Reading
from radiosource.units import dbm_to_power

logger = logging.getLogger(__name__)


@dataclass
class PathLossSolution:
    """Path-loss parameters fitted to RSSI measurements.

    Attributes:
        position: Source position (d,), estimated or as given.
        transmitted_power_dbm: Transmitted power (dBm), estimated or as given.
        path_loss_exponent: Path-loss exponent, estimated or as given.
        covariance: Covariance of the estimated unknowns, ordered
            [position, power, exponent] restricted to the enabled ones, or None.
        chi_sq: Weighted sum of squared RSSI residuals, or None.
        estimate_position: Whether the position was estimated.
        estimate_power: Whether the power was estimated.
        estimate_exponent: Whether the exponent was estimated.
    """

    position: np.ndarray
    transmitted_power_dbm: float
    path_loss_exponent: float
    covariance: Optional[np.ndarray] = None
    chi_sq: Optional[float] = None
    estimate_position: bool = False
    estimate_power: bool = False
    estimate_exponent: bool = False

    def _variance_at(self, offset: int) -> Optional[float]:
        if self.covariance is None:
            return None
        return float(self.covariance[offset, offset])

    @property
    def position_covariance(self) -> Optional[np.ndarray]:
        if self.covariance is None or not self.estimate_position:
            return None
        d = self.position.shape[0]
        return self.covariance[:d, :d]

    @property
    def transmitted_power_variance(self) -> Optional[float]:
        if not self.estimate_power:
            return None
        offset = self.position.shape[0] if self.estimate_position else 0
        return self._variance_at(offset)

    @property
    def path_loss_exponent_variance(self) -> Optional[float]:
        if not self.estimate_exponent:
            return None
        offset = (self.position.shape[0] if self.estimate_position else 0) + int(
            self.estimate_power
        )
        return self._variance_at(offset)


def rssi_arrays(
    readings: Sequence[Reading], fallback_std: float
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Stack the RSSI part of a set of readings.

    Returns:
        Tuple of receiver positions (N, d), RSSI values (N,) in dBm and RSSI
        standard deviations (N,) in dB.
    """
    receivers = np.vstack([r.position for r in readings])
    rssi = np.array([r.rssi for r in readings], dtype=float)
    stds = np.array(
        [
            r.rssi_standard_deviation if r.rssi_standard_deviation is not None else fallback_std
            for r in readings
        ]
    )
    return receivers, rssi, stds


def rssi_weighted_centroid(receivers: np.ndarray, rssi: np.ndarray) -> np.ndarray:
    """
    Centroid of the receiver positions weighted by linear received power.

    Stronger readings are closer to the source, so the centroid is a
    reasonable starting point for the nonlinear position search.
    """
    # Shift before converting to avoid underflow of very weak signals
    weights = dbm_to_power(rssi - np.max(rssi))
    return weights @ receivers / np.sum(weights)


def path_loss_closed_form(
    receivers: np.ndarray,
    rssi: np.ndarray,
    stds: np.ndarray,
    position: np.ndarray,
    transmitted_power_dbm: Optional[float],
    path_loss_exponent: float,
    frequency: Optional[float] = None,
    estimate_power: bool = True,
    estimate_exponent: bool = False,
) -> Tuple[float, float, np.ndarray]:
    """
    Weighted LS estimate of power and/or exponent at a known position.

    Args:
        receivers: Receiver positions (N, d).
        rssi: Measured RSSI (N,) in dBm.
        stds: RSSI standard deviations (N,).
        position: Known source position (d,).
        transmitted_power_dbm: Known power, used when not estimated.
        path_loss_exponent: Known exponent, used when not estimated.
        frequency: Carrier frequency in Hz, or None.
        estimate_power: Whether P is unknown.
        estimate_exponent: Whether k is unknown.

    Returns:
        Tuple of (power dBm, exponent, covariance of the estimated unknowns).

    Raises:
        numpy.linalg.LinAlgError: If the system is degenerate (e.g. every
            receiver equidistant from the source when estimating both).
    """
    if not (estimate_power or estimate_exponent):
        raise ValueError("at least one of power or exponent must be estimated")

    distances = np.maximum(distances_to(position, receivers), MIN_DISTANCE)
    g = friis_constant_db(frequency) - 10.0 * np.log10(distances)

    columns = []
    b = rssi.copy()
    if estimate_power:
        columns.append(np.ones_like(g))
    else:
        b = b - transmitted_power_dbm
    if estimate_exponent:
        columns.append(g)
    else:
        b = b - path_loss_exponent * g

    A = np.column_stack(columns)
    params, cov = weighted_least_squares(A, b, stds, is_sigma=True)

    power = float(params[0]) if estimate_power else transmitted_power_dbm
    exponent = float(params[-1]) if estimate_exponent else path_loss_exponent
    return power, exponent, cov


def solve_rssi(
    receivers: np.ndarray,
    rssi: np.ndarray,
    stds: np.ndarray,
    frequency: Optional[float] = None,
    estimate_position: bool = True,
    estimate_power: bool = True,
    estimate_exponent: bool = False,
    initial_position: Optional[np.ndarray] = None,
    initial_power_dbm: Optional[float] = None,
    initial_exponent: float = 2.0,
    non_linear: bool = True,
    return_covariance: bool = True,
) -> PathLossSolution:
    """
    Estimate the enabled path-loss unknowns from RSSI measurements.

    Args:
        receivers: Receiver positions (N, d).
        rssi: Measured RSSI (N,) in dBm.
        stds: RSSI standard deviations (N,) in dB.
        frequency: Carrier frequency in Hz, or None.
        estimate_position: Whether x is unknown; otherwise
            ``initial_position`` is the known position.
        estimate_power: Whether P is unknown; otherwise
            ``initial_power_dbm`` is the known power.
        estimate_exponent: Whether k is unknown; otherwise
            ``initial_exponent`` is the known exponent.
        initial_position: Initial or known position.
        initial_power_dbm: Initial or known power.
        initial_exponent: Initial or known exponent.
        non_linear: Whether to refine with Levenberg-Marquardt. Without it
            no covariance is produced.
        return_covariance: Whether to compute the covariance.

    Returns:
        PathLossSolution.

    Raises:
        ValueError: If nothing is estimated or a known value is missing.
        numpy.linalg.LinAlgError: If the system is degenerate.
    """
    if not (estimate_position or estimate_power or estimate_exponent):
        raise ValueError("at least one unknown must be estimated")
    if not estimate_position and initial_position is None:
        raise ValueError("a known position is required when it is not estimated")
    if not estimate_power and initial_power_dbm is None:
        raise ValueError("a known transmitted power is required when it is not estimated")

    if not estimate_position:
        position = np.asarray(initial_position, dtype=float)
        power, exponent, cov = path_loss_closed_form(
            receivers,
            rssi,
            stds,
            position,
            initial_power_dbm,
            initial_exponent,
            frequency,
            estimate_power,
            estimate_exponent,
        )
        chi_sq = None
        if non_linear:
            residuals = rssi - expected_rssi(position, receivers, power, exponent, frequency)
            chi_sq = float(np.sum((residuals / stds) ** 2))
        return PathLossSolution(
            position=position,
            transmitted_power_dbm=power,
            path_loss_exponent=exponent,
            covariance=cov if (non_linear and return_covariance) else None,
            chi_sq=chi_sq,
            estimate_power=estimate_power,
            estimate_exponent=estimate_exponent,
        )

    d = receivers.shape[1]
    if initial_position is not None:
        position = np.asarray(initial_position, dtype=float)
    else:
        position = rssi_weighted_centroid(receivers, rssi)

    power = initial_power_dbm
    if estimate_power and power is None:
        power, _, _ = path_loss_closed_form(
            receivers, rssi, stds, position, None, initial_exponent, frequency,
            estimate_power=True, estimate_exponent=False,
        )
    exponent = initial_exponent

    if not non_linear:
        return PathLossSolution(
            position=position,
            transmitted_power_dbm=power,
            path_loss_exponent=exponent,
            estimate_position=True,
            estimate_power=estimate_power,
            estimate_exponent=estimate_exponent,
        )

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
        return expected_rssi(x, receivers, p, k, frequency)

    def jacobian(theta: np.ndarray) -> np.ndarray:
        x, _, k = unpack(theta)
        return rssi_jacobian(
            x, receivers, k, frequency,
            wrt_position=True, wrt_power=estimate_power, wrt_path_loss=estimate_exponent,
        )

    theta0 = [position]
    if estimate_power:
        theta0.append([power])
    if estimate_exponent:
        theta0.append([exponent])

    fit = levenberg_marquardt(
        h, jacobian, rssi, np.concatenate(theta0), sigmas=stds,
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


class RssiRadioSourceEstimator(PathLossSettingsMixin, RadioSourceEstimator):
    """
    Non-robust RSSI estimator of a radio source position, transmitted power
    and path-loss exponent.

    Position and transmitted power are estimated by default, the path-loss
    exponent is held at ``initial_path_loss_exponent`` (2.0, free space).
    Needs ``d*position + power + exponent`` readings at distinct positions.

    Args:
        readings: RSSI readings of one radio source.
        initial_position: Initial guess, or the known position when position
            estimation is disabled.
        initial_transmitted_power_dbm: Initial guess, or the known power when
            power estimation is disabled.
        initial_path_loss_exponent: Initial guess, or the known exponent.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.
    """

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
        self._position_estimation_enabled = DEFAULT_POSITION_ESTIMATION_ENABLED
        super().__init__(readings, initial_position, listener, dims)
        self._init_path_loss_settings(initial_transmitted_power_dbm, initial_path_loss_exponent)

    @property
    def position_estimation_enabled(self) -> bool:
        return self._position_estimation_enabled

    @position_estimation_enabled.setter
    def position_estimation_enabled(self, enabled: bool) -> None:
        self._check_unlocked()
        self._position_estimation_enabled = bool(enabled)
        self._configuration_changed()

    @property
    def min_readings(self) -> int:
        return self.dims * int(self._position_estimation_enabled) + self._path_loss_unknowns()

    def is_ready(self) -> bool:
        if not (self._position_estimation_enabled or self._path_loss_unknowns() > 0):
            return False
        if not self._position_estimation_enabled and self._initial_position is None:
            return False
        return self._path_loss_ready() and super().is_ready()

    def _estimate(self) -> EstimationResult:
        receivers, rssi, stds = rssi_arrays(self._readings, self._fallback_rssi_standard_deviation)
        try:
            solution = solve_rssi(
                receivers,
                rssi,
                stds,
                frequency=self._readings[0].source.frequency,
                estimate_position=self._position_estimation_enabled,
                estimate_power=self._transmitted_power_estimation_enabled,
                estimate_exponent=self._path_loss_estimation_enabled,
                initial_position=self._initial_position,
                initial_power_dbm=self._initial_transmitted_power_dbm,
                initial_exponent=self._initial_path_loss_exponent,
                non_linear=self._non_linear_solver_enabled,
            )
        except np.linalg.LinAlgError as e:
            raise RadioSourceEstimationError(f"RSSI solve failed: {e}") from e

        return result_from_path_loss(solution)


def result_from_path_loss(solution: PathLossSolution, inliers_data=None) -> EstimationResult:
    """Build an estimation result from a path-loss solution."""
    return EstimationResult(
        position=solution.position,
        position_covariance=solution.position_covariance,
        covariance=solution.covariance,
        transmitted_power_dbm=solution.transmitted_power_dbm,
        transmitted_power_variance=solution.transmitted_power_variance,
        path_loss_exponent=solution.path_loss_exponent,
        path_loss_exponent_variance=solution.path_loss_exponent_variance,
        chi_sq=solution.chi_sq,
        inliers_data=inliers_data,
    )
