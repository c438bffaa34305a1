"""
Common machinery of the radio source estimators.

This module provides:
    - RadioSourceEstimatorListener: no-op listener base class
    - EstimationResult: immutable outcome of a successful ``estimate()``
    - RadioSourceEstimator: life cycle (state, lock, readiness), readings,
      initial position and result accessors shared by every estimator
    - PathLossSettingsMixin: transmitted power / path-loss exponent settings
    - RangingSettingsMixin: ranging solver settings

Life cycle:
    IDLE -> READY -> RUNNING -> {SUCCEEDED, FAILED}

``estimate()`` is the only transition trigger. While RUNNING every setter
and a nested ``estimate()`` raise ``LockedError``; setters validate their
argument before mutating anything, so a rejected call leaves the estimator
unchanged.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from radiosource.config import (
    DEFAULT_DISTANCE_STANDARD_DEVIATION,
    DEFAULT_RSSI_STANDARD_DEVIATION,
    DEFAULT_USE_READING_POSITION_COVARIANCES,
)
from radiosource.exceptions import LockedError, NotReadyError
from radiosource.types import (
    SUPPORTED_DIMENSIONS,
    EstimatorState,
    InliersData,
    LocatedRadioSource,
    RadioSource,
    Reading,
    count_distinct_positions,
    validate_readings,
)
from radiosource.units import dbm_to_power, power_to_dbm

logger = logging.getLogger(__name__)

DEFAULT_DIMS = 2
DEFAULT_PATH_LOSS_EXPONENT = 2.0
DEFAULT_POSITION_ESTIMATION_ENABLED = True
DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED = True
DEFAULT_PATH_LOSS_ESTIMATION_ENABLED = False
DEFAULT_NON_LINEAR_SOLVER_ENABLED = True
DEFAULT_HOMOGENEOUS_LINEAR_SOLVER_USED = False


class RadioSourceEstimatorListener:
    """
    Receives the events of an estimation.

    All methods are no-ops; override the ones you need. Every callback runs
    while the estimator is locked, so configuration setters called from a
    callback raise ``LockedError``.
    """

    def on_estimate_start(self, estimator: "RadioSourceEstimator") -> None:
        """Called when an estimation starts."""

    def on_estimate_next_iteration(self, estimator: "RadioSourceEstimator", iteration: int) -> None:
        """Called after each consensus iteration (robust estimators only)."""

    def on_estimate_progress_change(self, estimator: "RadioSourceEstimator", progress: float) -> None:
        """Called when progress, in [0, 1], advanced by at least the progress delta."""

    def on_estimate_end(self, estimator: "RadioSourceEstimator") -> None:
        """Called when an estimation finishes successfully."""


@dataclass(frozen=True, eq=False)
class EstimationResult:
    """
    Outcome of a successful estimation.

    Attributes:
        position: Estimated source position (d,).
        position_covariance: Position covariance (d, d), or None.
        covariance: Covariance of all estimated unknowns, ordered
                    [position, power, path-loss exponent], or None.
        transmitted_power_dbm: Estimated or known transmitted power (dBm).
        transmitted_power_variance: Variance of the power (dB^2), or None.
        path_loss_exponent: Estimated or known path-loss exponent.
        path_loss_exponent_variance: Variance of the exponent, or None.
        chi_sq: Weighted sum of squared residuals of the final fit, or None.
        inliers_data: Consensus summary (robust estimators only).
    """

    position: np.ndarray
    position_covariance: Optional[np.ndarray] = None
    covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_variance: Optional[float] = None
    chi_sq: Optional[float] = None
    inliers_data: Optional[InliersData] = None


def _as_position(value, name: str) -> np.ndarray:
    position = np.array(value, dtype=float)
    if position.ndim != 1 or position.shape[0] not in SUPPORTED_DIMENSIONS:
        raise ValueError(f"{name} must have shape (2,) or (3,), got {position.shape}")
    if not np.all(np.isfinite(position)):
        raise ValueError(f"{name} must be finite")
    position.setflags(write=False)
    return position


class RadioSourceEstimator:
    """
    Base class of all radio source estimators.

    Subclasses implement ``min_readings`` and ``_estimate()``, and may extend
    ``is_ready()``. ``estimate()`` takes care of locking, state transitions,
    listener notification and result publication.

    Args:
        readings: Readings of a single radio source, or None.
        initial_position: Initial (or known) source position, or None.
        listener: Event listener, or None.
        dims: Expected dimension (2 or 3), or None to infer it from the
              readings or the initial position.
    """

    #: Whether every reading must carry a distance / an RSSI.
    requires_distance = False
    requires_rssi = False

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        initial_position=None,
        listener: Optional[RadioSourceEstimatorListener] = None,
        dims: Optional[int] = None,
    ):
        if dims is not None and dims not in SUPPORTED_DIMENSIONS:
            raise ValueError(f"dims must be 2 or 3, got {dims}")
        self._dims = dims
        self._locked = False
        self._state: Optional[EstimatorState] = None
        self._result: Optional[EstimationResult] = None
        self._readings: Optional[Tuple[Reading, ...]] = None
        self._initial_position: Optional[np.ndarray] = None
        self._listener: Optional[RadioSourceEstimatorListener] = None
        self._non_linear_solver_enabled = DEFAULT_NON_LINEAR_SOLVER_ENABLED

        if readings is not None:
            self.readings = readings
        if initial_position is not None:
            self.initial_position = initial_position
        self.listener = listener

    # ------------------------------------------------------------------
    # Life cycle
    # ------------------------------------------------------------------

    @property
    def is_locked(self) -> bool:
        """True while ``estimate()`` is running."""
        return self._locked

    @property
    def state(self) -> EstimatorState:
        if self._locked:
            return EstimatorState.RUNNING
        if self._state is not None:
            return self._state
        return EstimatorState.READY if self.is_ready() else EstimatorState.IDLE

    def _check_unlocked(self) -> None:
        if self._locked:
            raise LockedError()

    def _configuration_changed(self) -> None:
        self._state = None

    @property
    def min_readings(self) -> int:
        """Minimum number of distinct receiver positions needed to estimate."""
        raise NotImplementedError

    def is_ready(self) -> bool:
        """Whether ``estimate()`` can be called with the current configuration."""
        return (
            self._readings is not None
            and count_distinct_positions(self._readings) >= self.min_readings
        )

    def estimate(self) -> LocatedRadioSource:
        """
        Run the estimation and publish its result.

        Returns:
            The located radio source.

        Raises:
            LockedError: If an estimation is already running.
            NotReadyError: If the estimator is not ready.
            RadioSourceEstimationError: If a non-robust solve fails.
            RobustEstimatorError: If a robust estimation finds no consensus.
        """
        if self._locked:
            raise LockedError()
        if not self.is_ready():
            raise NotReadyError()

        self._locked = True
        self._result = None
        try:
            self._notify_start()
            self._result = self._estimate()
            self._state = EstimatorState.SUCCEEDED
            self._notify_end()
        except Exception:
            self._result = None
            self._state = EstimatorState.FAILED
            raise
        finally:
            self._locked = False

        logger.info(
            "%s estimated %s at %s from %d readings",
            type(self).__name__,
            self._readings[0].source.identifier,
            np.array2string(self._result.position, precision=3),
            len(self._readings),
        )
        return self.estimated_radio_source

    def _estimate(self) -> EstimationResult:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Listener notification
    # ------------------------------------------------------------------

    def _notify_start(self) -> None:
        if self._listener is not None:
            self._listener.on_estimate_start(self)

    def _notify_end(self) -> None:
        if self._listener is not None:
            self._listener.on_estimate_end(self)

    def _notify_next_iteration(self, iteration: int) -> None:
        if self._listener is not None:
            self._listener.on_estimate_next_iteration(self, iteration)

    def _notify_progress_change(self, progress: float) -> None:
        if self._listener is not None:
            self._listener.on_estimate_progress_change(self, progress)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def dims(self) -> int:
        """Dimension of the problem (2 or 3)."""
        if self._dims is not None:
            return self._dims
        if self._readings:
            return self._readings[0].dims
        if self._initial_position is not None:
            return self._initial_position.shape[0]
        return DEFAULT_DIMS

    def _check_dims(self, dims: int, name: str) -> None:
        expected = self._dims
        if expected is None and self._readings:
            expected = self._readings[0].dims
        if expected is not None and dims != expected:
            raise ValueError(f"{name} is {dims}D, expected {expected}D")

    @property
    def readings(self) -> Optional[Tuple[Reading, ...]]:
        return self._readings

    @readings.setter
    def readings(self, readings: Optional[Sequence[Reading]]) -> None:
        self._check_unlocked()
        if readings is None:
            self._readings = None
            self._configuration_changed()
            return
        readings = validate_readings(
            readings,
            require_distance=self.requires_distance,
            require_rssi=self.requires_rssi,
        )
        if self._dims is not None and readings[0].dims != self._dims:
            raise ValueError(f"readings are {readings[0].dims}D, expected {self._dims}D")
        if (
            self._initial_position is not None
            and readings[0].dims != self._initial_position.shape[0]
        ):
            raise ValueError("readings and initial position dimensions differ")
        self._validate_readings(readings)
        self._readings = readings
        self._configuration_changed()

    def _validate_readings(self, readings: Tuple[Reading, ...]) -> None:
        """Hook for subclasses to check readings against other settings."""

    @property
    def radio_source(self) -> Optional[RadioSource]:
        """Radio source the readings refer to."""
        return self._readings[0].source if self._readings else None

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        """Initial guess of the source position (its known value when position
        estimation is disabled)."""
        return self._initial_position

    @initial_position.setter
    def initial_position(self, position) -> None:
        self._check_unlocked()
        if position is not None:
            position = _as_position(position, "initial_position")
            self._check_dims(position.shape[0], "initial_position")
        self._initial_position = position
        self._configuration_changed()

    @property
    def listener(self) -> Optional[RadioSourceEstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[RadioSourceEstimatorListener]) -> None:
        self._check_unlocked()
        self._listener = listener

    @property
    def non_linear_solver_enabled(self) -> bool:
        """Whether a Levenberg-Marquardt refinement follows the linear solve.
        Only the nonlinear stage produces covariances."""
        return self._non_linear_solver_enabled

    @non_linear_solver_enabled.setter
    def non_linear_solver_enabled(self, enabled: bool) -> None:
        self._check_unlocked()
        self._non_linear_solver_enabled = bool(enabled)
        self._configuration_changed()

    # ------------------------------------------------------------------
    # Result accessors
    # ------------------------------------------------------------------

    @property
    def result(self) -> Optional[EstimationResult]:
        """Result of the last successful estimation, or None."""
        return self._result

    def _result_field(self, name: str):
        return None if self._result is None else getattr(self._result, name)

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return self._result_field("position")

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return self._result_field("position_covariance")

    @property
    def covariance(self) -> Optional[np.ndarray]:
        return self._result_field("covariance")

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return self._result_field("transmitted_power_dbm")

    @property
    def estimated_transmitted_power(self) -> Optional[float]:
        """Estimated transmitted power in milliwatts, or None."""
        power_dbm = self.estimated_transmitted_power_dbm
        return None if power_dbm is None else dbm_to_power(power_dbm)

    @property
    def estimated_transmitted_power_variance(self) -> Optional[float]:
        return self._result_field("transmitted_power_variance")

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return self._result_field("path_loss_exponent")

    @property
    def estimated_path_loss_exponent_variance(self) -> Optional[float]:
        return self._result_field("path_loss_exponent_variance")

    @property
    def chi_sq(self) -> Optional[float]:
        return self._result_field("chi_sq")

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._result_field("inliers_data")

    @property
    def estimated_radio_source(self) -> Optional[LocatedRadioSource]:
        """The located radio source built from the last result, or None."""
        if self._result is None:
            return None
        path_loss_exponent = self._result.path_loss_exponent
        return LocatedRadioSource(
            source=self._readings[0].source,
            position=self._result.position,
            position_covariance=self._result.position_covariance,
            transmitted_power_dbm=self._result.transmitted_power_dbm,
            transmitted_power_variance=self._result.transmitted_power_variance,
            path_loss_exponent=(
                DEFAULT_PATH_LOSS_EXPONENT if path_loss_exponent is None else path_loss_exponent
            ),
            path_loss_exponent_variance=self._result.path_loss_exponent_variance,
        )


class PathLossSettingsMixin:
    """
    Transmitted power and path-loss exponent settings.

    Mixed into estimators that use RSSI readings. Expects the host class to
    provide ``_check_unlocked()`` and ``_configuration_changed()``.
    """

    def _init_path_loss_settings(
        self,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        transmitted_power_estimation_enabled: bool = DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED,
        path_loss_estimation_enabled: bool = DEFAULT_PATH_LOSS_ESTIMATION_ENABLED,
    ) -> None:
        self._initial_transmitted_power_dbm: Optional[float] = None
        self._initial_path_loss_exponent = DEFAULT_PATH_LOSS_EXPONENT
        self._transmitted_power_estimation_enabled = bool(transmitted_power_estimation_enabled)
        self._path_loss_estimation_enabled = bool(path_loss_estimation_enabled)
        self._fallback_rssi_standard_deviation = DEFAULT_RSSI_STANDARD_DEVIATION
        self.initial_transmitted_power_dbm = initial_transmitted_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent

    @property
    def initial_transmitted_power_dbm(self) -> Optional[float]:
        """Initial guess of the transmitted power in dBm (its known value when
        power estimation is disabled)."""
        return self._initial_transmitted_power_dbm

    @initial_transmitted_power_dbm.setter
    def initial_transmitted_power_dbm(self, power_dbm: Optional[float]) -> None:
        self._check_unlocked()
        if power_dbm is not None:
            if not np.isfinite(power_dbm):
                raise ValueError(f"initial_transmitted_power_dbm must be finite, got {power_dbm}")
            power_dbm = float(power_dbm)
        self._initial_transmitted_power_dbm = power_dbm
        self._configuration_changed()

    @property
    def initial_transmitted_power(self) -> Optional[float]:
        """Initial transmitted power in milliwatts."""
        if self._initial_transmitted_power_dbm is None:
            return None
        return dbm_to_power(self._initial_transmitted_power_dbm)

    @initial_transmitted_power.setter
    def initial_transmitted_power(self, power_mw: Optional[float]) -> None:
        self._check_unlocked()
        if power_mw is not None:
            if power_mw <= 0:
                raise ValueError(f"initial_transmitted_power must be positive, got {power_mw}")
            power_mw = power_to_dbm(power_mw)
        self.initial_transmitted_power_dbm = power_mw

    @property
    def initial_path_loss_exponent(self) -> float:
        return self._initial_path_loss_exponent

    @initial_path_loss_exponent.setter
    def initial_path_loss_exponent(self, exponent: float) -> None:
        self._check_unlocked()
        if not np.isfinite(exponent) or exponent <= 0:
            raise ValueError(f"initial_path_loss_exponent must be positive, got {exponent}")
        self._initial_path_loss_exponent = float(exponent)
        self._configuration_changed()

    @property
    def transmitted_power_estimation_enabled(self) -> bool:
        return self._transmitted_power_estimation_enabled

    @transmitted_power_estimation_enabled.setter
    def transmitted_power_estimation_enabled(self, enabled: bool) -> None:
        self._check_unlocked()
        self._transmitted_power_estimation_enabled = bool(enabled)
        self._configuration_changed()

    @property
    def path_loss_estimation_enabled(self) -> bool:
        return self._path_loss_estimation_enabled

    @path_loss_estimation_enabled.setter
    def path_loss_estimation_enabled(self, enabled: bool) -> None:
        self._check_unlocked()
        self._path_loss_estimation_enabled = bool(enabled)
        self._configuration_changed()

    @property
    def fallback_rssi_standard_deviation(self) -> float:
        """RSSI standard deviation (dB) used for readings that carry none."""
        return self._fallback_rssi_standard_deviation

    @fallback_rssi_standard_deviation.setter
    def fallback_rssi_standard_deviation(self, std: float) -> None:
        self._check_unlocked()
        if not np.isfinite(std) or std <= 0:
            raise ValueError(f"fallback_rssi_standard_deviation must be positive, got {std}")
        self._fallback_rssi_standard_deviation = float(std)
        self._configuration_changed()

    def _path_loss_unknowns(self) -> int:
        return int(self._transmitted_power_estimation_enabled) + int(
            self._path_loss_estimation_enabled
        )

    def _path_loss_ready(self) -> bool:
        """Known values are present for every quantity that is not estimated."""
        return (
            self._transmitted_power_estimation_enabled
            or self._initial_transmitted_power_dbm is not None
        )


class RangingSettingsMixin:
    """
    Ranging solver settings.

    Mixed into estimators that use ranging readings. Expects the host class
    to provide ``_check_unlocked()`` and ``_configuration_changed()``.
    """

    def _init_ranging_settings(self) -> None:
        self._homogeneous_linear_solver_used = DEFAULT_HOMOGENEOUS_LINEAR_SOLVER_USED
        self._use_reading_position_covariances = DEFAULT_USE_READING_POSITION_COVARIANCES
        self._fallback_distance_standard_deviation = DEFAULT_DISTANCE_STANDARD_DEVIATION

    @property
    def homogeneous_linear_solver_used(self) -> bool:
        """Whether the linear stage uses the homogeneous (SVD) formulation
        instead of the inhomogeneous (reference subtraction) one."""
        return self._homogeneous_linear_solver_used

    @homogeneous_linear_solver_used.setter
    def homogeneous_linear_solver_used(self, used: bool) -> None:
        self._check_unlocked()
        self._homogeneous_linear_solver_used = bool(used)
        self._configuration_changed()

    @property
    def use_reading_position_covariances(self) -> bool:
        """Whether receiver position covariances inflate distance standard
        deviations."""
        return self._use_reading_position_covariances

    @use_reading_position_covariances.setter
    def use_reading_position_covariances(self, use: bool) -> None:
        self._check_unlocked()
        self._use_reading_position_covariances = bool(use)
        self._configuration_changed()

    @property
    def fallback_distance_standard_deviation(self) -> float:
        """Distance standard deviation (m) used for readings that carry none."""
        return self._fallback_distance_standard_deviation

    @fallback_distance_standard_deviation.setter
    def fallback_distance_standard_deviation(self, std: float) -> None:
        self._check_unlocked()
        if not np.isfinite(std) or std <= 0:
            raise ValueError(f"fallback_distance_standard_deviation must be positive, got {std}")
        self._fallback_distance_standard_deviation = float(std)
        self._configuration_changed()
