"""
Radio source estimation from mixed ranging and RSSI readings.

Readings may carry a distance, an RSSI or both. Each one is routed to the
stage that can use it:
    1. Ranging stage: readings with a distance locate the source.
    2. RSSI stage: readings with an RSSI estimate the transmitted power
       and/or path-loss exponent with the position held at the stage 1
       result.

When the ranging readings cover fewer than d+1 distinct receiver
positions, the ranging stage is skipped and the RSSI stage estimates the
position as well. The published covariance is block diagonal when both
stages run. Quantities that are not estimated are echoed from their
initial values.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import block_diag

from radiosource.estimators.base import (
    EstimationResult,
    PathLossSettingsMixin,
    RadioSourceEstimator,
    RadioSourceEstimatorListener,
    RangingSettingsMixin,
)
from radiosource.rf.ranging import RangingRadioSourceEstimator
from radiosource.rf.rssi import RssiRadioSourceEstimator
from radiosource.types import Reading, count_distinct_positions

logger = logging.getLogger(__name__)


def reading_masks(readings: Sequence[Reading]) -> Tuple[np.ndarray, np.ndarray]:
    """Boolean masks of the readings carrying a distance and an RSSI."""
    has_distance = np.array([r.has_distance for r in readings], dtype=bool)
    has_rssi = np.array([r.has_rssi for r in readings], dtype=bool)
    return has_distance, has_rssi


def select_readings(readings: Sequence[Reading], mask: np.ndarray) -> Tuple[Reading, ...]:
    return tuple(r for r, keep in zip(readings, mask) if keep)


def compose_stage_results(
    ranging: Optional[EstimationResult],
    rssi: Optional[EstimationResult],
    initial_transmitted_power_dbm: Optional[float],
    initial_path_loss_exponent: float,
    inliers_data=None,
) -> EstimationResult:
    """
    Combine the results of a ranging stage and an RSSI stage.

    Args:
        ranging: Ranging stage result, or None when the RSSI stage located
            the source.
        rssi: RSSI stage result, or None when it did not run.
        initial_transmitted_power_dbm: Power echoed without an RSSI stage.
        initial_path_loss_exponent: Exponent echoed without an RSSI stage.
        inliers_data: Consensus summary to publish, or None.

    Returns:
        EstimationResult. The covariance is ``block_diag(position, RSSI)``
        when both stages provide one.
    """
    if ranging is None:
        return EstimationResult(
            position=rssi.position,
            position_covariance=rssi.position_covariance,
            covariance=rssi.covariance,
            transmitted_power_dbm=rssi.transmitted_power_dbm,
            transmitted_power_variance=rssi.transmitted_power_variance,
            path_loss_exponent=rssi.path_loss_exponent,
            path_loss_exponent_variance=rssi.path_loss_exponent_variance,
            chi_sq=rssi.chi_sq,
            inliers_data=inliers_data,
        )
    if rssi is None:
        return EstimationResult(
            position=ranging.position,
            position_covariance=ranging.position_covariance,
            covariance=ranging.covariance,
            transmitted_power_dbm=initial_transmitted_power_dbm,
            path_loss_exponent=initial_path_loss_exponent,
            chi_sq=ranging.chi_sq,
            inliers_data=inliers_data,
        )

    covariance = ranging.position_covariance
    if ranging.position_covariance is not None and rssi.covariance is not None:
        covariance = block_diag(ranging.position_covariance, rssi.covariance)
    chi_sq = ranging.chi_sq
    if chi_sq is not None and rssi.chi_sq is not None:
        chi_sq = chi_sq + rssi.chi_sq
    return EstimationResult(
        position=ranging.position,
        position_covariance=ranging.position_covariance,
        covariance=covariance,
        transmitted_power_dbm=rssi.transmitted_power_dbm,
        transmitted_power_variance=rssi.transmitted_power_variance,
        path_loss_exponent=rssi.path_loss_exponent,
        path_loss_exponent_variance=rssi.path_loss_exponent_variance,
        chi_sq=chi_sq,
        inliers_data=inliers_data,
    )


class StageRoutingMixin:
    """
    Routing of readings between a ranging stage and an RSSI stage.

    Expects the host class to mix in ``PathLossSettingsMixin`` and to derive
    from ``RadioSourceEstimator``.
    """

    #: Whether the RSSI stage may estimate the position when ranging
    #: readings are too few.
    rssi_position_allowed = True

    def _ranging_readings(self) -> Tuple[Reading, ...]:
        if not self._readings:
            return ()
        return select_readings(self._readings, reading_masks(self._readings)[0])

    def _rssi_readings(self) -> Tuple[Reading, ...]:
        if not self._readings:
            return ()
        return select_readings(self._readings, reading_masks(self._readings)[1])

    @property
    def rssi_position_enabled(self) -> bool:
        """Whether the RSSI stage estimates the position (too few distinct
        ranging receiver positions)."""
        if not self.rssi_position_allowed or not self._readings:
            return False
        return count_distinct_positions(self._ranging_readings()) < self.dims + 1

    @property
    def rssi_stage_enabled(self) -> bool:
        """Whether the RSSI stage runs."""
        return self.rssi_position_enabled or self._path_loss_unknowns() > 0

    @property
    def min_readings(self) -> int:
        d = self.dims
        if self.rssi_position_enabled:
            return d + self._path_loss_unknowns()
        return max(d + 1, d + self._path_loss_unknowns())

    def _stage_minimums(self) -> Tuple[int, int]:
        """Distinct positions needed by the ranging and RSSI stages (0 when a
        stage does not run)."""
        rssi_position = self.rssi_position_enabled
        ranging_min = 0 if rssi_position else self.dims + 1
        rssi_min = 0
        if self.rssi_stage_enabled:
            rssi_min = self.dims * int(rssi_position) + self._path_loss_unknowns()
        return ranging_min, rssi_min

    def _stages_ready(self) -> bool:
        ranging_min, rssi_min = self._stage_minimums()
        return (
            count_distinct_positions(self._ranging_readings()) >= ranging_min
            and count_distinct_positions(self._rssi_readings()) >= rssi_min
        )


class MixedRadioSourceEstimator(
    StageRoutingMixin, RangingSettingsMixin, PathLossSettingsMixin, RadioSourceEstimator
):
    """
    Non-robust estimator of a radio source from readings that carry a
    distance, an RSSI or both.

    Ranging readings locate the source and RSSI readings then estimate the
    transmitted power and/or path-loss exponent at that position. Without
    enough ranging readings the RSSI readings locate the source too.

    Args:
        readings: Readings of one radio source.
        initial_position: Initial guess of the position, or None.
        initial_transmitted_power_dbm: Initial guess, or the known power when
            power estimation is disabled.
        initial_path_loss_exponent: Initial guess, or the known exponent.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.

    Example:
        >>> readings = ([Reading(ap, p, distance=d) for p, d in ranging]
        ...             + [Reading(ap, p, rssi=r) for p, r in fingerprints])
        >>> located = MixedRadioSourceEstimator(readings).estimate()
    """

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

    def is_ready(self) -> bool:
        return self._path_loss_ready() and super().is_ready() and self._stages_ready()

    def _estimate(self) -> EstimationResult:
        rssi_position = self.rssi_position_enabled
        position = self._initial_position

        ranging_result = None
        if not rssi_position:
            ranging = RangingRadioSourceEstimator(
                self._ranging_readings(), initial_position=self._initial_position, dims=self._dims
            )
            ranging.homogeneous_linear_solver_used = self._homogeneous_linear_solver_used
            ranging.use_reading_position_covariances = self._use_reading_position_covariances
            ranging.fallback_distance_standard_deviation = self._fallback_distance_standard_deviation
            ranging.non_linear_solver_enabled = self._non_linear_solver_enabled
            ranging.estimate()
            ranging_result = ranging.result
            position = ranging_result.position
            logger.debug("Ranging stage located source at %s", position)

        rssi_result = None
        if self.rssi_stage_enabled:
            rssi = RssiRadioSourceEstimator(
                self._rssi_readings(),
                initial_position=position,
                initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
                initial_path_loss_exponent=self._initial_path_loss_exponent,
                dims=self._dims,
            )
            rssi.position_estimation_enabled = rssi_position
            rssi.transmitted_power_estimation_enabled = self._transmitted_power_estimation_enabled
            rssi.path_loss_estimation_enabled = self._path_loss_estimation_enabled
            rssi.fallback_rssi_standard_deviation = self._fallback_rssi_standard_deviation
            rssi.non_linear_solver_enabled = self._non_linear_solver_enabled
            rssi.estimate()
            rssi_result = rssi.result

        return compose_stage_results(
            ranging_result,
            rssi_result,
            self._initial_transmitted_power_dbm,
            self._initial_path_loss_exponent,
        )
