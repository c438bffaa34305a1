"""
Sequential robust ranging and RSSI radio source estimation.

Two independent robust stages:
    1. Robust ranging estimate of the position (and its covariance).
    2. If power or exponent estimation is enabled, robust RSSI estimate of
       the transmitted power and/or path-loss exponent with the position
       held at the stage 1 result.

Each stage has its own method, threshold, confidence, iteration cap and
subset size (``RobustStageConfig``) and may have its own quality scores.
Quality scores always have one value per reading; each stage uses the
values of the readings routed to it. The published covariance is block
diagonal: the stage estimates are treated as independent. Quantities that
are not estimated are echoed from their initial values.

``SequentialRobustMixedRadioSourceEstimator`` accepts readings carrying a
distance, an RSSI or both, and lets the RSSI stage locate the source when
ranging readings are too few.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from radiosource.config import (
    DEFAULT_KEEP_COVARIANCE,
    DEFAULT_KEEP_INLIERS,
    DEFAULT_KEEP_RESIDUALS,
    DEFAULT_PROGRESS_DELTA,
    DEFAULT_REFINE_RESULT,
    RobustStageConfig,
    validate_progress_delta,
)
from radiosource.estimators.base import (
    EstimationResult,
    PathLossSettingsMixin,
    RadioSourceEstimator,
    RadioSourceEstimatorListener,
    RangingSettingsMixin,
)
from radiosource.rf.mixed import StageRoutingMixin, compose_stage_results, reading_masks
from radiosource.rf.robust import (
    RobustRangingRadioSourceEstimator,
    RobustRssiRadioSourceEstimator,
)
from radiosource.types import InliersData, Reading

logger = logging.getLogger(__name__)


class _StageListener(RadioSourceEstimatorListener):
    """Forwards the events of one stage to the sequential estimator.

    Iterations continue from the previous stages and progress is mapped to
    ``[offset, offset + scale]``.
    """

    def __init__(self, parent: "SequentialRobustRangingAndRssiRadioSourceEstimator",
                 offset: float, scale: float, iteration_offset: int = 0):
        self.parent = parent
        self.offset = offset
        self.scale = scale
        self.iteration_offset = iteration_offset
        self.last_iteration = iteration_offset

    def on_estimate_next_iteration(self, estimator, iteration: int) -> None:
        self.last_iteration = self.iteration_offset + iteration
        self.parent._notify_next_iteration(self.last_iteration)

    def on_estimate_progress_change(self, estimator, progress: float) -> None:
        self.parent._notify_progress_change(self.offset + self.scale * progress)


def _expand_inliers(data: Optional[InliersData], mask: np.ndarray) -> Optional[InliersData]:
    """Map stage inliers and residuals back onto every reading."""
    if data is None or np.all(mask):
        return data
    indices = np.flatnonzero(mask)
    inliers = None
    if data.inliers is not None:
        inliers = np.zeros(len(mask), dtype=bool)
        inliers[indices[data.inliers]] = True
    residuals = None
    if data.residuals is not None:
        # NaN for readings the stage did not use
        residuals = np.full(len(mask), np.nan)
        residuals[indices] = data.residuals
    return InliersData(
        num_inliers=data.num_inliers,
        inliers=inliers,
        residuals=residuals,
        threshold=data.threshold,
    )


class SequentialRobustRangingAndRssiRadioSourceEstimator(
    StageRoutingMixin, RangingSettingsMixin, PathLossSettingsMixin, RadioSourceEstimator
):
    """
    Robust ranging stage for the position followed by a robust RSSI stage
    for the transmitted power and path-loss exponent.

    Every reading must carry both a distance and an RSSI. Needs
    ``max(d + 1, d + power + exponent)`` readings at distinct positions.
    Listener progress is mapped to [0, 0.5] for the ranging stage and to
    [0.5, 1] for the RSSI stage. Iteration indices keep increasing across
    the stages.

    Args:
        readings: Ranging and RSSI readings of one radio source.
        quality_scores: Quality scores used by both stages, or None.
        ranging_config: Robust settings of the ranging stage.
        rssi_config: Robust settings of the RSSI stage.
        initial_position: Initial guess for the ranging stage, or None.
        initial_transmitted_power_dbm: Initial guess, or the known power when
            power estimation is disabled.
        initial_path_loss_exponent: Initial guess, or the known exponent.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.
        random_state: Seed of the subset samplers.

    Example:
        >>> estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
        ...     readings,
        ...     ranging_config=RobustStageConfig(RobustMethod.RANSAC, threshold=0.5),
        ...     rssi_config=RobustStageConfig(RobustMethod.LMEDS),
        ...     random_state=42)
        >>> located = estimator.estimate()
    """

    requires_distance = True
    requires_rssi = True
    rssi_position_allowed = False

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        quality_scores=None,
        ranging_config: Optional[RobustStageConfig] = None,
        rssi_config: Optional[RobustStageConfig] = None,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = 2.0,
        listener: Optional[RadioSourceEstimatorListener] = None,
        dims: Optional[int] = None,
        random_state=None,
    ):
        self._init_ranging_settings()
        self._ranging_config = ranging_config or RobustStageConfig()
        self._rssi_config = rssi_config or RobustStageConfig()
        self._ranging_quality_scores = None
        self._rssi_quality_scores = None
        self._progress_delta = DEFAULT_PROGRESS_DELTA
        self._result_refined = DEFAULT_REFINE_RESULT
        self._covariance_kept = DEFAULT_KEEP_COVARIANCE
        self._inliers_kept = DEFAULT_KEEP_INLIERS
        self._residuals_kept = DEFAULT_KEEP_RESIDUALS
        self._random_state = random_state
        super().__init__(readings, initial_position, listener, dims)
        self._init_path_loss_settings(initial_transmitted_power_dbm, initial_path_loss_exponent)
        if quality_scores is not None:
            self.quality_scores = quality_scores

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def ranging_config(self) -> RobustStageConfig:
        return self._ranging_config

    @ranging_config.setter
    def ranging_config(self, config: RobustStageConfig) -> None:
        self._check_unlocked()
        if not isinstance(config, RobustStageConfig):
            raise ValueError(f"ranging_config must be a RobustStageConfig, got {config!r}")
        self._ranging_config = config
        self._configuration_changed()

    @property
    def rssi_config(self) -> RobustStageConfig:
        return self._rssi_config

    @rssi_config.setter
    def rssi_config(self, config: RobustStageConfig) -> None:
        self._check_unlocked()
        if not isinstance(config, RobustStageConfig):
            raise ValueError(f"rssi_config must be a RobustStageConfig, got {config!r}")
        self._rssi_config = config
        self._configuration_changed()

    def _as_quality(self, quality_scores) -> Optional[np.ndarray]:
        if quality_scores is None:
            return None
        scores = np.array(quality_scores, dtype=float)
        if scores.ndim != 1 or not np.all(np.isfinite(scores)):
            raise ValueError("quality scores must be a finite 1D array")
        if len(scores) < self.min_readings:
            raise ValueError(
                f"quality scores need at least {self.min_readings} values, got {len(scores)}"
            )
        if self._readings is not None and len(scores) != len(self._readings):
            raise ValueError(
                f"quality scores have {len(scores)} values for {len(self._readings)} readings"
            )
        scores.setflags(write=False)
        return scores

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        """Quality scores of the ranging stage (shared by both stages when
        set through this property)."""
        return self._ranging_quality_scores

    @quality_scores.setter
    def quality_scores(self, quality_scores) -> None:
        self._check_unlocked()
        scores = self._as_quality(quality_scores)
        self._ranging_quality_scores = scores
        self._rssi_quality_scores = scores
        self._configuration_changed()

    @property
    def ranging_quality_scores(self) -> Optional[np.ndarray]:
        return self._ranging_quality_scores

    @ranging_quality_scores.setter
    def ranging_quality_scores(self, quality_scores) -> None:
        self._check_unlocked()
        self._ranging_quality_scores = self._as_quality(quality_scores)
        self._configuration_changed()

    @property
    def rssi_quality_scores(self) -> Optional[np.ndarray]:
        return self._rssi_quality_scores

    @rssi_quality_scores.setter
    def rssi_quality_scores(self, quality_scores) -> None:
        self._check_unlocked()
        self._rssi_quality_scores = self._as_quality(quality_scores)
        self._configuration_changed()

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, progress_delta: float) -> None:
        self._check_unlocked()
        self._progress_delta = validate_progress_delta(progress_delta)
        self._configuration_changed()

    @property
    def result_refined(self) -> bool:
        return self._result_refined

    @result_refined.setter
    def result_refined(self, refined: bool) -> None:
        self._check_unlocked()
        self._result_refined = bool(refined)
        self._configuration_changed()

    @property
    def covariance_kept(self) -> bool:
        return self._covariance_kept

    @covariance_kept.setter
    def covariance_kept(self, kept: bool) -> None:
        self._check_unlocked()
        self._covariance_kept = bool(kept)
        self._configuration_changed()

    @property
    def inliers_kept(self) -> bool:
        return self._inliers_kept

    @inliers_kept.setter
    def inliers_kept(self, kept: bool) -> None:
        self._check_unlocked()
        self._inliers_kept = bool(kept)
        self._configuration_changed()

    @property
    def residuals_kept(self) -> bool:
        return self._residuals_kept

    @residuals_kept.setter
    def residuals_kept(self, kept: bool) -> None:
        self._check_unlocked()
        self._residuals_kept = bool(kept)
        self._configuration_changed()

    @property
    def random_state(self):
        return self._random_state

    @random_state.setter
    def random_state(self, random_state) -> None:
        self._check_unlocked()
        self._random_state = random_state
        self._configuration_changed()

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @staticmethod
    def _stage_ready(config: RobustStageConfig, quality_scores, n: int,
                     n_stage: int, stage_min: int) -> bool:
        if not config.method.uses_quality_scores:
            return True
        return quality_scores is not None and len(quality_scores) == n and n_stage >= stage_min + 1

    def is_ready(self) -> bool:
        if not (self._path_loss_ready() and super().is_ready() and self._stages_ready()):
            return False
        n = len(self._readings)
        has_distance, has_rssi = reading_masks(self._readings)
        ranging_min, rssi_min = self._stage_minimums()
        if ranging_min and not self._stage_ready(
            self._ranging_config,
            self._ranging_quality_scores,
            n,
            int(np.sum(has_distance)),
            ranging_min,
        ):
            return False
        if rssi_min:
            return self._stage_ready(
                self._rssi_config, self._rssi_quality_scores, n, int(np.sum(has_rssi)), rssi_min
            )
        return True

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _estimate(self) -> EstimationResult:
        has_distance, has_rssi = reading_masks(self._readings)
        rssi_position = self.rssi_position_enabled
        n_stages = int(not rssi_position) + int(self.rssi_stage_enabled)
        scale = 1.0 / n_stages
        stage_progress_delta = min(1.0, n_stages * self._progress_delta)
        offset = 0.0
        iterations = 0
        position = self._initial_position

        ranging_result = None
        inliers_data = None
        if not rssi_position:
            listener = _StageListener(self, offset, scale, iterations)
            ranging = RobustRangingRadioSourceEstimator(
                self._ranging_readings(),
                method=self._ranging_config.method,
                initial_position=self._initial_position,
                listener=listener,
                dims=self._dims,
                random_state=self._random_state,
            )
            ranging.configure(self._ranging_config)
            ranging.progress_delta = stage_progress_delta
            ranging.result_refined = self._result_refined
            ranging.covariance_kept = self._covariance_kept
            ranging.inliers_kept = self._inliers_kept
            ranging.residuals_kept = self._residuals_kept
            ranging.homogeneous_linear_solver_used = self._homogeneous_linear_solver_used
            ranging.use_reading_position_covariances = self._use_reading_position_covariances
            ranging.fallback_distance_standard_deviation = self._fallback_distance_standard_deviation
            ranging.non_linear_solver_enabled = self._non_linear_solver_enabled
            if self._ranging_quality_scores is not None:
                ranging.quality_scores = self._ranging_quality_scores[has_distance]
            ranging.estimate()

            ranging_result = ranging.result
            position = ranging_result.position
            inliers_data = _expand_inliers(ranging.inliers_data, has_distance)
            iterations = listener.last_iteration
            offset += scale
            logger.debug("Ranging stage located source at %s after %d iterations",
                         position, iterations)

        rssi_result = None
        if self.rssi_stage_enabled:
            rssi = RobustRssiRadioSourceEstimator(
                self._rssi_readings(),
                method=self._rssi_config.method,
                initial_position=position,
                initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
                initial_path_loss_exponent=self._initial_path_loss_exponent,
                listener=_StageListener(self, offset, scale, iterations),
                dims=self._dims,
                random_state=self._random_state,
            )
            rssi.position_estimation_enabled = rssi_position
            rssi.transmitted_power_estimation_enabled = self._transmitted_power_estimation_enabled
            rssi.path_loss_estimation_enabled = self._path_loss_estimation_enabled
            rssi.configure(self._rssi_config)
            rssi.progress_delta = stage_progress_delta
            rssi.result_refined = self._result_refined
            rssi.covariance_kept = self._covariance_kept
            rssi.inliers_kept = self._inliers_kept
            rssi.residuals_kept = self._residuals_kept
            rssi.fallback_rssi_standard_deviation = self._fallback_rssi_standard_deviation
            rssi.non_linear_solver_enabled = self._non_linear_solver_enabled
            if self._rssi_quality_scores is not None:
                rssi.quality_scores = self._rssi_quality_scores[has_rssi]
            rssi.estimate()

            rssi_result = rssi.result
            if rssi_position:
                inliers_data = _expand_inliers(rssi.inliers_data, has_rssi)
                logger.debug("RSSI stage located source at %s", rssi_result.position)

        return compose_stage_results(
            ranging_result,
            rssi_result,
            self._initial_transmitted_power_dbm,
            self._initial_path_loss_exponent,
            inliers_data=inliers_data,
        )


class SequentialRobustMixedRadioSourceEstimator(
    SequentialRobustRangingAndRssiRadioSourceEstimator
):
    """
    Sequential robust estimator for readings that carry a distance, an RSSI
    or both.

    Readings with a distance feed the ranging stage and readings with an
    RSSI feed the RSSI stage. When the ranging readings cover fewer than
    d+1 distinct positions the ranging stage is skipped and the RSSI stage
    estimates the position too, needing ``d + power + exponent`` distinct
    RSSI positions. Quality scores have one value per reading regardless of
    the measurements it carries.

    Args:
        See ``SequentialRobustRangingAndRssiRadioSourceEstimator``.
    """

    requires_distance = False
    requires_rssi = False
    rssi_position_allowed = True
