"""
Robust radio source estimators.

Each robust estimator is its non-robust counterpart driven by the
sample-consensus engine:

    1. Draw preliminary subsets (uniformly, or by quality for PROSAC and
       PROMedS) and fit a candidate to each with the non-robust solver.
    2. Score every reading against each candidate and keep the best one,
       adapting the iteration bound to its inlier ratio.
    3. Optionally refine the best candidate on its inliers with
       Levenberg-Marquardt, keeping the covariance if requested.

Residuals:
    - Ranging: |d_i - ||x - p_i|||                          (meters)
    - RSSI: |rssi_i - (P + k*g_i(x))|                       (dB)
    - Ranging and RSSI: |d_i - ||x - p_i||| + |rssi_i - ...|

The ``create_robust_*`` factories build an estimator for a given method.
"""

import logging
from typing import Any, Optional, Sequence

import numpy as np

from radiosource.config import (
    DEFAULT_CONFIDENCE,
    DEFAULT_KEEP_COVARIANCE,
    DEFAULT_KEEP_INLIERS,
    DEFAULT_KEEP_RESIDUALS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    DEFAULT_REFINE_RESULT,
    DEFAULT_ROBUST_METHOD,
    DEFAULT_THRESHOLD,
    RobustStageConfig,
    validate_confidence,
    validate_max_iterations,
    validate_progress_delta,
    validate_threshold,
)
from radiosource.estimators.base import EstimationResult, RadioSourceEstimatorListener
from radiosource.estimators.consensus import ConsensusEngine, create_sampler, create_scorer
from radiosource.exceptions import RobustEstimatorError
from radiosource.rf.measurement_models import distances_to, expected_rssi
from radiosource.rf.ranging import (
    RangingRadioSourceEstimator,
    RangingSolution,
    ranging_arrays,
    solve_ranging,
)
from radiosource.rf.ranging_and_rssi import (
    RangingAndRssiRadioSourceEstimator,
    solve_ranging_and_rssi,
)
from radiosource.rf.rssi import (
    PathLossSolution,
    RssiRadioSourceEstimator,
    result_from_path_loss,
    rssi_arrays,
    solve_rssi,
)
from radiosource.types import InliersData, Reading, RobustMethod

logger = logging.getLogger(__name__)


class RobustEstimatorMixin:
    """
    Robust estimation settings and the consensus-driven ``_estimate()``.

    Mixed in front of a non-robust estimator class. Subclasses implement
    ``_prepare()``, ``_fit_subset()``, ``_residuals()``, ``_refine()`` and
    ``_to_result()``.
    """

    def _init_robust_settings(
        self,
        method: RobustMethod = DEFAULT_ROBUST_METHOD,
        random_state=None,
    ) -> None:
        if not isinstance(method, RobustMethod):
            raise ValueError(f"method must be a RobustMethod, got {method!r}")
        self._method = method
        self._threshold = DEFAULT_THRESHOLD
        self._confidence = DEFAULT_CONFIDENCE
        self._max_iterations = DEFAULT_MAX_ITERATIONS
        self._progress_delta = DEFAULT_PROGRESS_DELTA
        self._preliminary_subset_size: Optional[int] = None
        self._result_refined = DEFAULT_REFINE_RESULT
        self._covariance_kept = DEFAULT_KEEP_COVARIANCE
        self._inliers_kept = DEFAULT_KEEP_INLIERS
        self._residuals_kept = DEFAULT_KEEP_RESIDUALS
        self._weighted_sampling = False
        self._random_state = random_state
        self._quality_scores: Optional[np.ndarray] = None

    @staticmethod
    def _as_quality(quality_scores) -> np.ndarray:
        scores = np.array(quality_scores, dtype=float)
        if scores.ndim != 1:
            raise ValueError(f"quality_scores must be 1D, got shape {scores.shape}")
        if not np.all(np.isfinite(scores)):
            raise ValueError("quality_scores must be finite")
        scores.setflags(write=False)
        return scores

    def _check_quality_length(self, scores: np.ndarray) -> None:
        if len(scores) < self.min_readings:
            raise ValueError(
                f"quality_scores needs at least {self.min_readings} values, got {len(scores)}"
            )
        if self._readings is not None and len(scores) != len(self._readings):
            raise ValueError(
                f"quality_scores has {len(scores)} values for {len(self._readings)} readings"
            )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def method(self) -> RobustMethod:
        return self._method

    @method.setter
    def method(self, method: RobustMethod) -> None:
        self._check_unlocked()
        if not isinstance(method, RobustMethod):
            raise ValueError(f"method must be a RobustMethod, got {method!r}")
        self._method = method
        self._configuration_changed()

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        """One score per reading, larger is better (PROSAC and PROMedS)."""
        return self._quality_scores

    @quality_scores.setter
    def quality_scores(self, quality_scores) -> None:
        self._check_unlocked()
        if quality_scores is not None:
            quality_scores = self._as_quality(quality_scores)
            self._check_quality_length(quality_scores)
        self._quality_scores = quality_scores
        self._configuration_changed()

    @property
    def threshold(self) -> float:
        """Inlier threshold of RANSAC, MSAC and PROSAC, in residual units."""
        return self._threshold

    @threshold.setter
    def threshold(self, threshold: float) -> None:
        self._check_unlocked()
        self._threshold = validate_threshold(threshold)
        self._configuration_changed()

    @property
    def confidence(self) -> float:
        return self._confidence

    @confidence.setter
    def confidence(self, confidence: float) -> None:
        self._check_unlocked()
        self._confidence = validate_confidence(confidence)
        self._configuration_changed()

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, max_iterations: int) -> None:
        self._check_unlocked()
        self._max_iterations = validate_max_iterations(max_iterations)
        self._configuration_changed()

    @property
    def progress_delta(self) -> float:
        """Minimum progress advance between progress notifications."""
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, progress_delta: float) -> None:
        self._check_unlocked()
        self._progress_delta = validate_progress_delta(progress_delta)
        self._configuration_changed()

    @property
    def preliminary_subset_size(self) -> int:
        """Readings per preliminary subset; never below ``min_readings``."""
        if self._preliminary_subset_size is None:
            return self.min_readings
        return max(self._preliminary_subset_size, self.min_readings)

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, size: Optional[int]) -> None:
        self._check_unlocked()
        if size is not None and size < self.min_readings:
            raise ValueError(
                f"preliminary_subset_size must be >= {self.min_readings}, got {size}"
            )
        self._preliminary_subset_size = size
        self._configuration_changed()

    @property
    def result_refined(self) -> bool:
        """Whether the best candidate is refined on its inliers."""
        return self._result_refined

    @result_refined.setter
    def result_refined(self, refined: bool) -> None:
        self._check_unlocked()
        self._result_refined = bool(refined)
        self._configuration_changed()

    @property
    def covariance_kept(self) -> bool:
        """Whether the refinement covariance is published."""
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
    def weighted_sampling(self) -> bool:
        """Whether PROSAC/PROMedS draw quality-weighted random subsets
        instead of progressive ones."""
        return self._weighted_sampling

    @weighted_sampling.setter
    def weighted_sampling(self, weighted: bool) -> None:
        self._check_unlocked()
        self._weighted_sampling = bool(weighted)
        self._configuration_changed()

    @property
    def random_state(self):
        """Seed (or ``numpy.random.Generator``) of the subset sampler."""
        return self._random_state

    @random_state.setter
    def random_state(self, random_state) -> None:
        self._check_unlocked()
        self._random_state = random_state
        self._configuration_changed()

    def configure(self, config: RobustStageConfig) -> None:
        """Apply a stage configuration at once."""
        self._check_unlocked()
        if (
            config.preliminary_subset_size is not None
            and config.preliminary_subset_size < self.min_readings
        ):
            raise ValueError(
                f"preliminary_subset_size must be >= {self.min_readings}, "
                f"got {config.preliminary_subset_size}"
            )
        self._method = config.method
        self._threshold = config.threshold
        self._confidence = config.confidence
        self._max_iterations = config.max_iterations
        self._preliminary_subset_size = config.preliminary_subset_size
        self._configuration_changed()

    def is_ready(self) -> bool:
        if not super().is_ready():
            return False
        if self._method.uses_quality_scores:
            n = len(self._readings)
            return (
                self._quality_scores is not None
                and len(self._quality_scores) == n
                and n >= self.min_readings + 1
            )
        return True

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _estimate(self) -> EstimationResult:
        self._prepare()
        n = len(self._readings)
        subset_size = min(self.preliminary_subset_size, n)
        rng = np.random.default_rng(self._random_state)

        engine = ConsensusEngine(
            n_samples=n,
            subset_size=subset_size,
            fit=self._fit_subset,
            residuals=self._residuals,
            sampler=create_sampler(
                self._method,
                n,
                subset_size,
                rng,
                quality_scores=self._quality_scores,
                max_iterations=self._max_iterations,
                weighted=self._weighted_sampling,
            ),
            scorer=create_scorer(self._method, self._threshold, subset_size),
            confidence=self._confidence,
            max_iterations=self._max_iterations,
            progress_delta=self._progress_delta,
            on_iteration=self._notify_next_iteration,
            on_progress=self._notify_progress_change,
        )
        best = engine.run()
        logger.debug(
            "%s: best candidate has %d/%d inliers after %d iterations",
            self._method.value,
            best.num_inliers,
            n,
            best.iterations,
        )

        inliers_data = InliersData(
            num_inliers=best.num_inliers,
            inliers=best.inliers.copy() if self._inliers_kept else None,
            residuals=best.residuals.copy() if self._residuals_kept else None,
            threshold=best.threshold,
        )

        model = best.model
        if self._result_refined:
            if best.num_inliers < self.min_readings:
                raise RobustEstimatorError(
                    f"only {best.num_inliers} inliers, {self.min_readings} needed to refine"
                )
            try:
                model = self._refine(best.inliers, best.model)
            except np.linalg.LinAlgError as e:
                raise RobustEstimatorError(f"refinement failed: {e}") from e
        return self._to_result(model, inliers_data)

    def _prepare(self) -> None:
        """Stack the reading arrays used by the fit and residual hooks."""
        raise NotImplementedError

    def _fit_subset(self, indices: np.ndarray) -> Any:
        raise NotImplementedError

    def _residuals(self, model: Any) -> np.ndarray:
        raise NotImplementedError

    def _refine(self, inliers: np.ndarray, model: Any) -> Any:
        raise NotImplementedError

    def _to_result(self, model: Any, inliers_data: InliersData) -> EstimationResult:
        raise NotImplementedError


class RobustRangingRadioSourceEstimator(RobustEstimatorMixin, RangingRadioSourceEstimator):
    """
    Robust ranging estimator of a radio source position.

    Preliminary subsets are solved linearly, refined nonlinearly only when
    an initial position is given. The best candidate is refined on its
    inliers with Levenberg-Marquardt.

    Args:
        readings: Ranging readings of one radio source.
        quality_scores: One score per reading (PROSAC and PROMedS).
        method: Robust method. Defaults to PROMedS.
        initial_position: Initial guess for preliminary fits, or None.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.
        random_state: Seed of the subset sampler.

    Example:
        >>> estimator = RobustRangingRadioSourceEstimator(
        ...     readings, method=RobustMethod.RANSAC, random_state=0)
        >>> estimator.threshold = 0.5
        >>> located = estimator.estimate()
        >>> estimator.inliers_data.num_inliers
    """

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        quality_scores=None,
        method: RobustMethod = DEFAULT_ROBUST_METHOD,
        initial_position=None,
        listener: Optional[RadioSourceEstimatorListener] = None,
        dims: Optional[int] = None,
        random_state=None,
    ):
        self._init_robust_settings(method, random_state)
        super().__init__(readings, initial_position, listener, dims)
        if quality_scores is not None:
            self.quality_scores = quality_scores

    def _prepare(self) -> None:
        self._receivers, self._distances, self._stds = ranging_arrays(
            self._readings,
            self._fallback_distance_standard_deviation,
            self._use_reading_position_covariances,
        )

    def _fit_subset(self, indices: np.ndarray) -> RangingSolution:
        return solve_ranging(
            self._receivers[indices],
            self._distances[indices],
            self._stds[indices],
            initial_position=self._initial_position,
            homogeneous=self._homogeneous_linear_solver_used,
            non_linear=self._non_linear_solver_enabled and self._initial_position is not None,
            return_covariance=False,
        )

    def _residuals(self, model: RangingSolution) -> np.ndarray:
        return distances_to(model.position, self._receivers) - self._distances

    def _refine(self, inliers: np.ndarray, model: RangingSolution) -> RangingSolution:
        return solve_ranging(
            self._receivers[inliers],
            self._distances[inliers],
            self._stds[inliers],
            initial_position=model.position,
            non_linear=True,
            return_covariance=self._covariance_kept,
        )

    def _to_result(self, model: RangingSolution, inliers_data: InliersData) -> EstimationResult:
        covariance = model.covariance if self._covariance_kept else None
        return EstimationResult(
            position=model.position,
            position_covariance=covariance,
            covariance=covariance,
            chi_sq=model.chi_sq,
            inliers_data=inliers_data,
        )


class _PathLossRobustMixin:
    """Result publication shared by the robust estimators with path-loss unknowns."""

    def _to_result(self, model: PathLossSolution, inliers_data: InliersData) -> EstimationResult:
        if not self._covariance_kept:
            model = PathLossSolution(
                position=model.position,
                transmitted_power_dbm=model.transmitted_power_dbm,
                path_loss_exponent=model.path_loss_exponent,
                chi_sq=model.chi_sq,
                estimate_position=model.estimate_position,
                estimate_power=model.estimate_power,
                estimate_exponent=model.estimate_exponent,
            )
        return result_from_path_loss(model, inliers_data)


class RobustRssiRadioSourceEstimator(
    _PathLossRobustMixin, RobustEstimatorMixin, RssiRadioSourceEstimator
):
    """
    Robust RSSI estimator of a radio source position, transmitted power and
    path-loss exponent.

    Args:
        readings: RSSI readings of one radio source.
        quality_scores: One score per reading (PROSAC and PROMedS).
        method: Robust method. Defaults to PROMedS.
        initial_position: Initial guess, or the known position when position
            estimation is disabled.
        initial_transmitted_power_dbm: Initial guess, or the known power.
        initial_path_loss_exponent: Initial guess, or the known exponent.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.
        random_state: Seed of the subset sampler.
    """

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        quality_scores=None,
        method: RobustMethod = DEFAULT_ROBUST_METHOD,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = 2.0,
        listener: Optional[RadioSourceEstimatorListener] = None,
        dims: Optional[int] = None,
        random_state=None,
    ):
        self._init_robust_settings(method, random_state)
        super().__init__(
            readings,
            initial_position,
            initial_transmitted_power_dbm,
            initial_path_loss_exponent,
            listener,
            dims,
        )
        if quality_scores is not None:
            self.quality_scores = quality_scores

    def _prepare(self) -> None:
        self._receivers, self._rssi, self._stds = rssi_arrays(
            self._readings, self._fallback_rssi_standard_deviation
        )
        self._frequency = self._readings[0].source.frequency

    def _solve(self, mask, position, power_dbm, exponent, non_linear, return_covariance) -> PathLossSolution:
        return solve_rssi(
            self._receivers[mask],
            self._rssi[mask],
            self._stds[mask],
            frequency=self._frequency,
            estimate_position=self._position_estimation_enabled,
            estimate_power=self._transmitted_power_estimation_enabled,
            estimate_exponent=self._path_loss_estimation_enabled,
            initial_position=position,
            initial_power_dbm=power_dbm,
            initial_exponent=exponent,
            non_linear=non_linear,
            return_covariance=return_covariance,
        )

    def _fit_subset(self, indices: np.ndarray) -> PathLossSolution:
        # Position fits have no linear form
        return self._solve(
            indices,
            self._initial_position,
            self._initial_transmitted_power_dbm,
            self._initial_path_loss_exponent,
            non_linear=self._non_linear_solver_enabled or self._position_estimation_enabled,
            return_covariance=False,
        )

    def _residuals(self, model: PathLossSolution) -> np.ndarray:
        return self._rssi - expected_rssi(
            model.position,
            self._receivers,
            model.transmitted_power_dbm,
            model.path_loss_exponent,
            self._frequency,
        )

    def _refine(self, inliers: np.ndarray, model: PathLossSolution) -> PathLossSolution:
        return self._solve(
            inliers,
            model.position,
            model.transmitted_power_dbm,
            model.path_loss_exponent,
            non_linear=True,
            return_covariance=self._covariance_kept,
        )


class RobustRangingAndRssiRadioSourceEstimator(
    _PathLossRobustMixin, RobustEstimatorMixin, RangingAndRssiRadioSourceEstimator
):
    """
    Robust joint ranging and RSSI estimator.

    The residual of a reading is the sum of its absolute ranging residual
    (meters) and its absolute RSSI residual (dB).

    Args:
        readings: Ranging and RSSI readings of one radio source.
        quality_scores: One score per reading (PROSAC and PROMedS).
        method: Robust method. Defaults to PROMedS.
        initial_position: Initial guess for preliminary fits, or None.
        initial_transmitted_power_dbm: Initial guess, or the known power.
        initial_path_loss_exponent: Initial guess, or the known exponent.
        listener: Event listener, or None.
        dims: Expected dimension, or None to infer it.
        random_state: Seed of the subset sampler.
    """

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        quality_scores=None,
        method: RobustMethod = DEFAULT_ROBUST_METHOD,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = 2.0,
        listener: Optional[RadioSourceEstimatorListener] = None,
        dims: Optional[int] = None,
        random_state=None,
    ):
        self._init_robust_settings(method, random_state)
        super().__init__(
            readings,
            initial_position,
            initial_transmitted_power_dbm,
            initial_path_loss_exponent,
            listener,
            dims,
        )
        if quality_scores is not None:
            self.quality_scores = quality_scores

    def _prepare(self) -> None:
        self._receivers, self._distances, self._distance_stds = ranging_arrays(
            self._readings,
            self._fallback_distance_standard_deviation,
            self._use_reading_position_covariances,
        )
        _, self._rssi, self._rssi_stds = rssi_arrays(
            self._readings, self._fallback_rssi_standard_deviation
        )
        self._frequency = self._readings[0].source.frequency

    def _solve(self, mask, position, power_dbm, exponent, non_linear, return_covariance):
        return solve_ranging_and_rssi(
            self._receivers[mask],
            self._distances[mask],
            self._distance_stds[mask],
            self._rssi[mask],
            self._rssi_stds[mask],
            frequency=self._frequency,
            estimate_power=self._transmitted_power_estimation_enabled,
            estimate_exponent=self._path_loss_estimation_enabled,
            initial_position=position,
            initial_power_dbm=power_dbm,
            initial_exponent=exponent,
            homogeneous=self._homogeneous_linear_solver_used,
            non_linear=non_linear,
            return_covariance=return_covariance,
        )

    def _fit_subset(self, indices: np.ndarray) -> PathLossSolution:
        return self._solve(
            indices,
            self._initial_position,
            self._initial_transmitted_power_dbm,
            self._initial_path_loss_exponent,
            non_linear=self._non_linear_solver_enabled,
            return_covariance=False,
        )

    def _residuals(self, model: PathLossSolution) -> np.ndarray:
        ranging = distances_to(model.position, self._receivers) - self._distances
        path_loss = self._rssi - expected_rssi(
            model.position,
            self._receivers,
            model.transmitted_power_dbm,
            model.path_loss_exponent,
            self._frequency,
        )
        return np.abs(ranging) + np.abs(path_loss)

    def _refine(self, inliers: np.ndarray, model: PathLossSolution) -> PathLossSolution:
        return self._solve(
            inliers,
            model.position,
            model.transmitted_power_dbm,
            model.path_loss_exponent,
            non_linear=True,
            return_covariance=self._covariance_kept,
        )


def create_robust_ranging_estimator(
    readings: Optional[Sequence[Reading]] = None,
    quality_scores=None,
    method: RobustMethod = DEFAULT_ROBUST_METHOD,
    **kwargs,
) -> RobustRangingRadioSourceEstimator:
    """Build a robust ranging estimator using ``method``."""
    return RobustRangingRadioSourceEstimator(
        readings, quality_scores=quality_scores, method=method, **kwargs
    )


def create_robust_rssi_estimator(
    readings: Optional[Sequence[Reading]] = None,
    quality_scores=None,
    method: RobustMethod = DEFAULT_ROBUST_METHOD,
    **kwargs,
) -> RobustRssiRadioSourceEstimator:
    """Build a robust RSSI estimator using ``method``."""
    return RobustRssiRadioSourceEstimator(
        readings, quality_scores=quality_scores, method=method, **kwargs
    )


def create_robust_ranging_and_rssi_estimator(
    readings: Optional[Sequence[Reading]] = None,
    quality_scores=None,
    method: RobustMethod = DEFAULT_ROBUST_METHOD,
    **kwargs,
) -> RobustRangingAndRssiRadioSourceEstimator:
    """Build a robust joint ranging and RSSI estimator using ``method``."""
    return RobustRangingAndRssiRadioSourceEstimator(
        readings, quality_scores=quality_scores, method=method, **kwargs
    )
