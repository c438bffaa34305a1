"""
Unit tests for the robust radio source estimators.

Scenario: 60 readings of one access point in 2D, 20% of them corrupted by
a +10 sigma ranging bias and a -10 sigma RSSI bias.

Tests cover:
    - Every robust method on ranging, RSSI and joint residuals
    - Readiness with quality scores
    - Result publication flags (refinement, covariance, inliers, residuals)
    - Listener notifications, locking and determinism
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from radiosource.config import RobustStageConfig
from radiosource.estimators.base import RadioSourceEstimatorListener
from radiosource.estimators.consensus import iteration_bound
from radiosource.exceptions import LockedError, NotReadyError, RobustEstimatorError
from radiosource.rf import robust
from radiosource.rf.measurement_models import rss_pathloss
from radiosource.rf.robust import (
    RobustRangingAndRssiRadioSourceEstimator,
    RobustRangingRadioSourceEstimator,
    RobustRssiRadioSourceEstimator,
    create_robust_ranging_and_rssi_estimator,
    create_robust_ranging_estimator,
    create_robust_rssi_estimator,
)
from radiosource.types import EstimatorState, Reading, RobustMethod, WifiAccessPoint

AP = WifiAccessPoint("00:11:22:33:44:55", frequency=2.4e9)
TRUE_POWER = -40.0
DISTANCE_STD = 0.1
RSSI_STD = 0.5
NUM_READINGS = 60
OUTLIER_RATIO = 0.2

ALL_METHODS = list(RobustMethod)


def make_scenario(seed=42, num_readings=NUM_READINGS, outlier_ratio=OUTLIER_RATIO):
    """Readings, quality scores, true source and outlier mask."""
    rng = np.random.default_rng(seed)
    source = np.array([1.0, -2.0])
    receivers = rng.uniform(-10.0, 10.0, size=(num_readings, 2))
    distances = np.linalg.norm(receivers - source, axis=1)
    rssi = rss_pathloss(TRUE_POWER, distances, 2.0, AP.frequency)

    distances = distances + rng.normal(0.0, DISTANCE_STD, num_readings)
    rssi = rssi + rng.normal(0.0, RSSI_STD, num_readings)

    outliers = np.zeros(num_readings, dtype=bool)
    outliers[rng.choice(num_readings, int(outlier_ratio * num_readings), replace=False)] = True
    distances[outliers] += 10.0 * DISTANCE_STD
    rssi[outliers] -= 10.0 * RSSI_STD

    # Outliers tend to come with poor quality (e.g. NLOS)
    quality = np.where(outliers, rng.uniform(0.0, 0.6, num_readings), rng.uniform(0.4, 1.0, num_readings))

    readings = [
        Reading(AP, p, distance=d, rssi=r, distance_standard_deviation=DISTANCE_STD,
                rssi_standard_deviation=RSSI_STD)
        for p, d, r in zip(receivers, distances, rssi)
    ]
    return readings, quality, source, outliers


class RecordingListener(RadioSourceEstimatorListener):
    def __init__(self):
        self.events = []
        self.progress = []
        self.iterations = 0

    def on_estimate_start(self, estimator):
        self.events.append("start")

    def on_estimate_next_iteration(self, estimator, iteration):
        self.iterations = iteration

    def on_estimate_progress_change(self, estimator, progress):
        self.progress.append(progress)

    def on_estimate_end(self, estimator):
        self.events.append("end")


# ============================================================================
# Robust ranging
# ============================================================================


class TestRobustRanging:
    @pytest.mark.parametrize("method", ALL_METHODS)
    def test_rejects_outliers(self, method):
        readings, quality, source, outliers = make_scenario()
        estimator = create_robust_ranging_estimator(
            readings, quality_scores=quality, method=method, random_state=0
        )
        assert isinstance(estimator, RobustRangingRadioSourceEstimator)
        estimator.threshold = 3.0 * DISTANCE_STD
        estimator.inliers_kept = True

        located = estimator.estimate()
        assert np.linalg.norm(located.position - source) < 0.5
        assert located.position_covariance.shape == (2, 2)

        inliers_data = estimator.inliers_data
        assert 0.6 * NUM_READINGS <= inliers_data.num_inliers <= 0.9 * NUM_READINGS
        assert not np.any(inliers_data.inliers & outliers)
        assert inliers_data.residuals is None

    def test_median_methods_derive_threshold(self):
        readings, quality, _, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.LMEDS, random_state=0
        )
        estimator.threshold = 100.0  # ignored by LMedS
        estimator.estimate()
        assert estimator.inliers_data.threshold < 1.0

    def test_clean_data_keeps_most_readings(self):
        readings, quality, source, _ = make_scenario(outlier_ratio=0.0)
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, random_state=1
        )
        estimator.threshold = 4.0 * DISTANCE_STD
        located = estimator.estimate()
        assert estimator.inliers_data.num_inliers >= 0.8 * NUM_READINGS
        assert np.linalg.norm(located.position - source) < 0.1

    def test_determinism_with_seed(self):
        readings, quality, _, _ = make_scenario()
        results = []
        for _ in range(2):
            estimator = RobustRangingRadioSourceEstimator(
                readings, quality, method=RobustMethod.RANSAC, random_state=123
            )
            estimator.threshold = 0.3
            estimator.inliers_kept = True
            estimator.estimate()
            results.append((estimator.estimated_position, estimator.inliers_data.inliers))
        assert_array_equal(results[0][0], results[1][0])
        assert_array_equal(results[0][1], results[1][1])

    def test_estimate_twice(self):
        readings, quality, _, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.MSAC, random_state=5
        )
        estimator.threshold = 0.3
        first = estimator.estimate().position
        estimator.random_state = 5
        second = estimator.estimate().position
        assert_allclose(first, second)
        assert estimator.state == EstimatorState.SUCCEEDED

    def test_publication_flags(self):
        readings, quality, _, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, random_state=2
        )
        estimator.threshold = 0.3
        estimator.residuals_kept = True
        estimator.covariance_kept = False
        estimator.estimate()
        assert estimator.estimated_position_covariance is None
        assert estimator.inliers_data.inliers is None
        assert estimator.inliers_data.residuals.shape == (NUM_READINGS,)
        assert np.all(estimator.inliers_data.residuals >= 0.0)

    def test_unrefined_result_has_no_covariance(self):
        readings, quality, source, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, random_state=3
        )
        estimator.threshold = 0.3
        estimator.result_refined = False
        located = estimator.estimate()
        assert located.position_covariance is None
        assert np.linalg.norm(located.position - source) < 1.0

    def test_too_few_inliers_to_refine(self):
        readings, quality, _, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, random_state=4
        )
        # Over-determined noisy subsets never fit any reading within 1 nm
        estimator.preliminary_subset_size = 6
        estimator.threshold = 1e-9
        estimator.max_iterations = 10
        with pytest.raises(RobustEstimatorError):
            estimator.estimate()
        assert estimator.state == EstimatorState.FAILED
        assert estimator.estimated_radio_source is None

    def test_preliminary_subset_size(self):
        estimator = RobustRangingRadioSourceEstimator(make_scenario()[0])
        assert estimator.preliminary_subset_size == 3
        with pytest.raises(ValueError):
            estimator.preliminary_subset_size = 2
        estimator.preliminary_subset_size = 5
        assert estimator.preliminary_subset_size == 5
        with pytest.raises(ValueError):
            estimator.configure(RobustStageConfig(preliminary_subset_size=2))

    def test_configure(self):
        estimator = RobustRangingRadioSourceEstimator(make_scenario()[0])
        estimator.configure(
            RobustStageConfig(RobustMethod.MSAC, threshold=0.4, confidence=0.95, max_iterations=50)
        )
        assert estimator.method == RobustMethod.MSAC
        assert estimator.threshold == 0.4
        assert estimator.confidence == 0.95
        assert estimator.max_iterations == 50

    @pytest.mark.parametrize(
        "name, value",
        [
            ("threshold", 0.0),
            ("threshold", np.nan),
            ("threshold", np.inf),
            ("confidence", 1.0),
            ("confidence", np.nan),
            ("max_iterations", 0),
            ("max_iterations", np.inf),
            ("max_iterations", np.nan),
            ("progress_delta", 1.5),
            ("progress_delta", np.nan),
        ],
    )
    def test_invalid_settings(self, name, value):
        estimator = RobustRangingRadioSourceEstimator()
        with pytest.raises(ValueError):
            setattr(estimator, name, value)


# ============================================================================
# Readiness with quality scores
# ============================================================================


class TestQualityReadiness:
    def test_default_method_needs_quality_scores(self):
        readings, quality, _, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(readings)
        assert estimator.method == RobustMethod.PROMEDS
        assert not estimator.is_ready()
        with pytest.raises(NotReadyError):
            estimator.estimate()
        estimator.quality_scores = quality
        assert estimator.is_ready()

    def test_quality_length_must_match(self):
        readings, quality, _, _ = make_scenario()
        with pytest.raises(ValueError):
            RobustRangingRadioSourceEstimator(readings, quality[:-1], method=RobustMethod.PROSAC)

        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.PROSAC
        )
        with pytest.raises(ValueError):
            estimator.quality_scores = quality[:-1]
        assert_array_equal(estimator.quality_scores, quality)

        # Readings changed afterwards leave the scores stale
        estimator.readings = readings[:-1]
        assert not estimator.is_ready()
        estimator.method = RobustMethod.RANSAC
        assert estimator.is_ready()

    def test_quality_shorter_than_minimum_rejected(self):
        estimator = RobustRangingRadioSourceEstimator(method=RobustMethod.PROSAC)
        assert estimator.min_readings == 3
        for scores in ([], [1.0], [1.0, 0.5]):
            with pytest.raises(ValueError):
                estimator.quality_scores = scores
        assert estimator.quality_scores is None
        estimator.quality_scores = [1.0, 0.5, 0.2]
        assert len(estimator.quality_scores) == 3

    def test_rssi_quality_checked_against_enabled_unknowns(self):
        readings, quality, _, _ = make_scenario()
        with pytest.raises(ValueError):
            RobustRssiRadioSourceEstimator(quality_scores=[1.0, 0.5], method=RobustMethod.PROMEDS)
        estimator = RobustRssiRadioSourceEstimator(
            readings, quality, method=RobustMethod.PROMEDS
        )
        assert_array_equal(estimator.quality_scores, quality)

    def test_quality_methods_need_one_extra_reading(self):
        readings, quality, _, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings[:3], quality[:3], method=RobustMethod.PROSAC
        )
        assert not estimator.is_ready()
        estimator.readings = readings[:4]
        estimator.quality_scores = quality[:4]
        assert estimator.is_ready()

    def test_invalid_quality_scores(self):
        with pytest.raises(ValueError):
            RobustRangingRadioSourceEstimator(quality_scores=[[1.0, 2.0]])
        with pytest.raises(ValueError):
            RobustRangingRadioSourceEstimator(quality_scores=[1.0, np.nan])
        with pytest.raises(ValueError):
            RobustRangingRadioSourceEstimator(method="ransac")


# ============================================================================
# Listener, locking and progress
# ============================================================================


class TestListener:
    def test_events_and_progress(self):
        readings, quality, _, _ = make_scenario()
        listener = RecordingListener()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, listener=listener, random_state=0
        )
        estimator.threshold = 0.3
        estimator.progress_delta = 0.1
        estimator.estimate()

        assert listener.events == ["start", "end"]
        assert listener.iterations >= 1
        assert listener.progress == sorted(listener.progress)
        assert all(0.0 < p <= 1.0 for p in listener.progress)

    def test_setters_locked_during_estimation(self):
        readings, quality, _, _ = make_scenario()
        failures = []

        class MutatingListener(RadioSourceEstimatorListener):
            def on_estimate_start(self, estimator):
                assert estimator.is_locked
                assert estimator.state == EstimatorState.RUNNING
                for name, value in [
                    ("threshold", 0.5),
                    ("method", RobustMethod.MSAC),
                    ("readings", readings),
                    ("quality_scores", quality),
                    ("initial_position", [0.0, 0.0]),
                    ("listener", None),
                ]:
                    try:
                        setattr(estimator, name, value)
                    except LockedError:
                        failures.append(name)
                try:
                    estimator.estimate()
                except LockedError:
                    failures.append("estimate")

        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, listener=MutatingListener(),
            random_state=0,
        )
        estimator.threshold = 0.3
        estimator.estimate()
        assert failures == [
            "threshold", "method", "readings", "quality_scores",
            "initial_position", "listener", "estimate",
        ]
        assert not estimator.is_locked
        assert estimator.threshold == 0.3
        assert estimator.method == RobustMethod.RANSAC


# ============================================================================
# Robust RSSI and joint estimators
# ============================================================================


class TestRobustRssi:
    @pytest.mark.parametrize(
        "method", [RobustMethod.RANSAC, RobustMethod.MSAC, RobustMethod.PROMEDS]
    )
    def test_rejects_outliers(self, method):
        readings, quality, source, outliers = make_scenario()
        estimator = create_robust_rssi_estimator(
            readings, quality_scores=quality, method=method, random_state=0
        )
        assert isinstance(estimator, RobustRssiRadioSourceEstimator)
        estimator.threshold = 3.0 * RSSI_STD
        estimator.preliminary_subset_size = 6
        estimator.inliers_kept = True

        located = estimator.estimate()
        assert np.linalg.norm(located.position - source) < 1.0
        assert located.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=1.0)
        assert located.transmitted_power_variance > 0.0
        assert np.sum(estimator.inliers_data.inliers & outliers) <= 2

    def test_power_only_at_known_position(self):
        readings, quality, source, outliers = make_scenario()
        estimator = RobustRssiRadioSourceEstimator(
            readings, quality, method=RobustMethod.LMEDS, initial_position=source, random_state=0
        )
        estimator.position_estimation_enabled = False
        assert estimator.min_readings == 1
        estimator.inliers_kept = True
        located = estimator.estimate()
        assert located.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=0.3)
        assert_allclose(located.position, source)
        assert located.position_covariance is None
        assert not np.any(estimator.inliers_data.inliers & outliers)

    def test_covariance_dropped_when_not_kept(self):
        readings, quality, source, _ = make_scenario()
        estimator = RobustRssiRadioSourceEstimator(
            readings, quality, method=RobustMethod.LMEDS, initial_position=source, random_state=0
        )
        estimator.position_estimation_enabled = False
        estimator.covariance_kept = False
        located = estimator.estimate()
        assert estimator.covariance is None
        assert located.transmitted_power_variance is None


class TestRobustRangingAndRssi:
    @pytest.mark.parametrize("method", [RobustMethod.RANSAC, RobustMethod.PROSAC, RobustMethod.LMEDS])
    def test_rejects_outliers(self, method):
        readings, quality, source, outliers = make_scenario()
        estimator = create_robust_ranging_and_rssi_estimator(
            readings, quality_scores=quality, method=method, random_state=0
        )
        assert isinstance(estimator, RobustRangingAndRssiRadioSourceEstimator)
        assert estimator.min_readings == 4
        estimator.threshold = 3.0 * (DISTANCE_STD + RSSI_STD)
        estimator.inliers_kept = True

        located = estimator.estimate()
        assert np.linalg.norm(located.position - source) < 0.5
        assert located.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=1.0)
        assert not np.any(estimator.inliers_data.inliers & outliers)
        assert estimator.covariance.shape == (3, 3)


# ============================================================================
# Median methods over many scenarios
# ============================================================================


class TestMedianMethodsAcrossScenarios:
    @pytest.mark.parametrize("method", [RobustMethod.LMEDS, RobustMethod.PROMEDS])
    @pytest.mark.parametrize("seed", range(10))
    def test_rejects_outliers(self, method, seed):
        readings, quality, source, outliers = make_scenario(seed=seed)
        listener = RecordingListener()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=method, listener=listener, random_state=seed
        )
        estimator.inliers_kept = True
        located = estimator.estimate()

        # A median candidate never reports more than half of the readings
        # as inliers to the iteration bound
        assert listener.iterations == iteration_bound(0.5, 3, estimator.confidence)
        assert np.linalg.norm(located.position - source) < 0.5
        assert estimator.inliers_data.num_inliers <= 0.9 * NUM_READINGS
        assert not np.any(estimator.inliers_data.inliers & outliers)


# ============================================================================
# Configuration changes after an estimation
# ============================================================================


class TestStateAfterConfigurationChange:
    @pytest.mark.parametrize(
        "name, value",
        [
            ("threshold", 0.5),
            ("confidence", 0.95),
            ("max_iterations", 100),
            ("progress_delta", 0.2),
            ("preliminary_subset_size", 4),
            ("result_refined", False),
            ("covariance_kept", False),
            ("inliers_kept", True),
            ("residuals_kept", True),
            ("weighted_sampling", True),
            ("random_state", 7),
            ("homogeneous_linear_solver_used", True),
            ("use_reading_position_covariances", False),
            ("fallback_distance_standard_deviation", 0.2),
        ],
    )
    def test_setter_resets_state(self, name, value):
        readings, quality, _, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, random_state=0
        )
        estimator.threshold = 0.3
        estimator.estimate()
        assert estimator.state == EstimatorState.SUCCEEDED

        setattr(estimator, name, value)
        assert estimator.state == EstimatorState.READY
        # The last result stays available
        assert estimator.estimated_position is not None

    def test_rssi_fallback_std_resets_state(self):
        readings, quality, source, _ = make_scenario()
        estimator = RobustRssiRadioSourceEstimator(
            readings, quality, method=RobustMethod.LMEDS, initial_position=source, random_state=0
        )
        estimator.position_estimation_enabled = False
        estimator.estimate()
        estimator.fallback_rssi_standard_deviation = 2.0
        assert estimator.state == EstimatorState.READY


# ============================================================================
# Nonlinear solver setting in preliminary fits
# ============================================================================


def record_non_linear(monkeypatch, name):
    """Record the ``non_linear`` argument of every call to a robust solver."""
    calls = []
    solver = getattr(robust, name)

    def recording(*args, **kwargs):
        calls.append(kwargs["non_linear"])
        return solver(*args, **kwargs)

    monkeypatch.setattr(robust, name, recording)
    return calls


class TestPreliminaryFitSolver:
    def test_rssi_fits_at_known_position_follow_setting(self, monkeypatch):
        calls = record_non_linear(monkeypatch, "solve_rssi")
        readings, quality, source, _ = make_scenario()
        estimator = RobustRssiRadioSourceEstimator(
            readings, quality, method=RobustMethod.LMEDS, initial_position=source, random_state=0
        )
        estimator.position_estimation_enabled = False
        estimator.non_linear_solver_enabled = False
        estimator.result_refined = False
        located = estimator.estimate()

        assert calls and not any(calls)
        assert located.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=1.0)

    def test_rssi_position_fits_stay_nonlinear(self, monkeypatch):
        calls = record_non_linear(monkeypatch, "solve_rssi")
        readings, quality, _, _ = make_scenario()
        estimator = RobustRssiRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, random_state=0
        )
        estimator.threshold = 3.0 * RSSI_STD
        estimator.non_linear_solver_enabled = False
        estimator.result_refined = False
        estimator.max_iterations = 20
        estimator.estimate()
        assert calls and all(calls)

    def test_ranging_fits_follow_setting(self, monkeypatch):
        calls = record_non_linear(monkeypatch, "solve_ranging")
        readings, quality, source, _ = make_scenario()
        estimator = RobustRangingRadioSourceEstimator(
            readings, quality, method=RobustMethod.RANSAC, initial_position=source,
            random_state=0,
        )
        estimator.threshold = 0.3
        estimator.non_linear_solver_enabled = False
        estimator.result_refined = False
        estimator.estimate()
        assert calls and not any(calls)
