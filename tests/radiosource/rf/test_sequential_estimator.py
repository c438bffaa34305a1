"""
Unit tests for the sequential robust ranging + RSSI radio source estimator.
"""

import unittest
from unittest import mock

import numpy as np
from numpy.testing import assert_allclose

from radiosource.config import RobustStageConfig
from radiosource.estimators.base import RadioSourceEstimatorListener
from radiosource.exceptions import NotReadyError
from radiosource.rf import robust
from radiosource.rf.measurement_models import rss_pathloss
from radiosource.rf.sequential import SequentialRobustRangingAndRssiRadioSourceEstimator
from radiosource.types import EstimatorState, Reading, RobustMethod, WifiAccessPoint

AP = WifiAccessPoint("10:20:30:40:50:60", frequency=2.4e9, ssid="office")
TRUE_POWER = -45.0
DISTANCE_STD = 0.1
RSSI_STD = 1.0


def make_scenario(seed=7, num_readings=60, outlier_ratio=0.0):
    rng = np.random.default_rng(seed)
    source = np.array([-2.0, 1.5])
    receivers = rng.uniform(-10.0, 10.0, size=(num_readings, 2))
    distances = np.linalg.norm(receivers - source, axis=1)
    rssi = rss_pathloss(TRUE_POWER, distances, 2.0, AP.frequency)
    distances = distances + rng.normal(0.0, DISTANCE_STD, num_readings)
    rssi = rssi + rng.normal(0.0, RSSI_STD, num_readings)

    outliers = np.zeros(num_readings, dtype=bool)
    outliers[rng.choice(num_readings, int(outlier_ratio * num_readings), replace=False)] = True
    distances[outliers] += 10.0 * DISTANCE_STD
    rssi[outliers] -= 10.0 * RSSI_STD

    readings = [
        Reading(AP, p, distance=d, rssi=r, distance_standard_deviation=DISTANCE_STD,
                rssi_standard_deviation=RSSI_STD)
        for p, d, r in zip(receivers, distances, rssi)
    ]
    quality = rng.uniform(0.0, 1.0, num_readings)
    return readings, quality, source, outliers


def make_estimator(readings, quality, **kwargs):
    return SequentialRobustRangingAndRssiRadioSourceEstimator(
        readings,
        quality_scores=quality,
        ranging_config=RobustStageConfig(RobustMethod.RANSAC, threshold=3.0 * DISTANCE_STD),
        rssi_config=RobustStageConfig(RobustMethod.LMEDS),
        random_state=42,
        **kwargs,
    )


class ProgressListener(RadioSourceEstimatorListener):
    def __init__(self):
        self.progress = []
        self.iterations = []
        self.events = []

    def on_estimate_start(self, estimator):
        self.events.append("start")

    def on_estimate_next_iteration(self, estimator, iteration):
        self.iterations.append(iteration)

    def on_estimate_progress_change(self, estimator, progress):
        self.progress.append(progress)

    def on_estimate_end(self, estimator):
        self.events.append("end")


class TestSequentialEstimator(unittest.TestCase):
    """Test the two-stage estimator on a 60-reading 2D scenario."""

    def test_clean_scenario(self):
        readings, quality, source, _ = make_scenario()
        estimator = make_estimator(readings, quality)
        located = estimator.estimate()
        self.assertLess(np.linalg.norm(located.position - source), 0.2)
        self.assertAlmostEqual(located.transmitted_power_dbm, TRUE_POWER, delta=1.0)
        self.assertEqual(located.path_loss_exponent, 2.0)
        self.assertIsNone(located.path_loss_exponent_variance)

    def test_scenario_with_outliers(self):
        readings, quality, source, outliers = make_scenario(outlier_ratio=0.2)
        estimator = make_estimator(readings, quality)
        estimator.inliers_kept = True
        located = estimator.estimate()
        self.assertLess(np.linalg.norm(located.position - source), 0.5)
        self.assertAlmostEqual(located.transmitted_power_dbm, TRUE_POWER, delta=1.0)
        # Inliers of the ranging stage
        self.assertFalse(np.any(estimator.inliers_data.inliers & outliers))

    def test_block_diagonal_covariance(self):
        readings, quality, _, _ = make_scenario()
        estimator = make_estimator(readings, quality)
        estimator.estimate()

        covariance = estimator.covariance
        self.assertEqual(covariance.shape, (3, 3))
        assert_allclose(covariance[:2, :2], estimator.estimated_position_covariance)
        assert_allclose(covariance[:2, 2], 0.0)
        assert_allclose(covariance[2, :2], 0.0)
        self.assertAlmostEqual(covariance[2, 2], estimator.estimated_transmitted_power_variance)
        self.assertGreater(estimator.chi_sq, 0.0)

    def test_exponent_stage(self):
        readings, quality, source, _ = make_scenario()
        estimator = make_estimator(readings, quality)
        estimator.path_loss_estimation_enabled = True
        self.assertEqual(estimator.min_readings, 4)
        located = estimator.estimate()
        self.assertAlmostEqual(located.path_loss_exponent, 2.0, delta=0.3)
        self.assertEqual(estimator.covariance.shape, (4, 4))
        self.assertGreater(located.path_loss_exponent_variance, 0.0)

    def test_known_power_and_exponent_are_echoed(self):
        readings, quality, _, _ = make_scenario()
        estimator = make_estimator(
            readings, quality,
            initial_transmitted_power_dbm=-30.0,
            initial_path_loss_exponent=2.8,
        )
        estimator.transmitted_power_estimation_enabled = False
        self.assertFalse(estimator.rssi_stage_enabled)
        self.assertEqual(estimator.min_readings, 3)

        located = estimator.estimate()
        self.assertEqual(located.transmitted_power_dbm, -30.0)
        self.assertIsNone(located.transmitted_power_variance)
        self.assertEqual(located.path_loss_exponent, 2.8)
        self.assertEqual(estimator.covariance.shape, (2, 2))

    def test_progress_spans_both_stages(self):
        readings, quality, _, _ = make_scenario()
        listener = ProgressListener()
        estimator = make_estimator(readings, quality, listener=listener)
        estimator.estimate()

        self.assertEqual(listener.events, ["start", "end"])
        self.assertEqual(listener.progress, sorted(listener.progress))
        self.assertTrue(all(0.0 < p <= 1.0 for p in listener.progress))
        self.assertTrue(any(p <= 0.5 for p in listener.progress))
        self.assertTrue(any(p > 0.5 for p in listener.progress))
        self.assertGreater(len(listener.iterations), 0)

    def test_progress_without_rssi_stage(self):
        readings, quality, _, _ = make_scenario()
        listener = ProgressListener()
        estimator = make_estimator(
            readings, quality, listener=listener, initial_transmitted_power_dbm=-30.0
        )
        estimator.transmitted_power_estimation_enabled = False
        estimator.progress_delta = 0.25
        estimator.estimate()
        self.assertEqual(listener.progress, sorted(listener.progress))
        self.assertGreater(max(listener.progress), 0.5)

    def test_quality_scores_per_stage(self):
        readings, quality, _, _ = make_scenario()
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            readings,
            ranging_config=RobustStageConfig(RobustMethod.PROSAC, threshold=0.3),
            rssi_config=RobustStageConfig(RobustMethod.PROMEDS),
        )
        self.assertFalse(estimator.is_ready())
        estimator.ranging_quality_scores = quality
        self.assertFalse(estimator.is_ready())
        estimator.rssi_quality_scores = quality[::-1]
        self.assertTrue(estimator.is_ready())

        estimator.quality_scores = quality
        assert_allclose(estimator.ranging_quality_scores, quality)
        assert_allclose(estimator.rssi_quality_scores, quality)

    def test_rssi_quality_not_needed_without_rssi_stage(self):
        readings, quality, _, _ = make_scenario()
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(
            readings,
            ranging_config=RobustStageConfig(RobustMethod.RANSAC, threshold=0.3),
            rssi_config=RobustStageConfig(RobustMethod.PROMEDS),
            initial_transmitted_power_dbm=-30.0,
        )
        self.assertFalse(estimator.is_ready())
        estimator.transmitted_power_estimation_enabled = False
        self.assertTrue(estimator.is_ready())

    def test_default_stages_need_quality_scores(self):
        readings, _, _, _ = make_scenario()
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator(readings)
        self.assertEqual(estimator.ranging_config.method, RobustMethod.PROMEDS)
        with self.assertRaises(NotReadyError):
            estimator.estimate()

    def test_invalid_config(self):
        estimator = SequentialRobustRangingAndRssiRadioSourceEstimator()
        with self.assertRaises(ValueError):
            estimator.ranging_config = {"method": "ransac"}
        with self.assertRaises(ValueError):
            estimator.progress_delta = -0.1
        with self.assertRaises(ValueError):
            estimator.progress_delta = float("nan")
        with self.assertRaises(ValueError):
            RobustStageConfig(RobustMethod.RANSAC, threshold=float("nan"))
        with self.assertRaises(ValueError):
            RobustStageConfig(RobustMethod.RANSAC, max_iterations=float("inf"))

    def test_readings_need_both_measurements(self):
        with self.assertRaises(ValueError):
            SequentialRobustRangingAndRssiRadioSourceEstimator(
                [Reading(AP, [0.0, 0.0], distance=1.0)]
            )

    def test_iterations_continue_across_stages(self):
        readings, quality, _, _ = make_scenario(outlier_ratio=0.2)
        listener = ProgressListener()
        estimator = make_estimator(readings, quality, listener=listener)
        estimator.estimate()
        self.assertGreater(len(listener.iterations), 1)
        self.assertEqual(listener.iterations, list(range(1, len(listener.iterations) + 1)))

    def test_non_linear_setting_reaches_both_stages(self):
        readings, quality, source, _ = make_scenario()
        estimator = make_estimator(readings, quality, initial_position=source)
        estimator.non_linear_solver_enabled = False
        estimator.result_refined = False
        with mock.patch.object(robust, "solve_ranging", wraps=robust.solve_ranging) as ranging, \
                mock.patch.object(robust, "solve_rssi", wraps=robust.solve_rssi) as rssi:
            located = estimator.estimate()

        self.assertGreater(ranging.call_count, 0)
        self.assertGreater(rssi.call_count, 0)
        for call in ranging.call_args_list + rssi.call_args_list:
            self.assertFalse(call.kwargs["non_linear"])
        self.assertLess(np.linalg.norm(located.position - source), 1.0)
        self.assertIsNone(located.position_covariance)

    def test_short_quality_scores_rejected(self):
        readings, quality, _, _ = make_scenario()
        with self.assertRaises(ValueError):
            make_estimator(readings, quality[:-1])
        estimator = make_estimator(readings, quality)
        for scores in ([], [1.0], quality[:10]):
            with self.assertRaises(ValueError):
                estimator.quality_scores = scores
            with self.assertRaises(ValueError):
                estimator.rssi_quality_scores = scores
        assert_allclose(estimator.quality_scores, quality)

    def test_setters_reset_state(self):
        readings, quality, _, _ = make_scenario()
        estimator = make_estimator(readings, quality)
        for name, value in [
            ("progress_delta", 0.2),
            ("result_refined", False),
            ("covariance_kept", False),
            ("inliers_kept", True),
            ("residuals_kept", True),
            ("random_state", 3),
            ("fallback_rssi_standard_deviation", 2.0),
        ]:
            estimator.estimate()
            self.assertEqual(estimator.state, EstimatorState.SUCCEEDED)
            setattr(estimator, name, value)
            self.assertEqual(estimator.state, EstimatorState.READY, name)


if __name__ == "__main__":
    unittest.main()
