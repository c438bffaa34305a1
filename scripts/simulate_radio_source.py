"""Simulate a radio source localization scenario.

Generates synthetic readings of one Wi-Fi access point collected by a
receiver walking around it, optionally corrupts a fraction of them with
outliers, runs a radio source estimator and reports the estimation error:
    - Ranging distances with Gaussian noise
    - RSSI from the log-distance path-loss model with Gaussian fading
    - Outliers as large positive biases (NLOS-like)

Writes a JSON summary when --output is given.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from radiosource.config import RobustStageConfig
from radiosource.rf import (
    MixedRadioSourceEstimator,
    RangingAndRssiRadioSourceEstimator,
    RangingRadioSourceEstimator,
    RssiRadioSourceEstimator,
    SequentialRobustMixedRadioSourceEstimator,
    SequentialRobustRangingAndRssiRadioSourceEstimator,
    create_robust_ranging_and_rssi_estimator,
    create_robust_ranging_estimator,
    create_robust_rssi_estimator,
    rss_pathloss,
)
from radiosource.types import Reading, RobustMethod, WifiAccessPoint


# ============================================================================
# PRESET CONFIGURATIONS
# ============================================================================

PRESETS = {
    "baseline": {
        "description": "Clean 2D scenario, 60 readings, small noise",
        "num_readings": 60,
        "distance_std": 0.01,
        "rssi_std": 0.5,
        "outlier_ratio": 0.0,
    },
    "outliers": {
        "description": "2D scenario with 20% NLOS-like outliers",
        "num_readings": 60,
        "distance_std": 0.05,
        "rssi_std": 0.5,
        "outlier_ratio": 0.2,
    },
    "indoor_3d": {
        "description": "3D scenario with higher path-loss exponent and fading",
        "dims": 3,
        "num_readings": 80,
        "distance_std": 0.1,
        "rssi_std": 2.0,
        "path_loss_exponent": 2.7,
        "outlier_ratio": 0.1,
    },
}

ESTIMATORS = (
    "ranging",
    "rssi",
    "ranging_and_rssi",
    "robust_ranging",
    "robust_rssi",
    "robust_ranging_and_rssi",
    "sequential",
    "mixed",
    "sequential_mixed",
)

SEQUENTIAL_ESTIMATORS = {
    "sequential": SequentialRobustRangingAndRssiRadioSourceEstimator,
    "sequential_mixed": SequentialRobustMixedRadioSourceEstimator,
}


# ============================================================================
# DATA GENERATION FUNCTIONS
# ============================================================================


def generate_readings(
    num_readings: int = 60,
    dims: int = 2,
    area_size: float = 20.0,
    transmitted_power_dbm: float = -40.0,
    path_loss_exponent: float = 2.0,
    frequency: Optional[float] = 2.4e9,
    distance_std: float = 0.01,
    rssi_std: float = 0.5,
    outlier_ratio: float = 0.0,
    outlier_bias: float = 10.0,
    seed: int = 42,
) -> Tuple[List[Reading], np.ndarray, np.ndarray]:
    """Generate noisy readings of one access point.

    Args:
        num_readings: Number of readings.
        dims: Dimension (2 or 3).
        area_size: Side of the square (cube) area in meters.
        transmitted_power_dbm: True transmitted power (dBm).
        path_loss_exponent: True path-loss exponent.
        frequency: Carrier frequency in Hz, or None.
        distance_std: Ranging noise std (m).
        rssi_std: RSSI noise std (dB).
        outlier_ratio: Fraction of readings corrupted by a positive bias.
        outlier_bias: Bias in multiples of the noise std.
        seed: Random seed.

    Returns:
        Tuple of (readings, true source position (d,), outlier mask (N,)).
    """
    rng = np.random.default_rng(seed)
    source = rng.uniform(-area_size / 4, area_size / 4, size=dims)
    access_point = WifiAccessPoint("00:11:22:33:44:55", frequency=frequency, ssid="sim")

    receivers = rng.uniform(-area_size / 2, area_size / 2, size=(num_readings, dims))
    true_distances = np.maximum(np.linalg.norm(receivers - source, axis=1), 0.5)
    true_rssi = rss_pathloss(transmitted_power_dbm, true_distances, path_loss_exponent, frequency)

    distances = true_distances + rng.normal(0.0, distance_std, num_readings)
    rssi = true_rssi + rng.normal(0.0, rssi_std, num_readings)

    outliers = np.zeros(num_readings, dtype=bool)
    num_outliers = int(round(outlier_ratio * num_readings))
    if num_outliers > 0:
        outliers[rng.choice(num_readings, num_outliers, replace=False)] = True
        distances[outliers] += outlier_bias * max(distance_std, 0.1)
        rssi[outliers] -= outlier_bias * max(rssi_std, 1.0)

    readings = [
        Reading(
            access_point,
            position=receivers[i],
            distance=max(distances[i], 0.0),
            rssi=rssi[i],
            distance_standard_deviation=distance_std,
            rssi_standard_deviation=rssi_std,
        )
        for i in range(num_readings)
    ]
    return readings, source, outliers


def quality_from_rssi(readings: Sequence[Reading]) -> np.ndarray:
    """Quality scores favoring strong (close) readings."""
    return np.array([r.rssi for r in readings])


def build_estimator(
    kind: str,
    readings: Sequence[Reading],
    method: RobustMethod,
    threshold: float,
    rssi_threshold: float,
    seed: int,
    estimate_path_loss: bool = False,
):
    """Create the estimator named ``kind`` for ``readings``.

    ``threshold`` is in meters (ranging residuals), ``rssi_threshold`` in dB.
    """
    quality = quality_from_rssi(readings)
    if kind == "ranging":
        return RangingRadioSourceEstimator(readings)
    if kind == "rssi":
        estimator = RssiRadioSourceEstimator(readings)
    elif kind == "ranging_and_rssi":
        estimator = RangingAndRssiRadioSourceEstimator(readings)
    elif kind == "robust_ranging":
        estimator = create_robust_ranging_estimator(
            readings, quality_scores=quality, method=method, random_state=seed
        )
        estimator.threshold = threshold
        return estimator
    elif kind == "robust_rssi":
        estimator = create_robust_rssi_estimator(
            readings, quality_scores=quality, method=method, random_state=seed
        )
        estimator.threshold = rssi_threshold
    elif kind == "robust_ranging_and_rssi":
        estimator = create_robust_ranging_and_rssi_estimator(
            readings, quality_scores=quality, method=method, random_state=seed
        )
        estimator.threshold = threshold + rssi_threshold
    elif kind == "mixed":
        estimator = MixedRadioSourceEstimator(readings)
    elif kind in SEQUENTIAL_ESTIMATORS:
        estimator = SEQUENTIAL_ESTIMATORS[kind](
            readings,
            quality_scores=quality,
            ranging_config=RobustStageConfig(method=method, threshold=threshold),
            rssi_config=RobustStageConfig(method=method, threshold=rssi_threshold),
            random_state=seed,
        )
    else:
        raise ValueError(f"Unknown estimator '{kind}'. Use one of: {ESTIMATORS}")
    estimator.path_loss_estimation_enabled = estimate_path_loss
    return estimator


def run_simulation(
    estimator: str = "robust_ranging",
    method: str = "promeds",
    threshold: float = 0.5,
    rssi_threshold: float = 1.5,
    dims: int = 2,
    num_readings: int = 60,
    distance_std: float = 0.01,
    rssi_std: float = 0.5,
    path_loss_exponent: float = 2.0,
    outlier_ratio: float = 0.0,
    estimate_path_loss: bool = False,
    seed: int = 42,
) -> Dict:
    """Generate a scenario, run the estimator and summarize the result."""
    readings, source, outliers = generate_readings(
        num_readings=num_readings,
        dims=dims,
        path_loss_exponent=path_loss_exponent,
        distance_std=distance_std,
        rssi_std=rssi_std,
        outlier_ratio=outlier_ratio,
        seed=seed,
    )
    est = build_estimator(
        estimator, readings, RobustMethod(method), threshold, rssi_threshold, seed,
        estimate_path_loss,
    )
    located = est.estimate()

    summary = {
        "estimator": estimator,
        "method": method if estimator.startswith(("robust", "sequential")) else None,
        "num_readings": num_readings,
        "num_outliers": int(np.sum(outliers)),
        "true_position": source.tolist(),
        "estimated_position": located.position.tolist(),
        "position_error_m": float(np.linalg.norm(located.position - source)),
        "transmitted_power_dbm": located.transmitted_power_dbm,
        "path_loss_exponent": located.path_loss_exponent,
        "has_covariance": located.position_covariance is not None,
    }
    if est.inliers_data is not None:
        summary["num_inliers"] = est.inliers_data.num_inliers
    return summary


# ============================================================================
# COMMAND-LINE INTERFACE
# ============================================================================


def main(argv: Optional[Sequence[str]] = None) -> Dict:
    """Main entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        description="Simulate radio source localization from ranging and RSSI readings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Robust ranging with default parameters
  python %(prog)s

  # Use a preset configuration
  python %(prog)s --preset outliers --estimator sequential --method ransac

  # Save the summary
  python %(prog)s --preset indoor_3d --output results/indoor_3d.json

Available presets: """ + ", ".join(PRESETS.keys()),
    )

    parser.add_argument(
        "--preset",
        type=str,
        choices=PRESETS.keys(),
        help="Use preset configuration (overrides individual parameters)",
    )
    parser.add_argument(
        "--output", type=str, default=None, help="JSON summary path (default: print only)"
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    est_group = parser.add_argument_group("Estimator Parameters")
    est_group.add_argument(
        "--estimator", type=str, choices=ESTIMATORS, default="robust_ranging",
        help="Estimator to run (default: robust_ranging)",
    )
    est_group.add_argument(
        "--method", type=str, choices=[m.value for m in RobustMethod], default="promeds",
        help="Robust method (default: promeds)",
    )
    est_group.add_argument(
        "--threshold", type=float, default=0.5,
        help="Ranging inlier threshold in meters for RANSAC/MSAC/PROSAC (default: 0.5)",
    )
    est_group.add_argument(
        "--rssi-threshold", type=float, default=1.5,
        help="RSSI inlier threshold in dB for RANSAC/MSAC/PROSAC (default: 1.5)",
    )
    est_group.add_argument(
        "--estimate-path-loss", action="store_true",
        help="Also estimate the path-loss exponent",
    )

    scenario_group = parser.add_argument_group("Scenario Parameters")
    scenario_group.add_argument("--dims", type=int, choices=(2, 3), default=2,
                                help="Dimension (default: 2)")
    scenario_group.add_argument("--num-readings", type=int, default=60,
                                help="Number of readings (default: 60)")
    scenario_group.add_argument("--distance-std", type=float, default=0.01,
                                help="Ranging noise std in meters (default: 0.01)")
    scenario_group.add_argument("--rssi-std", type=float, default=0.5,
                                help="RSSI noise std in dB (default: 0.5)")
    scenario_group.add_argument("--path-loss-exponent", type=float, default=2.0,
                                help="True path-loss exponent (default: 2.0)")
    scenario_group.add_argument("--outlier-ratio", type=float, default=0.0,
                                help="Fraction of outlier readings (default: 0.0)")

    args = parser.parse_args(argv)

    if args.preset:
        preset_config = PRESETS[args.preset]
        print(f"\nUsing preset: '{args.preset}'")
        print(f"Description: {preset_config['description']}")
        for key, value in preset_config.items():
            if key != "description" and hasattr(args, key):
                setattr(args, key, value)

    if args.num_readings < 4:
        parser.error("At least 4 readings are required")
    if not 0.0 <= args.outlier_ratio < 0.5:
        parser.error("Outlier ratio must be in [0, 0.5)")

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s %(levelname)s: %(message)s")

    summary = run_simulation(
        estimator=args.estimator,
        method=args.method,
        threshold=args.threshold,
        rssi_threshold=args.rssi_threshold,
        dims=args.dims,
        num_readings=args.num_readings,
        distance_std=args.distance_std,
        rssi_std=args.rssi_std,
        path_loss_exponent=args.path_loss_exponent,
        outlier_ratio=args.outlier_ratio,
        estimate_path_loss=args.estimate_path_loss,
        seed=args.seed,
    )

    print(f"\n{'='*70}")
    print(f"Radio source estimation ({summary['estimator']})")
    print(f"{'='*70}")
    print(f"  True position      : {np.round(summary['true_position'], 3)}")
    print(f"  Estimated position : {np.round(summary['estimated_position'], 3)}")
    print(f"  Position error     : {summary['position_error_m']:.4f} m")
    if "num_inliers" in summary:
        print(f"  Inliers            : {summary['num_inliers']}/{summary['num_readings']}")

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            json.dump(summary, f, indent=2)
        print(f"\nSaved: {output_path}")

    return summary


if __name__ == "__main__":
    main()
