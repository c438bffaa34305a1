"""
Smoke tests for the radio source simulation script.
"""

import importlib.util
import json
from pathlib import Path

import numpy as np
import pytest

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "simulate_radio_source.py"


@pytest.fixture(scope="module")
def cli():
    spec = importlib.util.spec_from_file_location("simulate_radio_source", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_generate_readings(cli):
    readings, source, outliers = cli.generate_readings(num_readings=30, outlier_ratio=0.2, seed=1)
    assert len(readings) == 30
    assert source.shape == (2,)
    assert outliers.sum() == 6
    assert all(r.has_distance and r.has_rssi for r in readings)


def test_robust_ranging_writes_summary(cli, tmp_path, capsys):
    output = tmp_path / "out" / "summary.json"
    summary = cli.main(
        ["--preset", "outliers", "--method", "ransac", "--output", str(output)]
    )
    assert summary["position_error_m"] < 0.5
    assert summary["num_outliers"] == 12
    assert summary["num_inliers"] <= 60

    with open(output) as f:
        saved = json.load(f)
    assert saved["estimator"] == "robust_ranging"
    assert np.allclose(saved["estimated_position"], summary["estimated_position"])
    assert "Position error" in capsys.readouterr().out


@pytest.mark.parametrize(
    "estimator", ["ranging", "ranging_and_rssi", "sequential", "mixed", "sequential_mixed"]
)
def test_estimators_run(cli, estimator):
    summary = cli.main(["--estimator", estimator, "--seed", "3"])
    assert summary["position_error_m"] < 0.5
    assert summary["has_covariance"]


def test_invalid_outlier_ratio(cli):
    with pytest.raises(SystemExit):
        cli.main(["--outlier-ratio", "0.7"])
