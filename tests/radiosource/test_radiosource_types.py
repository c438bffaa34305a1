"""
Unit tests for radio source types, readings, unit conversions and stage
configuration.
"""

import unittest

import numpy as np
import pytest
from numpy.testing import assert_allclose

from radiosource.config import RobustStageConfig
from radiosource.types import (
    Beacon,
    LocatedRadioSource,
    Reading,
    RobustMethod,
    WifiAccessPoint,
    count_distinct_positions,
    validate_readings,
)
from radiosource.units import dbm_to_power, power_to_dbm


class TestUnitConversions(unittest.TestCase):
    """Test dBm <-> mW conversions."""

    def test_reference_values(self):
        self.assertAlmostEqual(dbm_to_power(0.0), 1.0)
        self.assertAlmostEqual(dbm_to_power(-30.0), 1e-3)
        self.assertAlmostEqual(power_to_dbm(100.0), 20.0)

    def test_scalar_in_scalar_out(self):
        self.assertIsInstance(dbm_to_power(-40.0), float)
        self.assertIsInstance(power_to_dbm(2.0), float)

    def test_identity_over_range(self):
        dbm = np.linspace(-100.0, 30.0, 27)
        assert_allclose(power_to_dbm(dbm_to_power(dbm)), dbm, atol=1e-9)

    def test_non_positive_power_rejected(self):
        with self.assertRaises(ValueError):
            power_to_dbm(0.0)
        with self.assertRaises(ValueError):
            power_to_dbm(np.array([1.0, -1.0]))


class TestRadioSources(unittest.TestCase):
    """Test radio source identities."""

    def test_access_point_equality_by_value(self):
        a = WifiAccessPoint("00:11:22:33:44:55", frequency=2.4e9, ssid="lab")
        b = WifiAccessPoint("00:11:22:33:44:55", frequency=2.4e9, ssid="lab")
        self.assertEqual(a, b)
        self.assertEqual(a.bssid, "00:11:22:33:44:55")

    def test_beacon_identifier_from_parts(self):
        beacon = Beacon.from_identifiers(["f7826da6", 1, 2])
        self.assertEqual(beacon.identifier, "f7826da6:1:2")
        self.assertEqual(beacon.identifiers, ("f7826da6", "1", "2"))

    def test_beacon_needs_identifiers(self):
        with self.assertRaises(ValueError):
            Beacon.from_identifiers([])

    def test_located_source_power_in_mw(self):
        located = LocatedRadioSource(
            WifiAccessPoint("ap"), position=np.zeros(2), transmitted_power_dbm=10.0
        )
        self.assertAlmostEqual(located.transmitted_power, 10.0)
        self.assertIsNone(LocatedRadioSource(WifiAccessPoint("ap"), np.zeros(2)).transmitted_power)


class TestReading:
    """Test reading validation."""

    def setup_method(self):
        self.ap = WifiAccessPoint("00:11:22:33:44:55", frequency=2.4e9)

    def test_position_is_read_only(self):
        reading = Reading(self.ap, position=[1.0, 2.0], distance=3.0)
        assert reading.dims == 2
        assert reading.has_distance and not reading.has_rssi
        with pytest.raises(ValueError):
            reading.position[0] = 5.0

    def test_needs_a_measurement(self):
        with pytest.raises(ValueError):
            Reading(self.ap, position=[0.0, 0.0])

    @pytest.mark.parametrize("position", [[0.0], [0.0, 0.0, 0.0, 0.0], [np.nan, 0.0]])
    def test_bad_positions(self, position):
        with pytest.raises(ValueError):
            Reading(self.ap, position=position, rssi=-50.0)

    def test_negative_distance_rejected(self):
        with pytest.raises(ValueError):
            Reading(self.ap, position=[0.0, 0.0], distance=-1.0)

    def test_non_positive_std_rejected(self):
        with pytest.raises(ValueError):
            Reading(self.ap, position=[0.0, 0.0], rssi=-50.0, rssi_standard_deviation=0.0)

    def test_position_covariance_shape_and_symmetry(self):
        with pytest.raises(ValueError):
            Reading(self.ap, position=[0.0, 0.0], distance=1.0, position_covariance=np.eye(3))
        with pytest.raises(ValueError):
            Reading(
                self.ap,
                position=[0.0, 0.0],
                distance=1.0,
                position_covariance=[[1.0, 0.5], [0.0, 1.0]],
            )

    def test_source_type_checked(self):
        with pytest.raises(TypeError):
            Reading("ap", position=[0.0, 0.0], distance=1.0)


class TestValidateReadings:
    """Test reading set validation."""

    def setup_method(self):
        self.ap = WifiAccessPoint("ap-1")

    def test_mixed_sources_rejected(self):
        readings = [
            Reading(self.ap, [0.0, 0.0], distance=1.0),
            Reading(WifiAccessPoint("ap-2"), [1.0, 0.0], distance=1.0),
        ]
        with pytest.raises(ValueError, match="refers to"):
            validate_readings(readings)

    def test_mixed_dimensions_rejected(self):
        readings = [
            Reading(self.ap, [0.0, 0.0], distance=1.0),
            Reading(self.ap, [1.0, 0.0, 0.0], distance=1.0),
        ]
        with pytest.raises(ValueError):
            validate_readings(readings)

    def test_required_measurement(self):
        readings = [Reading(self.ap, [0.0, 0.0], rssi=-40.0)]
        assert validate_readings(readings, require_rssi=True) == tuple(readings)
        with pytest.raises(ValueError, match="no distance"):
            validate_readings(readings, require_distance=True)

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            validate_readings([])

    def test_distinct_positions(self):
        readings = [
            Reading(self.ap, [0.0, 0.0], distance=1.0),
            Reading(self.ap, [0.0, 0.0], distance=1.1),
            Reading(self.ap, [1.0, 0.0], distance=1.0),
        ]
        assert count_distinct_positions(readings) == 2
        assert count_distinct_positions([]) == 0


class TestRobustStageConfig:
    """Test robust stage configuration validation."""

    def test_defaults(self):
        config = RobustStageConfig()
        assert config.method == RobustMethod.PROMEDS
        assert config.threshold == 0.1
        assert config.confidence == 0.99
        assert config.max_iterations == 5000
        assert config.preliminary_subset_size is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"threshold": 0.0},
            {"confidence": 0.0},
            {"confidence": 1.0},
            {"max_iterations": 0},
            {"preliminary_subset_size": 0},
            {"method": "ransac"},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            RobustStageConfig(**kwargs)

    def test_method_families(self):
        assert RobustMethod.PROSAC.uses_quality_scores
        assert RobustMethod.PROMEDS.uses_quality_scores
        assert not RobustMethod.RANSAC.uses_quality_scores
        assert RobustMethod.MSAC.uses_threshold
        assert not RobustMethod.LMEDS.uses_threshold
