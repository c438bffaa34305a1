"""Data types for radio source localization.

This module defines the value objects shared by every estimator: the radio
source identity, the located readings collected by a moving receiver, the
located radio source produced by an estimation and the inliers summary of a
robust estimation.

Readings are immutable: their arrays are copied and flagged read-only at
construction, so an estimator can hold them for the whole duration of
``estimate()`` without defensive copies.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np

from radiosource.units import dbm_to_power


# Type aliases for clarity and documentation
Position = np.ndarray  # Shape (d,), d=2 (x, y) or d=3 (x, y, z), meters
Covariance = np.ndarray  # Shape (d, d), symmetric positive semi-definite

SUPPORTED_DIMENSIONS = (2, 3)


class EstimatorState(Enum):
    """Life cycle of an estimator.

    Attributes:
        IDLE: Configuration is incomplete (not ready).
        READY: Configuration is valid and ``estimate()`` may be called.
        RUNNING: ``estimate()`` is in progress; the estimator is locked.
        SUCCEEDED: Last ``estimate()`` produced a result.
        FAILED: Last ``estimate()`` raised.
    """

    IDLE = "idle"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RobustMethod(Enum):
    """Robust estimation method families.

    Attributes:
        RANSAC: Uniform sampling, inlier count over a fixed threshold.
        LMEDS: Uniform sampling, least median of squared residuals.
        MSAC: Uniform sampling, truncated quadratic cost.
        PROSAC: Quality-driven sampling, inlier count over a fixed threshold.
        PROMEDS: Quality-driven sampling, least median of squared residuals.
    """

    RANSAC = "ransac"
    LMEDS = "lmeds"
    MSAC = "msac"
    PROSAC = "prosac"
    PROMEDS = "promeds"

    @property
    def uses_quality_scores(self) -> bool:
        """Whether the method needs one quality score per reading."""
        return self in (RobustMethod.PROSAC, RobustMethod.PROMEDS)

    @property
    def uses_threshold(self) -> bool:
        """Whether the method classifies inliers with a fixed threshold."""
        return self in (RobustMethod.RANSAC, RobustMethod.MSAC, RobustMethod.PROSAC)


@dataclass(frozen=True)
class RadioSource:
    """
    Identity of a radio emitter.

    Attributes:
        identifier: Unique identifier (BSSID for Wi-Fi, joined identifiers
                    for beacons).
        frequency: Carrier frequency in Hz, or None if unknown. When known,
                   the free-space (Friis) constant is included in the
                   path-loss model.
    """

    identifier: str
    frequency: Optional[float] = None

    def __post_init__(self) -> None:
        if not isinstance(self.identifier, str) or not self.identifier:
            raise ValueError(
                f"identifier must be a non-empty string, got {self.identifier!r}"
            )
        if self.frequency is not None and self.frequency <= 0:
            raise ValueError(f"frequency must be positive, got {self.frequency}")


@dataclass(frozen=True)
class WifiAccessPoint(RadioSource):
    """Wi-Fi access point identified by its BSSID."""

    ssid: Optional[str] = None

    @property
    def bssid(self) -> str:
        """BSSID (MAC address) of the access point."""
        return self.identifier


@dataclass(frozen=True)
class Beacon(RadioSource):
    """BLE beacon identified by its advertised identifiers."""

    identifiers: Tuple[str, ...] = ()

    @classmethod
    def from_identifiers(
        cls, identifiers: Sequence[str], frequency: Optional[float] = None
    ) -> "Beacon":
        """
        Build a beacon from its advertised identifiers (e.g. UUID, major, minor).

        Args:
            identifiers: Identifier strings, at least one.
            frequency: Carrier frequency in Hz (optional).

        Returns:
            Beacon whose identifier is the colon-joined identifiers.
        """
        identifiers = tuple(str(i) for i in identifiers)
        if not identifiers:
            raise ValueError("at least one beacon identifier is required")
        return cls(identifier=":".join(identifiers), frequency=frequency,
                   identifiers=identifiers)


def _frozen_array(value, name: str) -> np.ndarray:
    array = np.array(value, dtype=float)
    if not np.all(np.isfinite(array)):
        raise ValueError(f"{name} must contain finite values")
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class Reading:
    """
    A located measurement of a radio source.

    Attributes:
        source: Radio source the measurement refers to.
        position: Receiver position at measurement time, shape (d,), d=2 or 3.
        distance: Measured distance to the source in meters (ranging), or None.
        rssi: Received signal strength in dBm, or None.
        distance_standard_deviation: Distance std dev in meters, or None.
        rssi_standard_deviation: RSSI std dev in dB, or None.
        position_covariance: Covariance of ``position``, shape (d, d), or None.

    Example:
        >>> ap = WifiAccessPoint("00:11:22:33:44:55", frequency=2.4e9)
        >>> reading = Reading(ap, position=[1.0, 2.0], distance=5.0, rssi=-60.0)
        >>> reading.dims
        2
    """

    source: RadioSource
    position: np.ndarray
    distance: Optional[float] = None
    rssi: Optional[float] = None
    distance_standard_deviation: Optional[float] = None
    rssi_standard_deviation: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        """Validate and freeze the measurement."""
        if not isinstance(self.source, RadioSource):
            raise TypeError(f"source must be a RadioSource, got {type(self.source)}")

        position = _frozen_array(self.position, "position")
        if position.ndim != 1 or position.shape[0] not in SUPPORTED_DIMENSIONS:
            raise ValueError(
                f"position must have shape (2,) or (3,), got {position.shape}"
            )
        object.__setattr__(self, "position", position)

        if self.distance is None and self.rssi is None:
            raise ValueError("a reading needs a distance, an RSSI or both")
        if self.distance is not None:
            if not np.isfinite(self.distance) or self.distance < 0:
                raise ValueError(f"distance must be non-negative, got {self.distance}")
            object.__setattr__(self, "distance", float(self.distance))
        if self.rssi is not None:
            if not np.isfinite(self.rssi):
                raise ValueError(f"rssi must be finite, got {self.rssi}")
            object.__setattr__(self, "rssi", float(self.rssi))

        for name in ("distance_standard_deviation", "rssi_standard_deviation"):
            value = getattr(self, name)
            if value is not None:
                if not np.isfinite(value) or value <= 0:
                    raise ValueError(f"{name} must be positive, got {value}")
                object.__setattr__(self, name, float(value))

        if self.position_covariance is not None:
            cov = _frozen_array(self.position_covariance, "position_covariance")
            d = position.shape[0]
            if cov.shape != (d, d):
                raise ValueError(
                    f"position_covariance must have shape ({d}, {d}), got {cov.shape}"
                )
            if not np.allclose(cov, cov.T):
                raise ValueError("position_covariance must be symmetric")
            if np.any(np.linalg.eigvalsh(cov) < -1e-10):
                raise ValueError("position_covariance must be positive semi-definite")
            object.__setattr__(self, "position_covariance", cov)

    @property
    def dims(self) -> int:
        """Dimension of the receiver position (2 or 3)."""
        return self.position.shape[0]

    @property
    def has_distance(self) -> bool:
        return self.distance is not None

    @property
    def has_rssi(self) -> bool:
        return self.rssi is not None


@dataclass(frozen=True, eq=False)
class LocatedRadioSource:
    """
    Radio source together with its estimated geometry and power.

    Attributes:
        source: Identity of the radio source.
        position: Estimated position, shape (d,).
        position_covariance: Estimated position covariance (d, d), or None.
        transmitted_power_dbm: Estimated (or known) transmitted power in dBm,
                               or None if not available.
        transmitted_power_variance: Variance of the transmitted power in dB²,
                                    or None if not estimated.
        path_loss_exponent: Estimated (or known) path-loss exponent.
        path_loss_exponent_variance: Variance of the exponent, or None.
    """

    source: RadioSource
    position: np.ndarray
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent: float = 2.0
    path_loss_exponent_variance: Optional[float] = None

    @property
    def transmitted_power(self) -> Optional[float]:
        """Transmitted power in milliwatts, or None."""
        if self.transmitted_power_dbm is None:
            return None
        return dbm_to_power(self.transmitted_power_dbm)


@dataclass(frozen=True, eq=False)
class InliersData:
    """
    Summary of the consensus set found by a robust estimation.

    Attributes:
        num_inliers: Number of readings accepted as inliers.
        inliers: Boolean mask over the readings (kept only when requested).
        residuals: Residual of every reading against the best model (kept
                   only when requested).
        threshold: Threshold used to classify inliers (fixed for threshold
                   methods, derived from the median for median methods).
    """

    num_inliers: int
    inliers: Optional[np.ndarray] = None
    residuals: Optional[np.ndarray] = None
    threshold: Optional[float] = None


def validate_readings(
    readings: Sequence[Reading],
    require_distance: bool = False,
    require_rssi: bool = False,
) -> Tuple[Reading, ...]:
    """
    Check that readings form a consistent set for a single radio source.

    Args:
        readings: Readings to check.
        require_distance: If True, every reading must carry a distance.
        require_rssi: If True, every reading must carry an RSSI.

    Returns:
        The readings as a tuple.

    Raises:
        ValueError: If the set is empty, mixes sources or dimensions, or lacks
                    a required measurement.
    """
    if readings is None:
        raise ValueError("readings must not be None")
    readings = tuple(readings)
    if not readings:
        raise ValueError("readings must not be empty")

    first = readings[0]
    for i, reading in enumerate(readings):
        if not isinstance(reading, Reading):
            raise ValueError(f"readings[{i}] is not a Reading: {type(reading)}")
        if reading.source != first.source:
            raise ValueError(
                f"readings[{i}] refers to {reading.source.identifier!r}, "
                f"expected {first.source.identifier!r}"
            )
        if reading.dims != first.dims:
            raise ValueError(
                f"readings[{i}] is {reading.dims}D, expected {first.dims}D"
            )
        if require_distance and not reading.has_distance:
            raise ValueError(f"readings[{i}] has no distance")
        if require_rssi and not reading.has_rssi:
            raise ValueError(f"readings[{i}] has no RSSI")
    return readings


def count_distinct_positions(readings: Sequence[Reading]) -> int:
    """Number of distinct receiver positions in a set of readings."""
    if not readings:
        return 0
    positions = np.vstack([r.position for r in readings])
    return np.unique(positions, axis=0).shape[0]
