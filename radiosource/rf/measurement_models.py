"""
RF measurement models for radio source localization.

This module implements the ranging and received-signal-strength models used
by the radio source estimators, together with their Jacobians:

- Power unit conversions (dBm <-> mW, re-exported from radiosource.units)
- Log-distance path-loss model with optional free-space (Friis) constant
- Ranging model (Euclidean distance from receiver to source)
- Effective standard deviations combining measurement and position noise

Path-loss model:
    rssi_i = P + k*c0 - 10*k*log10(||x - p_i||)

where P is the transmitted power (dBm), k the path-loss exponent, x the
source position, p_i the receiver position and
c0 = 10*log10(c / (4*pi*f)) when the carrier frequency f is known
(c0 = 0 otherwise, giving the plain log-distance model).
"""

from typing import Optional

import numpy as np

from radiosource.units import dbm_to_power, power_to_dbm  # noqa: F401

SPEED_OF_LIGHT = 299792458.0  # m/s

DEFAULT_PATH_LOSS_EXPONENT = 2.0

# Smallest distance used in logarithms and divisions (meters)
MIN_DISTANCE = 1e-9

_LN10 = np.log(10.0)


def friis_constant_db(frequency: Optional[float]) -> float:
    """
    Free-space constant c0 = 10*log10(c / (4*pi*f)) of the path-loss model.

    Multiplied by the path-loss exponent, this is the received power (dB)
    at 1 m relative to the transmitted power under the Friis model.

    Args:
        frequency: Carrier frequency in Hz, or None.

    Returns:
        c0 in dB, or 0.0 when the frequency is unknown.
    """
    if frequency is None:
        return 0.0
    if frequency <= 0:
        raise ValueError(f"Frequency must be positive, got {frequency}")
    return float(10.0 * np.log10(SPEED_OF_LIGHT / (4.0 * np.pi * frequency)))


def distances_to(position: np.ndarray, receivers: np.ndarray) -> np.ndarray:
    """
    Euclidean distances from a source position to each receiver.

    Args:
        position: Source position, shape (d,).
        receivers: Receiver positions, shape (N, d).

    Returns:
        Distances, shape (N,).
    """
    return np.linalg.norm(receivers - position, axis=1)


def rss_pathloss(
    transmitted_power_dbm: float,
    distance,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: Optional[float] = None,
):
    """
    Expected received power for a given distance.

    Args:
        transmitted_power_dbm: Transmitted power P in dBm.
        distance: Distance(s) in meters, scalar or array, must be positive.
        path_loss_exponent: Path-loss exponent k. Defaults to 2.0 (free space).
        frequency: Carrier frequency in Hz; adds k*c0 when given.

    Returns:
        Received power(s) in dBm.

    Example:
        >>> rss_pathloss(-40.0, 10.0, path_loss_exponent=2.5)
        -65.0
    """
    distance = np.asarray(distance, dtype=float)
    if np.any(distance <= 0):
        raise ValueError("Distance must be positive")

    rssi = (
        transmitted_power_dbm
        + path_loss_exponent * friis_constant_db(frequency)
        - 10.0 * path_loss_exponent * np.log10(distance)
    )
    if rssi.ndim == 0:
        return float(rssi)
    return rssi


def rss_to_distance(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: Optional[float] = None,
) -> float:
    """
    Invert the path-loss model to obtain a distance from an RSSI.

    Args:
        rssi_dbm: Received power in dBm.
        transmitted_power_dbm: Transmitted power in dBm.
        path_loss_exponent: Path-loss exponent k, must be positive.
        frequency: Carrier frequency in Hz (optional).

    Returns:
        Distance in meters.
    """
    if path_loss_exponent <= 0:
        raise ValueError("Path-loss exponent must be positive")
    c0 = friis_constant_db(frequency)
    exponent = (
        transmitted_power_dbm + path_loss_exponent * c0 - rssi_dbm
    ) / (10.0 * path_loss_exponent)
    return float(10.0**exponent)


def expected_rssi(
    position: np.ndarray,
    receivers: np.ndarray,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    frequency: Optional[float] = None,
) -> np.ndarray:
    """Expected RSSI at each receiver for a source at ``position``."""
    distances = np.maximum(distances_to(position, receivers), MIN_DISTANCE)
    return rss_pathloss(transmitted_power_dbm, distances, path_loss_exponent, frequency)


def ranging_jacobian(position: np.ndarray, receivers: np.ndarray) -> np.ndarray:
    """
    Jacobian of the ranging model with respect to the source position.

    H[i, :] = (x - p_i) / ||x - p_i||

    Args:
        position: Source position, shape (d,).
        receivers: Receiver positions, shape (N, d).

    Returns:
        Jacobian, shape (N, d).
    """
    diff = position - receivers
    distances = np.maximum(np.linalg.norm(diff, axis=1, keepdims=True), MIN_DISTANCE)
    return diff / distances


def rssi_jacobian(
    position: np.ndarray,
    receivers: np.ndarray,
    path_loss_exponent: float,
    frequency: Optional[float] = None,
    wrt_position: bool = True,
    wrt_power: bool = True,
    wrt_path_loss: bool = False,
) -> np.ndarray:
    """
    Jacobian of the path-loss model with respect to the selected unknowns.

    Columns are ordered [position (d), transmitted power, path-loss exponent],
    keeping only the enabled ones:

        d rssi / d x_j = -10*k/ln(10) * (x_j - p_ij) / d_i^2
        d rssi / d P   = 1
        d rssi / d k   = c0 - 10*log10(d_i)

    Returns:
        Jacobian, shape (N, n_unknowns).
    """
    columns = []
    diff = position - receivers
    sqr_distances = np.maximum(np.sum(diff**2, axis=1), MIN_DISTANCE**2)
    if wrt_position:
        columns.append(
            -10.0 * path_loss_exponent / _LN10 * diff / sqr_distances[:, None]
        )
    if wrt_power:
        columns.append(np.ones((receivers.shape[0], 1)))
    if wrt_path_loss:
        columns.append(
            (friis_constant_db(frequency) - 5.0 * np.log10(sqr_distances))[:, None]
        )
    return np.hstack(columns)


def position_variance(position_covariance: Optional[np.ndarray]) -> float:
    """
    Average variance of a receiver position covariance.

    The mean of the eigenvalues (principal-axis variances) is used as an
    isotropic approximation of the position uncertainty.
    """
    if position_covariance is None:
        return 0.0
    eigenvalues = np.linalg.eigvalsh(position_covariance)
    return float(np.mean(np.maximum(eigenvalues, 0.0)))


def effective_standard_deviation(
    measurement_std: Optional[float],
    fallback_std: float,
    position_covariance: Optional[np.ndarray] = None,
    sensitivity: float = 1.0,
) -> float:
    """
    Combine measurement and receiver-position uncertainty.

    sigma_eff = sqrt(sigma_m^2 + sensitivity^2 * sigma_p^2)

    Args:
        measurement_std: Measurement std dev, or None to use ``fallback_std``.
        fallback_std: Std dev used when the measurement has none.
        position_covariance: Receiver position covariance, or None.
        sensitivity: Change of the measurement per meter of position error
                     (1 for ranging).

    Returns:
        Effective standard deviation.
    """
    std = measurement_std if measurement_std is not None else fallback_std
    variance = std**2 + sensitivity**2 * position_variance(position_covariance)
    return float(np.sqrt(variance))
