"""
Unit conversion utilities for radio power.

Transmitted and received powers are handled in dBm throughout the package;
these helpers convert to and from linear power in milliwatts. Function names
state both the input and output units.

    P(mW)  = 10^(P(dBm) / 10)
    P(dBm) = 10 * log10(P(mW))
"""

from typing import Union

import numpy as np

# Type alias for numeric types
Numeric = Union[float, np.ndarray]


def dbm_to_power(dbm: Numeric) -> Numeric:
    """
    Convert power from dBm to milliwatts.

    Args:
        dbm: Power in dBm.

    Returns:
        Power in mW.

    Example:
        >>> dbm_to_power(0.0)
        1.0
        >>> print(f"{dbm_to_power(-30.0):.4f} mW")
        0.0010 mW
    """
    power = np.power(10.0, np.asarray(dbm, dtype=float) / 10.0)
    if power.ndim == 0:
        return float(power)
    return power


def power_to_dbm(power_mw: Numeric) -> Numeric:
    """
    Convert power from milliwatts to dBm.

    Args:
        power_mw: Power in mW, must be positive.

    Returns:
        Power in dBm.

    Raises:
        ValueError: If any power is not positive.
    """
    power_mw = np.asarray(power_mw, dtype=float)
    if np.any(power_mw <= 0):
        raise ValueError(f"Power must be positive, got {power_mw}")
    dbm = 10.0 * np.log10(power_mw)
    if dbm.ndim == 0:
        return float(dbm)
    return dbm
