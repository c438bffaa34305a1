"""Radio source localization.

This package estimates the position, transmitted power and path-loss
exponent of a stationary radio emitter (Wi-Fi access point or BLE beacon)
from ranging and RSSI readings collected at known receiver positions:
- types: radio sources, readings and located sources
- estimators: linear/nonlinear least squares, consensus engine, estimator base
- rf: measurement models and the ranging, RSSI, robust and sequential estimators
"""

__version__ = "0.1.0"
