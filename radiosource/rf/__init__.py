"""
RF (Radio Frequency) radio source localization.

Submodules:
    measurement_models: Path-loss and ranging models, Jacobians, noise helpers
    ranging: Trilateration estimator (linear + Levenberg-Marquardt)
    rssi: Path-loss estimator of position, transmitted power and exponent
    ranging_and_rssi: Joint ranging and RSSI estimator
    robust: Robust (sample-consensus) versions of the estimators above
    mixed: Routing of ranging-only, RSSI-only and combined readings
    sequential: Robust ranging stage followed by a robust RSSI stage
"""

from radiosource.rf.measurement_models import (
    SPEED_OF_LIGHT,
    distances_to,
    effective_standard_deviation,
    expected_rssi,
    friis_constant_db,
    ranging_jacobian,
    rss_pathloss,
    rss_to_distance,
    rssi_jacobian,
)
from radiosource.rf.mixed import MixedRadioSourceEstimator
from radiosource.rf.ranging import (
    RangingRadioSourceEstimator,
    linear_ranging_position,
    solve_ranging,
)
from radiosource.rf.ranging_and_rssi import (
    RangingAndRssiRadioSourceEstimator,
    solve_ranging_and_rssi,
)
from radiosource.rf.robust import (
    RobustRangingAndRssiRadioSourceEstimator,
    RobustRangingRadioSourceEstimator,
    RobustRssiRadioSourceEstimator,
    create_robust_ranging_and_rssi_estimator,
    create_robust_ranging_estimator,
    create_robust_rssi_estimator,
)
from radiosource.rf.rssi import (
    RssiRadioSourceEstimator,
    path_loss_closed_form,
    solve_rssi,
)
from radiosource.rf.sequential import (
    SequentialRobustMixedRadioSourceEstimator,
    SequentialRobustRangingAndRssiRadioSourceEstimator,
)

__all__ = [
    # Constants
    "SPEED_OF_LIGHT",
    # Measurement models
    "friis_constant_db",
    "distances_to",
    "rss_pathloss",
    "rss_to_distance",
    "expected_rssi",
    "ranging_jacobian",
    "rssi_jacobian",
    "effective_standard_deviation",
    # Solvers
    "linear_ranging_position",
    "solve_ranging",
    "path_loss_closed_form",
    "solve_rssi",
    "solve_ranging_and_rssi",
    # Estimators
    "RangingRadioSourceEstimator",
    "RssiRadioSourceEstimator",
    "RangingAndRssiRadioSourceEstimator",
    "MixedRadioSourceEstimator",
    "RobustRangingRadioSourceEstimator",
    "RobustRssiRadioSourceEstimator",
    "RobustRangingAndRssiRadioSourceEstimator",
    "SequentialRobustRangingAndRssiRadioSourceEstimator",
    "SequentialRobustMixedRadioSourceEstimator",
    # Factories
    "create_robust_ranging_estimator",
    "create_robust_rssi_estimator",
    "create_robust_ranging_and_rssi_estimator",
]
