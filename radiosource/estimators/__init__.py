"""
Estimation building blocks for radio source localization.

Available components:
    - Least Squares (weighted LS, homogeneous LS)
    - Nonlinear Least Squares (Levenberg-Marquardt)
    - Sample-consensus engine (RANSAC, LMedS, MSAC, PROSAC, PROMedS policies)
    - Estimator base class, listener and settings mixins
"""

from radiosource.estimators.base import (
    EstimationResult,
    PathLossSettingsMixin,
    RadioSourceEstimator,
    RadioSourceEstimatorListener,
    RangingSettingsMixin,
)
from radiosource.estimators.consensus import (
    ConsensusEngine,
    ConsensusResult,
    MedianScorer,
    MsacScorer,
    ProsacSampler,
    ThresholdScorer,
    UniformSampler,
    WeightedSampler,
    create_sampler,
    create_scorer,
    iteration_bound,
)
from radiosource.estimators.least_squares import (
    homogeneous_least_squares,
    weighted_least_squares,
)
from radiosource.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    levenberg_marquardt,
)

__all__ = [
    # Linear LS
    "weighted_least_squares",
    "homogeneous_least_squares",
    # Nonlinear LS
    "levenberg_marquardt",
    "NonlinearLSResult",
    # Consensus
    "ConsensusEngine",
    "ConsensusResult",
    "UniformSampler",
    "ProsacSampler",
    "WeightedSampler",
    "ThresholdScorer",
    "MsacScorer",
    "MedianScorer",
    "create_sampler",
    "create_scorer",
    "iteration_bound",
    # Estimator base
    "RadioSourceEstimator",
    "RadioSourceEstimatorListener",
    "EstimationResult",
    "PathLossSettingsMixin",
    "RangingSettingsMixin",
]
