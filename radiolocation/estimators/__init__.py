"""
Generic estimation machinery for radio source localization.

Available components:
    - Estimator state machine (Setting, LockableEstimator, EstimatorListener)
    - Weighted Levenberg-Marquardt with Cholesky covariance
    - Sample consensus (RANSAC, LMedS, MSAC, PROSAC, PROMedS)
"""

from radiolocation.estimators.base import (
    EstimationError,
    EstimatorListener,
    LockableEstimator,
    LockedError,
    ModelUnsolvable,
    NotReadyError,
    RadioLocationError,
    RefinementFailed,
    RobustEstimationFailed,
    Setting,
)
from radiolocation.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    levenberg_marquardt,
    normal_matrix_inverse,
)
from radiolocation.estimators.sample_consensus import (
    InliersData,
    ProsacSampler,
    RobustMethod,
    SampleConsensus,
    UniformSampler,
    required_iterations,
    weighted_median,
)

__all__ = [
    # State machine
    "Setting",
    "LockableEstimator",
    "EstimatorListener",
    # Errors
    "RadioLocationError",
    "LockedError",
    "NotReadyError",
    "EstimationError",
    "ModelUnsolvable",
    "RefinementFailed",
    "RobustEstimationFailed",
    # Nonlinear least squares
    "levenberg_marquardt",
    "normal_matrix_inverse",
    "NonlinearLSResult",
    # Sample consensus
    "RobustMethod",
    "InliersData",
    "SampleConsensus",
    "UniformSampler",
    "ProsacSampler",
    "required_iterations",
    "weighted_median",
]
