"""
Radio source localization module.

Submodules:
    measurement_models: Range and log-distance RSSI models
    readings: Radio sources, readings and validity rules
    positioning: Linear minimal-sample solvers
    refinement: Weighted Levenberg-Marquardt refinement with covariance
    accuracy: Confidence regions from position covariances
    source_estimation: Joint, robust and sequential robust estimators
"""

from radiolocation.rf.accuracy import (
    DEFAULT_STD_FACTOR,
    PositionAccuracy,
    confidence_to_std_factor,
    position_accuracy,
    std_factor_to_confidence,
)
from radiolocation.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    SPEED_OF_LIGHT,
    dbm_to_power,
    expected_rss,
    power_to_dbm,
    range_model,
    rss_pathloss,
    rss_to_distance,
    simulate_rss_measurement,
)
from radiolocation.rf.positioning import (
    Candidate,
    linear_lateration,
    median_transmitted_power,
    reading_residuals,
    scaled_lateration,
    solve_minimal_sample,
)
from radiolocation.rf.readings import (
    RadioSource,
    RadioSourceType,
    Reading,
    ReadingMode,
    are_valid_readings,
    min_readings,
)
from radiolocation.rf.refinement import (
    RefinementResult,
    refine_power_model,
    refine_radio_source,
)
from radiolocation.rf.source_estimation import (
    RadioSourceEstimate,
    RadioSourceEstimator,
    RobustRadioSourceEstimator,
    SequentialRobustRadioSourceEstimator,
)

__all__ = [
    # Constants
    "SPEED_OF_LIGHT",
    "DEFAULT_PATH_LOSS_EXPONENT",
    "DEFAULT_STD_FACTOR",
    # Measurement models
    "dbm_to_power",
    "power_to_dbm",
    "range_model",
    "rss_pathloss",
    "rss_to_distance",
    "expected_rss",
    "simulate_rss_measurement",
    # Readings
    "RadioSource",
    "RadioSourceType",
    "Reading",
    "ReadingMode",
    "min_readings",
    "are_valid_readings",
    # Solvers
    "Candidate",
    "linear_lateration",
    "scaled_lateration",
    "solve_minimal_sample",
    "reading_residuals",
    "median_transmitted_power",
    "RefinementResult",
    "refine_radio_source",
    "refine_power_model",
    # Accuracy
    "PositionAccuracy",
    "position_accuracy",
    "std_factor_to_confidence",
    "confidence_to_std_factor",
    # Estimators
    "RadioSourceEstimate",
    "RadioSourceEstimator",
    "RobustRadioSourceEstimator",
    "SequentialRobustRadioSourceEstimator",
]
