"""
Radio source estimators.

Three estimators share the same configuration, readiness rules and results:

- RadioSourceEstimator: joint (non-robust) estimation. Refines position and,
  optionally, transmitted power and path-loss exponent over all readings.
- RobustRadioSourceEstimator: sample-consensus estimation. Draws minimal
  subsets of readings, keeps the candidate with the best support and refines
  it over its inliers.
- SequentialRobustRadioSourceEstimator: two sample-consensus stages for
  mixed readings. Position from ranging first, then transmitted power and
  path-loss exponent from received powers at that position.

All estimators are configured through attributes, run with estimate() and
expose their results through read-only properties:

    >>> estimator = RobustRadioSourceEstimator(readings, dims=2, seed=0)
    >>> estimator.estimate()
    >>> estimator.estimated_position
    array([10., 10.])

Configuration cannot change while estimate() runs (LockedError), including
changes attempted from listener callbacks.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from radiolocation.estimators.base import (
    EstimatorListener,
    LockableEstimator,
    LockedError,
    ModelUnsolvable,
    RefinementFailed,
    Setting,
    check_flag,
    check_listener,
    check_open_unit_interval,
    check_positive,
    check_positive_int,
    check_unit_interval,
)
from radiolocation.estimators.sample_consensus import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    DEFAULT_STOP_THRESHOLD,
    DEFAULT_THRESHOLD,
    InliersData,
    RobustMethod,
    SampleConsensus,
)
from radiolocation.rf.accuracy import PositionAccuracy, position_accuracy
from radiolocation.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    dbm_to_power,
    power_to_dbm,
)
from radiolocation.rf.positioning import (
    Candidate,
    fit_power_model,
    median_transmitted_power,
    reading_residuals,
    solve_minimal_sample,
)
from radiolocation.rf.readings import (
    RadioSource,
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

logger = logging.getLogger(__name__)

DEFAULT_ROBUST_METHOD = RobustMethod.PROMEDS


@dataclass(frozen=True)
class RadioSourceEstimate:
    """
    Estimated radio source.

    Attributes:
        source: Identity of the estimated source.
        position: Estimated position, shape (d,).
        position_covariance: Position covariance, shape (d, d), or None.
        transmitted_power_dbm: Estimated transmitted power in dBm, or None.
        transmitted_power_std: Standard deviation of the power in dB, or None.
        path_loss_exponent: Estimated (or assumed) path-loss exponent, or None
            for ranging-only estimates.
        path_loss_exponent_std: Standard deviation of the exponent, or None.
    """

    source: RadioSource
    position: np.ndarray
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None

    @property
    def transmitted_power(self) -> Optional[float]:
        """Estimated transmitted power in milliwatts, or None."""
        if self.transmitted_power_dbm is None:
            return None
        return dbm_to_power(self.transmitted_power_dbm)

    def position_accuracy(
        self,
        confidence: Optional[float] = None,
        std_factor: Optional[float] = None,
    ) -> Optional[PositionAccuracy]:
        """Accuracy of the position, or None without a covariance."""
        if self.position_covariance is None:
            return None
        return position_accuracy(self.position_covariance, confidence, std_factor)


# =============================================================================
# Setting validators
# =============================================================================
def check_readings(estimator, value):
    if value is None or len(value) == 0:
        raise ValueError("readings must be a non-empty collection")
    for reading in value:
        if not isinstance(reading, Reading):
            raise ValueError(
                f"readings must contain Reading instances, got {type(reading).__name__}"
            )
        if reading.dims != estimator.dims:
            raise ValueError(
                f"Reading position has {reading.dims} dimensions, "
                f"expected {estimator.dims}"
            )
    return value


def check_initial_position(estimator, value):
    if value is None:
        return None
    position = np.array(value, dtype=float)
    if position.shape != (estimator.dims,) or not np.all(np.isfinite(position)):
        raise ValueError(
            f"initial_position must be a finite array of shape ({estimator.dims},)"
        )
    return position


def check_optional_finite(estimator, value):
    if value is None:
        return None
    value = float(value)
    if not np.isfinite(value):
        raise ValueError(f"Value must be finite, got {value}")
    return value


def check_subset_size(estimator, value):
    if value is None:
        return None
    value = check_positive_int(estimator, value)
    if value < estimator.min_readings:
        raise ValueError(
            f"preliminary_subset_size must be at least {estimator.min_readings}, "
            f"got {value}"
        )
    return value


def check_quality_scores(estimator, value):
    if value is None:
        return None
    scores = np.array(value, dtype=float)
    if scores.ndim != 1 or len(scores) == 0:
        raise ValueError("quality_scores must be a non-empty 1D array")
    if not np.all(np.isfinite(scores)) or np.any(scores < 0.0):
        raise ValueError("quality_scores must be finite and non-negative")
    if estimator.readings is not None and len(scores) != len(estimator.readings):
        raise ValueError(
            f"Expected {len(estimator.readings)} quality scores, got {len(scores)}"
        )
    return scores


def check_seed(estimator, value):
    if value is None:
        return None
    if int(value) != value or value < 0:
        raise ValueError(f"seed must be a non-negative integer, got {value}")
    return int(value)


# =============================================================================
# Estimators
# =============================================================================
class BaseRadioSourceEstimator(LockableEstimator):
    """
    Configuration, readiness rules and results shared by radio source
    estimators.

    Args:
        readings: Readings of a single radio source.
        dims: Position dimensionality, 2 or 3.
        mode: Which reading channels are used.
        listener: Optional EstimatorListener.
        initial_position: Optional initial position guess.
        initial_transmitted_power_dbm: Optional initial power guess in dBm.
            When power estimation is disabled, this is the assumed power.
        initial_path_loss_exponent: Initial (or assumed) path-loss exponent.
        transmitted_power_estimation_enabled: Estimate the transmitted power.
        path_loss_estimation_enabled: Estimate the path-loss exponent.
    """

    readings = Setting(None, validator=check_readings)
    listener = Setting(None, validator=check_listener)
    initial_position = Setting(None, validator=check_initial_position)
    initial_transmitted_power_dbm = Setting(None, validator=check_optional_finite)
    initial_path_loss_exponent = Setting(
        DEFAULT_PATH_LOSS_EXPONENT, validator=check_positive
    )
    transmitted_power_estimation_enabled = Setting(True, validator=check_flag)
    path_loss_estimation_enabled = Setting(False, validator=check_flag)
    use_reading_position_covariances = Setting(True, validator=check_flag)
    covariance_kept = Setting(True, validator=check_flag)

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        dims: int = 2,
        mode: ReadingMode = ReadingMode.RANGING_AND_RSSI,
        listener=None,
        initial_position: Optional[np.ndarray] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        transmitted_power_estimation_enabled: bool = True,
        path_loss_estimation_enabled: bool = False,
    ):
        super().__init__()
        if dims not in (2, 3):
            raise ValueError(f"dims must be 2 or 3, got {dims}")
        self._dims = dims
        self._mode = ReadingMode(mode)

        if readings is not None:
            self.readings = readings
        self.listener = listener
        self.initial_position = initial_position
        self.initial_transmitted_power_dbm = initial_transmitted_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent
        self.transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self.path_loss_estimation_enabled = path_loss_estimation_enabled

        self._clear_results()

    @property
    def dims(self) -> int:
        return self._dims

    @property
    def mode(self) -> ReadingMode:
        return self._mode

    @property
    def initial_transmitted_power(self) -> Optional[float]:
        """Initial transmitted power in milliwatts, or None."""
        if self.initial_transmitted_power_dbm is None:
            return None
        return dbm_to_power(self.initial_transmitted_power_dbm)

    @initial_transmitted_power.setter
    def initial_transmitted_power(self, value: Optional[float]) -> None:
        if self.is_locked:
            raise LockedError()
        self.initial_transmitted_power_dbm = None if value is None else power_to_dbm(value)

    @property
    def _power_enabled(self) -> bool:
        return self._mode.uses_rssi and self.transmitted_power_estimation_enabled

    @property
    def _path_loss_enabled(self) -> bool:
        return self._mode.uses_rssi and self.path_loss_estimation_enabled

    @property
    def min_readings(self) -> int:
        """Minimum number of readings for the enabled estimation targets."""
        return min_readings(self._dims, self._power_enabled, self._path_loss_enabled)

    @property
    def _fixed_power_missing(self) -> bool:
        """Received powers take part but Pte is neither estimated nor given."""
        return (
            self._mode.uses_rssi
            and not self.transmitted_power_estimation_enabled
            and self.initial_transmitted_power_dbm is None
            and any(r.has_rssi for r in self.readings or ())
        )

    @property
    def is_ready(self) -> bool:
        if self._fixed_power_missing:
            return False
        return are_valid_readings(
            self.readings,
            self._dims,
            self._mode,
            self._power_enabled,
            self._path_loss_enabled,
        )

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------
    def _clear_results(self) -> None:
        self._estimated_position = None
        self._estimated_transmitted_power_dbm = None
        self._estimated_path_loss_exponent = None
        self._covariance = None
        self._estimated_position_covariance = None
        self._estimated_transmitted_power_variance = None
        self._estimated_path_loss_exponent_variance = None
        self._chi_sq = None

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return self._estimated_position

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return self._estimated_transmitted_power_dbm

    @property
    def estimated_transmitted_power(self) -> Optional[float]:
        """Estimated transmitted power in milliwatts, or None."""
        if self._estimated_transmitted_power_dbm is None:
            return None
        return dbm_to_power(self._estimated_transmitted_power_dbm)

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return self._estimated_path_loss_exponent

    @property
    def estimated_transmitted_power_variance(self) -> Optional[float]:
        return self._estimated_transmitted_power_variance

    @property
    def estimated_path_loss_exponent_variance(self) -> Optional[float]:
        return self._estimated_path_loss_exponent_variance

    @property
    def covariance(self) -> Optional[np.ndarray]:
        """Covariance of all estimated parameters, [position, power, path loss]."""
        return self._covariance

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return self._estimated_position_covariance

    @property
    def chi_sq(self) -> Optional[float]:
        return self._chi_sq

    @property
    def estimated_radio_source(self) -> Optional[RadioSourceEstimate]:
        """Estimated source bundled with its identity, or None."""
        if self._estimated_position is None or not self.readings:
            return None

        def std(variance):
            return None if variance is None else float(np.sqrt(max(variance, 0.0)))

        return RadioSourceEstimate(
            source=self.readings[0].source,
            position=self._estimated_position,
            position_covariance=self._estimated_position_covariance,
            transmitted_power_dbm=self._estimated_transmitted_power_dbm,
            transmitted_power_std=std(self._estimated_transmitted_power_variance),
            path_loss_exponent=self._estimated_path_loss_exponent,
            path_loss_exponent_std=std(self._estimated_path_loss_exponent_variance),
        )

    def _set_candidate(self, candidate: Candidate) -> None:
        self._estimated_position = np.array(candidate.position, dtype=float)
        if self._mode.uses_rssi:
            self._estimated_transmitted_power_dbm = candidate.transmitted_power_dbm
            self._estimated_path_loss_exponent = candidate.path_loss_exponent

    def _set_refinement(self, result: RefinementResult) -> None:
        self._estimated_position = result.position
        if self._mode.uses_rssi:
            self._estimated_transmitted_power_dbm = result.transmitted_power_dbm
            self._estimated_path_loss_exponent = result.path_loss_exponent
        self._chi_sq = result.chi_sq
        if self.covariance_kept and result.covariance is not None:
            self._covariance = result.covariance
            self._estimated_position_covariance = result.position_covariance
            self._estimated_transmitted_power_variance = result.transmitted_power_variance
            self._estimated_path_loss_exponent_variance = (
                result.path_loss_exponent_variance
            )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _power_guess(
        self, readings: Sequence[Reading], power: Optional[float] = None
    ) -> Optional[float]:
        """
        Given power, else initial power, else (only when Pte is estimated)
        the mean RSSI of the readings as a starting guess.
        """
        if power is not None:
            return power
        if self.initial_transmitted_power_dbm is not None:
            return self.initial_transmitted_power_dbm
        rssi = [r.rssi for r in readings if r.has_rssi]
        if self._power_enabled and rssi:
            return float(np.mean(rssi))
        return None

    def _solve_subset(
        self, readings: Sequence[Reading], homogeneous: bool = False
    ) -> Candidate:
        return solve_minimal_sample(
            readings,
            mode=self._mode,
            transmitted_power_enabled=self._power_enabled,
            path_loss_enabled=self._path_loss_enabled,
            initial_transmitted_power_dbm=self.initial_transmitted_power_dbm,
            initial_path_loss_exponent=self.initial_path_loss_exponent,
            homogeneous=homogeneous,
        )

    def _refine(
        self,
        readings: Sequence[Reading],
        initial: Candidate,
        quality_weights: Optional[np.ndarray] = None,
    ) -> RefinementResult:
        return refine_radio_source(
            readings,
            initial.position,
            transmitted_power_dbm=self._power_guess(
                readings, initial.transmitted_power_dbm
            ),
            path_loss_exponent=initial.path_loss_exponent,
            mode=self._mode,
            transmitted_power_enabled=self._power_enabled,
            path_loss_enabled=self._path_loss_enabled,
            use_position_covariances=self.use_reading_position_covariances,
            quality_weights=quality_weights,
            keep_covariance=self.covariance_kept,
        )

    def _notify_start(self) -> None:
        if self.listener is not None:
            self.listener.on_estimate_start(self)

    def _notify_end(self) -> None:
        if self.listener is not None:
            self.listener.on_estimate_end(self)

    def _notify_next_iteration(self, iteration: int) -> None:
        if self.listener is not None:
            self.listener.on_estimate_next_iteration(self, iteration)

    def _notify_progress_change(self, progress: float) -> None:
        if self.listener is not None:
            self.listener.on_estimate_progress_change(self, progress)

    @staticmethod
    def _estimation_config(config: Dict[str, Any]) -> Dict[str, Any]:
        est_config = dict(config.get("estimation", {}))
        if "mode" in est_config:
            est_config["mode"] = ReadingMode(est_config["mode"])
        return est_config


class RadioSourceEstimator(BaseRadioSourceEstimator):
    """
    Joint (non-robust) radio source estimator.

    Refines position and the enabled power model parameters over all
    readings, without outlier rejection. Missing initial guesses are
    obtained from a linear solution over all readings, or from the receiver
    centroid and mean RSSI when that solution is degenerate.

    Example:
        >>> estimator = RadioSourceEstimator(readings, dims=2)
        >>> estimator.estimate()
        >>> estimator.estimated_position_covariance.shape
        (2, 2)
    """

    _CONFIG_KEYS = (
        "dims",
        "mode",
        "initial_path_loss_exponent",
        "transmitted_power_estimation_enabled",
        "path_loss_estimation_enabled",
    )

    @classmethod
    def from_config(
        cls, config: Dict[str, Any], readings: Optional[Sequence[Reading]] = None
    ) -> "RadioSourceEstimator":
        """
        Create an estimator from a configuration dictionary.

        Args:
            config: Configuration dictionary with an "estimation" section.
            readings: Optional readings.

        Returns:
            Configured estimator.
        """
        est_config = cls._estimation_config(config)
        estimator = cls(
            readings,
            **{key: est_config[key] for key in cls._CONFIG_KEYS if key in est_config},
        )
        estimator.use_reading_position_covariances = est_config.get(
            "use_reading_position_covariances", True
        )
        estimator.covariance_kept = est_config.get("covariance_kept", True)
        return estimator

    def _initial_guess(self, readings: List[Reading]) -> Candidate:
        path_loss = self.initial_path_loss_exponent
        if self.initial_position is not None:
            return Candidate(
                self.initial_position, self._power_guess(readings), path_loss
            )
        try:
            return self._solve_subset(readings)
        except ModelUnsolvable as e:
            logger.debug("Linear initialization failed, using centroid: %s", e)
        centroid = np.mean([r.position for r in readings], axis=0)
        return Candidate(centroid, self._power_guess(readings), path_loss)

    def estimate(self) -> None:
        """
        Estimate the radio source from all readings.

        Raises:
            LockedError: If an estimation is already running.
            NotReadyError: If the readings are not valid.
            RefinementFailed: If refinement fails.
        """
        self._check_can_estimate()
        with self._locked_scope():
            self._clear_results()
            self._notify_start()

            readings = list(self.readings)
            initial = self._initial_guess(readings)
            result = self._refine(readings, initial)
            self._set_refinement(result)

            logger.info(
                "Estimated source %s at %s from %d readings",
                readings[0].source.identifier,
                np.array2string(result.position, precision=3),
                len(readings),
            )
            self._notify_end()


class RobustRadioSourceEstimator(BaseRadioSourceEstimator):
    """
    Robust radio source estimator based on sample consensus.

    Args:
        readings: Readings of a single radio source.
        dims: Position dimensionality, 2 or 3.
        mode: Which reading channels are used.
        method: Sample-consensus variant. PROSAC and PROMedS require
            quality_scores with one entry per reading.
        quality_scores: Optional per-reading quality scores.
        seed: Optional seed. Each estimate() call draws from a fresh
            generator seeded with it.
        **kwargs: Forwarded to BaseRadioSourceEstimator.

    Example:
        >>> estimator = RobustRadioSourceEstimator(
        ...     readings, dims=2, mode=ReadingMode.RANGING,
        ...     method=RobustMethod.RANSAC, seed=42)
        >>> estimator.threshold = 0.5
        >>> estimator.estimate()
        >>> estimator.inliers_data.num_inliers
        8
    """

    threshold = Setting(DEFAULT_THRESHOLD, validator=check_positive)
    stop_threshold = Setting(DEFAULT_STOP_THRESHOLD, validator=check_positive)
    confidence = Setting(DEFAULT_CONFIDENCE, validator=check_open_unit_interval)
    max_iterations = Setting(DEFAULT_MAX_ITERATIONS, validator=check_positive_int)
    progress_delta = Setting(DEFAULT_PROGRESS_DELTA, validator=check_unit_interval)
    result_refined = Setting(True, validator=check_flag)
    preliminary_subset_size = Setting(None, validator=check_subset_size)
    quality_scores = Setting(None, validator=check_quality_scores)
    use_homogeneous_linear_solver = Setting(False, validator=check_flag)
    quality_weighted_refinement = Setting(False, validator=check_flag)
    seed = Setting(None, validator=check_seed)

    _CONFIG_KEYS = (
        "threshold",
        "stop_threshold",
        "confidence",
        "max_iterations",
        "progress_delta",
        "result_refined",
        "covariance_kept",
        "use_reading_position_covariances",
        "use_homogeneous_linear_solver",
        "quality_weighted_refinement",
        "preliminary_subset_size",
    )

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        dims: int = 2,
        mode: ReadingMode = ReadingMode.RANGING_AND_RSSI,
        method: RobustMethod = DEFAULT_ROBUST_METHOD,
        quality_scores: Optional[np.ndarray] = None,
        seed: Optional[int] = None,
        **kwargs,
    ):
        self._method = RobustMethod(method)
        super().__init__(readings, dims=dims, mode=mode, **kwargs)
        self.quality_scores = quality_scores
        self.seed = seed
        self._inliers_data = None

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        readings: Optional[Sequence[Reading]] = None,
        quality_scores: Optional[np.ndarray] = None,
    ) -> "RobustRadioSourceEstimator":
        """
        Create an estimator from a configuration dictionary.

        Example:
            >>> config = {"estimation": {"method": "ransac", "threshold": 0.5}}
            >>> RobustRadioSourceEstimator.from_config(config).method
            <RobustMethod.RANSAC: 'ransac'>
        """
        est_config = cls._estimation_config(config)
        estimator = cls(
            readings,
            dims=est_config.get("dims", 2),
            mode=est_config.get("mode", ReadingMode.RANGING_AND_RSSI),
            method=RobustMethod(est_config.get("method", DEFAULT_ROBUST_METHOD)),
            quality_scores=quality_scores,
            seed=est_config.get("seed"),
            initial_path_loss_exponent=est_config.get(
                "initial_path_loss_exponent", DEFAULT_PATH_LOSS_EXPONENT
            ),
            transmitted_power_estimation_enabled=est_config.get(
                "transmitted_power_estimation_enabled", True
            ),
            path_loss_estimation_enabled=est_config.get(
                "path_loss_estimation_enabled", False
            ),
        )
        for key in cls._CONFIG_KEYS:
            if key in est_config:
                setattr(estimator, key, est_config[key])
        return estimator

    @property
    def method(self) -> RobustMethod:
        return self._method

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._inliers_data

    @property
    def effective_subset_size(self) -> int:
        """Subset size used per trial, at least min_readings."""
        size = max(self.preliminary_subset_size or 0, self.min_readings)
        if self.readings:
            size = min(size, len(self.readings))
        return size

    def _quality_matches(self) -> bool:
        return (
            self.quality_scores is not None
            and self.readings is not None
            and len(self.quality_scores) == len(self.readings)
        )

    @property
    def is_ready(self) -> bool:
        if not super().is_ready:
            return False
        return not self._method.quality_driven or self._quality_matches()

    def _clear_results(self) -> None:
        super()._clear_results()
        self._inliers_data = None

    def estimate(self) -> None:
        """
        Estimate the radio source robustly.

        Raises:
            LockedError: If an estimation is already running.
            ValueError: If the quality scores do not match the readings.
            NotReadyError: If the configuration is not valid.
            RobustEstimationFailed: If no subset produced a candidate.
        """
        if self.is_locked:
            raise LockedError()
        if (
            self._method.quality_driven
            and self.quality_scores is not None
            and self.readings is not None
            and not self._quality_matches()
        ):
            raise ValueError(
                f"Expected {len(self.readings)} quality scores, "
                f"got {len(self.quality_scores)}"
            )
        self._check_can_estimate()

        with self._locked_scope():
            self._clear_results()
            self._notify_start()

            readings = list(self.readings)
            homogeneous = self.use_homogeneous_linear_solver

            # In mixed mode a subset may hold few or no received powers, so Pte
            # is taken from all of them at the candidate position
            shared_power = self._mode is ReadingMode.RANGING_AND_RSSI and self._power_enabled

            def solve(indices):
                candidate = self._solve_subset([readings[i] for i in indices], homogeneous)
                if shared_power:
                    power = median_transmitted_power(
                        readings, candidate.position, candidate.path_loss_exponent
                    )
                    candidate = replace(candidate, transmitted_power_dbm=power)
                return candidate

            def residuals(candidate):
                return reading_residuals(readings, candidate, self._mode)

            engine = SampleConsensus(
                num_samples=len(readings),
                subset_size=self.effective_subset_size,
                solve=solve,
                residuals=residuals,
                method=self._method,
                threshold=self.threshold,
                stop_threshold=self.stop_threshold,
                confidence=self.confidence,
                max_iterations=self.max_iterations,
                progress_delta=self.progress_delta,
                quality_scores=self.quality_scores if self._method.quality_driven else None,
                rng=np.random.default_rng(self.seed),
                on_iteration=self._notify_next_iteration,
                on_progress=self._notify_progress_change,
            )
            candidate, inliers_data = engine.run()

            self._inliers_data = inliers_data
            self._set_candidate(candidate)
            if self.result_refined:
                self._attempt_refine(readings, candidate, inliers_data)

            logger.info(
                "Estimated source %s at %s with %d/%d inliers after %d trials",
                readings[0].source.identifier,
                np.array2string(self._estimated_position, precision=3),
                inliers_data.num_inliers,
                len(readings),
                engine.iterations,
            )
            self._notify_end()

    def _attempt_refine(
        self,
        readings: List[Reading],
        candidate: Candidate,
        inliers_data: InliersData,
    ) -> None:
        indices = np.flatnonzero(inliers_data.inliers)
        inliers = [readings[i] for i in indices]

        quality_weights = None
        if self.quality_weighted_refinement and self.quality_scores is not None:
            if len(self.quality_scores) == len(readings):
                quality_weights = self.quality_scores[indices]

        try:
            result = self._refine(inliers, candidate, quality_weights)
        except RefinementFailed as e:
            logger.warning("Refinement failed, keeping preliminary solution: %s", e)
            return
        self._set_refinement(result)


class _StageListener(EstimatorListener):
    """Forward the progress of one estimation stage as a share of the whole."""

    def __init__(self, owner: BaseRadioSourceEstimator, offset: float, share: float):
        self.owner = owner
        self.offset = offset
        self.share = share

    def on_estimate_progress_change(self, estimator, progress):
        self.owner._notify_progress_change(self.offset + self.share * progress)


class SequentialRobustRadioSourceEstimator(BaseRadioSourceEstimator):
    """
    Two-stage robust estimator for readings mixing ranging and received power.

    The position is first estimated robustly from the ranging readings alone.
    With that position fixed, the enabled power model parameters (Pte and/or
    n) are then estimated robustly from the readings carrying an RSSI. Each
    stage runs its own sample consensus, so outliers in one channel never
    vote on the other.

    Args:
        readings: Readings of a single radio source. At least dims + 1 of
            them must carry a distance.
        dims: Position dimensionality, 2 or 3.
        ranging_method: Sample-consensus variant of the position stage.
        rssi_method: Sample-consensus variant of the power stage.
        quality_scores: Optional per-reading quality scores, required by
            PROSAC and PROMedS.
        seed: Optional seed shared by both stages.
        **kwargs: Forwarded to BaseRadioSourceEstimator.

    Example:
        >>> estimator = SequentialRobustRadioSourceEstimator(
        ...     readings, ranging_method=RobustMethod.LMEDS,
        ...     rssi_method=RobustMethod.LMEDS, seed=0)
        >>> estimator.estimate()
        >>> estimator.estimated_transmitted_power_dbm
        -20.0
    """

    ranging_threshold = Setting(DEFAULT_THRESHOLD, validator=check_positive)
    rssi_threshold = Setting(DEFAULT_THRESHOLD, validator=check_positive)
    stop_threshold = Setting(DEFAULT_STOP_THRESHOLD, validator=check_positive)
    confidence = Setting(DEFAULT_CONFIDENCE, validator=check_open_unit_interval)
    max_iterations = Setting(DEFAULT_MAX_ITERATIONS, validator=check_positive_int)
    progress_delta = Setting(DEFAULT_PROGRESS_DELTA, validator=check_unit_interval)
    result_refined = Setting(True, validator=check_flag)
    quality_scores = Setting(None, validator=check_quality_scores)
    use_homogeneous_linear_solver = Setting(False, validator=check_flag)
    seed = Setting(None, validator=check_seed)

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        dims: int = 2,
        ranging_method: RobustMethod = DEFAULT_ROBUST_METHOD,
        rssi_method: RobustMethod = DEFAULT_ROBUST_METHOD,
        quality_scores: Optional[np.ndarray] = None,
        seed: Optional[int] = None,
        **kwargs,
    ):
        self._ranging_method = RobustMethod(ranging_method)
        self._rssi_method = RobustMethod(rssi_method)
        super().__init__(readings, dims=dims, mode=ReadingMode.RANGING_AND_RSSI, **kwargs)
        self.quality_scores = quality_scores
        self.seed = seed
        self._inliers_data = None
        self._rssi_inliers_data = None

    @property
    def ranging_method(self) -> RobustMethod:
        return self._ranging_method

    @property
    def rssi_method(self) -> RobustMethod:
        return self._rssi_method

    @property
    def inliers_data(self) -> Optional[InliersData]:
        """Inliers of the position stage, indexed like readings."""
        return self._inliers_data

    @property
    def rssi_inliers_data(self) -> Optional[InliersData]:
        """Inliers of the power stage, indexed like readings, or None."""
        return self._rssi_inliers_data

    @property
    def min_readings(self) -> int:
        """Minimum number of ranging readings."""
        return self._dims + 1

    @property
    def _num_power_params(self) -> int:
        return int(self._power_enabled) + int(self._path_loss_enabled)

    @property
    def _quality_driven(self) -> bool:
        return self._ranging_method.quality_driven or self._rssi_method.quality_driven

    def _split(self):
        ranging = [i for i, r in enumerate(self.readings) if r.has_distance]
        rssi = [i for i, r in enumerate(self.readings) if r.has_rssi]
        return ranging, rssi

    @property
    def is_ready(self) -> bool:
        if not self.readings or self._fixed_power_missing:
            return False
        if len({r.source.identifier for r in self.readings}) != 1:
            return False
        if self._quality_driven and (
            self.quality_scores is None or len(self.quality_scores) != len(self.readings)
        ):
            return False
        ranging, rssi = self._split()
        return len(ranging) >= self.min_readings and len(rssi) >= self._num_power_params

    def _clear_results(self) -> None:
        super()._clear_results()
        self._inliers_data = None
        self._rssi_inliers_data = None

    def estimate(self) -> None:
        """
        Estimate the position from ranging, then the power model from RSSI.

        Raises:
            LockedError: If an estimation is already running.
            NotReadyError: If the configuration is not valid.
            RobustEstimationFailed: If either stage found no candidate.
        """
        self._check_can_estimate()
        with self._locked_scope():
            self._clear_results()
            self._notify_start()

            readings = list(self.readings)
            ranging, rssi = self._split()
            self._estimate_position(readings, ranging)
            if self._num_power_params:
                self._estimate_power_model(readings, rssi)
            else:
                self._estimated_transmitted_power_dbm = self.initial_transmitted_power_dbm
                self._estimated_path_loss_exponent = self.initial_path_loss_exponent
                self._covariance = self._estimated_position_covariance

            logger.info(
                "Estimated source %s at %s with %d/%d ranging inliers",
                readings[0].source.identifier,
                np.array2string(self._estimated_position, precision=3),
                self._inliers_data.num_inliers,
                len(ranging),
            )
            self._notify_end()

    def _stage_quality(self, indices: List[int]) -> Optional[np.ndarray]:
        if self.quality_scores is None:
            return None
        return self.quality_scores[indices]

    def _estimate_position(self, readings: List[Reading], ranging: List[int]) -> None:
        stage = RobustRadioSourceEstimator(
            [readings[i] for i in ranging],
            dims=self._dims,
            mode=ReadingMode.RANGING,
            method=self._ranging_method,
            quality_scores=self._stage_quality(ranging),
            seed=self.seed,
            initial_position=self.initial_position,
        )
        stage.threshold = self.ranging_threshold
        stage.stop_threshold = self.stop_threshold
        stage.confidence = self.confidence
        stage.max_iterations = self.max_iterations
        stage.progress_delta = min(1.0, 2.0 * self.progress_delta)
        stage.result_refined = self.result_refined
        stage.covariance_kept = self.covariance_kept
        stage.use_reading_position_covariances = self.use_reading_position_covariances
        stage.use_homogeneous_linear_solver = self.use_homogeneous_linear_solver
        stage.listener = _StageListener(self, 0.0, 0.5)
        stage.estimate()

        self._estimated_position = stage.estimated_position
        self._estimated_position_covariance = stage.estimated_position_covariance
        self._chi_sq = stage.chi_sq
        self._inliers_data = _expand_inliers(stage.inliers_data, ranging, len(readings))

    def _estimate_power_model(self, readings: List[Reading], rssi: List[int]) -> None:
        position = self._estimated_position
        path_loss = self.initial_path_loss_exponent
        fixed_power = self.initial_transmitted_power_dbm
        subset = [readings[i] for i in rssi]

        def solve(indices):
            power, exponent = fit_power_model(
                [subset[i] for i in indices],
                position,
                fixed_power,
                path_loss,
                self._power_enabled,
                self._path_loss_enabled,
            )
            return Candidate(position, power, exponent)

        def residuals(candidate):
            return reading_residuals(subset, candidate, ReadingMode.RSSI)

        engine = SampleConsensus(
            num_samples=len(subset),
            subset_size=self._num_power_params,
            solve=solve,
            residuals=residuals,
            method=self._rssi_method,
            threshold=self.rssi_threshold,
            stop_threshold=self.stop_threshold,
            confidence=self.confidence,
            max_iterations=self.max_iterations,
            progress_delta=min(1.0, 2.0 * self.progress_delta),
            quality_scores=(
                self._stage_quality(rssi) if self._rssi_method.quality_driven else None
            ),
            rng=np.random.default_rng(None if self.seed is None else [self.seed, 1]),
            on_progress=lambda progress: self._notify_progress_change(0.5 + 0.5 * progress),
        )
        candidate, inliers_data = engine.run()
        self._rssi_inliers_data = _expand_inliers(inliers_data, rssi, len(readings))
        self._estimated_transmitted_power_dbm = candidate.transmitted_power_dbm
        self._estimated_path_loss_exponent = candidate.path_loss_exponent

        if not self.result_refined:
            return
        inliers = [subset[i] for i in np.flatnonzero(inliers_data.inliers)]
        try:
            result = refine_power_model(
                inliers,
                position,
                candidate.transmitted_power_dbm,
                candidate.path_loss_exponent,
                transmitted_power_enabled=self._power_enabled,
                path_loss_enabled=self._path_loss_enabled,
                use_position_covariances=self.use_reading_position_covariances,
                keep_covariance=self.covariance_kept,
            )
        except RefinementFailed as e:
            logger.warning("Power model refinement failed, keeping preliminary fit: %s", e)
            return

        self._estimated_transmitted_power_dbm = result.transmitted_power_dbm
        self._estimated_path_loss_exponent = result.path_loss_exponent
        self._estimated_transmitted_power_variance = result.transmitted_power_variance
        self._estimated_path_loss_exponent_variance = result.path_loss_exponent_variance
        self._chi_sq = (self._chi_sq or 0.0) + result.chi_sq
        if self._estimated_position_covariance is not None and result.covariance is not None:
            d = self._dims
            n = d + self._num_power_params
            covariance = np.zeros((n, n))
            covariance[:d, :d] = self._estimated_position_covariance
            covariance[d:, d:] = result.covariance
            self._covariance = covariance


def _expand_inliers(data: InliersData, indices: List[int], num_readings: int) -> InliersData:
    """Map stage inliers back onto the full reading list."""
    inliers = np.zeros(num_readings, dtype=bool)
    residuals = np.full(num_readings, np.inf)
    inliers[indices] = data.inliers
    residuals[indices] = data.residuals
    return InliersData(inliers, residuals, data.score, data.threshold)
