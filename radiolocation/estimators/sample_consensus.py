"""
Sample-consensus robust estimation.

A generic engine that repeatedly draws small subsets of samples, solves a
candidate model from each subset, scores the candidate against every sample
and keeps the best-scoring candidate. Five scoring/sampling variants are
supported:

- RANSAC: count of samples whose residual is below a threshold.
- LMedS: median of the residuals; the inlier threshold is derived from the
  median through a robust standard deviation estimate.
- MSAC: sum of squared residuals saturated at the squared threshold.
- PROSAC: RANSAC scoring weighted by quality, with progressive sampling
  that draws from the highest-quality samples first.
- PROMedS: LMedS with a quality-weighted median and progressive sampling.

The number of trials adapts to the best inlier ratio w found so far:

    N = log(1 - confidence) / log(1 - w^k)

where k is the subset size, capped at max_iterations.

Example:
    >>> engine = SampleConsensus(
    ...     num_samples=len(points),
    ...     subset_size=2,
    ...     solve=fit_line,
    ...     residuals=line_residuals,
    ...     method=RobustMethod.RANSAC,
    ...     threshold=0.1,
    ... )
    >>> model, inliers_data = engine.run()
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, Tuple, TypeVar

import numpy as np

from radiolocation.estimators.base import ModelUnsolvable, RobustEstimationFailed

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_THRESHOLD = 0.1
DEFAULT_STOP_THRESHOLD = 1e-4

# Consistency constant of the median absolute deviation for Gaussian noise
MAD_SCALE = 1.4826
# Inlier threshold of median-based scoring, in robust standard deviations
MEDIAN_INLIER_FACTOR = 1.5

Model = TypeVar("Model")


class RobustMethod(Enum):
    """Sample-consensus variant.

    Attributes:
        RANSAC: Consensus counting.
        LMEDS: Least median of squares.
        MSAC: M-estimator sample consensus (saturated residual sum).
        PROSAC: Progressive sample consensus driven by quality scores.
        PROMEDS: Progressive least median driven by quality scores.
    """

    RANSAC = "ransac"
    LMEDS = "lmeds"
    MSAC = "msac"
    PROSAC = "prosac"
    PROMEDS = "promeds"

    @property
    def quality_driven(self) -> bool:
        """True for variants that require quality scores."""
        return self in (RobustMethod.PROSAC, RobustMethod.PROMEDS)

    @property
    def median_based(self) -> bool:
        """True for variants scored by the median residual."""
        return self in (RobustMethod.LMEDS, RobustMethod.PROMEDS)


@dataclass
class InliersData:
    """
    Score of a candidate model over all samples.

    Attributes:
        inliers: Boolean inlier mask, shape (N,).
        residuals: Absolute residual of every sample, shape (N,).
        score: Ranking score; higher is better. Consensus variants use the
            (weighted) inlier count, MSAC the negated saturated cost and
            median variants the negated (weighted) median residual.
        threshold: Residual threshold that defined the inliers.
    """

    inliers: np.ndarray
    residuals: np.ndarray
    score: float
    threshold: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def inlier_ratio(self) -> float:
        return self.num_inliers / len(self.inliers) if len(self.inliers) else 0.0


# =============================================================================
# Scoring
# =============================================================================
def consensus_score(
    residuals: np.ndarray,
    threshold: float,
    weights: Optional[np.ndarray] = None,
) -> InliersData:
    """
    Consensus counting (RANSAC), optionally weighted by quality (PROSAC).

    Args:
        residuals: Absolute residuals, shape (N,).
        threshold: Inlier threshold.
        weights: Optional per-sample weights.

    Returns:
        InliersData whose score is the (weighted) inlier count.
    """
    inliers = residuals <= threshold
    if weights is None:
        score = float(np.count_nonzero(inliers))
    else:
        score = float(np.sum(weights[inliers]))
    return InliersData(inliers, residuals, score, threshold)


def weighted_median(values: np.ndarray, weights: Optional[np.ndarray] = None) -> float:
    """
    Weighted median: smallest value whose cumulative weight reaches half.

    Example:
        >>> weighted_median(np.array([1.0, 2.0, 3.0]), np.array([1.0, 1.0, 5.0]))
        3.0
    """
    if weights is None:
        return float(np.median(values))
    order = np.argsort(values, kind="stable")
    cumulative = np.cumsum(weights[order])
    total = cumulative[-1]
    if total <= 0.0:
        return float(np.median(values))
    index = int(np.searchsorted(cumulative, 0.5 * total))
    return float(values[order][min(index, len(values) - 1)])


def median_score(
    residuals: np.ndarray,
    stop_threshold: float,
    subset_size: int,
    weights: Optional[np.ndarray] = None,
) -> InliersData:
    """
    Least median scoring (LMedS), optionally weighted by quality (PROMedS).

    The inlier threshold is derived from a robust standard deviation:

        σ = 1.4826·(1 + 5 / (N - k))·median
        threshold = max(1.5·σ, stop_threshold)

    Args:
        residuals: Absolute residuals, shape (N,).
        stop_threshold: Lower bound of the inlier threshold.
        subset_size: Samples per subset k.
        weights: Optional per-sample weights.

    Returns:
        InliersData whose score is the negated median residual.
    """
    median = weighted_median(residuals, weights)
    n = len(residuals)
    correction = 1.0 + 5.0 / (n - subset_size) if n > subset_size else 1.0
    sigma = MAD_SCALE * correction * median
    threshold = max(MEDIAN_INLIER_FACTOR * sigma, stop_threshold)
    inliers = np.isfinite(residuals) & (residuals <= threshold)
    return InliersData(inliers, residuals, -median, threshold)


def msac_score(residuals: np.ndarray, threshold: float) -> InliersData:
    """
    Saturated squared-residual scoring (MSAC).

        cost = Σ min(r_i², threshold²)

    Returns:
        InliersData whose score is the negated cost.
    """
    cost = float(np.sum(np.minimum(residuals ** 2, threshold ** 2)))
    inliers = residuals <= threshold
    return InliersData(inliers, residuals, -cost, threshold)


def required_iterations(inlier_ratio: float, subset_size: int, confidence: float) -> float:
    """
    Trials needed to draw an all-inlier subset with the given confidence.

    Args:
        inlier_ratio: Fraction of inliers w in [0, 1].
        subset_size: Samples per subset k.
        confidence: Desired probability in (0, 1).

    Returns:
        Number of trials (may be infinite).

    Example:
        >>> required_iterations(0.5, 3, 0.99)
        35.0
    """
    if inlier_ratio >= 1.0:
        return 1.0
    all_inliers = inlier_ratio ** subset_size
    if all_inliers <= 0.0:
        return float("inf")
    denominator = np.log1p(-all_inliers)
    if denominator == 0.0:
        return float("inf")
    return float(np.ceil(np.log(1.0 - confidence) / denominator))


# =============================================================================
# Sampling
# =============================================================================
class UniformSampler:
    """Draws subsets uniformly at random without replacement."""

    def __init__(self, num_samples: int, subset_size: int, rng: np.random.Generator):
        self.num_samples = num_samples
        self.subset_size = subset_size
        self.rng = rng

    def sample(self) -> np.ndarray:
        return self.rng.choice(self.num_samples, self.subset_size, replace=False)


class ProsacSampler:
    """
    Progressive sampler over samples sorted by decreasing quality.

    Subsets are first drawn from the top-ranked samples; the pool grows
    following the PROSAC growth function so that after max_iterations trials
    the draws are equivalent to uniform sampling over all samples.

    Reference:
        O. Chum and J. Matas, "Matching with PROSAC - Progressive Sample
        Consensus", CVPR 2005.
    """

    def __init__(
        self,
        quality_scores: np.ndarray,
        subset_size: int,
        max_iterations: int,
        rng: np.random.Generator,
    ):
        self.order = np.argsort(-np.asarray(quality_scores, dtype=float), kind="stable")
        self.num_samples = len(self.order)
        self.subset_size = subset_size
        self.rng = rng

        k = subset_size
        self._pool = k
        self._trial = 0
        # Expected number of all-top-k draws among max_iterations uniform draws
        self._tn = float(max_iterations)
        for i in range(k):
            self._tn *= (k - i) / (self.num_samples - i)
        self._tn_prime = 1

    def sample(self) -> np.ndarray:
        k = self.subset_size
        self._trial += 1

        if self._trial == self._tn_prime and self._pool < self.num_samples:
            tn_next = self._tn * (self._pool + 1) / (self._pool + 1 - k)
            self._tn_prime += int(np.ceil(tn_next - self._tn))
            self._tn = tn_next
            self._pool += 1

        if self._tn_prime < self._trial:
            ranks = self.rng.choice(self._pool, k, replace=False)
        else:
            ranks = np.append(
                self.rng.choice(self._pool - 1, k - 1, replace=False), self._pool - 1
            )
        return self.order[ranks]


# =============================================================================
# Engine
# =============================================================================
class SampleConsensus(Generic[Model]):
    """
    Sample-consensus engine.

    Args:
        num_samples: Total number of samples N.
        subset_size: Samples per subset k, k <= N.
        solve: Callable mapping subset indices to a candidate model. Raises
            ModelUnsolvable when the subset is degenerate.
        residuals: Callable mapping a model to absolute residuals, shape (N,).
        method: Scoring and sampling variant.
        threshold: Inlier threshold of RANSAC, MSAC and PROSAC.
        stop_threshold: Early-stop median residual and inlier threshold floor
            of LMedS and PROMedS.
        confidence: Probability of drawing an all-inlier subset, in (0, 1).
        max_iterations: Upper bound on the number of trials.
        progress_delta: Minimum progress advance between progress callbacks.
        quality_scores: Per-sample quality, required for PROSAC and PROMedS.
        rng: Random generator.
        on_iteration: Optional callback receiving the 0-based trial index
            after every trial.
        on_progress: Optional callback receiving the completion fraction.
    """

    def __init__(
        self,
        num_samples: int,
        subset_size: int,
        solve: Callable[[np.ndarray], Model],
        residuals: Callable[[Model], np.ndarray],
        method: RobustMethod = RobustMethod.RANSAC,
        threshold: float = DEFAULT_THRESHOLD,
        stop_threshold: float = DEFAULT_STOP_THRESHOLD,
        confidence: float = DEFAULT_CONFIDENCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        quality_scores: Optional[np.ndarray] = None,
        rng: Optional[np.random.Generator] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        if subset_size < 1 or subset_size > num_samples:
            raise ValueError(
                f"subset_size must be in [1, {num_samples}], got {subset_size}"
            )
        if not 0.0 < confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {confidence}")
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        if not 0.0 <= progress_delta <= 1.0:
            raise ValueError(f"progress_delta must be in [0, 1], got {progress_delta}")

        if method.quality_driven:
            if quality_scores is None:
                raise ValueError(f"{method.name} requires quality scores")
            quality_scores = np.asarray(quality_scores, dtype=float)
            if quality_scores.shape != (num_samples,):
                raise ValueError(
                    f"Expected {num_samples} quality scores, "
                    f"got {quality_scores.shape[0] if quality_scores.ndim else 0}"
                )

        self.num_samples = num_samples
        self.subset_size = subset_size
        self.solve = solve
        self.residuals = residuals
        self.method = method
        self.threshold = threshold
        self.stop_threshold = stop_threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.quality_scores = quality_scores
        self.rng = rng if rng is not None else np.random.default_rng()
        self.on_iteration = on_iteration
        self.on_progress = on_progress

        self.iterations = 0

    def score(self, residuals: np.ndarray) -> InliersData:
        """Score residuals with the configured variant."""
        if self.method is RobustMethod.RANSAC:
            return consensus_score(residuals, self.threshold)
        if self.method is RobustMethod.PROSAC:
            return consensus_score(residuals, self.threshold, self.quality_scores)
        if self.method is RobustMethod.MSAC:
            return msac_score(residuals, self.threshold)
        if self.method is RobustMethod.LMEDS:
            return median_score(residuals, self.stop_threshold, self.subset_size)
        return median_score(
            residuals, self.stop_threshold, self.subset_size, self.quality_scores
        )

    def _sampler(self):
        if self.method.quality_driven:
            return ProsacSampler(
                self.quality_scores, self.subset_size, self.max_iterations, self.rng
            )
        return UniformSampler(self.num_samples, self.subset_size, self.rng)

    def run(self) -> Tuple[Model, InliersData]:
        """
        Run the consensus loop.

        The first candidate reaching the best score is kept; a later
        candidate replaces it only when strictly better.

        Returns:
            Tuple of (best model, its InliersData).

        Raises:
            RobustEstimationFailed: If no trial produced a model.
        """
        sampler = self._sampler()

        best_model = None
        best_data: Optional[InliersData] = None
        num_trials = float(self.max_iterations)
        reported_progress = 0.0
        iteration = 0

        while iteration < num_trials:
            indices = sampler.sample()
            stop = False
            try:
                model = self.solve(indices)
            except ModelUnsolvable as e:
                logger.debug("Trial %d skipped: %s", iteration, e)
            else:
                data = self.score(np.asarray(self.residuals(model), dtype=float))
                if best_data is None or data.score > best_data.score:
                    best_model, best_data = model, data
                    num_trials = min(
                        float(self.max_iterations),
                        required_iterations(
                            data.inlier_ratio, self.subset_size, self.confidence
                        ),
                    )
                    stop = (
                        self.method.median_based
                        and -data.score <= self.stop_threshold
                    )

            if self.on_iteration is not None:
                self.on_iteration(iteration)
            iteration += 1

            progress = min(1.0, iteration / num_trials)
            if self.on_progress is not None and progress - reported_progress > self.progress_delta:
                self.on_progress(progress)
                reported_progress = progress

            if stop:
                break

        self.iterations = iteration

        if best_model is None:
            raise RobustEstimationFailed(
                f"No valid model found after {iteration} trials"
            )

        logger.debug(
            "%s finished after %d trials with %d/%d inliers",
            self.method.name,
            iteration,
            best_data.num_inliers,
            self.num_samples,
        )
        return best_model, best_data
