"""
Unit tests for the sample-consensus engine.

The engine is exercised on 2D line fitting, y = a·x + b, which is
independent of the radio source model.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from radiolocation.estimators.base import ModelUnsolvable, RobustEstimationFailed
from radiolocation.estimators.sample_consensus import (
    MAD_SCALE,
    InliersData,
    ProsacSampler,
    RobustMethod,
    SampleConsensus,
    UniformSampler,
    consensus_score,
    median_score,
    msac_score,
    required_iterations,
    weighted_median,
)

TRUE_LINE = (2.0, -1.0)


def make_points(num_points=40, outlier_fraction=0.3, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.uniform(-10.0, 10.0, num_points)
    y = TRUE_LINE[0] * x + TRUE_LINE[1]
    outliers = np.zeros(num_points, dtype=bool)
    outliers[: int(outlier_fraction * num_points)] = True
    rng.shuffle(outliers)
    y[outliers] += rng.uniform(5.0, 20.0, outliers.sum()) * rng.choice([-1, 1], outliers.sum())
    return np.column_stack([x, y]), outliers


def line_engine(points, method, quality_scores=None, seed=1, **kwargs):
    def solve(indices):
        (x1, y1), (x2, y2) = points[indices]
        if abs(x2 - x1) < 1e-12:
            raise ModelUnsolvable("vertical line")
        a = (y2 - y1) / (x2 - x1)
        return a, y1 - a * x1

    def residuals(model):
        a, b = model
        return np.abs(points[:, 1] - (a * points[:, 0] + b))

    return SampleConsensus(
        num_samples=len(points),
        subset_size=2,
        solve=solve,
        residuals=residuals,
        method=method,
        quality_scores=quality_scores,
        rng=np.random.default_rng(seed),
        **kwargs,
    )


class TestScores:
    """Test scoring functions."""

    def test_consensus_score(self):
        residuals = np.array([0.0, 0.05, 0.5, 2.0])
        data = consensus_score(residuals, 0.1)
        assert data.score == 2.0
        assert data.num_inliers == 2
        assert data.inlier_ratio == pytest.approx(0.5)

        weighted = consensus_score(residuals, 0.1, np.array([0.5, 3.0, 10.0, 10.0]))
        assert weighted.score == pytest.approx(3.5)

    def test_weighted_median(self):
        values = np.array([1.0, 2.0, 3.0])
        assert weighted_median(values) == 2.0
        assert weighted_median(values, np.array([1.0, 1.0, 5.0])) == 3.0
        assert weighted_median(values, np.array([5.0, 1.0, 1.0])) == 1.0
        assert weighted_median(values, np.zeros(3)) == 2.0

    def test_median_score(self):
        residuals = np.array([0.1, 0.2, 0.3, 0.4, 10.0, 20.0, 0.15, 0.25])
        data = median_score(residuals, stop_threshold=1e-4, subset_size=3)
        median = np.median(residuals)
        sigma = MAD_SCALE * (1.0 + 5.0 / (8 - 3)) * median
        assert data.score == pytest.approx(-median)
        assert data.threshold == pytest.approx(1.5 * sigma)
        assert_array_equal(data.inliers, residuals <= 1.5 * sigma)

    def test_median_score_threshold_floor(self):
        data = median_score(np.zeros(5), stop_threshold=1e-3, subset_size=2)
        assert data.threshold == 1e-3
        assert data.num_inliers == 5

    def test_infinite_residuals_are_never_inliers(self):
        residuals = np.array([0.0, np.inf, np.inf, np.inf, 0.1])
        data = median_score(residuals, stop_threshold=1e-4, subset_size=2)
        assert data.threshold == np.inf
        assert_array_equal(data.inliers, [True, False, False, False, True])

        assert consensus_score(residuals, 0.5).num_inliers == 2
        assert msac_score(residuals, 1.0).score == pytest.approx(-(0.01 + 3.0))

    def test_msac_score(self):
        residuals = np.array([0.0, 0.5, 3.0])
        data = msac_score(residuals, 1.0)
        assert data.score == pytest.approx(-(0.25 + 1.0))
        assert data.num_inliers == 2

    def test_inliers_data_empty(self):
        data = InliersData(np.zeros(0, dtype=bool), np.zeros(0), 0.0, 1.0)
        assert data.inlier_ratio == 0.0


class TestRequiredIterations:
    """Test the adaptive trial count."""

    def test_reference_value(self):
        assert required_iterations(0.5, 3, 0.99) == 35.0

    def test_all_inliers(self):
        assert required_iterations(1.0, 3, 0.99) == 1.0

    def test_no_inliers(self):
        assert required_iterations(0.0, 3, 0.99) == float("inf")

    def test_decreases_with_inlier_ratio(self):
        assert required_iterations(0.8, 4, 0.99) < required_iterations(0.6, 4, 0.99)


class TestSamplers:
    """Test subset samplers."""

    def test_uniform_sampler(self):
        sampler = UniformSampler(10, 4, np.random.default_rng(0))
        for _ in range(20):
            subset = sampler.sample()
            assert len(set(subset)) == 4
            assert np.all((subset >= 0) & (subset < 10))

    def test_prosac_starts_with_best_ranked(self):
        quality = np.arange(20, dtype=float)
        sampler = ProsacSampler(quality, 3, 1000, np.random.default_rng(0))
        best = set(np.argsort(-quality)[:4])
        first = sampler.sample()
        assert set(first) <= best
        assert len(set(first)) == 3

    def test_prosac_eventually_reaches_all_samples(self):
        quality = np.arange(15, dtype=float)
        sampler = ProsacSampler(quality, 2, 200, np.random.default_rng(0))
        seen = set()
        for _ in range(2000):
            subset = sampler.sample()
            assert len(set(subset)) == 2
            seen.update(subset.tolist())
        assert seen == set(range(15))


class TestSampleConsensus:
    """Test the consensus loop."""

    @pytest.mark.parametrize("method", list(RobustMethod))
    def test_recovers_line_with_outliers(self, method):
        points, outliers = make_points()
        quality = np.where(outliers, 0.1, 1.0)
        engine = line_engine(points, method, quality_scores=quality, threshold=0.01)
        model, data = engine.run()
        assert_allclose(model, TRUE_LINE, atol=1e-8)
        assert_array_equal(data.inliers, ~outliers)
        assert 0 < engine.iterations <= engine.max_iterations

    def test_median_methods_stop_early(self):
        points, _ = make_points(outlier_fraction=0.0)
        engine = line_engine(points, RobustMethod.LMEDS)
        engine.run()
        assert engine.iterations == 1

    def test_skips_unsolvable_subsets(self):
        points, _ = make_points(outlier_fraction=0.0)
        points[:20, 0] = 0.0
        points[:20, 1] = TRUE_LINE[1]
        engine = line_engine(points, RobustMethod.RANSAC, threshold=0.01)
        model, data = engine.run()
        assert_allclose(model, TRUE_LINE, atol=1e-8)

    def test_all_unsolvable_raises(self):
        points = np.column_stack([np.zeros(10), np.arange(10.0)])
        engine = line_engine(points, RobustMethod.RANSAC, max_iterations=25)
        with pytest.raises(RobustEstimationFailed):
            engine.run()
        assert engine.iterations == 25

    def test_first_best_model_wins_ties(self):
        solved = []

        def solve(indices):
            solved.append(tuple(indices))
            return len(solved)

        engine = SampleConsensus(
            num_samples=10,
            subset_size=2,
            solve=solve,
            residuals=lambda model: np.full(10, 0.5),
            method=RobustMethod.RANSAC,
            threshold=0.1,
            max_iterations=10,
            rng=np.random.default_rng(0),
        )
        model, data = engine.run()
        assert model == 1
        assert data.num_inliers == 0
        assert len(solved) == 10

    def test_callbacks(self):
        points, outliers = make_points()
        iterations = []
        progress = []
        engine = line_engine(
            points,
            RobustMethod.RANSAC,
            threshold=0.01,
            progress_delta=0.1,
            on_iteration=iterations.append,
            on_progress=progress.append,
        )
        engine.run()
        assert iterations == list(range(engine.iterations))
        assert all(0.0 < p <= 1.0 for p in progress)
        assert progress == sorted(progress)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"subset_size": 0},
            {"subset_size": 11},
            {"confidence": 1.0},
            {"max_iterations": 0},
            {"progress_delta": 1.5},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        config = dict(
            num_samples=10,
            subset_size=2,
            solve=lambda indices: None,
            residuals=lambda model: np.zeros(10),
        )
        config.update(kwargs)
        with pytest.raises(ValueError):
            SampleConsensus(**config)

    @pytest.mark.parametrize("method", [RobustMethod.PROSAC, RobustMethod.PROMEDS])
    def test_quality_scores_required(self, method):
        points, _ = make_points()
        with pytest.raises(ValueError):
            line_engine(points, method)
        with pytest.raises(ValueError):
            line_engine(points, method, quality_scores=np.ones(5))
