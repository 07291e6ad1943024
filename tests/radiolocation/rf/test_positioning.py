"""
Unit tests for minimal-sample radio source positioning.

Tests cover:
    - Inhomogeneous and homogeneous linear lateration in 2D and 3D
    - Scaled lateration from relative distances
    - Linear power model fit at a known position
    - Candidate solving from ranging, RSSI and mixed subsets
    - Median transmitted power at a known position
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from radiolocation.estimators.base import ModelUnsolvable
from radiolocation.rf.measurement_models import expected_rss
from radiolocation.rf.positioning import (
    Candidate,
    fit_power_model,
    linear_lateration,
    median_transmitted_power,
    reading_residuals,
    scaled_lateration,
    solve_minimal_sample,
)
from radiolocation.rf.readings import RadioSource, Reading, ReadingMode

SOURCE = RadioSource("ap-1", frequency=2.4e9)
TRUE_POS = np.array([10.0, 10.0])
TRUE_POWER = -20.0

RECEIVERS_2D = np.array(
    [[0.0, 0.0], [20.0, 0.0], [0.0, 20.0], [20.0, 25.0], [5.0, 14.0], [13.0, 3.0]]
)
RECEIVERS_3D = np.array(
    [
        [0.0, 0.0, 0.0],
        [20.0, 0.0, 1.0],
        [0.0, 20.0, 2.0],
        [20.0, 20.0, 8.0],
        [3.0, 11.0, 5.0],
        [15.0, 4.0, 3.0],
        [7.0, 17.0, 6.0],
    ]
)


def make_readings(receivers, source_pos, power=TRUE_POWER, path_loss=2.0,
                  with_distance=True, with_rssi=True):
    readings = []
    for p in receivers:
        distance = float(np.linalg.norm(p - source_pos)) if with_distance else None
        rssi = (
            expected_rss(source_pos, p, power, path_loss, SOURCE.frequency)
            if with_rssi else None
        )
        readings.append(Reading(SOURCE, p, distance=distance, rssi=rssi))
    return readings


class TestLinearLateration:
    """Test linear lateration."""

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_minimal_2d(self, homogeneous):
        receivers = RECEIVERS_2D[:3]
        distances = np.linalg.norm(receivers - TRUE_POS, axis=1)
        position = linear_lateration(receivers, distances, homogeneous)
        assert_allclose(position, TRUE_POS, atol=1e-6)

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_overdetermined_3d(self, homogeneous):
        true_pos = np.array([8.0, 9.0, 2.0])
        distances = np.linalg.norm(RECEIVERS_3D - true_pos, axis=1)
        position = linear_lateration(RECEIVERS_3D, distances, homogeneous)
        assert_allclose(position, true_pos, atol=1e-6)

    def test_too_few_readings(self):
        with pytest.raises(ModelUnsolvable):
            linear_lateration(RECEIVERS_2D[:2], np.array([1.0, 2.0]))

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_collinear_receivers(self, homogeneous):
        receivers = np.array([[0.0, 0.0], [5.0, 0.0], [10.0, 0.0]])
        distances = np.linalg.norm(receivers - TRUE_POS, axis=1)
        with pytest.raises(ModelUnsolvable):
            linear_lateration(receivers, distances, homogeneous)

    def test_distance_count_mismatch(self):
        with pytest.raises(ValueError):
            linear_lateration(RECEIVERS_2D[:3], np.array([1.0, 2.0]))


class TestScaledLateration:
    """Test lateration from distances known up to a scale."""

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_recovers_position_and_scale(self, homogeneous):
        receivers = RECEIVERS_2D[:4]
        distances = np.linalg.norm(receivers - TRUE_POS, axis=1)
        position, scale = scaled_lateration(receivers, distances / 2.5, homogeneous)
        assert_allclose(position, TRUE_POS, atol=1e-6)
        assert scale == pytest.approx(2.5, rel=1e-6)

    def test_with_ranging_rows(self):
        distances = np.linalg.norm(RECEIVERS_2D - TRUE_POS, axis=1)
        position, scale = scaled_lateration(
            RECEIVERS_2D[:2],
            distances[:2] / 4.0,
            ranging_positions=RECEIVERS_2D[2:4],
            ranging_distances=distances[2:4],
        )
        assert_allclose(position, TRUE_POS, atol=1e-6)
        assert scale == pytest.approx(4.0, rel=1e-6)

    def test_too_few_equations(self):
        distances = np.linalg.norm(RECEIVERS_2D[:3] - TRUE_POS, axis=1)
        with pytest.raises(ModelUnsolvable):
            scaled_lateration(RECEIVERS_2D[:3], distances)

    def test_invalid_scales(self):
        with pytest.raises(ModelUnsolvable):
            scaled_lateration(RECEIVERS_2D[:4], np.zeros(4))


class TestFitPowerModel:
    """Test the linear fit of transmitted power and path loss."""

    def test_power_only(self):
        readings = make_readings(RECEIVERS_2D, TRUE_POS, with_distance=False)
        power, path_loss = fit_power_model(readings, TRUE_POS, None, 2.0, True, False)
        assert power == pytest.approx(TRUE_POWER)
        assert path_loss == 2.0

    def test_power_and_path_loss(self):
        readings = make_readings(
            RECEIVERS_2D, TRUE_POS, path_loss=2.8, with_distance=False
        )
        power, path_loss = fit_power_model(readings, TRUE_POS, None, 2.0, True, True)
        assert power == pytest.approx(TRUE_POWER)
        assert path_loss == pytest.approx(2.8)

    def test_nothing_enabled_returns_inputs(self):
        readings = make_readings(RECEIVERS_2D, TRUE_POS, with_distance=False)
        assert fit_power_model(readings, TRUE_POS, -33.0, 2.1, False, False) == (-33.0, 2.1)


class TestSolveMinimalSample:
    """Test candidate solving from subsets."""

    def test_ranging_subset(self):
        readings = make_readings(RECEIVERS_2D[:3], TRUE_POS, with_rssi=False)
        candidate = solve_minimal_sample(readings, ReadingMode.RANGING)
        assert_allclose(candidate.position, TRUE_POS, atol=1e-6)
        assert candidate.transmitted_power_dbm is None

    def test_mixed_subset_estimates_power(self):
        readings = make_readings(RECEIVERS_2D[:4], TRUE_POS)
        candidate = solve_minimal_sample(
            readings, ReadingMode.RANGING_AND_RSSI, transmitted_power_enabled=True
        )
        assert_allclose(candidate.position, TRUE_POS, atol=1e-6)
        assert candidate.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=1e-6)

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_rssi_subset_estimates_power(self, homogeneous):
        readings = make_readings(RECEIVERS_2D[:4], TRUE_POS, with_distance=False)
        candidate = solve_minimal_sample(
            readings,
            ReadingMode.RSSI,
            transmitted_power_enabled=True,
            homogeneous=homogeneous,
        )
        assert_allclose(candidate.position, TRUE_POS, atol=1e-6)
        assert candidate.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=1e-6)

    def test_rssi_subset_with_known_power(self):
        readings = make_readings(RECEIVERS_2D[:3], TRUE_POS, with_distance=False)
        candidate = solve_minimal_sample(
            readings,
            ReadingMode.RSSI,
            transmitted_power_enabled=False,
            initial_transmitted_power_dbm=TRUE_POWER,
        )
        assert_allclose(candidate.position, TRUE_POS, atol=1e-6)
        assert candidate.transmitted_power_dbm == TRUE_POWER

    def test_fixed_power_requires_value(self):
        readings = make_readings(RECEIVERS_2D[:3], TRUE_POS, with_distance=False)
        with pytest.raises(ValueError):
            solve_minimal_sample(readings, ReadingMode.RSSI, transmitted_power_enabled=False)

    def test_mixed_mode_ranging_subset_leaves_power_unknown(self):
        readings = make_readings(RECEIVERS_2D[:3], TRUE_POS, with_rssi=False)
        candidate = solve_minimal_sample(
            readings,
            ReadingMode.RANGING_AND_RSSI,
            transmitted_power_enabled=True,
            initial_transmitted_power_dbm=-30.0,
        )
        assert_allclose(candidate.position, TRUE_POS, atol=1e-6)
        assert candidate.transmitted_power_dbm is None

    def test_mixed_mode_ranging_subset_keeps_fixed_power(self):
        readings = make_readings(RECEIVERS_2D[:3], TRUE_POS, with_rssi=False)
        candidate = solve_minimal_sample(
            readings,
            ReadingMode.RANGING_AND_RSSI,
            initial_transmitted_power_dbm=TRUE_POWER,
        )
        assert candidate.transmitted_power_dbm == TRUE_POWER

    def test_3d_ranging_subset(self):
        true_pos = np.array([8.0, 9.0, 2.0])
        readings = make_readings(RECEIVERS_3D[:4], true_pos, with_rssi=False)
        candidate = solve_minimal_sample(readings, ReadingMode.RANGING)
        assert_allclose(candidate.position, true_pos, atol=1e-6)

    def test_insufficient_ranging(self):
        readings = make_readings(RECEIVERS_2D[:2], TRUE_POS, with_rssi=False)
        with pytest.raises(ModelUnsolvable):
            solve_minimal_sample(readings, ReadingMode.RANGING)

    def test_empty_subset(self):
        with pytest.raises(ModelUnsolvable):
            solve_minimal_sample([], ReadingMode.RANGING)


class TestReadingResiduals:
    """Test per-reading residuals."""

    def test_exact_candidate_has_zero_residuals(self):
        readings = make_readings(RECEIVERS_2D, TRUE_POS)
        candidate = Candidate(TRUE_POS, TRUE_POWER, 2.0)
        assert_allclose(reading_residuals(readings, candidate), 0.0, atol=1e-9)

    def test_mixed_residual_is_sum_of_channels(self):
        reading = Reading(SOURCE, np.array([0.0, 0.0]), distance=15.0, rssi=-50.0)
        candidate = Candidate(TRUE_POS, TRUE_POWER, 2.0)
        distance_error = abs(15.0 - np.hypot(10.0, 10.0))
        rssi_error = abs(
            -50.0 - expected_rss(TRUE_POS, reading.position, TRUE_POWER, 2.0, SOURCE.frequency)
        )
        residuals = reading_residuals([reading], candidate)
        assert residuals[0] == pytest.approx(distance_error + rssi_error)

        ranging_only = reading_residuals([reading], candidate, ReadingMode.RANGING)
        assert ranging_only[0] == pytest.approx(distance_error)

    def test_rssi_unexplained_without_candidate_power(self):
        reading = Reading(SOURCE, np.array([0.0, 0.0]), distance=15.0, rssi=-50.0)
        candidate = Candidate(TRUE_POS, None, 2.0)
        assert reading_residuals([reading], candidate)[0] == np.inf
        # The ranging channel alone is still scored
        ranging_only = reading_residuals([reading], candidate, ReadingMode.RANGING)
        assert ranging_only[0] == pytest.approx(abs(15.0 - np.hypot(10.0, 10.0)))

    def test_ranging_only_reading_without_candidate_power(self):
        reading = Reading(SOURCE, np.array([0.0, 0.0]), distance=15.0)
        candidate = Candidate(TRUE_POS, None, 2.0)
        residuals = reading_residuals([reading], candidate)
        assert residuals[0] == pytest.approx(abs(15.0 - np.hypot(10.0, 10.0)))


class TestMedianTransmittedPower:
    """Test the robust transmitted power at a known position."""

    def test_exact_readings(self):
        readings = make_readings(RECEIVERS_2D, TRUE_POS, with_distance=False)
        assert median_transmitted_power(readings, TRUE_POS, 2.0) == pytest.approx(TRUE_POWER)

    def test_minority_of_outliers_ignored(self):
        readings = make_readings(RECEIVERS_2D, TRUE_POS, with_distance=False)
        for i in (0, 3):
            readings[i] = Reading(SOURCE, readings[i].position, rssi=readings[i].rssi + 25.0)
        assert median_transmitted_power(readings, TRUE_POS, 2.0) == pytest.approx(TRUE_POWER)

    def test_readings_without_rssi_ignored(self):
        readings = make_readings(RECEIVERS_2D[:3], TRUE_POS, with_rssi=False)
        readings += make_readings(RECEIVERS_2D[3:], TRUE_POS, with_distance=False)
        assert median_transmitted_power(readings, TRUE_POS, 2.0) == pytest.approx(TRUE_POWER)

    def test_no_rssi(self):
        readings = make_readings(RECEIVERS_2D, TRUE_POS, with_rssi=False)
        assert median_transmitted_power(readings, TRUE_POS, 2.0) is None
