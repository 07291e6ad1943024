"""
Unit tests for weighted radio source refinement.

Tests cover:
    - Convergence for every combination of estimated parameters
    - Covariance shape, symmetry and scaling with reading standard deviations
    - Receiver position covariance propagation
    - Failure reporting, including singular normal equations without covariance
    - Power model refinement at a fixed position
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from radiolocation.estimators.base import RefinementFailed
from radiolocation.rf.measurement_models import expected_rss
from radiolocation.rf.readings import RadioSource, Reading, ReadingMode
from radiolocation.rf.refinement import (
    RadioSourceModel,
    refine_power_model,
    refine_radio_source,
)

SOURCE = RadioSource("ap-1", frequency=2.4e9)
TRUE_POS = np.array([10.0, 10.0])
TRUE_POWER = -20.0
RECEIVERS = np.array(
    [[0.0, 0.0], [20.0, 0.0], [0.0, 20.0], [20.0, 25.0], [5.0, 14.0],
     [13.0, 3.0], [17.0, 11.0], [2.0, 7.0]]
)


def make_readings(path_loss=2.0, with_distance=True, with_rssi=True,
                  distance_std=None, rssi_std=None, position_covariance=None):
    readings = []
    for p in RECEIVERS:
        readings.append(
            Reading(
                SOURCE,
                p,
                distance=float(np.linalg.norm(p - TRUE_POS)) if with_distance else None,
                rssi=(
                    expected_rss(TRUE_POS, p, TRUE_POWER, path_loss, SOURCE.frequency)
                    if with_rssi else None
                ),
                distance_std=distance_std if with_distance else None,
                rssi_std=rssi_std if with_rssi else None,
                position_covariance=position_covariance,
            )
        )
    return readings


class TestRadioSourceModel:
    """Test the stacked observation model."""

    def test_rows_follow_mode(self):
        readings = make_readings()
        assert RadioSourceModel(readings, ReadingMode.RANGING).num_rows == 8
        assert RadioSourceModel(
            readings, ReadingMode.RSSI, transmitted_power_dbm=TRUE_POWER
        ).num_rows == 8
        assert RadioSourceModel(
            readings, ReadingMode.RANGING_AND_RSSI, transmitted_power_dbm=TRUE_POWER
        ).num_rows == 16

    def test_rssi_params_disabled_without_rssi_rows(self):
        model = RadioSourceModel(
            make_readings(), ReadingMode.RANGING,
            transmitted_power_enabled=True, path_loss_enabled=True,
        )
        assert model.num_params == 2

    def test_power_required_for_rssi_rows(self):
        with pytest.raises(ValueError):
            RadioSourceModel(make_readings(), ReadingMode.RSSI)

    def test_pack_unpack(self):
        model = RadioSourceModel(
            make_readings(), transmitted_power_enabled=True, path_loss_enabled=True,
            transmitted_power_dbm=-30.0, path_loss_exponent=2.5,
        )
        theta = model.pack(TRUE_POS)
        assert_allclose(theta, [10.0, 10.0, -30.0, 2.5])
        position, power, path_loss = model.unpack(np.array([1.0, 2.0, -10.0, 3.0]))
        assert_allclose(position, [1.0, 2.0])
        assert (power, path_loss) == (-10.0, 3.0)

    def test_jacobian_matches_finite_differences(self):
        model = RadioSourceModel(
            make_readings(), transmitted_power_enabled=True, path_loss_enabled=True,
            transmitted_power_dbm=TRUE_POWER,
        )
        theta = np.array([8.0, 12.0, -25.0, 2.4])
        numerical = np.zeros((model.num_rows, model.num_params))
        eps = 1e-6
        for j in range(model.num_params):
            step = np.zeros(model.num_params)
            step[j] = eps
            numerical[:, j] = (model.predict(theta + step) - model.predict(theta - step)) / (2 * eps)
        assert_allclose(model.jacobian(theta), numerical, atol=1e-5)

    def test_position_covariance_increases_variance(self):
        plain = RadioSourceModel(make_readings(), ReadingMode.RANGING)
        noisy = RadioSourceModel(
            make_readings(position_covariance=0.25 * np.eye(2)), ReadingMode.RANGING
        )
        theta = plain.pack(TRUE_POS)
        assert_allclose(plain.variances(theta), 1.0)
        # Unit gradient for ranging rows: gᵀΣg = 0.25
        assert_allclose(noisy.variances(theta), 1.25)
        assert_allclose(noisy.variances(theta, use_position_covariances=False), 1.0)


class TestRefineRadioSource:
    """Test refinement convergence and covariance."""

    @pytest.mark.parametrize(
        "mode, power_enabled, path_loss_enabled",
        [
            (ReadingMode.RANGING, False, False),
            (ReadingMode.RSSI, False, False),
            (ReadingMode.RSSI, True, False),
            (ReadingMode.RSSI, True, True),
            (ReadingMode.RANGING_AND_RSSI, True, False),
            (ReadingMode.RANGING_AND_RSSI, True, True),
            (ReadingMode.RANGING_AND_RSSI, False, True),
        ],
    )
    def test_converges_from_perturbed_guess(self, mode, power_enabled, path_loss_enabled):
        readings = make_readings(path_loss=2.3)
        result = refine_radio_source(
            readings,
            TRUE_POS + np.array([1.5, -1.0]),
            transmitted_power_dbm=TRUE_POWER if not power_enabled else TRUE_POWER + 3.0,
            path_loss_exponent=2.3 if not path_loss_enabled else 2.0,
            mode=mode,
            transmitted_power_enabled=power_enabled,
            path_loss_enabled=path_loss_enabled,
        )
        assert_allclose(result.position, TRUE_POS, atol=1e-6)
        if mode.uses_rssi:
            assert result.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=1e-6)
            assert result.path_loss_exponent == pytest.approx(2.3, abs=1e-6)

        n_params = 2 + int(power_enabled and mode.uses_rssi) + int(path_loss_enabled and mode.uses_rssi)
        assert result.covariance.shape == (n_params, n_params)
        assert_allclose(result.covariance, result.covariance.T)
        assert np.all(np.linalg.eigvalsh(result.covariance) > 0)
        assert result.position_covariance.shape == (2, 2)
        assert (result.transmitted_power_variance is not None) == (power_enabled and mode.uses_rssi)
        assert (result.path_loss_exponent_variance is not None) == (path_loss_enabled and mode.uses_rssi)
        assert result.chi_sq == pytest.approx(0.0, abs=1e-9)

    def test_covariance_scales_with_variance(self):
        """Doubling every std quadruples the covariance."""
        unit = refine_radio_source(
            make_readings(with_rssi=False, distance_std=1.0), TRUE_POS,
            mode=ReadingMode.RANGING,
        )
        double = refine_radio_source(
            make_readings(with_rssi=False, distance_std=2.0), TRUE_POS,
            mode=ReadingMode.RANGING,
        )
        assert_allclose(double.covariance, 4.0 * unit.covariance, rtol=1e-8)

    def test_covariance_not_kept(self):
        result = refine_radio_source(
            make_readings(), TRUE_POS, mode=ReadingMode.RANGING, keep_covariance=False
        )
        assert result.covariance is None
        assert result.position_covariance is None

    def test_quality_weights_are_normalized(self):
        readings = make_readings(with_rssi=False)
        base = refine_radio_source(readings, TRUE_POS, mode=ReadingMode.RANGING)
        scaled = refine_radio_source(
            readings, TRUE_POS, mode=ReadingMode.RANGING,
            quality_weights=np.full(len(readings), 7.0),
        )
        assert_allclose(scaled.covariance, base.covariance, rtol=1e-8)

    def test_quality_weights_shape(self):
        with pytest.raises(ValueError):
            refine_radio_source(
                make_readings(), TRUE_POS, mode=ReadingMode.RANGING,
                quality_weights=np.ones(3),
            )

    def test_noisy_readings_stay_close(self):
        rng = np.random.default_rng(0)
        readings = [
            Reading(SOURCE, r.position, distance=r.distance + rng.normal(0, 0.05),
                    distance_std=0.05)
            for r in make_readings(with_rssi=False)
        ]
        result = refine_radio_source(readings, np.array([5.0, 5.0]), mode=ReadingMode.RANGING)
        assert np.linalg.norm(result.position - TRUE_POS) < 0.2
        assert result.chi_sq > 0.0

    def test_too_few_rows(self):
        with pytest.raises(RefinementFailed):
            refine_radio_source(make_readings()[:1], TRUE_POS, mode=ReadingMode.RANGING)

    def test_singular_geometry(self):
        """Two receivers on a line cannot fix a position with covariance."""
        readings = [
            Reading(SOURCE, np.array([0.0, 0.0]), distance=5.0),
            Reading(SOURCE, np.array([10.0, 0.0]), distance=5.0),
        ]
        with pytest.raises(RefinementFailed):
            refine_radio_source(readings, np.array([5.0, 0.0]), mode=ReadingMode.RANGING)

    @pytest.mark.parametrize("keep_covariance", [True, False])
    def test_collinear_receivers_fail_with_or_without_covariance(self, keep_covariance):
        """Started on the receiver line, the cross-line coordinate stays unobservable."""
        true_pos = np.array([7.0, 4.0])
        readings = [
            Reading(SOURCE, np.array([x, 0.0]), distance=float(np.hypot(true_pos[0] - x, true_pos[1])))
            for x in (0.0, 5.0, 10.0, 15.0)
        ]
        with pytest.raises(RefinementFailed):
            refine_radio_source(
                readings, np.array([6.0, 0.0]), mode=ReadingMode.RANGING,
                keep_covariance=keep_covariance,
            )


class TestRefinePowerModel:
    """Test power model refinement at a fixed position."""

    @pytest.mark.parametrize(
        "power_enabled, path_loss_enabled",
        [(True, False), (False, True), (True, True)],
    )
    def test_converges_at_true_position(self, power_enabled, path_loss_enabled):
        readings = make_readings(path_loss=2.5, with_distance=False)
        result = refine_power_model(
            readings,
            TRUE_POS,
            TRUE_POWER if not power_enabled else TRUE_POWER + 4.0,
            2.5 if not path_loss_enabled else 2.0,
            transmitted_power_enabled=power_enabled,
            path_loss_enabled=path_loss_enabled,
        )
        assert result.transmitted_power_dbm == pytest.approx(TRUE_POWER, abs=1e-6)
        assert result.path_loss_exponent == pytest.approx(2.5, abs=1e-6)
        assert_array_equal(result.position, TRUE_POS)
        assert result.position_covariance is None
        n_params = int(power_enabled) + int(path_loss_enabled)
        assert result.covariance.shape == (n_params, n_params)
        assert (result.transmitted_power_variance is not None) == power_enabled
        assert (result.path_loss_exponent_variance is not None) == path_loss_enabled

    def test_power_variance_matches_mean_of_readings(self):
        """With only Pte free, its variance is σ²/N."""
        readings = make_readings(with_distance=False, rssi_std=2.0)
        result = refine_power_model(readings, TRUE_POS, TRUE_POWER - 3.0)
        assert result.transmitted_power_variance == pytest.approx(4.0 / len(readings))

    def test_covariance_not_kept(self):
        result = refine_power_model(
            make_readings(with_distance=False), TRUE_POS, TRUE_POWER, keep_covariance=False
        )
        assert result.covariance is None
        assert result.transmitted_power_variance is None

    def test_nothing_to_estimate(self):
        with pytest.raises(ValueError):
            refine_power_model(
                make_readings(with_distance=False), TRUE_POS, TRUE_POWER,
                transmitted_power_enabled=False,
            )

