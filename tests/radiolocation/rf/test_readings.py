"""Unit tests for radio sources, readings and validity rules."""

import numpy as np
import pytest

from radiolocation.rf.readings import (
    RadioSource,
    RadioSourceType,
    Reading,
    ReadingMode,
    are_valid_readings,
    count_channels,
    min_readings,
    readings_dims,
)

SOURCE = RadioSource("ap-1", frequency=2.4e9)


def ranging(position, distance=5.0, source=SOURCE):
    return Reading(source, np.asarray(position, dtype=float), distance=distance)


def rssi(position, value=-60.0, source=SOURCE):
    return Reading(source, np.asarray(position, dtype=float), rssi=value)


def both(position, source=SOURCE):
    return Reading(source, np.asarray(position, dtype=float), distance=5.0, rssi=-60.0)


class TestRadioSource:
    """Test RadioSource validation."""

    def test_defaults(self):
        source = RadioSource("beacon")
        assert source.frequency is None
        assert source.source_type is RadioSourceType.WIFI_ACCESS_POINT

    @pytest.mark.parametrize("identifier", ["", None, 12])
    def test_invalid_identifier(self, identifier):
        with pytest.raises(ValueError):
            RadioSource(identifier)

    def test_invalid_frequency(self):
        with pytest.raises(ValueError):
            RadioSource("ap", frequency=0.0)


class TestReading:
    """Test Reading validation and normalization."""

    def test_channels(self):
        reading = Reading(SOURCE, [1.0, 2.0], distance=3.0, rssi=-50.0, rssi_std=2.0)
        assert reading.has_distance and reading.has_rssi
        assert reading.dims == 2
        assert reading.position.dtype == float

    def test_position_is_read_only(self):
        reading = ranging([1.0, 2.0])
        with pytest.raises(ValueError):
            reading.position[0] = 5.0

    def test_requires_a_channel(self):
        with pytest.raises(ValueError):
            Reading(SOURCE, [0.0, 0.0])

    def test_requires_radio_source(self):
        with pytest.raises(TypeError):
            Reading("ap-1", [0.0, 0.0], distance=1.0)

    @pytest.mark.parametrize("position", [[0.0], [0.0, 0.0, 0.0, 0.0], [[0.0, 0.0]], [np.nan, 0.0]])
    def test_invalid_position(self, position):
        with pytest.raises(ValueError):
            Reading(SOURCE, position, distance=1.0)

    @pytest.mark.parametrize("distance", [-1.0, np.inf])
    def test_invalid_distance(self, distance):
        with pytest.raises(ValueError):
            Reading(SOURCE, [0.0, 0.0], distance=distance)

    def test_std_without_channel(self):
        with pytest.raises(ValueError):
            Reading(SOURCE, [0.0, 0.0], distance=1.0, rssi_std=1.0)

    def test_non_positive_std(self):
        with pytest.raises(ValueError):
            Reading(SOURCE, [0.0, 0.0], distance=1.0, distance_std=0.0)

    def test_position_covariance_validation(self):
        Reading(SOURCE, [0.0, 0.0], distance=1.0, position_covariance=np.eye(2))
        with pytest.raises(ValueError):
            Reading(SOURCE, [0.0, 0.0], distance=1.0, position_covariance=np.eye(3))
        with pytest.raises(ValueError):
            Reading(
                SOURCE, [0.0, 0.0], distance=1.0,
                position_covariance=np.array([[1.0, 0.5], [0.0, 1.0]]),
            )
        with pytest.raises(ValueError):
            Reading(SOURCE, [0.0, 0.0], distance=1.0, position_covariance=-np.eye(2))


class TestMinReadings:
    """Test the minimum reading count."""

    @pytest.mark.parametrize(
        "dims, power, path_loss, expected",
        [
            (2, False, False, 3),
            (2, True, False, 4),
            (2, False, True, 4),
            (2, True, True, 5),
            (3, False, False, 4),
            (3, True, True, 6),
        ],
    )
    def test_values(self, dims, power, path_loss, expected):
        assert min_readings(dims, power, path_loss) == expected

    def test_invalid_dims(self):
        with pytest.raises(ValueError):
            min_readings(4)


class TestValidity:
    """Test reading collection validity rules."""

    def test_empty_or_none(self):
        assert not are_valid_readings(None, 2, ReadingMode.RANGING)
        assert not are_valid_readings([], 2, ReadingMode.RANGING)

    def test_count_channels(self):
        readings = [ranging([0, 0]), rssi([1, 0]), both([0, 1])]
        assert count_channels(readings) == (2, 2)

    def test_ranging_mode(self):
        readings = [ranging([0, 0]), ranging([1, 0]), ranging([0, 1])]
        assert are_valid_readings(readings, 2, ReadingMode.RANGING)
        assert not are_valid_readings(readings[:2], 2, ReadingMode.RANGING)
        assert not are_valid_readings(readings, 3, ReadingMode.RANGING)
        # An RSSI-only reading is not allowed
        assert not are_valid_readings(
            readings + [rssi([1, 1])], 2, ReadingMode.RANGING
        )

    def test_rssi_mode(self):
        readings = [rssi([0, 0]), rssi([1, 0]), rssi([0, 1]), rssi([1, 1])]
        assert are_valid_readings(readings, 2, ReadingMode.RSSI, True)
        assert not are_valid_readings(readings, 2, ReadingMode.RSSI, True, True)
        assert not are_valid_readings(
            readings[:3] + [ranging([1, 1])], 2, ReadingMode.RSSI
        )

    def test_mixed_mode_ranging_fixes_position(self):
        readings = [ranging([0, 0]), ranging([1, 0]), ranging([0, 1]), rssi([1, 1])]
        assert are_valid_readings(readings, 2, ReadingMode.RANGING_AND_RSSI, True)
        # Two RSSI parameters need two RSSI readings and five readings in total
        assert not are_valid_readings(
            readings, 2, ReadingMode.RANGING_AND_RSSI, True, True
        )

    def test_mixed_mode_rssi_fixes_position(self):
        readings = [ranging([0, 0]), rssi([1, 0]), rssi([0, 1]), rssi([1, 1]), rssi([2, 2])]
        assert are_valid_readings(readings, 2, ReadingMode.RANGING_AND_RSSI, True)

    def test_mixed_mode_insufficient(self):
        readings = [ranging([0, 0]), ranging([1, 0]), rssi([0, 1]), rssi([1, 1])]
        assert not are_valid_readings(readings, 2, ReadingMode.RANGING_AND_RSSI, True)

    def test_mixed_dims_or_sources(self):
        other = RadioSource("ap-2")
        readings = [ranging([0, 0]), ranging([1, 0]), ranging([0, 1], source=other)]
        assert not are_valid_readings(readings, 2, ReadingMode.RANGING)
        readings = [ranging([0, 0]), ranging([1, 0]), ranging([0, 1, 0])]
        assert not are_valid_readings(readings, 2, ReadingMode.RANGING)

    def test_readings_dims(self):
        assert readings_dims([ranging([0, 0, 0]), ranging([1, 0, 0])]) == 3
        with pytest.raises(ValueError):
            readings_dims([ranging([0, 0, 0]), ranging([1, 0])])
