"""Readings and reading-collection validity rules.

A reading is a single observation of a radio source made by a receiver at a
known position. It carries a ranging distance, a received signal strength, or
both, optionally with their standard deviations and the covariance of the
receiver position.

Whether a collection of readings is sufficient depends on the estimator
variant (ReadingMode) and on which parameters are being estimated: the
position always, plus optionally the transmitted power and the path-loss
exponent.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np


# Type aliases for clarity and documentation
Position = np.ndarray  # Shape (d,), d=2 or d=3


class RadioSourceType(Enum):
    """Kind of radio emitter.

    Attributes:
        WIFI_ACCESS_POINT: WiFi access point, identified by its BSSID.
        BEACON: Bluetooth beacon, identified by its beacon identifiers.
    """

    WIFI_ACCESS_POINT = "wifi_access_point"
    BEACON = "beacon"


class ReadingMode(Enum):
    """Estimator variant, defining which reading channels are used.

    Attributes:
        RANGING: Every reading must carry a distance. Only position is
            estimated; RSSI values are ignored.
        RSSI: Every reading must carry an RSSI. Distances are ignored.
        RANGING_AND_RSSI: Readings may carry a distance, an RSSI or both.
    """

    RANGING = "ranging"
    RSSI = "rssi"
    RANGING_AND_RSSI = "ranging_and_rssi"

    @property
    def uses_ranging(self) -> bool:
        return self is not ReadingMode.RSSI

    @property
    def uses_rssi(self) -> bool:
        return self is not ReadingMode.RANGING


@dataclass(frozen=True)
class RadioSource:
    """
    Identity of a radio emitter.

    Attributes:
        identifier: Unique identifier (BSSID for access points, beacon id for
            Bluetooth beacons). Readings of the same source share it.
        frequency: Carrier frequency in Hz, or None if unknown. When known,
            the free-space constant is included in the path-loss model.
        source_type: Kind of emitter.
        name: Optional human-readable name (SSID, Bluetooth name).

    Example:
        >>> ap = RadioSource("bssid-1", frequency=2.4e9, name="office")
    """

    identifier: str
    frequency: Optional[float] = None
    source_type: RadioSourceType = RadioSourceType.WIFI_ACCESS_POINT
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.identifier, str) or not self.identifier:
            raise ValueError(
                f"identifier must be a non-empty string, got {self.identifier!r}"
            )
        if self.frequency is not None and not self.frequency > 0:
            raise ValueError(f"frequency must be positive, got {self.frequency}")


@dataclass(frozen=True)
class Reading:
    """
    Located observation of a radio source.

    Attributes:
        source: Radio source being observed.
        position: Receiver position, shape (2,) or (3,) in meters.
        distance: Measured distance to the source in meters, or None.
        rssi: Received signal strength in dBm, or None.
        distance_std: Standard deviation of distance in meters, or None.
        rssi_std: Standard deviation of RSSI in dB, or None.
        position_covariance: Covariance of the receiver position, shape
            (d, d), or None.

    Raises:
        ValueError: If neither distance nor rssi is present, if a standard
            deviation is not strictly positive or given for a missing channel,
            or if the position covariance is not a symmetric positive
            semi-definite (d, d) matrix.

    Example:
        >>> source = RadioSource("bssid-1")
        >>> reading = Reading(source, np.array([1.0, 2.0]), distance=5.0,
        ...                   rssi=-60.0, rssi_std=2.0)
        >>> reading.has_distance, reading.has_rssi
        (True, True)
    """

    source: RadioSource
    position: np.ndarray
    distance: Optional[float] = None
    rssi: Optional[float] = None
    distance_std: Optional[float] = None
    rssi_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        """Validate and normalize the reading."""
        if not isinstance(self.source, RadioSource):
            raise TypeError(
                f"source must be a RadioSource, got {type(self.source).__name__}"
            )

        position = np.array(self.position, dtype=float)
        if position.ndim != 1 or position.shape[0] not in (2, 3):
            raise ValueError(
                f"position must have shape (2,) or (3,), got {position.shape}"
            )
        if not np.all(np.isfinite(position)):
            raise ValueError("position must be finite")
        position.setflags(write=False)
        object.__setattr__(self, "position", position)

        if self.distance is None and self.rssi is None:
            raise ValueError("A reading needs a distance, an RSSI or both")

        if self.distance is not None:
            if not np.isfinite(self.distance) or self.distance < 0:
                raise ValueError(
                    f"distance must be finite and non-negative, got {self.distance}"
                )
            object.__setattr__(self, "distance", float(self.distance))
        if self.rssi is not None:
            if not np.isfinite(self.rssi):
                raise ValueError(f"rssi must be finite, got {self.rssi}")
            object.__setattr__(self, "rssi", float(self.rssi))

        _check_std("distance", self.distance, self.distance_std)
        _check_std("rssi", self.rssi, self.rssi_std)

        if self.position_covariance is not None:
            cov = np.array(self.position_covariance, dtype=float)
            d = position.shape[0]
            if cov.shape != (d, d):
                raise ValueError(
                    f"position_covariance shape {cov.shape} must be ({d}, {d})"
                )
            if not np.allclose(cov, cov.T):
                raise ValueError("position_covariance must be symmetric")
            eigvals = np.linalg.eigvalsh(cov)
            if np.any(eigvals < -1e-10):
                raise ValueError(
                    "position_covariance must be positive semi-definite, "
                    f"got eigenvalues {eigvals}"
                )
            cov.setflags(write=False)
            object.__setattr__(self, "position_covariance", cov)

    @property
    def dims(self) -> int:
        """Dimensionality of the receiver position."""
        return self.position.shape[0]

    @property
    def has_distance(self) -> bool:
        return self.distance is not None

    @property
    def has_rssi(self) -> bool:
        return self.rssi is not None


def _check_std(channel: str, value: Optional[float], std: Optional[float]) -> None:
    if std is None:
        return
    if value is None:
        raise ValueError(f"{channel}_std given for a reading without {channel}")
    if not np.isfinite(std) or std <= 0:
        raise ValueError(f"{channel}_std must be positive, got {std}")


def min_readings(
    dims: int,
    transmitted_power_enabled: bool = False,
    path_loss_enabled: bool = False,
) -> int:
    """
    Minimum number of readings for the enabled estimation targets.

    Position needs dims + 1 readings; estimating the transmitted power or the
    path-loss exponent needs one more reading each.

    Args:
        dims: Position dimensionality (2 or 3).
        transmitted_power_enabled: Whether transmitted power is estimated.
        path_loss_enabled: Whether the path-loss exponent is estimated.

    Returns:
        Minimum number of readings.

    Example:
        >>> min_readings(2), min_readings(2, True), min_readings(2, True, True)
        (3, 4, 5)
        >>> min_readings(3, True, True)
        6
    """
    _check_dims(dims)
    return dims + 1 + int(bool(transmitted_power_enabled)) + int(bool(path_loss_enabled))


def count_channels(readings: Sequence[Reading]) -> Tuple[int, int]:
    """
    Count readings carrying each channel.

    A reading with both a distance and an RSSI counts toward both channels.

    Args:
        readings: Readings to count.

    Returns:
        Tuple of (num_ranging, num_rssi).
    """
    num_ranging = sum(1 for r in readings if r.has_distance)
    num_rssi = sum(1 for r in readings if r.has_rssi)
    return num_ranging, num_rssi


def are_valid_readings(
    readings: Optional[Sequence[Reading]],
    dims: int,
    mode: ReadingMode,
    transmitted_power_enabled: bool = False,
    path_loss_enabled: bool = False,
) -> bool:
    """
    Check whether a collection of readings is sufficient for estimation.

    Rules:
        - None or empty collections are invalid, as are collections mixing
          dimensionalities or source identifiers.
        - RANGING: every reading carries a distance and there are at least
          dims + 1 of them.
        - RSSI: every reading carries an RSSI and there are at least
          min_readings() of them.
        - RANGING_AND_RSSI: at least min_readings() readings in total, and
          either ranging alone fixes the position (dims + 1 ranging readings)
          with one RSSI reading per enabled RSSI parameter, or the RSSI
          readings alone reach min_readings().

    Args:
        readings: Readings to check.
        dims: Position dimensionality (2 or 3).
        mode: Estimator variant.
        transmitted_power_enabled: Whether transmitted power is estimated.
        path_loss_enabled: Whether the path-loss exponent is estimated.

    Returns:
        True if the collection is valid.
    """
    if not readings:
        return False
    if any(r.dims != dims for r in readings):
        return False
    if len({r.source.identifier for r in readings}) != 1:
        return False

    num_readings = len(readings)
    num_ranging, num_rssi = count_channels(readings)

    if mode is ReadingMode.RANGING:
        return num_ranging == num_readings and num_ranging >= dims + 1

    required = min_readings(dims, transmitted_power_enabled, path_loss_enabled)

    if mode is ReadingMode.RSSI:
        return num_rssi == num_readings and num_rssi >= required

    num_rssi_params = int(bool(transmitted_power_enabled)) + int(bool(path_loss_enabled))
    if num_readings < required:
        return False
    if num_ranging >= dims + 1 and num_rssi >= num_rssi_params:
        return True
    return num_rssi >= required


def readings_dims(readings: Sequence[Reading]) -> int:
    """Return the common dimensionality of a collection of readings."""
    dims = {r.dims for r in readings}
    if len(dims) != 1:
        raise ValueError(f"Readings must share one dimensionality, got {sorted(dims)}")
    return dims.pop()


def _check_dims(dims: int) -> None:
    if dims not in (2, 3):
        raise ValueError(f"dims must be 2 or 3, got {dims}")
