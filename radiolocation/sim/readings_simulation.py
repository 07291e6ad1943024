"""
Synthetic readings of a radio source.

Receivers are scattered around a source and each one observes it through the
log-distance path-loss model (RSSI) and/or a ranging distance. Gaussian noise
is added to every channel and an optional fraction of readings is corrupted
with large errors, which is what the robust estimators are designed to
reject.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from radiolocation.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    range_model,
    simulate_rss_measurement,
)
from radiolocation.rf.readings import RadioSource, Reading, ReadingMode


@dataclass
class SimulatedReadings:
    """
    Readings generated around a known source.

    Attributes:
        readings: Generated readings, one per receiver.
        outliers: Boolean mask of corrupted readings.
        source_position: True source position.
        transmitted_power_dbm: True transmitted power, or None.
        path_loss_exponent: True path-loss exponent.
    """

    readings: List[Reading]
    outliers: np.ndarray
    source_position: np.ndarray
    transmitted_power_dbm: Optional[float]
    path_loss_exponent: float

    @property
    def receiver_positions(self) -> np.ndarray:
        return np.array([r.position for r in self.readings])


def random_receiver_positions(
    center: np.ndarray,
    num_receivers: int,
    min_radius: float = 1.0,
    max_radius: float = 10.0,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """
    Draw receiver positions in a shell around a center.

    Args:
        center: Shell center, shape (d,), d = 2 or 3.
        num_receivers: Number of positions to draw.
        min_radius: Minimum distance to the center in meters.
        max_radius: Maximum distance to the center in meters.
        rng: Random generator.

    Returns:
        Positions, shape (num_receivers, d).
    """
    center = np.asarray(center, dtype=float)
    if center.ndim != 1 or center.shape[0] not in (2, 3):
        raise ValueError(f"center must have shape (2,) or (3,), got {center.shape}")
    if num_receivers < 1:
        raise ValueError(f"num_receivers must be positive, got {num_receivers}")
    if not 0.0 < min_radius <= max_radius:
        raise ValueError(
            f"Expected 0 < min_radius <= max_radius, got {min_radius}, {max_radius}"
        )
    if rng is None:
        rng = np.random.default_rng()

    directions = rng.normal(size=(num_receivers, center.shape[0]))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    radii = rng.uniform(min_radius, max_radius, size=(num_receivers, 1))
    return center + radii * directions


def simulate_readings(
    source: RadioSource,
    source_position: np.ndarray,
    receiver_positions: np.ndarray,
    transmitted_power_dbm: Optional[float] = None,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    mode: ReadingMode = ReadingMode.RANGING_AND_RSSI,
    distance_noise_std: float = 0.0,
    rssi_noise_std: float = 0.0,
    outlier_fraction: float = 0.0,
    outlier_distance_error: float = 20.0,
    outlier_rssi_error: float = 20.0,
    with_std: bool = True,
    rng: Optional[np.random.Generator] = None,
) -> SimulatedReadings:
    """
    Generate readings of a source from the given receiver positions.

    Outlier readings get a positive distance bias drawn uniformly in
    [outlier_distance_error / 2, outlier_distance_error] and an RSSI error of
    the same magnitude range in dB with random sign.

    Args:
        source: Identity of the simulated source.
        source_position: True source position, shape (d,).
        receiver_positions: Receiver positions, shape (N, d).
        transmitted_power_dbm: True power in dBm. Required when RSSI is used.
        path_loss_exponent: True path-loss exponent.
        mode: Which channels the readings carry.
        distance_noise_std: Ranging noise standard deviation in meters.
        rssi_noise_std: Shadowing standard deviation in dB.
        outlier_fraction: Fraction of readings to corrupt, in [0, 1).
        outlier_distance_error: Maximum ranging outlier bias in meters.
        outlier_rssi_error: Maximum RSSI outlier error in dB.
        with_std: Attach the noise standard deviations to the readings.
        rng: Random generator.

    Returns:
        SimulatedReadings.
    """
    source_position = np.asarray(source_position, dtype=float)
    receiver_positions = np.atleast_2d(np.asarray(receiver_positions, dtype=float))
    mode = ReadingMode(mode)
    if mode.uses_rssi and transmitted_power_dbm is None:
        raise ValueError("transmitted_power_dbm is required to simulate RSSI")
    if not 0.0 <= outlier_fraction < 1.0:
        raise ValueError(f"outlier_fraction must be in [0, 1), got {outlier_fraction}")
    if rng is None:
        rng = np.random.default_rng()

    num_readings = len(receiver_positions)
    outliers = np.zeros(num_readings, dtype=bool)
    num_outliers = int(round(outlier_fraction * num_readings))
    outliers[rng.choice(num_readings, size=num_outliers, replace=False)] = True

    distance_std = distance_noise_std if with_std and distance_noise_std > 0 else None
    rssi_std = rssi_noise_std if with_std and rssi_noise_std > 0 else None

    readings = []
    for i, position in enumerate(receiver_positions):
        distance = None
        rssi = None
        if mode.uses_ranging:
            distance = range_model(source_position, position)
            if distance_noise_std > 0:
                distance += rng.normal(0.0, distance_noise_std)
            if outliers[i]:
                distance += rng.uniform(0.5, 1.0) * outlier_distance_error
            distance = abs(distance)
        if mode.uses_rssi:
            rssi = simulate_rss_measurement(
                source_position,
                position,
                transmitted_power_dbm,
                path_loss_exponent,
                source.frequency,
                sigma_db=rssi_noise_std,
                rng=rng,
            )
            if outliers[i]:
                rssi += rng.choice([-1.0, 1.0]) * rng.uniform(0.5, 1.0) * outlier_rssi_error

        readings.append(
            Reading(
                source,
                position,
                distance=distance,
                rssi=rssi,
                distance_std=distance_std if distance is not None else None,
                rssi_std=rssi_std if rssi is not None else None,
            )
        )

    return SimulatedReadings(
        readings=readings,
        outliers=outliers,
        source_position=source_position,
        transmitted_power_dbm=transmitted_power_dbm,
        path_loss_exponent=path_loss_exponent,
    )
