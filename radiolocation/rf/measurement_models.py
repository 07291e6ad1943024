"""
RF measurement models for radio source estimation.

This module implements the measurement models shared by every radio source
estimator:
- Ranging (distance between receiver and emitter)
- RSS (Received Signal Strength) with the log-distance path-loss model
- Power unit conversions between milliwatts and dBm

The RSS model used throughout the package is:

    Pr = Pte + 10*n*log10(k) - 10*n*log10(d)

where Pte is the equivalent transmitted power (dBm), n the path-loss exponent,
d the distance and k = c / (4*pi*f) the free-space constant of a source with
carrier frequency f. When the frequency is unknown k = 1 and the model reduces
to Pr = Pte - 10*n*log10(d).
"""

from typing import Optional, Tuple

import numpy as np

# Physical constants
SPEED_OF_LIGHT = 299792458.0  # m/s

DEFAULT_PATH_LOSS_EXPONENT = 2.0
DEFAULT_DISTANCE_STANDARD_DEVIATION = 1.0  # m
DEFAULT_POWER_STANDARD_DEVIATION = 1.0  # dB

# Smallest squared distance used when evaluating the log-distance model
_MIN_SQR_DISTANCE = 1e-20


# =============================================================================
# Power Unit Conversion Utilities
# =============================================================================
def dbm_to_power(dbm: float) -> float:
    """
    Convert power from dBm to milliwatts.

    Args:
        dbm: Power in dBm.

    Returns:
        Power in milliwatts.

    Example:
        >>> dbm_to_power(0.0)
        1.0
        >>> dbm_to_power(-30.0)
        0.001
    """
    return float(10.0 ** (dbm / 10.0))


def power_to_dbm(power_mw: float) -> float:
    """
    Convert power from milliwatts to dBm.

    Args:
        power_mw: Power in milliwatts. Must be strictly positive.

    Returns:
        Power in dBm.

    Raises:
        ValueError: If power is not strictly positive.
    """
    if power_mw <= 0.0:
        raise ValueError(f"Power must be positive, got {power_mw}")
    return float(10.0 * np.log10(power_mw))


def free_space_gain_db(
    frequency: Optional[float],
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> float:
    """
    Compute the constant term 10*n*log10(k) of the path-loss model.

    k = c / (4*pi*f) is the free-space constant for a carrier of frequency f,
    so that for n = 2 the model matches the Friis transmission equation.

    Args:
        frequency: Carrier frequency in Hz, or None if unknown.
        path_loss_exp: Path-loss exponent n.

    Returns:
        Constant term in dB (0.0 when frequency is None).

    Example:
        >>> # 2.4 GHz WiFi, free space
        >>> round(free_space_gain_db(2.4e9, 2.0), 2)
        -40.05
    """
    if frequency is None:
        return 0.0
    if frequency <= 0.0:
        raise ValueError(f"Frequency must be positive, got {frequency}")
    return float(path_loss_exp * _log_k_db(frequency))


def _log_k_db(frequency: Optional[float]) -> float:
    """Return 10*log10(k), the per-unit-exponent constant term."""
    if frequency is None:
        return 0.0
    return float(10.0 * np.log10(SPEED_OF_LIGHT / (4.0 * np.pi * frequency)))


# =============================================================================
# Ranging Model
# =============================================================================
def range_model(source_pos: np.ndarray, receiver_pos: np.ndarray) -> float:
    """
    Compute the predicted distance between a source and a receiver.

    Args:
        source_pos: Source position [x, y] or [x, y, z] in meters.
        receiver_pos: Receiver position, same dimension as source_pos.

    Returns:
        Euclidean distance in meters.
    """
    return float(np.linalg.norm(np.asarray(source_pos) - np.asarray(receiver_pos)))


def range_jacobian(source_pos: np.ndarray, receiver_pos: np.ndarray) -> np.ndarray:
    """
    Gradient of the ranging model with respect to the source position.

    d(|x - p|)/dx = (x - p) / |x - p|

    The gradient with respect to the receiver position is the negative of this
    vector. A zero vector is returned when both positions coincide.

    Args:
        source_pos: Source position, shape (d,).
        receiver_pos: Receiver position, shape (d,).

    Returns:
        Gradient, shape (d,).
    """
    diff = np.asarray(source_pos, dtype=float) - np.asarray(receiver_pos, dtype=float)
    dist = np.linalg.norm(diff)
    if dist < 1e-10:
        return np.zeros_like(diff)
    return diff / dist


# =============================================================================
# RSS Model
# =============================================================================
def rss_pathloss(
    transmitted_power_dbm: float,
    distance: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: Optional[float] = None,
) -> float:
    """
    Compute RSS using the log-distance path-loss model.

        Pr = Pte + 10*n*log10(k) - 10*n*log10(d)

    Args:
        transmitted_power_dbm: Equivalent transmitted power Pte in dBm.
        distance: Distance from source to receiver in meters.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0 (free space).
                      Typical indoor values: 2.5-4.0.
        frequency: Carrier frequency in Hz. If None, k = 1.

    Returns:
        Received signal strength in dBm.

    Raises:
        ValueError: If distance is not positive.

    Example:
        >>> # RSS at 10m with Pte=-40dBm, n=2.5 and unknown frequency
        >>> rss = rss_pathloss(-40.0, 10.0, path_loss_exp=2.5)
        >>> print(f"RSS: {rss:.2f} dBm")
        RSS: -65.00 dBm
    """
    if distance <= 0:
        raise ValueError("Distance must be positive")

    return float(
        transmitted_power_dbm
        + free_space_gain_db(frequency, path_loss_exp)
        - 10.0 * path_loss_exp * np.log10(distance)
    )


def rss_to_distance(
    rss_dbm: float,
    transmitted_power_dbm: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: Optional[float] = None,
) -> float:
    """
    Estimate distance from RSS by inverting the path-loss model.

        d = 10^((Pte + 10*n*log10(k) - Pr) / (10*n))

    Args:
        rss_dbm: Received signal strength in dBm.
        transmitted_power_dbm: Equivalent transmitted power Pte in dBm.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0.
        frequency: Carrier frequency in Hz. If None, k = 1.

    Returns:
        Estimated distance in meters.

    Raises:
        ValueError: If path_loss_exp is not positive.

    Example:
        >>> distance = rss_to_distance(-65.0, -40.0, path_loss_exp=2.5)
        >>> print(f"Distance: {distance:.2f} m")
        Distance: 10.00 m
    """
    if path_loss_exp <= 0:
        raise ValueError(f"path_loss_exp must be positive, got {path_loss_exp}")

    exponent = (
        transmitted_power_dbm + free_space_gain_db(frequency, path_loss_exp) - rss_dbm
    ) / (10.0 * path_loss_exp)
    return float(10.0 ** exponent)


def rss_jacobian(
    source_pos: np.ndarray,
    receiver_pos: np.ndarray,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: Optional[float] = None,
) -> Tuple[np.ndarray, float, float]:
    """
    Partial derivatives of the RSS model.

    Writing the model as Pr = Pte + n*10*log10(k) - 5*n*log10(|x - p|^2):

        dPr/dx   = -10*n*(x - p) / (ln(10) * |x - p|^2)
        dPr/dPte = 1
        dPr/dn   = 10*log10(k) - 10*log10(|x - p|)

    The derivative with respect to the receiver position is the negative of
    dPr/dx.

    Args:
        source_pos: Source position x, shape (d,).
        receiver_pos: Receiver position p, shape (d,).
        path_loss_exp: Path-loss exponent n.
        frequency: Carrier frequency in Hz, or None.

    Returns:
        Tuple of (dPr/dx, dPr/dPte, dPr/dn).
    """
    diff = np.asarray(source_pos, dtype=float) - np.asarray(receiver_pos, dtype=float)
    sqr_distance = max(float(diff @ diff), _MIN_SQR_DISTANCE)

    d_position = -10.0 * path_loss_exp * diff / (np.log(10.0) * sqr_distance)
    d_power = 1.0
    d_path_loss = _log_k_db(frequency) - 5.0 * np.log10(sqr_distance)

    return d_position, d_power, float(d_path_loss)


def expected_rss(
    source_pos: np.ndarray,
    receiver_pos: np.ndarray,
    transmitted_power_dbm: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: Optional[float] = None,
) -> float:
    """
    Predict the RSS at a receiver for a source at a given position.

    Unlike rss_pathloss, coincident positions do not raise: the distance is
    clamped to a tiny positive value so residuals stay finite during
    iterative estimation.

    Args:
        source_pos: Source position, shape (d,).
        receiver_pos: Receiver position, shape (d,).
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        path_loss_exp: Path-loss exponent.
        frequency: Carrier frequency in Hz, or None.

    Returns:
        Predicted RSS in dBm.
    """
    diff = np.asarray(source_pos, dtype=float) - np.asarray(receiver_pos, dtype=float)
    sqr_distance = max(float(diff @ diff), _MIN_SQR_DISTANCE)
    return float(
        transmitted_power_dbm
        + free_space_gain_db(frequency, path_loss_exp)
        - 5.0 * path_loss_exp * np.log10(sqr_distance)
    )


def simulate_rss_measurement(
    source_pos: np.ndarray,
    receiver_pos: np.ndarray,
    transmitted_power_dbm: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    frequency: Optional[float] = None,
    sigma_db: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> float:
    """
    Simulate an RSS measurement with log-normal shadowing.

    Shadowing is modeled as Gaussian noise in dB: w ~ N(0, sigma_db^2).

    Args:
        source_pos: Source position in meters.
        receiver_pos: Receiver position in meters.
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        path_loss_exp: Path-loss exponent.
        frequency: Carrier frequency in Hz, or None.
        sigma_db: Shadowing standard deviation in dB. Defaults to 0.0.
        rng: Random generator. A new default generator is used if None.

    Returns:
        Measured RSS in dBm.
    """
    rss = expected_rss(
        source_pos, receiver_pos, transmitted_power_dbm, path_loss_exp, frequency
    )
    if sigma_db > 0.0:
        if rng is None:
            rng = np.random.default_rng()
        rss += float(rng.normal(0.0, sigma_db))
    return rss
