"""
Minimal-sample radio source positioning.

This module computes a candidate source position (and, when requested,
transmitted power and path-loss exponent) from a small subset of readings:

- Linear lateration from distances, in inhomogeneous form (differences of
  sphere equations with respect to the first receiver) or homogeneous form
  (null vector of the stacked sphere equations).
- Scaled lateration from received powers: with n fixed, the distance to
  receiver i is d_i = C·s_i where s_i = 10^(-Pr_i / (10·n)) is known and
  C = 10^((Pte + 10·n·log10 k) / (10·n)) is unknown. The sphere equations
  remain linear in [x, |x|², C²], so position and power are solved together.
- Linear fit of the power model parameters at a known position.

Every numerical failure is reported as ModelUnsolvable so that sample
consensus can move on to the next subset.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from radiolocation.estimators.base import ModelUnsolvable, RefinementFailed
from radiolocation.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    _log_k_db,
    expected_rss,
    range_model,
    rss_to_distance,
)
from radiolocation.rf.readings import Reading, ReadingMode
from radiolocation.rf.refinement import refine_radio_source

# Relative singular value below which a linear system is considered degenerate
_RANK_TOLERANCE = 1e-10


@dataclass(frozen=True)
class Candidate:
    """
    Candidate model produced from a subset of readings.

    Attributes:
        position: Source position, shape (d,).
        transmitted_power_dbm: Transmitted power in dBm, or None when it is
            unknown (estimated, but no received power in the subset).
        path_loss_exponent: Path-loss exponent.
    """

    position: np.ndarray
    transmitted_power_dbm: Optional[float] = None
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT


def linear_lateration(
    positions: np.ndarray,
    distances: np.ndarray,
    homogeneous: bool = False,
) -> np.ndarray:
    """
    Solve a position from receiver positions and distances.

    Every reading gives a sphere equation

        |x|² - 2·p_iᵀx + |p_i|² = d_i²

    Inhomogeneous form: subtracting the first equation from the rest gives
    the linear system -2·(p_i - p_1)ᵀx = d_i² - d_1² - |p_i|² + |p_1|², solved
    by least squares.

    Homogeneous form: [-2·p_iᵀ, 1, |p_i|² - d_i²]·[x, |x|², 1]ᵀ = 0, solved as
    the right singular vector of the smallest singular value.

    Args:
        positions: Receiver positions, shape (N, d), N >= d + 1.
        distances: Distances to the source, shape (N,).
        homogeneous: Use the homogeneous formulation.

    Returns:
        Source position, shape (d,).

    Raises:
        ModelUnsolvable: If there are too few readings or the geometry is
            degenerate (collinear or coplanar receivers, duplicate positions).

    Example:
        >>> receivers = np.array([[0.0, 0.0], [20.0, 0.0], [0.0, 20.0]])
        >>> distances = np.linalg.norm(receivers - [10.0, 10.0], axis=1)
        >>> np.round(linear_lateration(receivers, distances), 6)
        array([10., 10.])
    """
    positions = np.asarray(positions, dtype=float)
    distances = np.asarray(distances, dtype=float)
    n_readings, dims = positions.shape

    if n_readings < dims + 1:
        raise ModelUnsolvable(
            f"Lateration in {dims}D requires at least {dims + 1} readings, "
            f"got {n_readings}"
        )
    if distances.shape != (n_readings,):
        raise ValueError(f"Expected {n_readings} distances, got {distances.shape}")

    sqr_norms = np.sum(positions ** 2, axis=1)

    if homogeneous:
        A = np.column_stack(
            [-2.0 * positions, np.ones(n_readings), sqr_norms - distances ** 2]
        )
        # [x, |x|², 1]
        return _homogeneous_solution(A)[:dims]

    A = -2.0 * (positions[1:] - positions[0])
    b = (distances[1:] ** 2 - distances[0] ** 2) - (sqr_norms[1:] - sqr_norms[0])
    return _inhomogeneous_solution(A, b)


def scaled_lateration(
    positions: np.ndarray,
    scales: np.ndarray,
    homogeneous: bool = False,
    ranging_positions: Optional[np.ndarray] = None,
    ranging_distances: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, float]:
    """
    Solve a position and a common distance scale from relative distances.

    Distances are known up to a common factor, d_i = C·s_i, giving

        |x|² - 2·p_iᵀx - s_i²·C² = -|p_i|²

    which is linear in [x, |x|², C²]. Readings with a known distance d_j
    contribute |x|² - 2·p_jᵀx = d_j² - |p_j|² to the same system.

    Args:
        positions: Receiver positions of the relative distances, shape (N, d).
        scales: Relative distances s_i, shape (N,).
        homogeneous: Use the homogeneous formulation.
        ranging_positions: Receiver positions with known distances, shape
            (M, d). Optional.
        ranging_distances: Known distances, shape (M,). Optional.

    Returns:
        Tuple of (position, C).

    Raises:
        ModelUnsolvable: If there are fewer than d + 2 equations, if the
            system is degenerate or if C² is not positive.

    Example:
        >>> receivers = np.array([[0.0, 0.0], [20.0, 0.0], [0.0, 20.0], [20.0, 30.0]])
        >>> distances = np.linalg.norm(receivers - [10.0, 10.0], axis=1)
        >>> position, scale = scaled_lateration(receivers, distances / 3.0)
        >>> round(scale, 6)
        3.0
    """
    positions = np.asarray(positions, dtype=float)
    scales = np.asarray(scales, dtype=float)
    dims = positions.shape[1]

    # Normalize scales for conditioning; C is rescaled back below
    norm = np.max(scales) if len(scales) else 0.0
    if not np.isfinite(norm) or norm <= 0.0:
        raise ModelUnsolvable("Relative distances must be positive and finite")
    s2 = (scales / norm) ** 2
    rhs = -np.sum(positions ** 2, axis=1)

    if ranging_positions is not None and len(ranging_positions):
        ranging_positions = np.asarray(ranging_positions, dtype=float)
        ranging_distances = np.asarray(ranging_distances, dtype=float)
        positions = np.vstack([positions, ranging_positions])
        s2 = np.concatenate([s2, np.zeros(len(ranging_positions))])
        rhs = np.concatenate(
            [rhs, ranging_distances ** 2 - np.sum(ranging_positions ** 2, axis=1)]
        )

    n_equations = positions.shape[0]
    if n_equations < dims + 2:
        raise ModelUnsolvable(
            f"Scaled lateration in {dims}D requires at least {dims + 2} "
            f"equations, got {n_equations}"
        )

    if homogeneous:
        A = np.column_stack(
            [-2.0 * positions, np.ones(n_equations), -s2, -rhs]
        )
        # [x, |x|², C², 1]
        solution = _homogeneous_solution(A)
        position, sqr_scale = solution[:dims], solution[dims + 1]
    else:
        A = np.column_stack(
            [-2.0 * (positions[1:] - positions[0]), -(s2[1:] - s2[0])]
        )
        b = rhs[1:] - rhs[0]
        solution = _inhomogeneous_solution(A, b)
        position, sqr_scale = solution[:dims], solution[dims]

    if not sqr_scale > 0.0:
        raise ModelUnsolvable(f"Non-positive squared distance scale {sqr_scale}")

    return position, float(np.sqrt(sqr_scale) / norm)


def _inhomogeneous_solution(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    if np.linalg.matrix_rank(A) < A.shape[1]:
        raise ModelUnsolvable("Degenerate receiver geometry")
    try:
        solution = np.linalg.lstsq(A, b, rcond=None)[0]
    except np.linalg.LinAlgError as e:
        raise ModelUnsolvable(str(e)) from e
    if not np.all(np.isfinite(solution)):
        raise ModelUnsolvable("Non-finite lateration solution")
    return solution


def _homogeneous_solution(A: np.ndarray) -> np.ndarray:
    """Null vector of A scaled so that its last element is 1."""
    try:
        _, s, Vt = np.linalg.svd(A)
    except np.linalg.LinAlgError as e:
        raise ModelUnsolvable(str(e)) from e

    # One-dimensional null space
    rank_index = A.shape[1] - 2
    if len(s) <= rank_index or s[rank_index] <= _RANK_TOLERANCE * s[0]:
        raise ModelUnsolvable("Degenerate receiver geometry")

    v = Vt[-1]
    if abs(v[-1]) < _RANK_TOLERANCE:
        raise ModelUnsolvable("Lateration solution at infinity")
    return v / v[-1]


def fit_power_model(
    readings: Sequence[Reading],
    position: np.ndarray,
    transmitted_power_dbm: Optional[float],
    path_loss_exponent: float,
    transmitted_power_enabled: bool,
    path_loss_enabled: bool,
) -> Tuple[Optional[float], float]:
    """
    Fit Pte and/or n by linear least squares at a known position.

        Pr_i = Pte + n·(10·log10 k - 10·log10 d_i)

    Parameters that are not enabled keep their given values.

    Args:
        readings: Readings carrying an RSSI.
        position: Source position.
        transmitted_power_dbm: Pte to use when it is not estimated.
        path_loss_exponent: n to use when it is not estimated.
        transmitted_power_enabled: Estimate Pte.
        path_loss_enabled: Estimate n.

    Returns:
        Tuple of (Pte, n).

    Raises:
        ModelUnsolvable: If the fit is underdetermined or degenerate.
    """
    if not readings:
        return transmitted_power_dbm, path_loss_exponent

    frequency = readings[0].source.frequency
    rssi = np.array([r.rssi for r in readings])
    distances = np.array([range_model(position, r.position) for r in readings])
    if np.any(distances <= 0.0):
        raise ModelUnsolvable("Source coincides with a receiver")
    log_terms = _log_k_db(frequency) - 10.0 * np.log10(distances)

    columns = []
    target = rssi.copy()
    if transmitted_power_enabled:
        columns.append(np.ones(len(readings)))
    else:
        target -= transmitted_power_dbm
    if path_loss_enabled:
        columns.append(log_terms)
    else:
        target -= path_loss_exponent * log_terms

    if not columns:
        return transmitted_power_dbm, path_loss_exponent

    A = np.column_stack(columns)
    solution = _inhomogeneous_solution(A, target)

    pos = 0
    if transmitted_power_enabled:
        transmitted_power_dbm = float(solution[pos])
        pos += 1
    if path_loss_enabled:
        path_loss_exponent = float(solution[pos])
        if path_loss_exponent <= 0.0:
            raise ModelUnsolvable(
                f"Non-positive path-loss exponent {path_loss_exponent}"
            )
    return transmitted_power_dbm, path_loss_exponent


def solve_minimal_sample(
    readings: Sequence[Reading],
    mode: ReadingMode = ReadingMode.RANGING_AND_RSSI,
    transmitted_power_enabled: bool = False,
    path_loss_enabled: bool = False,
    initial_transmitted_power_dbm: Optional[float] = None,
    initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    homogeneous: bool = False,
) -> Candidate:
    """
    Compute a candidate model from a subset of readings.

    When the subset holds at least d + 1 ranging readings the position is
    laterated from distances and the enabled power model parameters are then
    fitted linearly. Otherwise the position comes from received powers:
    scaled lateration when Pte is estimated, plain lateration of the
    distances obtained by inverting the path-loss model otherwise. That
    position is then polished with an unweighted Levenberg-Marquardt run over
    the subset.

    Args:
        readings: Subset of readings.
        mode: Which reading channels take part.
        transmitted_power_enabled: Estimate Pte.
        path_loss_enabled: Estimate n.
        initial_transmitted_power_dbm: Pte guess, or its fixed value when it
            is not estimated. The guess defaults to the mean RSSI of the
            subset; a fixed value has no default.
        initial_path_loss_exponent: n guess, or its fixed value.
        homogeneous: Use the homogeneous lateration formulation.

    Returns:
        Candidate.

    Raises:
        ModelUnsolvable: If the subset does not determine a model.
        ValueError: If the subset carries received powers, Pte is not
            estimated and no fixed value is given.
    """
    if not readings:
        raise ModelUnsolvable("Empty subset")

    dims = readings[0].dims
    ranging = [r for r in readings if mode.uses_ranging and r.has_distance]
    rssi = [r for r in readings if mode.uses_rssi and r.has_rssi]

    if rssi and not transmitted_power_enabled and initial_transmitted_power_dbm is None:
        raise ValueError(
            "initial_transmitted_power_dbm is required when the transmitted "
            "power is not estimated"
        )

    power = initial_transmitted_power_dbm
    if transmitted_power_enabled:
        # Pte is unknown when the subset carries no received power
        if not rssi:
            power = None
        elif power is None:
            power = float(np.mean([r.rssi for r in rssi]))
    transmitted_power_enabled = transmitted_power_enabled and bool(rssi)
    path_loss_enabled = path_loss_enabled and bool(rssi)
    path_loss = float(initial_path_loss_exponent)

    if len(ranging) >= dims + 1:
        position = linear_lateration(
            np.array([r.position for r in ranging]),
            np.array([r.distance for r in ranging]),
            homogeneous=homogeneous,
        )
        power, path_loss = fit_power_model(
            rssi, position, power, path_loss,
            transmitted_power_enabled, path_loss_enabled,
        )
        return Candidate(position, power, path_loss)

    if not rssi:
        raise ModelUnsolvable(
            f"{len(ranging)} ranging readings cannot determine a {dims}D position"
        )

    position, power = _position_from_rssi(
        ranging, rssi, power, path_loss, transmitted_power_enabled, homogeneous
    )

    try:
        polished = refine_radio_source(
            readings,
            position,
            transmitted_power_dbm=power,
            path_loss_exponent=path_loss,
            mode=mode,
            transmitted_power_enabled=transmitted_power_enabled,
            path_loss_enabled=path_loss_enabled,
            weighted=False,
            keep_covariance=False,
        )
    except RefinementFailed as e:
        raise ModelUnsolvable(str(e)) from e

    if polished.path_loss_exponent <= 0.0:
        raise ModelUnsolvable(
            f"Non-positive path-loss exponent {polished.path_loss_exponent}"
        )

    return Candidate(
        polished.position, polished.transmitted_power_dbm, polished.path_loss_exponent
    )


def _position_from_rssi(
    ranging: Sequence[Reading],
    rssi: Sequence[Reading],
    power: float,
    path_loss: float,
    transmitted_power_enabled: bool,
    homogeneous: bool,
) -> Tuple[np.ndarray, float]:
    """Coarse position (and power) from received powers."""
    frequency = rssi[0].source.frequency
    positions = np.array([r.position for r in rssi])
    measured = np.array([r.rssi for r in rssi])
    ranging_positions = np.array([r.position for r in ranging]).reshape(-1, positions.shape[1])
    ranging_distances = np.array([r.distance for r in ranging], dtype=float)

    if transmitted_power_enabled:
        # d_i = C·s_i with s_i = 10^(-(Pr_i - Pr_max) / (10·n))
        reference = measured.max()
        scales = 10.0 ** (-(measured - reference) / (10.0 * path_loss))
        position, scale = scaled_lateration(
            positions, scales, homogeneous, ranging_positions, ranging_distances
        )
        # C = 10^((Pte + 10·n·log10 k - Pr_max) / (10·n))
        power = float(
            reference
            + 10.0 * path_loss * np.log10(scale)
            - path_loss * _log_k_db(frequency)
        )
        return position, power

    distances = np.array(
        [rss_to_distance(pr, power, path_loss, frequency) for pr in measured]
    )
    position = linear_lateration(
        np.vstack([positions, ranging_positions]),
        np.concatenate([distances, ranging_distances]),
        homogeneous,
    )
    return position, power


def median_transmitted_power(
    readings: Sequence[Reading],
    position: np.ndarray,
    path_loss_exponent: float,
) -> Optional[float]:
    """
    Transmitted power that best explains the received powers at a position.

    Each reading gives Pte_i = Pr_i - n·(10·log10 k - 10·log10 d_i); their
    median is returned, so up to half of the readings may be outliers.

    Args:
        readings: Readings; those without an RSSI are ignored.
        position: Source position.
        path_loss_exponent: Path-loss exponent n.

    Returns:
        Pte in dBm, or None when no reading carries an RSSI.
    """
    rssi = [r for r in readings if r.has_rssi]
    if not rssi:
        return None
    frequency = rssi[0].source.frequency
    offsets = [
        r.rssi - expected_rss(position, r.position, 0.0, path_loss_exponent, frequency)
        for r in rssi
    ]
    return float(np.median(offsets))


def reading_residuals(
    readings: Sequence[Reading],
    candidate: Candidate,
    mode: ReadingMode = ReadingMode.RANGING_AND_RSSI,
) -> np.ndarray:
    """
    Absolute residual of every reading under a candidate model.

    A reading carrying both channels contributes the sum of its absolute
    distance residual (meters) and absolute power residual (dB). A received
    power cannot be explained by a candidate without a transmitted power, so
    such readings get an infinite residual.

    Args:
        readings: Readings to score.
        candidate: Candidate model.
        mode: Which reading channels take part.

    Returns:
        Non-negative residuals, shape (N,).
    """
    frequency = readings[0].source.frequency if readings else None
    residuals = np.zeros(len(readings))
    for i, reading in enumerate(readings):
        if mode.uses_ranging and reading.has_distance:
            residuals[i] += abs(
                reading.distance - range_model(candidate.position, reading.position)
            )
        if not (mode.uses_rssi and reading.has_rssi):
            continue
        if candidate.transmitted_power_dbm is None:
            residuals[i] = np.inf
            continue
        residuals[i] += abs(
            reading.rssi
            - expected_rss(
                candidate.position,
                reading.position,
                candidate.transmitted_power_dbm,
                candidate.path_loss_exponent,
                frequency,
            )
        )
    return residuals
