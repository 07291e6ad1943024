"""
Weighted nonlinear refinement of a radio source estimate.

Stacks one residual row per active channel of every reading (distance rows
for ranging readings, received-power rows for RSSI readings) and refines the
parameter vector

    θ = [x (position), Pte (if estimated), n (if estimated)]

with Levenberg-Marquardt. Each row is weighted by the inverse of its variance:

    var_i = σ_i² + g_iᵀ Σ_i g_i

where σ_i is the channel standard deviation of the reading (or a default),
Σ_i the covariance of the receiver position and g_i the derivative of the
predicted observation with respect to that position. The covariance of θ is
(JᵀWJ)⁻¹ at the solution.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from radiolocation.estimators.base import RefinementFailed
from radiolocation.estimators.nonlinear_least_squares import levenberg_marquardt
from radiolocation.rf.measurement_models import (
    DEFAULT_DISTANCE_STANDARD_DEVIATION,
    DEFAULT_PATH_LOSS_EXPONENT,
    DEFAULT_POWER_STANDARD_DEVIATION,
    expected_rss,
    range_jacobian,
    range_model,
    rss_jacobian,
)
from radiolocation.rf.readings import Reading, ReadingMode

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100
DEFAULT_TOLERANCE = 1e-10


@dataclass
class RefinementResult:
    """Result of a weighted refinement.

    Attributes:
        position: Refined source position, shape (d,).
        transmitted_power_dbm: Refined (or fixed) transmitted power in dBm, or
            None when no received-power reading takes part.
        path_loss_exponent: Refined (or fixed) path-loss exponent.
        covariance: Covariance of all estimated parameters, ordered as
            [position, power, path loss], or None.
        position_covariance: Position block of covariance, or None.
        transmitted_power_variance: Power variance (dBm²), or None.
        path_loss_exponent_variance: Path-loss exponent variance, or None.
        chi_sq: Weighted sum of squared residuals at the solution.
        iterations: Number of Levenberg-Marquardt iterations.
        converged: Whether the solver met its step tolerance.
    """

    position: np.ndarray
    transmitted_power_dbm: Optional[float]
    path_loss_exponent: float
    covariance: Optional[np.ndarray]
    position_covariance: Optional[np.ndarray]
    transmitted_power_variance: Optional[float]
    path_loss_exponent_variance: Optional[float]
    chi_sq: float
    iterations: int
    converged: bool


class RadioSourceModel:
    """
    Stacked observation model of a collection of readings.

    Args:
        readings: Readings of a single source.
        mode: Which reading channels take part.
        transmitted_power_enabled: Whether Pte is a free parameter.
        path_loss_enabled: Whether n is a free parameter.
        transmitted_power_dbm: Value of Pte when it is not estimated.
        path_loss_exponent: Value of n when it is not estimated.
    """

    def __init__(
        self,
        readings: Sequence[Reading],
        mode: ReadingMode = ReadingMode.RANGING_AND_RSSI,
        transmitted_power_enabled: bool = False,
        path_loss_enabled: bool = False,
        transmitted_power_dbm: Optional[float] = None,
        path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    ):
        if not readings:
            raise ValueError("At least one reading is required")

        self.readings = readings
        self.dims = readings[0].dims
        self.frequency = readings[0].source.frequency

        # (reading index, is_rssi) for every residual row
        self.rows: List[Tuple[int, bool]] = []
        for i, reading in enumerate(readings):
            if mode.uses_ranging and reading.has_distance:
                self.rows.append((i, False))
            if mode.uses_rssi and reading.has_rssi:
                self.rows.append((i, True))

        has_rssi_rows = any(is_rssi for _, is_rssi in self.rows)
        self.transmitted_power_enabled = bool(transmitted_power_enabled) and has_rssi_rows
        self.path_loss_enabled = bool(path_loss_enabled) and has_rssi_rows

        if has_rssi_rows and transmitted_power_dbm is None:
            raise ValueError(
                "transmitted_power_dbm is required when RSSI readings take part"
            )
        self.transmitted_power_dbm = transmitted_power_dbm
        self.path_loss_exponent = float(path_loss_exponent)

        self.y = np.array(
            [
                readings[i].rssi if is_rssi else readings[i].distance
                for i, is_rssi in self.rows
            ],
            dtype=float,
        )

    @property
    def num_rows(self) -> int:
        return len(self.rows)

    @property
    def num_params(self) -> int:
        return (
            self.dims
            + int(self.transmitted_power_enabled)
            + int(self.path_loss_enabled)
        )

    def pack(
        self,
        position: np.ndarray,
        transmitted_power_dbm: Optional[float] = None,
        path_loss_exponent: Optional[float] = None,
    ) -> np.ndarray:
        """Build the parameter vector θ."""
        theta = [float(v) for v in np.asarray(position, dtype=float)]
        if self.transmitted_power_enabled:
            theta.append(
                self.transmitted_power_dbm
                if transmitted_power_dbm is None
                else float(transmitted_power_dbm)
            )
        if self.path_loss_enabled:
            theta.append(
                self.path_loss_exponent
                if path_loss_exponent is None
                else float(path_loss_exponent)
            )
        return np.array(theta)

    def unpack(self, theta: np.ndarray) -> Tuple[np.ndarray, Optional[float], float]:
        """Split θ into (position, Pte, n), filling in fixed values."""
        position = theta[: self.dims]
        pos = self.dims
        power = self.transmitted_power_dbm
        path_loss = self.path_loss_exponent
        if self.transmitted_power_enabled:
            power = float(theta[pos])
            pos += 1
        if self.path_loss_enabled:
            path_loss = float(theta[pos])
        return position, power, path_loss

    def predict(self, theta: np.ndarray) -> np.ndarray:
        """Predicted observation of every row."""
        position, power, path_loss = self.unpack(theta)
        h = np.empty(self.num_rows)
        for row, (i, is_rssi) in enumerate(self.rows):
            receiver = self.readings[i].position
            if is_rssi:
                h[row] = expected_rss(
                    position, receiver, power, path_loss, self.frequency
                )
            else:
                h[row] = range_model(position, receiver)
        return h

    def jacobian(self, theta: np.ndarray) -> np.ndarray:
        """Jacobian ∂h/∂θ, shape (rows, params)."""
        position, _, path_loss = self.unpack(theta)
        J = np.zeros((self.num_rows, self.num_params))
        for row, (i, is_rssi) in enumerate(self.rows):
            receiver = self.readings[i].position
            if not is_rssi:
                J[row, : self.dims] = range_jacobian(position, receiver)
                continue
            d_position, d_power, d_path_loss = rss_jacobian(
                position, receiver, path_loss, self.frequency
            )
            J[row, : self.dims] = d_position
            col = self.dims
            if self.transmitted_power_enabled:
                J[row, col] = d_power
                col += 1
            if self.path_loss_enabled:
                J[row, col] = d_path_loss
        return J

    def residuals(self, theta: np.ndarray) -> np.ndarray:
        return self.y - self.predict(theta)

    def variances(
        self, theta: np.ndarray, use_position_covariances: bool = True
    ) -> np.ndarray:
        """
        Variance of every row.

        The receiver position covariance enters as an additive term gᵀΣg.
        Since ∂h/∂p = -∂h/∂x for both channels, g is taken from the position
        block of the Jacobian.
        """
        J = self.jacobian(theta) if use_position_covariances else None
        var = np.empty(self.num_rows)
        for row, (i, is_rssi) in enumerate(self.rows):
            reading = self.readings[i]
            if is_rssi:
                std = reading.rssi_std or DEFAULT_POWER_STANDARD_DEVIATION
            else:
                std = reading.distance_std or DEFAULT_DISTANCE_STANDARD_DEVIATION
            var[row] = std ** 2
            if J is not None and reading.position_covariance is not None:
                g = -J[row, : self.dims]
                var[row] += float(g @ reading.position_covariance @ g)
        return var

    def row_weights(self, reading_weights: np.ndarray) -> np.ndarray:
        """Expand one weight per reading into one weight per row."""
        return np.array([reading_weights[i] for i, _ in self.rows], dtype=float)


def refine_radio_source(
    readings: Sequence[Reading],
    position: np.ndarray,
    transmitted_power_dbm: Optional[float] = None,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    mode: ReadingMode = ReadingMode.RANGING_AND_RSSI,
    transmitted_power_enabled: bool = False,
    path_loss_enabled: bool = False,
    use_position_covariances: bool = True,
    quality_weights: Optional[np.ndarray] = None,
    weighted: bool = True,
    keep_covariance: bool = True,
    max_iter: int = DEFAULT_MAX_ITERATIONS,
    tol: float = DEFAULT_TOLERANCE,
) -> RefinementResult:
    """
    Refine position (and optionally Pte and n) from an initial guess.

    Args:
        readings: Readings to fit, all of the same source.
        position: Initial source position, shape (d,).
        transmitted_power_dbm: Initial (or fixed) transmitted power in dBm.
            Required when received-power readings take part.
        path_loss_exponent: Initial (or fixed) path-loss exponent.
        mode: Which reading channels take part.
        transmitted_power_enabled: Estimate the transmitted power.
        path_loss_enabled: Estimate the path-loss exponent.
        use_position_covariances: Propagate receiver position covariances
            into the row variances.
        quality_weights: Optional non-negative weight per reading, multiplied
            into the inverse variances after normalization to unit mean.
        weighted: If False, all rows have unit weight.
        keep_covariance: Return the parameter covariance. The normal matrix
            is factorized either way, so a singular one always fails.
        max_iter: Maximum Levenberg-Marquardt iterations.
        tol: Step tolerance.

    Returns:
        RefinementResult.

    Raises:
        RefinementFailed: If there are fewer rows than parameters, if the
            normal-equations matrix is not positive definite, if the solution
            is not finite, or if the solver neither converged nor improved on
            the initial guess.

    Example:
        >>> source = RadioSource("ap")
        >>> receivers = [[0, 0], [20, 0], [0, 20], [20, 20]]
        >>> readings = [
        ...     Reading(source, p, distance=float(np.hypot(10 - p[0], 10 - p[1])))
        ...     for p in receivers
        ... ]
        >>> result = refine_radio_source(readings, np.array([8.0, 9.0]))
        >>> np.round(result.position, 6)
        array([10., 10.])
    """
    model = RadioSourceModel(
        readings,
        mode=mode,
        transmitted_power_enabled=transmitted_power_enabled,
        path_loss_enabled=path_loss_enabled,
        transmitted_power_dbm=transmitted_power_dbm,
        path_loss_exponent=path_loss_exponent,
    )
    if model.num_rows < model.num_params:
        raise RefinementFailed(
            f"{model.num_rows} observations cannot determine "
            f"{model.num_params} parameters"
        )

    theta0 = model.pack(position)

    weights = None
    if weighted:
        weights = 1.0 / model.variances(theta0, use_position_covariances)
        if quality_weights is not None:
            quality_weights = np.asarray(quality_weights, dtype=float)
            if quality_weights.shape != (len(readings),):
                raise ValueError(
                    f"quality_weights must have shape ({len(readings)},), "
                    f"got {quality_weights.shape}"
                )
            mean_quality = quality_weights.mean()
            if mean_quality > 0.0:
                weights = weights * model.row_weights(quality_weights / mean_quality)

    try:
        result = levenberg_marquardt(
            model.predict,
            model.jacobian,
            model.y,
            theta0,
            weights=weights,
            max_iter=max_iter,
            tol=tol,
            return_covariance=True,
        )
    except np.linalg.LinAlgError as e:
        raise RefinementFailed(f"Normal equations are not positive definite: {e}") from e

    if not np.all(np.isfinite(result.x)) or not np.isfinite(result.cost):
        raise RefinementFailed("Refinement diverged to a non-finite solution")
    if not result.converged and result.cost >= result.initial_cost:
        raise RefinementFailed(
            f"Refinement did not converge after {result.iterations} iterations"
        )
    if not np.all(np.isfinite(result.covariance)):
        raise RefinementFailed("Estimated covariance is not finite")

    covariance = result.covariance if keep_covariance else None

    est_position, est_power, est_path_loss = model.unpack(result.x)

    position_covariance = None
    power_variance = None
    path_loss_variance = None
    if covariance is not None:
        d = model.dims
        position_covariance = covariance[:d, :d].copy()
        pos = d
        if model.transmitted_power_enabled:
            power_variance = float(covariance[pos, pos])
            pos += 1
        if model.path_loss_enabled:
            path_loss_variance = float(covariance[pos, pos])

    logger.debug(
        "Refinement finished after %d iterations (converged=%s, chi_sq=%.3g)",
        result.iterations,
        result.converged,
        result.chi_sq,
    )

    return RefinementResult(
        position=np.array(est_position, dtype=float),
        transmitted_power_dbm=est_power,
        path_loss_exponent=est_path_loss,
        covariance=covariance,
        position_covariance=position_covariance,
        transmitted_power_variance=power_variance,
        path_loss_exponent_variance=path_loss_variance,
        chi_sq=result.chi_sq,
        iterations=result.iterations,
        converged=result.converged,
    )


def refine_power_model(
    readings: Sequence[Reading],
    position: np.ndarray,
    transmitted_power_dbm: float,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    transmitted_power_enabled: bool = True,
    path_loss_enabled: bool = False,
    use_position_covariances: bool = True,
    quality_weights: Optional[np.ndarray] = None,
    keep_covariance: bool = True,
    max_iter: int = DEFAULT_MAX_ITERATIONS,
    tol: float = DEFAULT_TOLERANCE,
) -> RefinementResult:
    """
    Refine Pte and/or n from RSSI readings with the source position held fixed.

    The returned covariance only spans the enabled power model parameters, so
    position_covariance is always None.

    Raises:
        ValueError: If neither parameter is enabled.
        RefinementFailed: Under the same conditions as refine_radio_source.
    """
    if not (transmitted_power_enabled or path_loss_enabled):
        raise ValueError("At least one power model parameter must be estimated")

    model = RadioSourceModel(
        readings,
        mode=ReadingMode.RSSI,
        transmitted_power_enabled=transmitted_power_enabled,
        path_loss_enabled=path_loss_enabled,
        transmitted_power_dbm=transmitted_power_dbm,
        path_loss_exponent=path_loss_exponent,
    )
    dims = model.dims
    position = np.asarray(position, dtype=float)
    num_power_params = model.num_params - dims
    if num_power_params == 0 or model.num_rows < num_power_params:
        raise RefinementFailed(
            f"{model.num_rows} received powers cannot determine "
            f"{num_power_params} parameters"
        )

    def full(phi):
        return np.concatenate([position, phi])

    theta0 = model.pack(position)
    weights = 1.0 / model.variances(theta0, use_position_covariances)
    if quality_weights is not None:
        quality_weights = np.asarray(quality_weights, dtype=float)
        if quality_weights.mean() > 0.0:
            weights = weights * model.row_weights(quality_weights / quality_weights.mean())

    try:
        result = levenberg_marquardt(
            lambda phi: model.predict(full(phi)),
            lambda phi: model.jacobian(full(phi))[:, dims:],
            model.y,
            theta0[dims:],
            weights=weights,
            max_iter=max_iter,
            tol=tol,
            return_covariance=True,
        )
    except np.linalg.LinAlgError as e:
        raise RefinementFailed(f"Normal equations are not positive definite: {e}") from e

    if not np.all(np.isfinite(result.x)) or not np.all(np.isfinite(result.covariance)):
        raise RefinementFailed("Power model refinement is not finite")

    _, est_power, est_path_loss = model.unpack(full(result.x))
    covariance = result.covariance if keep_covariance else None
    power_variance = None
    path_loss_variance = None
    if covariance is not None:
        pos = 0
        if model.transmitted_power_enabled:
            power_variance = float(covariance[pos, pos])
            pos += 1
        if model.path_loss_enabled:
            path_loss_variance = float(covariance[pos, pos])

    return RefinementResult(
        position=position.copy(),
        transmitted_power_dbm=est_power,
        path_loss_exponent=est_path_loss,
        covariance=covariance,
        position_covariance=None,
        transmitted_power_variance=power_variance,
        path_loss_exponent_variance=path_loss_variance,
        chi_sq=result.chi_sq,
        iterations=result.iterations,
        converged=result.converged,
    )
