"""
Weighted Levenberg-Marquardt for the radio source refinement.

The refinement minimizes the weighted cost

    F(θ) = ½ Σ wᵢ (yᵢ − hᵢ(θ))²

over the parameter vector θ = [position, transmitted power, path-loss
exponent] (power and exponent only when estimated). Each iteration solves the
damped normal equations

    (JᵀWJ + μI) δ = JᵀW r

and accepts δ only if it lowers F. The damping μ is rescaled from the gain
ratio between the achieved and the linearly predicted decrease (Nielsen's
update). When μ grows past 1e10 without an accepted step, θ is a stationary
point and the run ends as converged with a zero step.

With weights equal to inverse observation variances, (JᵀWJ)⁻¹ at the solution
is the first-order covariance of θ. It is obtained through a Cholesky
factorization, so a singular or indefinite normal matrix surfaces as
numpy.linalg.LinAlgError instead of a pseudo-inverse.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from scipy.linalg import cho_factor, cho_solve

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_TOLERANCE = 1e-8
DEFAULT_INITIAL_DAMPING = 1e-3

_MAX_DAMPING = 1e10
_MIN_PREDICTED_DECREASE = 1e-15


@dataclass
class NonlinearLSResult:
    """Outcome of a least-squares run.

    Attributes:
        x: Parameters at the last accepted step.
        covariance: (JᵀWJ)⁻¹ at x, or None when not requested.
        iterations: Outer iterations performed.
        residuals: y − h(x).
        cost: ½ rᵀWr at x.
        initial_cost: ½ rᵀWr at the starting point.
        converged: True if the last step was shorter than the tolerance.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    initial_cost: float
    converged: bool

    @property
    def chi_sq(self) -> float:
        """Weighted sum of squared residuals rᵀWr."""
        return 2.0 * self.cost


def normal_matrix_inverse(JtWJ: np.ndarray) -> np.ndarray:
    """
    Invert a normal matrix JᵀWJ through its Cholesky factor.

    Raises:
        LinAlgError: If the matrix is not positive definite.
    """
    factor = cho_factor(JtWJ)
    inverse = cho_solve(factor, np.eye(JtWJ.shape[0]))
    return 0.5 * (inverse + inverse.T)


def _check_problem(
    y: np.ndarray, x0: np.ndarray, weights: Optional[np.ndarray]
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    y = np.asarray(y, dtype=float)
    x0 = np.asarray(x0, dtype=float)
    if y.ndim != 1:
        raise ValueError(f"y must be a 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be a 1D array, got shape {x0.shape}")

    if weights is None:
        return y, x0.copy(), np.ones(len(y))
    w = np.asarray(weights, dtype=float)
    if w.shape != y.shape:
        raise ValueError(f"weights must have shape {y.shape}, got {w.shape}")
    if np.any(w < 0.0):
        raise ValueError("weights must be non-negative")
    return y, x0.copy(), w


def _damped_step(
    JtWJ: np.ndarray, JtWr: np.ndarray, mu: float
) -> np.ndarray:
    damped = JtWJ + mu * np.eye(len(JtWr))
    try:
        return np.linalg.solve(damped, JtWr)
    except np.linalg.LinAlgError:
        return np.linalg.lstsq(damped, JtWr, rcond=None)[0]


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = DEFAULT_MAX_ITERATIONS,
    tol: float = DEFAULT_TOLERANCE,
    mu0: float = DEFAULT_INITIAL_DAMPING,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Minimize ½‖y − h(x)‖²_W with Levenberg-Marquardt.

    Args:
        h: Model returning the m predicted observations for parameters x.
        jacobian: Returns ∂h/∂x, shape (m, n).
        y: Observations, shape (m,).
        x0: Starting parameters, shape (n,).
        weights: Non-negative row weights, shape (m,). Uniform if None.
        max_iter: Maximum outer iterations.
        tol: Convergence threshold on the step norm.
        mu0: Initial damping.
        return_covariance: Compute (JᵀWJ)⁻¹ at the solution.

    Returns:
        NonlinearLSResult.

    Raises:
        ValueError: If shapes are inconsistent or weights are negative.
        LinAlgError: If return_covariance is set and JᵀWJ is not positive
            definite at the solution.

    Example:
        >>> anchors = np.array([[0.0, 0.0], [20.0, 0.0], [0.0, 20.0]])
        >>> h = lambda x: np.linalg.norm(anchors - x, axis=1)
        >>> jac = lambda x: (x - anchors) / h(x)[:, None]
        >>> result = levenberg_marquardt(h, jac, h(np.array([10.0, 10.0])),
        ...                              np.array([4.0, 6.0]))
        >>> np.round(result.x, 6)
        array([10., 10.])
    """
    y, x, w = _check_problem(y, x0, weights)
    m, n = len(y), len(x)

    def residuals_at(params: np.ndarray) -> np.ndarray:
        predicted = np.asarray(h(params), dtype=float)
        if predicted.shape != (m,):
            raise ValueError(f"h(x) returned shape {predicted.shape}, expected ({m},)")
        return y - predicted

    def cost_of(r: np.ndarray) -> float:
        return 0.5 * float(r @ (w * r))

    r = residuals_at(x)
    cost = cost_of(r)
    initial_cost = cost

    mu = mu0
    nu = 2.0
    converged = False
    iterations = 0

    while iterations < max_iter:
        iterations += 1
        J = np.asarray(jacobian(x), dtype=float)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")
        JtW = J.T * w
        JtWJ = JtW @ J
        JtWr = JtW @ r

        step = np.zeros(n)
        while mu <= _MAX_DAMPING:
            candidate_step = _damped_step(JtWJ, JtWr, mu)
            candidate_r = residuals_at(x + candidate_step)
            candidate_cost = cost_of(candidate_r)

            predicted = 0.5 * candidate_step @ (mu * candidate_step + JtWr)
            if predicted > _MIN_PREDICTED_DECREASE and np.isfinite(candidate_cost):
                gain = (cost - candidate_cost) / predicted
            else:
                gain = 0.0

            if gain > 0.0:
                step = candidate_step
                x = x + step
                r, cost = candidate_r, candidate_cost
                mu *= max(1.0 / 3.0, 1.0 - (2.0 * gain - 1.0) ** 3)
                nu = 2.0
                break
            mu *= nu
            nu *= 2.0

        if np.linalg.norm(step) < tol:
            converged = True
            break

    covariance = None
    if return_covariance:
        J = np.asarray(jacobian(x), dtype=float)
        covariance = normal_matrix_inverse((J.T * w) @ J)

    return NonlinearLSResult(
        x=x,
        covariance=covariance,
        iterations=iterations,
        residuals=r,
        cost=cost,
        initial_cost=initial_cost,
        converged=converged,
    )
