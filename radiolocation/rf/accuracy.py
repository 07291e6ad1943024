"""
Position accuracy from an estimated covariance matrix.

The uncertainty region of a position with covariance Σ is an ellipse (2D) or
ellipsoid (3D) whose semi-axes are the square roots of the eigenvalues of Σ,
scaled by a standard-deviation factor k. The region holds the points whose
Mahalanobis distance is at most k, so for a d-dimensional Gaussian the factor
and the confidence level are related through the chi-square distribution
with d degrees of freedom:

    confidence = F_χ²(k², d)        k = sqrt(F_χ²⁻¹(confidence, d))

With d = 1 this is the familiar 2·Φ(k) - 1, where k = 2 covers ~95.4%. The
same k = 2 covers ~86.5% of a 2D ellipse and ~73.9% of a 3D ellipsoid.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.stats import chi2

DEFAULT_STD_FACTOR = 2.0


def std_factor_to_confidence(std_factor: float, dims: int = 1) -> float:
    """
    Convert a standard-deviation factor into a confidence level.

    Args:
        std_factor: Number of standard deviations. Must be positive.
        dims: Dimensionality of the region.

    Returns:
        Confidence in (0, 1).

    Example:
        >>> round(std_factor_to_confidence(2.0), 4)
        0.9545
        >>> round(std_factor_to_confidence(2.0, dims=2), 4)
        0.8647
    """
    if not std_factor > 0.0:
        raise ValueError(f"std_factor must be positive, got {std_factor}")
    return float(chi2.cdf(std_factor ** 2, dims))


def confidence_to_std_factor(confidence: float, dims: int = 1) -> float:
    """
    Convert a confidence level into a standard-deviation factor.

    Args:
        confidence: Confidence in (0, 1).
        dims: Dimensionality of the region.

    Returns:
        Number of standard deviations.
    """
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    return float(np.sqrt(chi2.ppf(confidence, dims)))


@dataclass(frozen=True)
class PositionAccuracy:
    """
    Accuracy of a position estimate at a given standard-deviation factor.

    Attributes:
        covariance: Position covariance, shape (d, d), d = 2 or 3.
        std_factor: Number of standard deviations of the region.

    Example:
        >>> acc = PositionAccuracy(np.diag([4.0, 1.0]), std_factor=1.0)
        >>> acc.largest_accuracy, acc.smallest_accuracy, acc.average_accuracy
        (2.0, 1.0, 1.5)
    """

    covariance: np.ndarray
    std_factor: float = DEFAULT_STD_FACTOR

    def __post_init__(self) -> None:
        cov = np.array(self.covariance, dtype=float)
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1] or cov.shape[0] not in (2, 3):
            raise ValueError(f"covariance must be 2x2 or 3x3, got shape {cov.shape}")
        if not np.all(np.isfinite(cov)):
            raise ValueError("covariance must be finite")
        if not np.allclose(cov, cov.T):
            raise ValueError("covariance must be symmetric")
        eigvals = np.linalg.eigvalsh(cov)
        if np.any(eigvals < -1e-10):
            raise ValueError(
                f"covariance must be positive semi-definite, got eigenvalues {eigvals}"
            )
        if not self.std_factor > 0.0:
            raise ValueError(f"std_factor must be positive, got {self.std_factor}")
        object.__setattr__(self, "covariance", cov)

    @classmethod
    def from_confidence(cls, covariance: np.ndarray, confidence: float) -> "PositionAccuracy":
        covariance = np.asarray(covariance, dtype=float)
        dims = covariance.shape[0] if covariance.ndim else 1
        return cls(covariance, confidence_to_std_factor(confidence, dims))

    @property
    def dims(self) -> int:
        return self.covariance.shape[0]

    @property
    def confidence(self) -> float:
        return std_factor_to_confidence(self.std_factor, self.dims)

    @property
    def semi_axes(self) -> np.ndarray:
        """Semi-axes lengths of the region, in decreasing order."""
        eigvals = np.clip(np.linalg.eigvalsh(self.covariance), 0.0, None)
        return self.std_factor * np.sqrt(eigvals)[::-1]

    @property
    def smallest_accuracy(self) -> float:
        return float(self.semi_axes[-1])

    @property
    def largest_accuracy(self) -> float:
        return float(self.semi_axes[0])

    @property
    def average_accuracy(self) -> float:
        return float(np.mean(self.semi_axes))


def position_accuracy(
    covariance: np.ndarray,
    confidence: Optional[float] = None,
    std_factor: Optional[float] = None,
) -> PositionAccuracy:
    """
    Build the accuracy of a position from its covariance.

    Args:
        covariance: Position covariance, shape (d, d).
        confidence: Confidence level in (0, 1). Mutually exclusive with
            std_factor.
        std_factor: Number of standard deviations. Defaults to 2.0 when
            neither argument is given.

    Returns:
        PositionAccuracy.
    """
    if confidence is not None and std_factor is not None:
        raise ValueError("Provide either confidence or std_factor, not both")
    if confidence is not None:
        return PositionAccuracy.from_confidence(covariance, confidence)
    return PositionAccuracy(
        covariance, DEFAULT_STD_FACTOR if std_factor is None else std_factor
    )
