"""
Radio Source Estimation Example.

This script locates a WiFi access point from readings gathered at known
receiver positions:

    - Joint estimation from ranging and RSSI readings with covariance
    - Robust estimation with outliers, comparing all consensus variants
    - RSSI-only estimation of position, transmitted power and path loss
    - Monte Carlo comparison of joint and robust estimation
"""

from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.patches import Ellipse
from tqdm import tqdm

from radiolocation.estimators import EstimatorListener, RobustMethod
from radiolocation.rf import (
    RadioSource,
    RadioSourceEstimator,
    ReadingMode,
    RobustRadioSourceEstimator,
)
from radiolocation.sim import random_receiver_positions, simulate_readings

SOURCE = RadioSource("00:11:22:33:44:55", frequency=2.4e9, name="office-ap")
TRUE_POSITION = np.array([10.0, 10.0])
TRUE_POWER_DBM = -20.0


class ProgressPrinter(EstimatorListener):
    """Print estimation progress."""

    def on_estimate_start(self, estimator):
        print("  Estimation started")

    def on_estimate_progress_change(self, estimator, progress):
        print(f"  Progress: {progress:.0%}")

    def on_estimate_end(self, estimator):
        print("  Estimation finished")


def example_joint_estimation(rng: np.random.Generator):
    """Example 1: Joint estimation from clean readings."""
    print("=" * 70)
    print("Example 1: Joint Estimation from Ranging and RSSI Readings")
    print("=" * 70)

    receivers = random_receiver_positions(TRUE_POSITION, 10, rng=rng)
    simulated = simulate_readings(
        SOURCE,
        TRUE_POSITION,
        receivers,
        transmitted_power_dbm=TRUE_POWER_DBM,
        distance_noise_std=0.1,
        rssi_noise_std=1.0,
        rng=rng,
    )

    estimator = RadioSourceEstimator(simulated.readings, dims=2)
    estimator.listener = ProgressPrinter()
    estimator.estimate()

    estimate = estimator.estimated_radio_source
    accuracy = estimate.position_accuracy(confidence=0.95)
    error = np.linalg.norm(estimate.position - TRUE_POSITION)

    print(f"\nTrue position: {TRUE_POSITION}")
    print(f"Estimated position: {np.round(estimate.position, 3)}")
    print(f"Position error: {error:.3f} m")
    print(
        f"Transmitted power: {estimate.transmitted_power_dbm:.2f} dBm "
        f"(std {estimate.transmitted_power_std:.2f} dB)"
    )
    print(f"95% accuracy: {accuracy.average_accuracy:.3f} m")

    return simulated, estimate


def example_robust_estimation(rng: np.random.Generator):
    """Example 2: Robust estimation with 30% outliers."""
    print("\n" + "=" * 70)
    print("Example 2: Robust Estimation with Outliers")
    print("=" * 70)

    receivers = random_receiver_positions(TRUE_POSITION, 40, rng=rng)
    simulated = simulate_readings(
        SOURCE,
        TRUE_POSITION,
        receivers,
        transmitted_power_dbm=TRUE_POWER_DBM,
        mode=ReadingMode.RANGING,
        distance_noise_std=0.05,
        outlier_fraction=0.3,
        rng=rng,
    )
    quality = np.where(simulated.outliers, 0.5, 1.0) + rng.uniform(0, 0.1, 40)

    print(f"\nOutliers: {simulated.outliers.sum()} of {len(simulated.readings)}")
    print(f"{'Method':<10}{'Error (m)':>12}{'Inliers':>10}")

    estimates = {}
    for method in RobustMethod:
        estimator = RobustRadioSourceEstimator(
            simulated.readings,
            dims=2,
            mode=ReadingMode.RANGING,
            method=method,
            quality_scores=quality,
            seed=1,
        )
        estimator.threshold = 0.3
        estimator.estimate()
        error = np.linalg.norm(estimator.estimated_position - TRUE_POSITION)
        print(
            f"{method.name:<10}{error:>12.3f}"
            f"{estimator.inliers_data.num_inliers:>10d}"
        )
        estimates[method] = estimator

    joint = RadioSourceEstimator(simulated.readings, dims=2, mode=ReadingMode.RANGING)
    joint.estimate()
    error = np.linalg.norm(joint.estimated_position - TRUE_POSITION)
    print(f"{'JOINT':<10}{error:>12.3f}{'-':>10}")

    return simulated, estimates[RobustMethod.PROMEDS]


def example_rssi_only(rng: np.random.Generator):
    """Example 3: RSSI-only estimation of position, power and path loss."""
    print("\n" + "=" * 70)
    print("Example 3: RSSI-only Estimation")
    print("=" * 70)

    receivers = random_receiver_positions(TRUE_POSITION, 30, rng=rng)
    simulated = simulate_readings(
        SOURCE,
        TRUE_POSITION,
        receivers,
        transmitted_power_dbm=TRUE_POWER_DBM,
        path_loss_exponent=2.5,
        mode=ReadingMode.RSSI,
        rssi_noise_std=0.5,
        rng=rng,
    )

    estimator = RobustRadioSourceEstimator(
        simulated.readings,
        dims=2,
        mode=ReadingMode.RSSI,
        method=RobustMethod.LMEDS,
        seed=7,
    )
    estimator.path_loss_estimation_enabled = True
    estimator.estimate()

    print(f"\nEstimated position: {np.round(estimator.estimated_position, 3)}")
    print(f"Estimated power: {estimator.estimated_transmitted_power_dbm:.2f} dBm")
    print(f"Estimated path-loss exponent: {estimator.estimated_path_loss_exponent:.3f}")

    return estimator


def example_monte_carlo(rng: np.random.Generator, n_trials: int = 20):
    """Example 4: Monte Carlo comparison of joint and robust estimation."""
    print("\n" + "=" * 70)
    print(f"Example 4: Monte Carlo Comparison ({n_trials} trials, 20% outliers)")
    print("=" * 70)

    errors = {"joint": [], "robust": []}
    for _ in tqdm(range(n_trials), desc="Monte Carlo trials", unit="trial"):
        receivers = random_receiver_positions(TRUE_POSITION, 25, rng=rng)
        simulated = simulate_readings(
            SOURCE,
            TRUE_POSITION,
            receivers,
            mode=ReadingMode.RANGING,
            distance_noise_std=0.1,
            outlier_fraction=0.2,
            rng=rng,
        )

        joint = RadioSourceEstimator(simulated.readings, mode=ReadingMode.RANGING)
        joint.estimate()
        errors["joint"].append(np.linalg.norm(joint.estimated_position - TRUE_POSITION))

        robust = RobustRadioSourceEstimator(
            simulated.readings,
            mode=ReadingMode.RANGING,
            method=RobustMethod.LMEDS,
            seed=int(rng.integers(2**31)),
        )
        robust.estimate()
        errors["robust"].append(np.linalg.norm(robust.estimated_position - TRUE_POSITION))

    print(f"\n{'Estimator':<10}{'RMSE (m)':>12}{'Max (m)':>12}")
    for name, values in errors.items():
        values = np.asarray(values)
        print(f"{name:<10}{np.sqrt(np.mean(values**2)):>12.3f}{values.max():>12.3f}")

    return errors


def plot_estimation(simulated, estimate, title: str):
    """Visualize readings, estimate and its 95% confidence ellipse."""
    fig, ax = plt.subplots(figsize=(8, 8))

    receivers = simulated.receiver_positions
    inliers = ~simulated.outliers
    ax.scatter(
        receivers[inliers, 0],
        receivers[inliers, 1],
        s=60,
        c="gray",
        marker="^",
        label="Receivers",
    )
    if simulated.outliers.any():
        ax.scatter(
            receivers[simulated.outliers, 0],
            receivers[simulated.outliers, 1],
            s=60,
            c="orange",
            marker="^",
            label="Outlier readings",
        )

    ax.scatter(*simulated.source_position, s=150, c="green", marker="o",
               label="True Source", zorder=4)
    ax.scatter(*estimate.position, s=150, c="blue", marker="x",
               linewidths=3, label="Estimated Source", zorder=5)

    accuracy = estimate.position_accuracy(confidence=0.95)
    if accuracy is not None:
        eigvals, eigvecs = np.linalg.eigh(accuracy.covariance)
        angle = np.degrees(np.arctan2(eigvecs[1, -1], eigvecs[0, -1]))
        width, height = 2 * accuracy.semi_axes
        ax.add_patch(
            Ellipse(estimate.position, width, height, angle=angle,
                    fill=False, color="blue", linestyle="--", label="95% region")
        )

    ax.grid(True, alpha=0.3)
    ax.set_aspect("equal")
    ax.set_xlabel("East (m)", fontsize=12)
    ax.set_ylabel("North (m)", fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend(loc="best")

    fig.tight_layout()
    return fig


def main(output: Optional[str] = "radio_source_estimation.png", show: bool = True):
    """Run all radio source estimation examples."""
    print("\n" + "=" * 70)
    print("Radio Source Estimation Examples")
    print("=" * 70)

    rng = np.random.default_rng(42)

    simulated, estimate = example_joint_estimation(rng)
    robust_simulated, robust = example_robust_estimation(rng)
    example_rssi_only(rng)
    example_monte_carlo(rng)

    print("\n" + "=" * 70)
    print("Generating visualization...")
    print("=" * 70)

    fig = plot_estimation(
        robust_simulated, robust.estimated_radio_source, "Robust Radio Source Estimation"
    )
    if output is not None:
        fig.savefig(output, dpi=150, bbox_inches="tight")
        print(f"\nFigure saved: {output}")

    if show:
        plt.show()

    print("\n" + "=" * 70)
    print("Examples completed successfully!")
    print("=" * 70)
    return simulated, estimate


if __name__ == "__main__":
    main()
