"""
Generate a synthetic radio source dataset.

Scatters receivers around a WiFi access point, simulates ranging and RSSI
readings with noise and outliers, runs the joint and robust estimators on
them and writes everything as JSON:

    readings.json   one entry per reading (position, distance, rssi, stds,
                    outlier flag)
    config.json     generation parameters, ground truth and estimation errors

Usage:
    python scripts/generate_radio_source_dataset.py --preset outliers
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from radiolocation.estimators import RefinementFailed, RobustMethod
from radiolocation.rf import (
    RadioSource,
    RadioSourceEstimator,
    RadioSourceType,
    Reading,
    ReadingMode,
    RobustRadioSourceEstimator,
)
from radiolocation.sim import random_receiver_positions, simulate_readings

PRESETS = {
    "clean": {
        "mode": "ranging_and_rssi",
        "distance_noise": 0.1,
        "rssi_noise": 1.0,
        "outlier_fraction": 0.0,
    },
    "outliers": {
        "mode": "ranging_and_rssi",
        "distance_noise": 0.1,
        "rssi_noise": 1.0,
        "outlier_fraction": 0.2,
    },
    "rssi_only": {
        "mode": "rssi",
        "distance_noise": 0.0,
        "rssi_noise": 1.0,
        "outlier_fraction": 0.1,
    },
}


def readings_to_records(readings: List[Reading], outliers: np.ndarray) -> List[Dict]:
    """Convert readings to JSON-serializable records."""
    records = []
    for reading, outlier in zip(readings, outliers):
        records.append(
            {
                "source": reading.source.identifier,
                "position": reading.position.tolist(),
                "distance": reading.distance,
                "rssi": reading.rssi,
                "distance_std": reading.distance_std,
                "rssi_std": reading.rssi_std,
                "outlier": bool(outlier),
            }
        )
    return records


def records_to_readings(records: List[Dict], source: RadioSource) -> List[Reading]:
    """Rebuild readings from records written by readings_to_records."""
    return [
        Reading(
            source,
            np.array(record["position"]),
            distance=record["distance"],
            rssi=record["rssi"],
            distance_std=record["distance_std"],
            rssi_std=record["rssi_std"],
        )
        for record in records
    ]


def run_estimators(
    readings: List[Reading],
    dims: int,
    mode: ReadingMode,
    method: RobustMethod,
    seed: int,
) -> Dict[str, Optional[np.ndarray]]:
    """Run the joint and robust estimators and return their positions."""
    results = {}

    joint = RadioSourceEstimator(readings, dims=dims, mode=mode)
    try:
        joint.estimate()
        results["joint"] = joint.estimated_position
    except RefinementFailed as e:
        print(f"  Joint estimation failed: {e}")
        results["joint"] = None

    robust = RobustRadioSourceEstimator(
        readings,
        dims=dims,
        mode=mode,
        method=method,
        quality_scores=np.ones(len(readings)),
        seed=seed,
    )
    robust.threshold = 1.0
    robust.estimate()
    results["robust"] = robust.estimated_position
    results["num_inliers"] = robust.inliers_data.num_inliers

    return results


def save_dataset(output_dir: Path, records: List[Dict], config: Dict[str, Any]) -> None:
    """Save dataset to disk."""
    output_dir.mkdir(parents=True, exist_ok=True)

    with open(output_dir / "readings.json", "w") as f:
        json.dump(records, f, indent=2)
    with open(output_dir / "config.json", "w") as f:
        json.dump(config, f, indent=2)

    print(f"\n  Saved dataset to: {output_dir}")
    print(f"    Readings: {len(records)}")


def generate_dataset(
    output_dir: str,
    preset: Optional[str] = None,
    dims: int = 2,
    num_readings: int = 30,
    mode: str = "ranging_and_rssi",
    transmitted_power_dbm: float = -20.0,
    path_loss_exponent: float = 2.0,
    frequency: float = 2.4e9,
    distance_noise: float = 0.1,
    rssi_noise: float = 1.0,
    outlier_fraction: float = 0.2,
    method: str = "promeds",
    seed: int = 42,
) -> Dict[str, Any]:
    """
    Generate a radio source dataset.

    Args:
        output_dir: Output directory path.
        preset: Preset name, overrides the noise parameters and mode.
        dims: Position dimensionality, 2 or 3.
        num_readings: Number of readings.
        mode: Reading mode value ('ranging', 'rssi', 'ranging_and_rssi').
        transmitted_power_dbm: True transmitted power (dBm).
        path_loss_exponent: True path-loss exponent.
        frequency: Carrier frequency (Hz).
        distance_noise: Ranging noise std dev (m).
        rssi_noise: Shadowing std dev (dB).
        outlier_fraction: Fraction of corrupted readings.
        method: Robust method value.
        seed: Random seed.

    Returns:
        The saved configuration.
    """
    if preset is not None:
        params = PRESETS[preset]
        mode = params["mode"]
        distance_noise = params["distance_noise"]
        rssi_noise = params["rssi_noise"]
        outlier_fraction = params["outlier_fraction"]

    reading_mode = ReadingMode(mode)
    robust_method = RobustMethod(method)
    rng = np.random.default_rng(seed)

    print("\n" + "=" * 70)
    print(f"Generating Radio Source Dataset: {Path(output_dir).name}")
    print("=" * 70)

    print("\nStep 1: Placing source and receivers...")
    source = RadioSource(
        "ap-0", frequency=frequency, source_type=RadioSourceType.WIFI_ACCESS_POINT
    )
    source_position = rng.uniform(-5.0, 5.0, size=dims)
    receivers = random_receiver_positions(
        source_position, num_readings, min_radius=1.0, max_radius=10.0, rng=rng
    )
    print(f"  Source position: {np.round(source_position, 3)}")
    print(f"  Receivers: {num_readings}")

    print("\nStep 2: Simulating readings...")
    print(f"  Mode: {reading_mode.value}")
    print(f"  Distance noise: {distance_noise:.3f} m")
    print(f"  RSSI noise: {rssi_noise:.2f} dB")
    print(f"  Outlier fraction: {outlier_fraction:.2f}")
    simulated = simulate_readings(
        source,
        source_position,
        receivers,
        transmitted_power_dbm=transmitted_power_dbm,
        path_loss_exponent=path_loss_exponent,
        mode=reading_mode,
        distance_noise_std=distance_noise,
        rssi_noise_std=rssi_noise,
        outlier_fraction=outlier_fraction,
        rng=rng,
    )

    print("\nStep 3: Running estimators...")
    start = time.time()
    results = run_estimators(
        simulated.readings, dims, reading_mode, robust_method, seed
    )
    elapsed = time.time() - start
    print(f"  Estimation time: {elapsed:.3f} s")

    errors = {}
    for name in ("joint", "robust"):
        position = results[name]
        errors[name] = (
            None if position is None else float(np.linalg.norm(position - source_position))
        )
        if errors[name] is not None:
            print(f"  {name.capitalize()} error: {errors[name]:.3f} m")

    config = {
        "dataset": "radio_source",
        "preset": preset,
        "source": {
            "identifier": source.identifier,
            "frequency_hz": frequency,
            "position": source_position.tolist(),
            "transmitted_power_dbm": transmitted_power_dbm,
            "path_loss_exponent": path_loss_exponent,
        },
        "readings": {
            "count": num_readings,
            "dims": dims,
            "mode": reading_mode.value,
            "distance_noise_std_m": distance_noise,
            "rssi_noise_std_db": rssi_noise,
            "outlier_fraction": outlier_fraction,
            "num_outliers": int(simulated.outliers.sum()),
        },
        "estimation": {
            "method": robust_method.value,
            "num_inliers": int(results["num_inliers"]),
            "joint_error_m": errors["joint"],
            "robust_error_m": errors["robust"],
        },
        "seed": seed,
    }

    save_dataset(
        Path(output_dir),
        readings_to_records(simulated.readings, simulated.outliers),
        config,
    )

    print("\n" + "=" * 70)
    print("Dataset generation complete!")
    print("=" * 70)
    return config


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Generate a synthetic radio source dataset",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Presets:
  clean       Ranging and RSSI readings, no outliers
  outliers    Ranging and RSSI readings, 20% outliers
  rssi_only   RSSI readings, 10% outliers

Examples:
  python scripts/generate_radio_source_dataset.py --preset outliers
  python scripts/generate_radio_source_dataset.py --dims 3 --num-readings 50
        """,
    )

    parser.add_argument(
        "--preset",
        type=str,
        choices=sorted(PRESETS),
        help="Use preset configuration (overrides noise parameters and mode)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="data/sim/radio_source",
        help="Output directory (default: data/sim/radio_source)",
    )

    source_group = parser.add_argument_group("Source Parameters")
    source_group.add_argument(
        "--power", type=float, default=-20.0, help="Transmitted power in dBm (default: -20.0)"
    )
    source_group.add_argument(
        "--path-loss", type=float, default=2.0, help="Path-loss exponent (default: 2.0)"
    )
    source_group.add_argument(
        "--frequency", type=float, default=2.4e9, help="Carrier frequency in Hz (default: 2.4e9)"
    )

    reading_group = parser.add_argument_group("Reading Parameters")
    reading_group.add_argument(
        "--dims", type=int, choices=[2, 3], default=2, help="Dimensions (default: 2)"
    )
    reading_group.add_argument(
        "--num-readings", type=int, default=30, help="Number of readings (default: 30)"
    )
    reading_group.add_argument(
        "--mode",
        type=str,
        choices=[m.value for m in ReadingMode],
        default="ranging_and_rssi",
        help="Reading mode (default: ranging_and_rssi)",
    )
    reading_group.add_argument(
        "--distance-noise", type=float, default=0.1, help="Ranging noise std in meters (default: 0.1)"
    )
    reading_group.add_argument(
        "--rssi-noise", type=float, default=1.0, help="RSSI noise std in dB (default: 1.0)"
    )
    reading_group.add_argument(
        "--outlier-fraction", type=float, default=0.2, help="Outlier fraction (default: 0.2)"
    )

    parser.add_argument(
        "--method",
        type=str,
        choices=[m.value for m in RobustMethod],
        default="promeds",
        help="Robust method (default: promeds)",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")

    args = parser.parse_args(argv)

    generate_dataset(
        output_dir=args.output,
        preset=args.preset,
        dims=args.dims,
        num_readings=args.num_readings,
        mode=args.mode,
        transmitted_power_dbm=args.power,
        path_loss_exponent=args.path_loss,
        frequency=args.frequency,
        distance_noise=args.distance_noise,
        rssi_noise=args.rssi_noise,
        outlier_fraction=args.outlier_fraction,
        method=args.method,
        seed=args.seed,
    )


if __name__ == "__main__":
    main()
