"""
Smoke tests for the example and dataset generation scripts.

Location: tests/docs/
Purpose: Keep the documented entry points runnable (not unit tests for
radiolocation/ modules, which live in tests/radiolocation/)
"""

import importlib.util
import io
import json
from contextlib import redirect_stdout
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np  # noqa: E402

ROOT = Path(__file__).resolve().parents[2]


def load_script(name):
    """Import a script from scripts/ as a module."""
    path = ROOT / "scripts" / f"{name}.py"
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_radio_source_estimation_example(tmp_path):
    from examples.example_radio_source_estimation import main

    output = tmp_path / "estimation.png"
    stdout = io.StringIO()
    with redirect_stdout(stdout):
        simulated, estimate = main(output=str(output), show=False)

    assert output.exists()
    assert "Examples completed successfully!" in stdout.getvalue()
    error = np.linalg.norm(estimate.position - simulated.source_position)
    assert error < 1.0


def test_generate_radio_source_dataset(tmp_path):
    script = load_script("generate_radio_source_dataset")

    stdout = io.StringIO()
    with redirect_stdout(stdout):
        script.main(["--preset", "outliers", "--num-readings", "20", "--output", str(tmp_path)])

    with open(tmp_path / "config.json") as f:
        config = json.load(f)
    with open(tmp_path / "readings.json") as f:
        records = json.load(f)

    assert config["preset"] == "outliers"
    assert config["readings"]["num_outliers"] == 4
    assert len(records) == 20
    assert sum(record["outlier"] for record in records) == 4
    assert config["estimation"]["robust_error_m"] < 1.0


def test_dataset_records_round_trip(tmp_path):
    script = load_script("generate_radio_source_dataset")
    with redirect_stdout(io.StringIO()):
        script.main(["--preset", "clean", "--num-readings", "10", "--output", str(tmp_path)])

    with open(tmp_path / "readings.json") as f:
        records = json.load(f)
    source = script.RadioSource(records[0]["source"], frequency=2.4e9)
    readings = script.records_to_readings(records, source)

    assert len(readings) == 10
    assert all(r.has_distance and r.has_rssi for r in readings)
    assert readings[0].distance == records[0]["distance"]
