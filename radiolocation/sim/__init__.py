"""
Simulation utilities for generating synthetic radio source readings.

Modules:
    readings_simulation: Readings around a source with shadowing, ranging
        noise and a fraction of outliers
"""

from radiolocation.sim.readings_simulation import (
    SimulatedReadings,
    random_receiver_positions,
    simulate_readings,
)

__all__ = [
    "SimulatedReadings",
    "random_receiver_positions",
    "simulate_readings",
]
