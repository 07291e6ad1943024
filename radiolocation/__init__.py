"""Radio source geolocation from ranging and RSSI readings.

This package estimates the position of a radio emitter (a WiFi access point
or a Bluetooth beacon) from readings gathered at known receiver positions:
- rf: Readings, path-loss model, minimal-sample solvers, weighted refinement
  and the radio source estimators
- estimators: Nonlinear least squares and the sample-consensus engine
- sim: Synthetic reading generation
"""

__version__ = "0.1.0"
