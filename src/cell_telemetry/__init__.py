"""
cell_telemetry

This package provides the messaging side of a cellular telemetry device:
a single, self-healing MQTT session driven by a periodic maintenance tick,
plus the thin driver that publishes the device identity and telemetry.
"""
__version__ = "0.1.0"
