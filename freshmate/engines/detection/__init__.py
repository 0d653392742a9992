"""
Ripeness detection engine.

- calibration: class-dependent confidence bands with bounded jitter
- inference: HTTP client for the remote model
- services: detection orchestrator (store, predict, calibrate, roll back)
- catalog: static fruit and disease reference data
"""
