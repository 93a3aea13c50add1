"""Hardware-facing layer: load-cell backends and calibrated channels."""
