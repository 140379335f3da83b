"""Task pipeline: consensus gating, drift detection and smart dispatch."""
