"""Backend orchestration layers for the ml_sidecar package."""
