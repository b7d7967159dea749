"""Shared helpers for the ml_sidecar package."""
