"""Reusable components composed by the orchestrator."""
