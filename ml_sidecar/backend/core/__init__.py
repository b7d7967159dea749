"""Core primitives: cancellation, progress and shared value types."""

from .cancellation import (
    CancellationToken,
    GenerationCounter,
    GenerationLease,
    OperationScope,
)
from .progress import ProgressReporter, ProgressSink

__all__ = [
    "CancellationToken",
    "GenerationCounter",
    "GenerationLease",
    "OperationScope",
    "ProgressReporter",
    "ProgressSink",
]
