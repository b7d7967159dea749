"""Application layer: per-backend context, orchestrator and async facade."""

from .async_api import AsyncOrchestrator, threadsafe_sink
from .context import BackendContext, OperationKind
from .orchestrator import BackendComponents, Orchestrator

__all__ = [
    "AsyncOrchestrator",
    "BackendComponents",
    "BackendContext",
    "OperationKind",
    "Orchestrator",
    "threadsafe_sink",
]
