import contextvars
import logging
import logging.handlers
import queue
from pathlib import Path
from typing import List, Optional

# Custom TRACE level below DEBUG.
TRACE_LEVEL_NUM = 5
logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")


def trace(self: logging.Logger, message: str, *args, **kwargs) -> None:
    """Logger helper for TRACE level."""
    if self.isEnabledFor(TRACE_LEVEL_NUM):
        self._log(TRACE_LEVEL_NUM, message, args, **kwargs)


logging.Logger.trace = trace  # type: ignore

LOG_QUEUE: "queue.Queue[logging.LogRecord]" = queue.Queue()
QUEUE_LISTENER: Optional[logging.handlers.QueueListener] = None

_BACKEND_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "ml_sidecar_backend_id", default=None
)
_OPERATION: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "ml_sidecar_operation", default=None
)


def set_log_context(backend_id: Optional[str], operation: Optional[str]) -> None:
    """Stamp subsequent records from this context with backend/operation."""
    _BACKEND_ID.set(backend_id)
    _OPERATION.set(operation)


def clear_log_context() -> None:
    """Reset the backend/operation stamp for this context."""
    _BACKEND_ID.set(None)
    _OPERATION.set(None)


class _LogContextFilter(logging.Filter):
    """Attach ``backend=<id> op=<kind>`` to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        backend_id = _BACKEND_ID.get()
        operation = _OPERATION.get()
        parts = []
        if backend_id:
            parts.append(f"backend={backend_id}")
        if operation:
            parts.append(f"op={operation}")
        record.log_context = f" [{' '.join(parts)}]" if parts else ""
        return True


def configure_logging(level: str, log_file: Optional[str]) -> None:
    """Configure root logging with queue-based handlers."""
    global QUEUE_LISTENER
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if level.upper() == "TRACE":
        numeric_level = TRACE_LEVEL_NUM

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s%(log_context)s: %(message)s"
    )

    handlers: List[logging.Handler] = []
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # Context is read on the emitting thread, so the filter sits on the
    # queue handler rather than on the listener's handlers.
    queue_handler = logging.handlers.QueueHandler(LOG_QUEUE)
    queue_handler.addFilter(_LogContextFilter())
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(queue_handler)

    if QUEUE_LISTENER:
        QUEUE_LISTENER.stop()
    QUEUE_LISTENER = logging.handlers.QueueListener(
        LOG_QUEUE, *handlers, respect_handler_level=True
    )
    QUEUE_LISTENER.start()


LOGGER = logging.getLogger("ml_sidecar")

__all__ = [
    "configure_logging",
    "clear_log_context",
    "set_log_context",
    "LOGGER",
    "TRACE_LEVEL_NUM",
]
