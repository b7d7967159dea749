"""Progress reporting with monotonic percentages and a single terminal event."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from ml_sidecar.backend.core.types import ProgressMessage, ProgressStatus
from ml_sidecar.errors import (
    OperationCancelledError,
    OperationSupersededError,
    SidecarError,
)

ProgressSink = Callable[[ProgressMessage], None]

LOGGER = logging.getLogger("ml_sidecar.progress")


class ProgressReporter:
    """Forwards ProgressMessages to an optional sink from any thread."""

    def __init__(
        self,
        sink: Optional[ProgressSink] = None,
        status: ProgressStatus = ProgressStatus.LOADING,
    ) -> None:
        self._sink = sink
        self._status = status
        self._lock = threading.Lock()
        self._last_percent = 0.0
        self._finished = False

    @property
    def last_percent(self) -> float:
        with self._lock:
            return self._last_percent

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def emit(
        self,
        percent: float,
        text: str,
        status: Optional[ProgressStatus] = None,
        current: Optional[int] = None,
        total: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        """Emit a non-terminal update; percentages never move backwards."""
        with self._lock:
            if self._finished:
                return
            if status is not None and not status.terminal:
                self._status = status
            percent = max(self._last_percent, min(100.0, max(0.0, float(percent))))
            self._last_percent = percent
            message = ProgressMessage(
                percent=percent,
                text=text,
                status=self._status,
                current=current,
                total=total,
                detail=detail,
            )
        self._deliver(message)

    def complete(self, text: str = "completed") -> None:
        self._finish(ProgressStatus.COMPLETED, text, 100.0)

    def cancelled(self, text: str = "cancelled") -> None:
        self._finish(ProgressStatus.CANCELLED, text, None)

    def fail(self, text: str) -> None:
        self._finish(ProgressStatus.ERROR, text, None)

    @contextmanager
    def terminal(
        self, completed_text: str = "completed"
    ) -> Iterator["ProgressReporter"]:
        """Guarantee exactly one terminal event around an operation.

        Supersession propagates without any terminal event.
        """
        try:
            yield self
        except OperationSupersededError:
            raise
        except OperationCancelledError:
            self.cancelled()
            raise
        except SidecarError as exc:
            self.fail(exc.detail)
            raise
        except Exception as exc:
            self.fail(str(exc))
            raise
        else:
            self.complete(completed_text)

    def _finish(
        self, status: ProgressStatus, text: str, percent: Optional[float]
    ) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            if percent is not None:
                self._last_percent = percent
            message = ProgressMessage(
                percent=self._last_percent, text=text, status=status
            )
        self._deliver(message)

    def _deliver(self, message: ProgressMessage) -> None:
        if self._sink is None:
            return
        try:
            self._sink(message)
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.exception("Progress sink raised; update dropped")


__all__ = ["ProgressReporter", "ProgressSink"]
