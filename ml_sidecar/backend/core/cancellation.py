"""Cooperative cancellation flags and generation-based supersession."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Type

from ml_sidecar.errors import OperationCancelledError, OperationSupersededError

_LOCK_POLL_SEC = 0.05


class CancellationToken:
    """Thread-safe boolean flag polled at every suspension point."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)


class GenerationCounter:
    """Monotonic counter; a lease taken from it is valid until the next advance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def current(self) -> int:
        with self._lock:
            return self._value

    def advance(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def begin(self) -> "GenerationLease":
        """Advance the counter and return a lease on the new generation."""
        return GenerationLease(self, self.advance())

    def lease(self) -> "GenerationLease":
        """Lease on the current generation without advancing."""
        return GenerationLease(self, self.current())


@dataclass(frozen=True)
class GenerationLease:
    counter: GenerationCounter
    generation: int

    def valid(self) -> bool:
        return self.counter.current() == self.generation


class OperationScope:
    """Token + lease pair checked by long-running loops.

    Supersession is checked before cancellation: a superseded operation must
    abort silently even if the token was also set.
    """

    def __init__(
        self,
        token: CancellationToken,
        lease: GenerationLease,
        superseded_error: Type[OperationSupersededError] = OperationSupersededError,
    ) -> None:
        self.token = token
        self.lease = lease
        self._superseded_error = superseded_error

    @classmethod
    def detached(cls) -> "OperationScope":
        """Scope that is never cancelled nor superseded."""
        return cls(CancellationToken(), GenerationCounter().begin())

    def superseded(self) -> bool:
        return not self.lease.valid()

    def cancelled(self) -> bool:
        return self.token.is_cancelled()

    def check(self) -> None:
        if self.superseded():
            raise self._superseded_error()
        if self.cancelled():
            raise OperationCancelledError()

    def sleep(self, seconds: float) -> None:
        """Wait for ``seconds`` but wake early on cancellation, then check."""
        self.token.wait(seconds)
        self.check()

    def acquire(self, lock: threading.Lock) -> None:
        """Block on ``lock`` while still honoring this scope."""
        while not lock.acquire(timeout=_LOCK_POLL_SEC):
            self.check()


__all__ = [
    "CancellationToken",
    "GenerationCounter",
    "GenerationLease",
    "OperationScope",
]
