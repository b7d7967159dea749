"""Explicit per-backend state owned by the orchestrator."""

from __future__ import annotations

import enum
import threading
from typing import Dict, List, Optional

from ml_sidecar.backend.core.cancellation import (
    CancellationToken,
    GenerationCounter,
    OperationScope,
)
from ml_sidecar.errors import DownloadSupersededError, OperationSupersededError
from ml_sidecar.model.backends.base import BackendDescriptor


class OperationKind(str, enum.Enum):
    INSTALL = "install"
    DOWNLOAD = "download"
    RUN = "run"
    SERVICE = "service"


class BackendContext:
    """Tokens, generation counters and locks for one backend.

    ``lock`` guards environment mutations; ``install_lock`` and
    ``transfer_lock`` serialize installs and downloads, which are long and
    therefore handed over through supersession rather than plain blocking.
    """

    def __init__(self, descriptor: BackendDescriptor) -> None:
        self.descriptor = descriptor
        self.lock = threading.RLock()
        self.install_lock = threading.Lock()
        self.transfer_lock = threading.Lock()
        self._tokens: Dict[OperationKind, CancellationToken] = {
            kind: CancellationToken() for kind in OperationKind
        }
        self._generations: Dict[OperationKind, GenerationCounter] = {
            kind: GenerationCounter() for kind in OperationKind
        }

    def token(self, kind: OperationKind) -> CancellationToken:
        return self._tokens[kind]

    def generation(self, kind: OperationKind) -> GenerationCounter:
        return self._generations[kind]

    def begin(self, kind: OperationKind, supersede: bool = True) -> OperationScope:
        """Start an operation of ``kind``.

        With ``supersede`` the generation advances first, so a still-running
        operation of the same kind is invalidated before the token is reset.
        """
        counter = self._generations[kind]
        lease = counter.begin() if supersede else counter.lease()
        token = self._tokens[kind]
        token.reset()
        error_cls = (
            DownloadSupersededError
            if kind is OperationKind.DOWNLOAD
            else OperationSupersededError
        )
        return OperationScope(token, lease, error_cls)

    def supersede(self, kind: OperationKind) -> None:
        self._generations[kind].advance()

    def cancel(self, kind: Optional[OperationKind] = None) -> List[OperationKind]:
        kinds = [kind] if kind is not None else list(OperationKind)
        for item in kinds:
            self._tokens[item].cancel()
        return kinds

    @staticmethod
    def acquire(lock: threading.Lock, scope: OperationScope) -> None:
        """Block on ``lock`` while still honoring the scope."""
        scope.acquire(lock)


__all__ = ["BackendContext", "OperationKind"]
