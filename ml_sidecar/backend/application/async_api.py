"""Non-blocking facade: each long operation runs on a worker thread."""

from __future__ import annotations

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from ml_sidecar.backend.application.context import OperationKind
from ml_sidecar.backend.application.orchestrator import Orchestrator
from ml_sidecar.backend.component.environment_registry import VerifyResult
from ml_sidecar.backend.core.progress import ProgressSink
from ml_sidecar.backend.core.types import (
    BackendStatus,
    DownloadOutcome,
    EnvironmentStatus,
    EnvironmentVariant,
    ProgressMessage,
    WorkerResult,
)

T = TypeVar("T")


def threadsafe_sink(
    loop: asyncio.AbstractEventLoop, callback: Callable[[ProgressMessage], None]
) -> ProgressSink:
    """Wrap ``callback`` so progress from worker threads runs on ``loop``."""

    def _sink(message: ProgressMessage) -> None:
        loop.call_soon_threadsafe(callback, message)

    return _sink


class AsyncOrchestrator:
    """Awaitable wrapper around a blocking :class:`Orchestrator`."""

    def __init__(
        self, orchestrator: Orchestrator, executor: Optional[ThreadPoolExecutor] = None
    ) -> None:
        self.orchestrator = orchestrator
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix=f"{orchestrator.backend_id}-op"
        )

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    async def status(self) -> BackendStatus:
        return await self._call(self.orchestrator.status)

    async def install(
        self, variant: EnvironmentVariant, sink: Optional[ProgressSink] = None
    ) -> EnvironmentStatus:
        return await self._call(self.orchestrator.install, variant, sink)

    async def switch(self, variant: EnvironmentVariant) -> EnvironmentStatus:
        return await self._call(self.orchestrator.switch, variant)

    async def uninstall(
        self, variant: Optional[EnvironmentVariant] = None
    ) -> EnvironmentStatus:
        return await self._call(self.orchestrator.uninstall, variant)

    async def verify(
        self, variant: Optional[EnvironmentVariant] = None
    ) -> VerifyResult:
        return await self._call(self.orchestrator.verify, variant)

    async def download(
        self, model: Optional[str] = None, sink: Optional[ProgressSink] = None
    ) -> DownloadOutcome:
        return await self._call(self.orchestrator.download, model, sink)

    async def run(
        self, options: Mapping[str, Any], sink: Optional[ProgressSink] = None
    ) -> WorkerResult:
        return await self._call(self.orchestrator.run, options, sink)

    async def dispatch(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._call(self.orchestrator.dispatch, request)

    def cancel(self, kind: Optional[OperationKind] = None) -> List[OperationKind]:
        # Setting a flag never blocks; no executor hop needed.
        return self.orchestrator.cancel(kind)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["AsyncOrchestrator", "threadsafe_sink"]
