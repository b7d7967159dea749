"""Generic engine composing registry, installer, transfer, bridge and service."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ml_sidecar.backend.application.context import BackendContext, OperationKind
from ml_sidecar.backend.component.environment_registry import (
    EnvironmentRegistry,
    VerifyResult,
)
from ml_sidecar.backend.component.installer import DependencyInstaller
from ml_sidecar.backend.component.model_cache import ModelCache
from ml_sidecar.backend.component.process_bridge import ProcessBridge, WorkerInvocation
from ml_sidecar.backend.component.scripts import WorkerScripts
from ml_sidecar.backend.component.service_supervisor import ServiceSupervisor
from ml_sidecar.backend.component.transfer import ResumableTransferManager
from ml_sidecar.backend.core.cancellation import OperationScope
from ml_sidecar.backend.core.progress import ProgressReporter, ProgressSink
from ml_sidecar.backend.core.types import (
    BackendStatus,
    DownloadOutcome,
    EnvironmentStatus,
    EnvironmentVariant,
    ModelStatus,
    ProgressStatus,
    WorkerResult,
)
from ml_sidecar.errors import (
    DownloadFailedError,
    InvalidRequestError,
    ServiceNotSupportedError,
)
from ml_sidecar.model.backends.base import (
    HF_CACHE_ENV,
    MODEL_DIR_ENV,
    BackendDescriptor,
    ModelManifest,
    WorkerSpec,
)
from ml_sidecar.utils.logger import clear_log_context, set_log_context

LOGGER = logging.getLogger("ml_sidecar.orchestrator")


@dataclass
class BackendComponents:
    """Everything one backend's engine is wired from."""

    context: BackendContext
    registry: EnvironmentRegistry
    installer: DependencyInstaller
    cache: ModelCache
    transfer: ResumableTransferManager
    scripts: WorkerScripts
    bridge: ProcessBridge
    supervisor: Optional[ServiceSupervisor] = None


class Orchestrator:
    """Runs every lifecycle operation of one backend.

    Long operations (install, download, run) take a progress sink and end
    with exactly one terminal event; a superseded operation raises without
    one. All methods block and are safe to call from worker threads.
    """

    def __init__(self, components: BackendComponents) -> None:
        self._components = components
        self._context = components.context
        self.registry = components.registry
        self.installer = components.installer
        self.cache = components.cache
        self.transfer = components.transfer
        self.scripts = components.scripts
        self.bridge = components.bridge
        self.supervisor = components.supervisor

    @property
    def descriptor(self) -> BackendDescriptor:
        return self._context.descriptor

    @property
    def backend_id(self) -> str:
        return self.descriptor.backend_id

    def status(self) -> BackendStatus:
        with self._operation("status"):
            environment = self.registry.probe()
            models: List[ModelStatus] = self.cache.statuses()
            service = None
            if self.supervisor is not None:
                self.supervisor.health_check()
                service = self.supervisor.state
            return BackendStatus(
                backend_id=self.backend_id,
                display_name=self.descriptor.display_name,
                tool_available=self.installer.tool_path() is not None,
                environment=environment,
                models=models,
                service=service,
            )

    def ensure_ready(
        self,
        variant: EnvironmentVariant = EnvironmentVariant.CPU,
        model: Optional[str] = None,
        sink: Optional[ProgressSink] = None,
    ) -> EnvironmentStatus:
        """Install the environment if nothing is active, then fetch the model."""
        status = self.registry.probe()
        if status.active is None:
            status = self.install(variant, sink)
        manifest = self.cache.manifest(model)
        if not self.cache.is_downloaded(manifest):
            self.download(manifest.name, sink)
        return status

    def install(
        self, variant: EnvironmentVariant, sink: Optional[ProgressSink] = None
    ) -> EnvironmentStatus:
        scope = self._context.begin(OperationKind.INSTALL)
        reporter = ProgressReporter(sink, ProgressStatus.INSTALLING)
        with self._operation(OperationKind.INSTALL.value):
            with reporter.terminal(
                f"{self.descriptor.display_name} {variant.value.upper()} "
                "environment installed"
            ):
                self._context.acquire(self._context.install_lock, scope)
                try:
                    self.installer.install(variant, scope, reporter)
                finally:
                    self._context.install_lock.release()
            return self.registry.probe()

    def switch(self, variant: EnvironmentVariant) -> EnvironmentStatus:
        with self._operation("switch"), self._context.lock:
            return self.registry.set_active(variant)

    def uninstall(
        self, variant: Optional[EnvironmentVariant] = None
    ) -> EnvironmentStatus:
        """Remove an environment; a running install of the backend is superseded."""
        with self._operation("uninstall"):
            self._context.supersede(OperationKind.INSTALL)
            with self._context.install_lock, self._context.lock:
                return self.registry.uninstall(variant)

    def verify(self, variant: Optional[EnvironmentVariant] = None) -> VerifyResult:
        with self._operation("verify"):
            result = self.registry.verify(variant)
            log = LOGGER.info if result.ok else LOGGER.warning
            log("Verify %s: %s", result.variant.value, result.detail)
            return result

    def download(
        self, model: Optional[str] = None, sink: Optional[ProgressSink] = None
    ) -> DownloadOutcome:
        manifest = self.cache.manifest(model)
        scope = self._context.begin(OperationKind.DOWNLOAD)
        reporter = ProgressReporter(sink, ProgressStatus.DOWNLOADING)
        with self._operation(OperationKind.DOWNLOAD.value):
            with reporter.terminal(f"{manifest.name} downloaded"):
                if self.descriptor.download_worker is not None:
                    return self._download_with_worker(
                        self.descriptor.download_worker, manifest, scope, reporter
                    )
                return self.transfer.download(manifest, scope, reporter)

    def delete_model(self, model: Optional[str] = None) -> List[Path]:
        """Delete a model; a running download of the backend is superseded."""
        with self._operation("delete_model"):
            self._context.supersede(OperationKind.DOWNLOAD)
            with self._context.transfer_lock:
                return self.cache.delete(model)

    def run(
        self, options: Mapping[str, Any], sink: Optional[ProgressSink] = None
    ) -> WorkerResult:
        """Run the backend's one-shot worker with ``options`` rendered as CLI args."""
        spec = self.descriptor.worker
        if spec is None:
            raise InvalidRequestError(f"{self.backend_id} has no worker")
        scope = self._context.begin(OperationKind.RUN)
        reporter = ProgressReporter(sink, spec.status)
        with self._operation(OperationKind.RUN.value):
            with reporter.terminal("completed"):
                _variant, interpreter = self.registry.active_interpreter()
                model = options.get("model", dict(spec.defaults).get("model"))
                model_dir = self.cache.require(model)
                try:
                    args = spec.build_args(options)
                except ValueError as exc:
                    raise InvalidRequestError(str(exc)) from exc
                scope.check()
                reporter.emit(0, "Starting worker", ProgressStatus.LOADING)
                invocation = WorkerInvocation(
                    interpreter=interpreter,
                    script=self.scripts.write(spec.script),
                    args=args,
                    spec=spec,
                    env={MODEL_DIR_ENV: str(model_dir)},
                )
                return self.bridge.run(invocation, scope, reporter)

    def cancel(self, kind: Optional[OperationKind] = None) -> List[OperationKind]:
        kinds = self._context.cancel(kind)
        LOGGER.info(
            "Cancel requested for %s: %s",
            self.backend_id,
            ", ".join(item.value for item in kinds),
        )
        return kinds

    def ensure_service(self) -> None:
        supervisor = self._require_supervisor()
        scope = self._context.begin(OperationKind.SERVICE, supersede=False)
        with self._operation(OperationKind.SERVICE.value):
            supervisor.ensure_running(scope)

    def stop_service(self) -> None:
        supervisor = self._require_supervisor()
        with self._operation("stop_service"):
            supervisor.stop()

    def preload_model(self) -> str:
        supervisor = self._require_supervisor()
        with self._operation("preload"):
            supervisor.ensure_running()
            return supervisor.preload_model()

    def preload_resource(self, key: str) -> str:
        supervisor = self._require_supervisor()
        with self._operation("preload"):
            supervisor.ensure_running()
            return supervisor.preload_resource(key)

    def dispatch(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        supervisor = self._require_supervisor()
        with self._operation("dispatch"):
            supervisor.ensure_running()
            return supervisor.dispatch(request)

    def _download_with_worker(
        self,
        spec: WorkerSpec,
        manifest: ModelManifest,
        scope: OperationScope,
        reporter: ProgressReporter,
    ) -> DownloadOutcome:
        existing = self.cache.locate(manifest)
        if existing is not None:
            return DownloadOutcome(manifest.name, existing, 0, already_present=True)
        _variant, interpreter = self.registry.active_interpreter()
        self._context.acquire(self._context.transfer_lock, scope)
        try:
            reporter.emit(0, f"Downloading {manifest.name}")
            invocation = WorkerInvocation(
                interpreter=interpreter,
                script=self.scripts.write(spec.script),
                args=spec.build_args({"model": manifest.name}),
                spec=spec,
                env={HF_CACHE_ENV: str(self.cache.hub_root)},
            )
            self.bridge.run(invocation, scope, reporter)
        finally:
            self._context.transfer_lock.release()
        located = self.cache.locate(manifest)
        if located is None:
            raise DownloadFailedError(
                f"download worker finished but {manifest.name} is incomplete"
            )
        return DownloadOutcome(manifest.name, located, 0)

    def _require_supervisor(self) -> ServiceSupervisor:
        if self.supervisor is None:
            raise ServiceNotSupportedError(
                f"{self.descriptor.display_name} has no persistent service"
            )
        return self.supervisor

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        set_log_context(self.backend_id, name)
        try:
            yield
        finally:
            clear_log_context()


__all__ = ["BackendComponents", "Orchestrator"]
