"""Application wiring for the sidecar."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

import requests

from ml_sidecar.backend.application.async_api import AsyncOrchestrator
from ml_sidecar.backend.application.context import BackendContext
from ml_sidecar.backend.application.orchestrator import (
    BackendComponents,
    Orchestrator,
)
from ml_sidecar.backend.component.environment_registry import (
    EnvironmentRegistry,
    EnvironmentRegistryHooks,
)
from ml_sidecar.backend.component.installer import DependencyInstaller
from ml_sidecar.backend.component.model_cache import ModelCache
from ml_sidecar.backend.component.process_bridge import ProcessBridge
from ml_sidecar.backend.component.scripts import WorkerScripts
from ml_sidecar.backend.component.service_supervisor import ServiceSupervisor
from ml_sidecar.backend.component.transfer import ResumableTransferManager
from ml_sidecar.backend.core.types import EnvironmentVariant
from ml_sidecar.backend.runtime.config import RuntimeConfig
from ml_sidecar.model.backends import BACKENDS, get_backend
from ml_sidecar.model.backends.base import MODEL_DIR_ENV, BackendDescriptor, ModelHub
from ml_sidecar.utils.logger import LOGGER


class SidecarRuntime:
    """Builds and owns one orchestrator per backend.

    Orchestrators are created lazily and share a single HTTP session; each
    backend keeps its own context so operations on different backends never
    contend.
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        session: Optional[requests.Session] = None,
        max_workers: int = 4,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.session = session or requests.Session()
        self._lock = threading.Lock()
        self._orchestrators: Dict[str, Orchestrator] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="sidecar-op"
        )

    def backend_ids(self) -> List[str]:
        return list(BACKENDS)

    def orchestrator(self, backend_id: str) -> Orchestrator:
        """Return the orchestrator of ``backend_id``, building it on first use."""
        descriptor = get_backend(backend_id)
        with self._lock:
            orchestrator = self._orchestrators.get(backend_id)
            if orchestrator is None:
                orchestrator = Orchestrator(self.build_components(descriptor))
                self._orchestrators[backend_id] = orchestrator
            return orchestrator

    def async_orchestrator(self, backend_id: str) -> AsyncOrchestrator:
        """Awaitable facade sharing the runtime's worker pool."""
        return AsyncOrchestrator(self.orchestrator(backend_id), self._executor)

    def build_components(self, descriptor: BackendDescriptor) -> BackendComponents:
        paths = self.config.paths
        installer_cfg = self.config.installer
        transfer_cfg = self.config.transfer
        context = BackendContext(descriptor)
        supervisors: List[ServiceSupervisor] = []

        def _stop_service(variant: EnvironmentVariant) -> None:
            for supervisor in supervisors:
                LOGGER.info(
                    "Stopping %s service before %s environment changes",
                    descriptor.backend_id,
                    variant.value,
                )
                supervisor.stop()

        registry = EnvironmentRegistry(
            descriptor,
            paths.config_root,
            lock=context.lock,
            hooks=EnvironmentRegistryHooks(
                before_activate=_stop_service,
                before_remove=_stop_service,
            ),
            verify_timeout_sec=installer_cfg.verify_timeout_sec,
        )
        scripts = WorkerScripts(registry.scripts_dir)
        cache = ModelCache(
            descriptor,
            {
                ModelHub.MODELSCOPE: paths.modelscope_hub,
                ModelHub.HUGGINGFACE: paths.huggingface_hub,
            },
        )
        supervisor = None
        if descriptor.supports_service:
            service_cfg = self.config.service
            supervisor = ServiceSupervisor(
                registry,
                scripts,
                host=service_cfg.host,
                port=service_cfg.port,
                session=self.session,
                env_provider=lambda: {MODEL_DIR_ENV: str(cache.require())},
                health_ttl_sec=service_cfg.health_ttl_sec,
                health_timeout_sec=service_cfg.health_timeout_sec,
                start_attempts=service_cfg.start_attempts,
                start_interval_sec=service_cfg.start_interval_sec,
                stop_attempts=service_cfg.stop_attempts,
                stop_interval_sec=service_cfg.stop_interval_sec,
                preload_timeout_sec=service_cfg.preload_timeout_sec,
                dispatch_timeout_sec=service_cfg.dispatch_timeout_sec,
            )
            supervisors.append(supervisor)
        return BackendComponents(
            context=context,
            registry=registry,
            installer=DependencyInstaller(
                registry,
                scripts,
                uv_path=installer_cfg.uv_path,
                python_version=installer_cfg.python_version,
                poll_interval_sec=installer_cfg.poll_interval_sec,
            ),
            cache=cache,
            transfer=ResumableTransferManager(
                cache,
                session=self.session,
                chunk_bytes=transfer_cfg.chunk_bytes,
                timeout=transfer_cfg.timeout,
                lock=context.transfer_lock,
            ),
            scripts=scripts,
            bridge=ProcessBridge(
                poll_interval_ms=self.config.bridge.poll_interval_ms,
            ),
            supervisor=supervisor,
        )

    def close(self) -> None:
        """Cancel outstanding work and stop services this runtime started."""
        with self._lock:
            orchestrators = list(self._orchestrators.values())
        for orchestrator in orchestrators:
            orchestrator.cancel()
            supervisor = orchestrator.supervisor
            if supervisor is not None and supervisor.owns_process:
                try:
                    supervisor.stop()
                except Exception:
                    LOGGER.exception(
                        "Failed to stop %s service", orchestrator.backend_id
                    )
        self._executor.shutdown(wait=False)
        self.session.close()
