"""Supervise a backend's persistent loopback inference service."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from ml_sidecar.backend.component.environment_registry import EnvironmentRegistry
from ml_sidecar.backend.component.scripts import WorkerScripts
from ml_sidecar.backend.core.cancellation import OperationScope
from ml_sidecar.backend.core.types import ServiceState
from ml_sidecar.errors import (
    OperationCancelledError,
    OperationSupersededError,
    ProcessSpawnError,
    ResultParseError,
    ServiceNotSupportedError,
    ServiceRequestError,
    ServiceStartTimeoutError,
    ServiceUnavailableError,
    ServiceUnhealthyError,
)

LOGGER = logging.getLogger("ml_sidecar.service_supervisor")

PopenFactory = Callable[..., Any]


@dataclass
class ServiceHandle:
    port: int
    state: ServiceState = ServiceState.STOPPED
    healthy_at: Optional[float] = None
    process: Optional[Any] = None


class ServiceSupervisor:
    """Keeps at most one service instance per backend alive on a fixed port.

    Liveness is cached for ``health_ttl_sec`` so status polling does not hit
    the service every time; start-up polls ``/health`` every
    ``start_interval_sec`` for ``start_attempts`` attempts.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        scripts: WorkerScripts,
        host: str = "127.0.0.1",
        port: int = 18765,
        session: Optional[requests.Session] = None,
        popen: Optional[PopenFactory] = None,
        env_provider: Optional[Callable[[], Mapping[str, str]]] = None,
        health_ttl_sec: float = 5.0,
        health_timeout_sec: float = 1.0,
        start_attempts: int = 20,
        start_interval_sec: float = 0.3,
        stop_attempts: int = 10,
        stop_interval_sec: float = 0.2,
        preload_timeout_sec: float = 120.0,
        dispatch_timeout_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.descriptor = registry.descriptor
        if not self.descriptor.supports_service:
            raise ServiceNotSupportedError(
                f"{self.descriptor.display_name} has no persistent service"
            )
        self._registry = registry
        self._scripts = scripts
        self._host = host
        self._session = session or requests.Session()
        self._popen = popen or subprocess.Popen
        self._env_provider = env_provider
        self._health_ttl_sec = health_ttl_sec
        self._health_timeout_sec = health_timeout_sec
        self._start_attempts = start_attempts
        self._start_interval_sec = start_interval_sec
        self._stop_attempts = stop_attempts
        self._stop_interval_sec = stop_interval_sec
        self._preload_timeout_sec = preload_timeout_sec
        self._dispatch_timeout_sec = dispatch_timeout_sec
        self._clock = clock
        self._lock = threading.RLock()
        self._handle = ServiceHandle(port=port)

    @property
    def base_url(self) -> str:
        return f"http://{self._host}:{self._handle.port}"

    @property
    def state(self) -> ServiceState:
        with self._lock:
            return self._handle.state

    @property
    def owns_process(self) -> bool:
        """True while a service process started by this supervisor is alive."""
        with self._lock:
            return self._owned_alive()

    @property
    def log_path(self) -> Path:
        return self._registry.config_root / f"{self.descriptor.backend_id}-service.log"

    def health_check(self, force: bool = False) -> bool:
        """Return service liveness, reusing a recent positive result."""
        with self._lock:
            handle = self._handle
            if (
                not force
                and handle.healthy_at is not None
                and self._clock() - handle.healthy_at < self._health_ttl_sec
            ):
                return True
            healthy = self._probe()
            if healthy:
                handle.healthy_at = self._clock()
                handle.state = ServiceState.HEALTHY
            else:
                handle.healthy_at = None
                if handle.state is ServiceState.HEALTHY:
                    LOGGER.warning(
                        "%s service stopped responding", self.descriptor.backend_id
                    )
                    handle.state = ServiceState.UNHEALTHY
                elif not (
                    handle.state is ServiceState.STARTING or self._owned_alive()
                ):
                    handle.state = ServiceState.STOPPED
            return healthy

    def ensure_running(self, scope: Optional[OperationScope] = None) -> None:
        """Start the service unless a healthy instance is already serving."""
        if self.health_check():
            return
        # backend lock before our own: activation hooks call stop() holding it
        with self._registry.lock, self._lock:
            if self.health_check():
                return
            _variant, interpreter = self._registry.active_interpreter()
            env = dict(os.environ)
            if self._env_provider is not None:
                env.update(self._env_provider())
            # the service imports helpers from the worker script beside it
            self._scripts.write_all(self.descriptor)
            script = self._scripts.path_for(self.descriptor.service_script or "")
            self._reap_owned()
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            argv = [str(interpreter), str(script), str(self._handle.port)]
            LOGGER.info(
                "Starting %s service: %s", self.descriptor.backend_id, " ".join(argv)
            )
            with self.log_path.open("ab") as log_fh:
                try:
                    proc = self._popen(
                        argv,
                        stdout=subprocess.DEVNULL,
                        stderr=log_fh,
                        stdin=subprocess.DEVNULL,
                        env=env,
                    )
                except OSError as exc:
                    self._handle.state = ServiceState.UNHEALTHY
                    raise ProcessSpawnError(
                        f"failed to start service: {exc}"
                    ) from exc
            self._handle.process = proc
            self._handle.state = ServiceState.STARTING
            try:
                self._await_healthy(proc, scope)
            except (OperationCancelledError, OperationSupersededError):
                self._kill_owned()
                raise

    def stop(self) -> None:
        """Stop the service: terminate our process or ask an orphan to exit."""
        with self._lock:
            proc = self._handle.process
            if proc is not None and proc.poll() is None:
                LOGGER.info("Stopping %s service", self.descriptor.backend_id)
                proc.terminate()
            elif self._probe():
                LOGGER.info(
                    "Asking orphaned %s service to exit", self.descriptor.backend_id
                )
                try:
                    self._session.post(
                        f"{self.base_url}/shutdown", timeout=self._health_timeout_sec
                    )
                except requests.RequestException as exc:
                    LOGGER.debug("Shutdown request failed: %s", exc)
            else:
                self._mark_stopped()
                return
            for _ in range(self._stop_attempts):
                time.sleep(self._stop_interval_sec)
                exited = proc is None or proc.poll() is not None
                if exited and not self._probe():
                    break
            else:
                LOGGER.warning(
                    "%s service did not stop in time; killing",
                    self.descriptor.backend_id,
                )
                self._kill_owned()
            self._mark_stopped()

    def preload_model(self) -> str:
        response = self._request(
            "GET", "/preload", timeout=self._preload_timeout_sec
        )
        return response.text

    def preload_resource(self, key: str) -> str:
        response = self._request(
            "GET",
            "/preload_audio",
            params={"path": key},
            timeout=self._preload_timeout_sec,
        )
        return response.text

    def dispatch(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """Send one unit of work and return the decoded JSON result."""
        response = self._request(
            "POST", "/", json=dict(request), timeout=self._dispatch_timeout_sec
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise ResultParseError(f"malformed service response: {exc}") from exc
        if not isinstance(body, dict):
            raise ResultParseError("service response is not a JSON object")
        if body.get("error"):
            raise ServiceRequestError(str(body["error"]))
        return body

    def _await_healthy(self, proc: Any, scope: Optional[OperationScope]) -> None:
        for attempt in range(1, self._start_attempts + 1):
            if scope is not None:
                scope.sleep(self._start_interval_sec)
            else:
                time.sleep(self._start_interval_sec)
            exit_code = proc.poll()
            if exit_code is not None:
                self._handle.process = None
                self._handle.state = ServiceState.UNHEALTHY
                detail = self._last_log_line()
                raise ServiceUnhealthyError(
                    f"service exited with code {exit_code}"
                    + (f": {detail}" if detail else "")
                )
            if self.health_check(force=True):
                LOGGER.info(
                    "%s service healthy after %d attempt(s)",
                    self.descriptor.backend_id,
                    attempt,
                )
                return
        self._kill_owned()
        self._handle.state = ServiceState.UNHEALTHY
        raise ServiceStartTimeoutError(
            f"service not healthy after {self._start_attempts} attempts"
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            with self._lock:
                self._handle.healthy_at = None
            raise ServiceUnavailableError(f"{method} {path}: {exc}") from exc
        except requests.RequestException as exc:
            raise ServiceRequestError(f"{method} {path}: {exc}") from exc
        if response.status_code != 200:
            raise ServiceRequestError(
                f"{method} {path} returned {response.status_code}: "
                f"{_error_text(response)}"
            )
        return response

    def _probe(self) -> bool:
        try:
            response = self._session.get(
                f"{self.base_url}/health", timeout=self._health_timeout_sec
            )
        except requests.RequestException:
            return False
        return response.status_code == 200 and response.text.strip() == "ok"

    def _owned_alive(self) -> bool:
        proc = self._handle.process
        return proc is not None and proc.poll() is None

    def _reap_owned(self) -> None:
        proc = self._handle.process
        if proc is not None and proc.poll() is not None:
            self._handle.process = None

    def _kill_owned(self) -> None:
        proc = self._handle.process
        if proc is not None and proc.poll() is None:
            proc.kill()
            proc.wait()
        self._handle.process = None

    def _mark_stopped(self) -> None:
        self._handle.process = None
        self._handle.healthy_at = None
        self._handle.state = ServiceState.STOPPED

    def _last_log_line(self) -> str:
        try:
            content = self.log_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""
        lines = [line.strip() for line in content.splitlines() if line.strip()]
        return lines[-1] if lines else ""


def _error_text(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text.strip()


__all__ = ["ServiceHandle", "ServiceSupervisor"]
