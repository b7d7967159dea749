"""HTTP control surface for backend lifecycle operations."""

import logging
import threading
import time
from copy import deepcopy
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from uvicorn.config import LOGGING_CONFIG

from ml_sidecar.backend.application.context import OperationKind
from ml_sidecar.backend.application.orchestrator import Orchestrator
from ml_sidecar.backend.core.progress import ProgressSink
from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressMessage
from ml_sidecar.backend.runtime import SidecarRuntime
from ml_sidecar.errors import (
    InvalidRequestError,
    OperationSupersededError,
    SidecarError,
    http_payload_for,
    http_status_for,
)

_ACCESS_LOG_IGNORED_PATHS = frozenset({"/health"})
LOGGER = logging.getLogger("ml_sidecar.http_server")


class _AccessLogPathFilter(logging.Filter):
    """Filter out noisy access logs for polling endpoints."""

    def __init__(self, ignored_paths: Tuple[str, ...]) -> None:
        super().__init__()
        self._ignored_paths = set(ignored_paths)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, tuple) and len(record.args) >= 3:
            path = str(record.args[2])
            if path in self._ignored_paths or path.endswith("/progress"):
                return False
        return True


def _build_uvicorn_log_config() -> Dict[str, Any]:
    log_config = deepcopy(LOGGING_CONFIG)
    log_config.setdefault("filters", {})
    log_config["filters"]["ignore_polling_endpoints"] = {
        "()": _AccessLogPathFilter,
        "ignored_paths": tuple(sorted(_ACCESS_LOG_IGNORED_PATHS)),
    }
    access_handler = log_config["handlers"].get("access", {})
    access_filters = access_handler.get("filters", [])
    access_handler["filters"] = [*access_filters, "ignore_polling_endpoints"]
    log_config["handlers"]["access"] = access_handler
    return log_config


def _parse_variant(value: Optional[str]) -> Optional[EnvironmentVariant]:
    if value is None:
        return None
    variant = EnvironmentVariant.parse(value)
    if variant is None:
        raise InvalidRequestError(f"unknown environment variant '{value}'")
    return variant


def _parse_kind(value: Optional[str]) -> Optional[OperationKind]:
    if value is None:
        return None
    try:
        return OperationKind(value)
    except ValueError as exc:
        raise InvalidRequestError(f"unknown operation kind '{value}'") from exc


class VariantRequest(BaseModel):
    """Request body naming an environment variant."""

    variant: Optional[str] = None


class DownloadRequest(BaseModel):
    model: Optional[str] = None


class RunRequest(BaseModel):
    """Worker options, rendered as command-line arguments."""

    options: Dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    kind: Optional[str] = None


class PreloadRequest(BaseModel):
    key: Optional[str] = None


class DispatchRequest(BaseModel):
    request: Dict[str, Any] = Field(default_factory=dict)


class ProgressBoard:
    """Latest progress event and result per backend and operation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def sink(self, backend_id: str, operation: str) -> ProgressSink:
        def _sink(message: ProgressMessage) -> None:
            self._update(backend_id, operation, event=message.as_event())

        return _sink

    def reset(self, backend_id: str, operation: str) -> None:
        with self._lock:
            self._entries.setdefault(backend_id, {})[operation] = {
                "event": None,
                "result": None,
            }

    def set_result(self, backend_id: str, operation: str, result: Any) -> None:
        self._update(backend_id, operation, result=result)

    def snapshot(self, backend_id: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return deepcopy(self._entries.get(backend_id, {}))

    def _update(self, backend_id: str, operation: str, **values: Any) -> None:
        with self._lock:
            entry = self._entries.setdefault(backend_id, {}).setdefault(
                operation, {"event": None, "result": None}
            )
            entry.update(values)


@dataclass
class HttpServerHandle:
    """Handle for the background HTTP server and operation threads."""

    server: uvicorn.Server
    thread: threading.Thread
    op_threads: List[threading.Thread]
    op_threads_lock: threading.Lock

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the HTTP server and wait for background operation threads."""
        if self.thread.is_alive():
            self.server.should_exit = True
            self.thread.join(timeout=timeout)
        with self.op_threads_lock:
            threads = list(self.op_threads)
        if threads:
            deadline = time.monotonic() + timeout if timeout is not None else None
            for thread in threads:
                remaining = None
                if deadline is not None:
                    remaining = max(0.0, deadline - time.monotonic())
                thread.join(timeout=remaining)
        with self.op_threads_lock:
            self.op_threads[:] = [
                thread for thread in self.op_threads if thread.is_alive()
            ]


def build_http_app(
    runtime: SidecarRuntime,
) -> Tuple[FastAPI, List[threading.Thread], threading.Lock]:
    """Create the FastAPI app and operation thread tracking state."""
    app = FastAPI()
    board = ProgressBoard()
    op_threads: List[threading.Thread] = []
    op_threads_lock = threading.Lock()

    def _prune_op_threads() -> None:
        with op_threads_lock:
            if not op_threads:
                return
            op_threads[:] = [thread for thread in op_threads if thread.is_alive()]

    def _start_operation(
        orchestrator: Orchestrator,
        operation: str,
        fn: Callable[[ProgressSink], Any],
        to_result: Callable[[Any], Any],
    ) -> JSONResponse:
        backend_id = orchestrator.backend_id
        _prune_op_threads()
        board.reset(backend_id, operation)

        # Long operations run off the request thread; progress goes to the board.
        def _run_safe() -> None:
            try:
                result = fn(board.sink(backend_id, operation))
            except OperationSupersededError:
                LOGGER.info("%s %s superseded", backend_id, operation)
            except SidecarError as exc:
                LOGGER.warning("%s %s failed: %s", backend_id, operation, exc)
            except Exception:  # pylint: disable=broad-exception-caught
                LOGGER.exception("%s %s crashed", backend_id, operation)
            else:
                board.set_result(backend_id, operation, to_result(result))

        thread = threading.Thread(
            target=_run_safe, name=f"{backend_id}-{operation}", daemon=True
        )
        with op_threads_lock:
            op_threads.append(thread)
        thread.start()
        return JSONResponse(
            {"status": "started", "backend": backend_id, "operation": operation},
            status_code=202,
        )

    @app.exception_handler(SidecarError)
    async def sidecar_error_handler(
        _request: Request, exc: SidecarError
    ) -> JSONResponse:
        return JSONResponse(
            http_payload_for(exc.code, exc.detail),
            status_code=http_status_for(exc.code),
        )

    @app.get("/health")
    def health_endpoint() -> JSONResponse:
        return JSONResponse({"status": "ok", "backends": runtime.backend_ids()})

    @app.get("/backends")
    def list_backends_endpoint() -> JSONResponse:
        statuses = [
            runtime.orchestrator(backend_id).status().as_dict()
            for backend_id in runtime.backend_ids()
        ]
        return JSONResponse({"backends": statuses})

    @app.get("/backends/{backend_id}")
    def backend_status_endpoint(backend_id: str) -> JSONResponse:
        return JSONResponse(runtime.orchestrator(backend_id).status().as_dict())

    @app.get("/backends/{backend_id}/progress")
    def progress_endpoint(backend_id: str) -> JSONResponse:
        runtime.orchestrator(backend_id)
        return JSONResponse(board.snapshot(backend_id))

    @app.post("/backends/{backend_id}/install")
    def install_endpoint(backend_id: str, req: VariantRequest) -> JSONResponse:
        orchestrator = runtime.orchestrator(backend_id)
        variant = _parse_variant(req.variant) or EnvironmentVariant.CPU
        return _start_operation(
            orchestrator,
            OperationKind.INSTALL.value,
            lambda sink: orchestrator.install(variant, sink),
            lambda status: status.as_dict(),
        )

    @app.post("/backends/{backend_id}/switch")
    def switch_endpoint(backend_id: str, req: VariantRequest) -> JSONResponse:
        orchestrator = runtime.orchestrator(backend_id)
        variant = _parse_variant(req.variant)
        if variant is None:
            raise InvalidRequestError("variant is required")
        return JSONResponse(orchestrator.switch(variant).as_dict())

    @app.post("/backends/{backend_id}/uninstall")
    def uninstall_endpoint(backend_id: str, req: VariantRequest) -> JSONResponse:
        orchestrator = runtime.orchestrator(backend_id)
        return JSONResponse(
            orchestrator.uninstall(_parse_variant(req.variant)).as_dict()
        )

    @app.post("/backends/{backend_id}/verify")
    def verify_endpoint(backend_id: str, req: VariantRequest) -> JSONResponse:
        result = runtime.orchestrator(backend_id).verify(_parse_variant(req.variant))
        return JSONResponse(
            {"variant": result.variant.value, "ok": result.ok, "detail": result.detail}
        )

    @app.post("/backends/{backend_id}/download")
    def download_endpoint(backend_id: str, req: DownloadRequest) -> JSONResponse:
        orchestrator = runtime.orchestrator(backend_id)
        manifest = orchestrator.cache.manifest(req.model)
        return _start_operation(
            orchestrator,
            OperationKind.DOWNLOAD.value,
            lambda sink: orchestrator.download(manifest.name, sink),
            lambda outcome: {
                "model": outcome.model,
                "path": str(outcome.path),
                "bytes_transferred": outcome.bytes_transferred,
                "already_present": outcome.already_present,
            },
        )

    @app.delete("/backends/{backend_id}/models/{model}")
    def delete_model_endpoint(backend_id: str, model: str) -> JSONResponse:
        removed = runtime.orchestrator(backend_id).delete_model(model)
        return JSONResponse({"removed": [str(path) for path in removed]})

    @app.post("/backends/{backend_id}/run")
    def run_endpoint(backend_id: str, req: RunRequest) -> JSONResponse:
        orchestrator = runtime.orchestrator(backend_id)
        if orchestrator.descriptor.worker is None:
            raise InvalidRequestError(f"{backend_id} has no worker")
        return _start_operation(
            orchestrator,
            OperationKind.RUN.value,
            lambda sink: orchestrator.run(req.options, sink),
            asdict,
        )

    @app.post("/backends/{backend_id}/cancel")
    def cancel_endpoint(backend_id: str, req: CancelRequest) -> JSONResponse:
        kinds = runtime.orchestrator(backend_id).cancel(_parse_kind(req.kind))
        return JSONResponse({"cancelled": [kind.value for kind in kinds]})

    @app.post("/backends/{backend_id}/service/preload")
    def preload_endpoint(backend_id: str, req: PreloadRequest) -> JSONResponse:
        orchestrator = runtime.orchestrator(backend_id)
        if req.key:
            message = orchestrator.preload_resource(req.key)
        else:
            message = orchestrator.preload_model()
        return JSONResponse({"status": "ok", "message": message})

    @app.post("/backends/{backend_id}/service/stop")
    def stop_service_endpoint(backend_id: str) -> JSONResponse:
        runtime.orchestrator(backend_id).stop_service()
        return JSONResponse({"status": "stopped"})

    @app.post("/backends/{backend_id}/service/dispatch")
    def dispatch_endpoint(backend_id: str, req: DispatchRequest) -> JSONResponse:
        return JSONResponse(runtime.orchestrator(backend_id).dispatch(req.request))

    return app, op_threads, op_threads_lock


def start_http_server(
    runtime: SidecarRuntime,
    host: str,
    port: int,
) -> HttpServerHandle:
    """Start the FastAPI control app in a background thread."""
    app, op_threads, op_threads_lock = build_http_app(runtime)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        log_config=_build_uvicorn_log_config(),
    )
    server = uvicorn.Server(config)

    def run_server() -> None:
        server.run()

    thread = threading.Thread(target=run_server, daemon=True)
    thread.start()
    return HttpServerHandle(
        server=server,
        thread=thread,
        op_threads=op_threads,
        op_threads_lock=op_threads_lock,
    )
