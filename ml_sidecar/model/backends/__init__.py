"""Registry of the backends managed by the sidecar."""

from typing import Dict, List

from ml_sidecar.errors import UnknownBackendError
from ml_sidecar.model.backends.base import BackendDescriptor
from ml_sidecar.model.backends.firered import FIRERED
from ml_sidecar.model.backends.sensevoice import SENSEVOICE
from ml_sidecar.model.backends.whisper import WHISPER

BACKENDS: Dict[str, BackendDescriptor] = {
    descriptor.backend_id: descriptor for descriptor in (FIRERED, SENSEVOICE, WHISPER)
}


def get_backend(backend_id: str) -> BackendDescriptor:
    try:
        return BACKENDS[backend_id]
    except KeyError as exc:
        raise UnknownBackendError(f"unknown backend '{backend_id}'") from exc


def list_backends() -> List[BackendDescriptor]:
    return list(BACKENDS.values())


__all__ = ["BACKENDS", "get_backend", "list_backends"]
