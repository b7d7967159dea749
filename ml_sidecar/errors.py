"""Centralized error codes and status mappings."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers surfaced to callers and logs."""

    # environment/install (ERR100x)
    TOOL_MISSING = "ERR1001"
    INSTALL_FAILED = "ERR1002"
    ENV_NOT_READY = "ERR1003"
    ENV_NOT_INSTALLED = "ERR1004"

    # transfer (ERR200x)
    DOWNLOAD_FAILED = "ERR2001"
    DOWNLOAD_SUPERSEDED = "ERR2002"
    MODEL_NOT_DOWNLOADED = "ERR2003"

    # worker process (ERR300x)
    OPERATION_CANCELLED = "ERR3001"
    OPERATION_SUPERSEDED = "ERR3002"
    PROCESS_SPAWN_FAILED = "ERR3003"
    WORKER_EXITED_NONZERO = "ERR3004"
    RESULT_PARSE_FAILED = "ERR3005"

    # persistent service (ERR400x)
    SERVICE_UNHEALTHY = "ERR4001"
    SERVICE_START_TIMEOUT = "ERR4002"
    SERVICE_UNREACHABLE = "ERR4003"
    SERVICE_REQUEST_FAILED = "ERR4004"
    SERVICE_NOT_SUPPORTED = "ERR4005"

    # lookup (ERR500x)
    UNKNOWN_BACKEND = "ERR5001"
    UNKNOWN_MODEL = "ERR5002"
    INVALID_REQUEST = "ERR5003"

    # internal (ERR900x)
    INTERNAL = "ERR9001"


@dataclass(frozen=True)
class ErrorSpec:
    """Maps an error code to an HTTP status and default message."""

    code: ErrorCode
    http_status: int
    message: str


ERROR_SPECS: Final[dict[ErrorCode, ErrorSpec]] = {
    ErrorCode.TOOL_MISSING: ErrorSpec(
        ErrorCode.TOOL_MISSING,
        424,
        "uv package manager not found; see "
        "https://docs.astral.sh/uv/getting-started/installation/",
    ),
    ErrorCode.INSTALL_FAILED: ErrorSpec(
        ErrorCode.INSTALL_FAILED, 500, "environment installation failed"
    ),
    ErrorCode.ENV_NOT_READY: ErrorSpec(
        ErrorCode.ENV_NOT_READY, 409, "environment is not installed or incomplete"
    ),
    ErrorCode.ENV_NOT_INSTALLED: ErrorSpec(
        ErrorCode.ENV_NOT_INSTALLED, 404, "environment is not installed"
    ),
    ErrorCode.DOWNLOAD_FAILED: ErrorSpec(
        ErrorCode.DOWNLOAD_FAILED, 502, "model download failed"
    ),
    ErrorCode.DOWNLOAD_SUPERSEDED: ErrorSpec(
        ErrorCode.DOWNLOAD_SUPERSEDED, 409, "download superseded by a newer request"
    ),
    ErrorCode.MODEL_NOT_DOWNLOADED: ErrorSpec(
        ErrorCode.MODEL_NOT_DOWNLOADED, 404, "model is not downloaded"
    ),
    ErrorCode.OPERATION_CANCELLED: ErrorSpec(
        ErrorCode.OPERATION_CANCELLED, 409, "operation cancelled"
    ),
    ErrorCode.OPERATION_SUPERSEDED: ErrorSpec(
        ErrorCode.OPERATION_SUPERSEDED, 409, "operation superseded by a newer request"
    ),
    ErrorCode.PROCESS_SPAWN_FAILED: ErrorSpec(
        ErrorCode.PROCESS_SPAWN_FAILED, 500, "failed to start worker process"
    ),
    ErrorCode.WORKER_EXITED_NONZERO: ErrorSpec(
        ErrorCode.WORKER_EXITED_NONZERO, 500, "worker process failed"
    ),
    ErrorCode.RESULT_PARSE_FAILED: ErrorSpec(
        ErrorCode.RESULT_PARSE_FAILED, 500, "failed to parse worker result"
    ),
    ErrorCode.SERVICE_UNHEALTHY: ErrorSpec(
        ErrorCode.SERVICE_UNHEALTHY, 503, "inference service is unhealthy"
    ),
    ErrorCode.SERVICE_START_TIMEOUT: ErrorSpec(
        ErrorCode.SERVICE_START_TIMEOUT, 504, "inference service start timed out"
    ),
    ErrorCode.SERVICE_UNREACHABLE: ErrorSpec(
        ErrorCode.SERVICE_UNREACHABLE, 503, "inference service is unreachable"
    ),
    ErrorCode.SERVICE_REQUEST_FAILED: ErrorSpec(
        ErrorCode.SERVICE_REQUEST_FAILED, 502, "inference service request failed"
    ),
    ErrorCode.SERVICE_NOT_SUPPORTED: ErrorSpec(
        ErrorCode.SERVICE_NOT_SUPPORTED,
        400,
        "backend does not support a persistent service",
    ),
    ErrorCode.UNKNOWN_BACKEND: ErrorSpec(
        ErrorCode.UNKNOWN_BACKEND, 404, "unknown backend"
    ),
    ErrorCode.UNKNOWN_MODEL: ErrorSpec(ErrorCode.UNKNOWN_MODEL, 404, "unknown model"),
    ErrorCode.INVALID_REQUEST: ErrorSpec(
        ErrorCode.INVALID_REQUEST, 400, "invalid request"
    ),
    ErrorCode.INTERNAL: ErrorSpec(ErrorCode.INTERNAL, 500, "unexpected sidecar error"),
}

ERROR_HTTP_STATUS_MAP: Final[dict[ErrorCode, int]] = {
    code: spec.http_status for code, spec in ERROR_SPECS.items()
}


def spec_for(code: ErrorCode) -> ErrorSpec:
    """Return the ErrorSpec for a given error code."""
    return ERROR_SPECS[code]


def http_status_for(code: ErrorCode) -> int:
    """Return the HTTP status associated with an error code."""
    return ERROR_SPECS[code].http_status


def format_error(code: ErrorCode, detail: Optional[str] = None) -> str:
    """Format an error code and optional detail into a message."""
    spec = ERROR_SPECS[code]
    message = detail if detail else spec.message
    return f"{spec.code.value} {message}"


def http_payload_for(code: ErrorCode, detail: Optional[str] = None) -> dict[str, str]:
    """Build an HTTP error payload for a given error code."""
    spec = ERROR_SPECS[code]
    message = detail if detail else spec.message
    return {"code": spec.code.value, "message": message}


class SidecarError(RuntimeError):
    """Raised for application-defined errors with status metadata."""

    default_code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self, detail: Optional[str] = None, code: Optional[ErrorCode] = None
    ) -> None:
        self.code = code or self.default_code
        self.http_status = http_status_for(self.code)
        self.detail = detail or ERROR_SPECS[self.code].message
        super().__init__(format_error(self.code, detail))


class ToolMissingError(SidecarError):
    default_code = ErrorCode.TOOL_MISSING


class InstallFailedError(SidecarError):
    default_code = ErrorCode.INSTALL_FAILED


class EnvironmentNotReadyError(SidecarError):
    default_code = ErrorCode.ENV_NOT_READY


class EnvironmentNotInstalledError(SidecarError):
    default_code = ErrorCode.ENV_NOT_INSTALLED


class DownloadFailedError(SidecarError):
    default_code = ErrorCode.DOWNLOAD_FAILED


class ModelNotDownloadedError(SidecarError):
    default_code = ErrorCode.MODEL_NOT_DOWNLOADED


class OperationCancelledError(SidecarError):
    """User-initiated cancellation observed at a suspension point."""

    default_code = ErrorCode.OPERATION_CANCELLED


class OperationSupersededError(SidecarError):
    """A newer operation of the same kind invalidated this one.

    Not a user-visible failure: callers should drop it silently.
    """

    default_code = ErrorCode.OPERATION_SUPERSEDED


class DownloadSupersededError(OperationSupersededError):
    default_code = ErrorCode.DOWNLOAD_SUPERSEDED


class ProcessSpawnError(SidecarError):
    default_code = ErrorCode.PROCESS_SPAWN_FAILED


class WorkerExitError(SidecarError):
    """Worker exited non-zero; ``detail`` carries its last diagnostic line."""

    default_code = ErrorCode.WORKER_EXITED_NONZERO

    def __init__(self, detail: Optional[str] = None, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(detail)


class ResultParseError(SidecarError):
    default_code = ErrorCode.RESULT_PARSE_FAILED


class ServiceUnhealthyError(SidecarError):
    default_code = ErrorCode.SERVICE_UNHEALTHY


class ServiceStartTimeoutError(SidecarError):
    default_code = ErrorCode.SERVICE_START_TIMEOUT


class ServiceUnavailableError(SidecarError):
    default_code = ErrorCode.SERVICE_UNREACHABLE


class ServiceRequestError(SidecarError):
    default_code = ErrorCode.SERVICE_REQUEST_FAILED


class ServiceNotSupportedError(SidecarError):
    default_code = ErrorCode.SERVICE_NOT_SUPPORTED


class UnknownBackendError(SidecarError):
    default_code = ErrorCode.UNKNOWN_BACKEND


class UnknownModelError(SidecarError):
    default_code = ErrorCode.UNKNOWN_MODEL


class InvalidRequestError(SidecarError):
    default_code = ErrorCode.INVALID_REQUEST


__all__ = [
    "ErrorCode",
    "ErrorSpec",
    "ERROR_SPECS",
    "ERROR_HTTP_STATUS_MAP",
    "SidecarError",
    "ToolMissingError",
    "InstallFailedError",
    "EnvironmentNotReadyError",
    "EnvironmentNotInstalledError",
    "DownloadFailedError",
    "DownloadSupersededError",
    "ModelNotDownloadedError",
    "OperationCancelledError",
    "OperationSupersededError",
    "ProcessSpawnError",
    "WorkerExitError",
    "ResultParseError",
    "ServiceUnhealthyError",
    "ServiceStartTimeoutError",
    "ServiceUnavailableError",
    "ServiceRequestError",
    "ServiceNotSupportedError",
    "UnknownBackendError",
    "UnknownModelError",
    "InvalidRequestError",
    "format_error",
    "http_payload_for",
    "http_status_for",
    "spec_for",
]
