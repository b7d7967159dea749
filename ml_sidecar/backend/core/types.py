"""Value types shared across the orchestration layers."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


class EnvironmentVariant(str, enum.Enum):
    CPU = "cpu"
    GPU = "gpu"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["EnvironmentVariant"]:
        """Parse a persisted marker value; ``none``/unknown map to None."""
        if value is None:
            return None
        normalized = value.strip().lower()
        for variant in cls:
            if variant.value == normalized:
                return variant
        return None

    def other(self) -> "EnvironmentVariant":
        if self is EnvironmentVariant.CPU:
            return EnvironmentVariant.GPU
        return EnvironmentVariant.CPU


@dataclass(frozen=True)
class VariantState:
    variant: EnvironmentVariant
    path: Path
    installed: bool
    ready: bool


@dataclass(frozen=True)
class EnvironmentStatus:
    cpu: VariantState
    gpu: VariantState
    active: Optional[EnvironmentVariant]

    def state(self, variant: EnvironmentVariant) -> VariantState:
        return self.cpu if variant is EnvironmentVariant.CPU else self.gpu

    def ready_variants(self) -> List[EnvironmentVariant]:
        """Ready variants in preference order (GPU first)."""
        return [state.variant for state in (self.gpu, self.cpu) if state.ready]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "cpu": {"installed": self.cpu.installed, "ready": self.cpu.ready},
            "gpu": {"installed": self.gpu.installed, "ready": self.gpu.ready},
            "active": self.active.value if self.active else "none",
        }


class ProgressStatus(str, enum.Enum):
    INSTALLING = "installing"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    TRANSCRIBING = "transcribing"
    CORRECTING = "correcting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (
            ProgressStatus.COMPLETED,
            ProgressStatus.CANCELLED,
            ProgressStatus.ERROR,
        )


@dataclass(frozen=True)
class ProgressMessage:
    percent: float
    text: str
    status: ProgressStatus
    current: Optional[int] = None
    total: Optional[int] = None
    detail: Optional[str] = None

    def as_event(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "progress": self.percent,
            "current_text": self.text,
            "status": self.status.value,
        }
        if self.current is not None:
            event["current"] = self.current
        if self.total is not None:
            event["total"] = self.total
        if self.detail:
            event["detail"] = self.detail
        return event


class ServiceState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class WorkerResult:
    payload: Any
    elapsed_sec: float
    device_info: Optional[str] = None


@dataclass(frozen=True)
class ModelStatus:
    name: str
    size_label: str
    downloaded: bool
    partial_bytes: int = 0
    path: Optional[str] = None


@dataclass(frozen=True)
class DownloadOutcome:
    model: str
    path: Path
    bytes_transferred: int
    already_present: bool = False


@dataclass
class BackendStatus:
    backend_id: str
    display_name: str
    tool_available: bool
    environment: EnvironmentStatus
    models: List[ModelStatus] = field(default_factory=list)
    service: Optional[ServiceState] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "backend": self.backend_id,
            "display_name": self.display_name,
            "uv_installed": self.tool_available,
            "environment": self.environment.as_dict(),
            "models": [asdict(model) for model in self.models],
            "service": self.service.value if self.service else None,
        }


__all__ = [
    "BackendStatus",
    "DownloadOutcome",
    "EnvironmentStatus",
    "EnvironmentVariant",
    "ModelStatus",
    "ProgressMessage",
    "ProgressStatus",
    "ServiceState",
    "VariantState",
    "WorkerResult",
]
