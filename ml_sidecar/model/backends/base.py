"""Declarative description of one pluggable ML backend."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressStatus


# Workers and services read the resolved model directory from this variable.
MODEL_DIR_ENV = "ML_SIDECAR_MODEL_DIR"
# huggingface_hub cache root used by delegated downloads.
HF_CACHE_ENV = "HF_HUB_CACHE"


class ProgressTransport(str, enum.Enum):
    PIPED = "piped"
    POLLING_FILE = "polling_file"


class LineProtocol(str, enum.Enum):
    JSON = "json"  # {"type": "progress", "percent": ..., "message": ...}
    TAGGED = "tagged"  # PROGRESS:<pct> / DEVICE_INFO:<text>


class ModelHub(str, enum.Enum):
    MODELSCOPE = "modelscope"
    HUGGINGFACE = "huggingface"


@dataclass(frozen=True)
class ModelFile:
    name: str
    # None means only presence is checked (sizes unknown up front)
    size: Optional[int]
    large: bool = False


@dataclass(frozen=True)
class ModelManifest:
    name: str
    size_label: str
    namespace: str
    files: Tuple[ModelFile, ...] = ()
    repo: Optional[str] = None

    @property
    def repo_name(self) -> str:
        return self.repo or self.name

    @property
    def total_bytes(self) -> int:
        return sum(item.size or 0 for item in self.files)


@dataclass(frozen=True)
class WorkerSpec:
    """How to invoke one worker script and read its progress."""

    script: str
    transport: ProgressTransport = ProgressTransport.PIPED
    protocol: LineProtocol = LineProtocol.JSON
    progress_env: Optional[str] = None
    status: ProgressStatus = ProgressStatus.TRANSCRIBING
    # option names passed positionally, in order
    positional: Tuple[str, ...] = ()
    # option name -> default; bools render as --flag / --no-flag
    defaults: Tuple[Tuple[str, object], ...] = ()
    # worker percentages are mapped linearly onto this span
    progress_span: Tuple[float, float] = (0.0, 100.0)
    writes_output: bool = True

    def build_args(self, options: Mapping[str, object]) -> List[str]:
        """Render positional arguments then flags from defaults + options."""
        merged: Dict[str, object] = dict(self.defaults)
        merged.update(
            {key: value for key, value in options.items() if value is not None}
        )
        args: List[str] = []
        for name in self.positional:
            if name not in merged:
                raise ValueError(f"missing required argument '{name}'")
            args.append(str(merged.pop(name)))
        for name, value in merged.items():
            flag = name.replace("_", "-")
            if isinstance(value, bool):
                args.append(f"--{flag}" if value else f"--no-{flag}")
            else:
                args.extend([f"--{flag}", str(value)])
        return args

    def map_percent(self, percent: float) -> float:
        low, high = self.progress_span
        return low + (high - low) * max(0.0, min(100.0, percent)) / 100.0


@dataclass(frozen=True)
class BackendDescriptor:
    backend_id: str
    display_name: str
    marker_package: str
    runtime_packages: Tuple[str, ...]
    index_urls: Dict[EnvironmentVariant, str]
    extra_packages: Tuple[str, ...]
    hub: ModelHub
    models: Tuple[ModelManifest, ...]
    download_url_template: Optional[str] = None
    supported_variants: Tuple[EnvironmentVariant, ...] = (
        EnvironmentVariant.CPU,
        EnvironmentVariant.GPU,
    )
    worker: Optional[WorkerSpec] = None
    service_script: Optional[str] = None
    legacy_gpu_marker: Optional[str] = None
    download_worker: Optional[WorkerSpec] = None

    @property
    def supports_service(self) -> bool:
        return self.service_script is not None

    def supports(self, variant: EnvironmentVariant) -> bool:
        return variant in self.supported_variants

    def model(self, name: str) -> Optional[ModelManifest]:
        for manifest in self.models:
            if manifest.name == name:
                return manifest
        return None

    def default_model(self) -> ModelManifest:
        return self.models[0]

    def file_url(self, manifest: ModelManifest, file_name: str) -> str:
        if not self.download_url_template:
            raise ValueError(f"{self.backend_id} has no download URL template")
        return self.download_url_template.format(
            namespace=manifest.namespace, model=manifest.repo_name, file=file_name
        )

    def all_scripts(self) -> Tuple[str, ...]:
        names: List[str] = []
        for spec in (self.worker, self.download_worker):
            if spec is not None and spec.script not in names:
                names.append(spec.script)
        if self.service_script and self.service_script not in names:
            names.append(self.service_script)
        return tuple(names)


__all__ = [
    "BackendDescriptor",
    "HF_CACHE_ENV",
    "LineProtocol",
    "MODEL_DIR_ENV",
    "ModelFile",
    "ModelHub",
    "ModelManifest",
    "ProgressTransport",
    "WorkerSpec",
]
