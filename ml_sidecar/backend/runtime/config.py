"""Runtime configuration models for the sidecar application layer."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from ml_sidecar.config.loader import SidecarConfig


@dataclass(frozen=True)
class PathsRuntimeConfig:
    """Where environments, scripts and model hubs live."""

    config_root: Path = Path("~/.config/vosub")
    modelscope_hub: Path = Path("~/.cache/modelscope/hub")
    huggingface_hub: Path = Path("~/.cache/huggingface/hub")


@dataclass(frozen=True)
class InstallerRuntimeConfig:
    uv_path: Optional[str] = None
    python_version: str = "3.11"
    poll_interval_sec: float = 0.2
    verify_timeout_sec: float = 60.0


@dataclass(frozen=True)
class TransferRuntimeConfig:
    chunk_bytes: int = 1024 * 1024
    connect_timeout_sec: float = 30.0
    read_timeout_sec: float = 60.0

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout_sec, self.read_timeout_sec)


@dataclass(frozen=True)
class BridgeRuntimeConfig:
    poll_interval_ms: int = 100


@dataclass(frozen=True)
class ServiceRuntimeConfig:
    """Persistent service supervision settings."""

    host: str = "127.0.0.1"
    port: int = 18765
    health_ttl_sec: float = 5.0
    health_timeout_sec: float = 1.0
    start_attempts: int = 20
    start_interval_sec: float = 0.3
    stop_attempts: int = 10
    stop_interval_sec: float = 0.2
    preload_timeout_sec: float = 120.0
    dispatch_timeout_sec: float = 60.0


@dataclass(frozen=True)
class RuntimeConfig:
    """Top-level runtime configuration bundle."""

    paths: PathsRuntimeConfig = field(default_factory=PathsRuntimeConfig)
    installer: InstallerRuntimeConfig = field(default_factory=InstallerRuntimeConfig)
    transfer: TransferRuntimeConfig = field(default_factory=TransferRuntimeConfig)
    bridge: BridgeRuntimeConfig = field(default_factory=BridgeRuntimeConfig)
    service: ServiceRuntimeConfig = field(default_factory=ServiceRuntimeConfig)

    @classmethod
    def from_sidecar_config(cls, cfg: SidecarConfig) -> "RuntimeConfig":
        return cls(
            paths=PathsRuntimeConfig(
                config_root=Path(cfg.config_root).expanduser(),
                modelscope_hub=Path(cfg.modelscope_hub).expanduser(),
                huggingface_hub=Path(cfg.huggingface_hub).expanduser(),
            ),
            installer=InstallerRuntimeConfig(
                uv_path=cfg.uv_path,
                python_version=str(cfg.python_version),
                poll_interval_sec=float(cfg.install_poll_interval_sec),
                verify_timeout_sec=float(cfg.verify_timeout_sec),
            ),
            transfer=TransferRuntimeConfig(
                chunk_bytes=int(cfg.download_chunk_bytes),
                connect_timeout_sec=float(cfg.download_connect_timeout_sec),
                read_timeout_sec=float(cfg.download_read_timeout_sec),
            ),
            bridge=BridgeRuntimeConfig(
                poll_interval_ms=int(cfg.progress_poll_interval_ms),
            ),
            service=ServiceRuntimeConfig(
                host=cfg.service_host,
                port=int(cfg.service_port),
                health_ttl_sec=float(cfg.health_ttl_sec),
                health_timeout_sec=float(cfg.health_timeout_sec),
                start_attempts=int(cfg.start_attempts),
                start_interval_sec=float(cfg.start_interval_sec),
                stop_attempts=int(cfg.stop_attempts),
                stop_interval_sec=float(cfg.stop_interval_sec),
                preload_timeout_sec=float(cfg.preload_timeout_sec),
                dispatch_timeout_sec=float(cfg.dispatch_timeout_sec),
            ),
        )
