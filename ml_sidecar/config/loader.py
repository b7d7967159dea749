from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ml_sidecar.config.default import (
    DEFAULT_CONFIG_ROOT,
    DEFAULT_DISPATCH_TIMEOUT_SEC,
    DEFAULT_DOWNLOAD_CHUNK_BYTES,
    DEFAULT_DOWNLOAD_CONNECT_TIMEOUT_SEC,
    DEFAULT_DOWNLOAD_READ_TIMEOUT_SEC,
    DEFAULT_HEALTH_TIMEOUT_SEC,
    DEFAULT_HEALTH_TTL_SEC,
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    DEFAULT_HUGGINGFACE_HUB,
    DEFAULT_INSTALL_POLL_INTERVAL_SEC,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_WORKERS,
    DEFAULT_MODELSCOPE_HUB,
    DEFAULT_PRELOAD_TIMEOUT_SEC,
    DEFAULT_PROGRESS_POLL_INTERVAL_MS,
    DEFAULT_PYTHON_VERSION,
    DEFAULT_SERVICE_HOST,
    DEFAULT_SERVICE_PORT,
    DEFAULT_START_ATTEMPTS,
    DEFAULT_START_INTERVAL_SEC,
    DEFAULT_STOP_ATTEMPTS,
    DEFAULT_STOP_INTERVAL_SEC,
    DEFAULT_UV_PATH,
    DEFAULT_VERIFY_TIMEOUT_SEC,
    RUNTIME_SECTION_MAP,
    SERVER_SECTION_MAP,
)


@dataclass
class SidecarConfig:
    config_root: str = DEFAULT_CONFIG_ROOT
    modelscope_hub: str = DEFAULT_MODELSCOPE_HUB
    huggingface_hub: str = DEFAULT_HUGGINGFACE_HUB
    uv_path: Optional[str] = DEFAULT_UV_PATH
    python_version: str = DEFAULT_PYTHON_VERSION
    install_poll_interval_sec: float = DEFAULT_INSTALL_POLL_INTERVAL_SEC
    verify_timeout_sec: float = DEFAULT_VERIFY_TIMEOUT_SEC
    download_chunk_bytes: int = DEFAULT_DOWNLOAD_CHUNK_BYTES
    download_connect_timeout_sec: float = DEFAULT_DOWNLOAD_CONNECT_TIMEOUT_SEC
    download_read_timeout_sec: float = DEFAULT_DOWNLOAD_READ_TIMEOUT_SEC
    progress_poll_interval_ms: int = DEFAULT_PROGRESS_POLL_INTERVAL_MS
    service_host: str = DEFAULT_SERVICE_HOST
    service_port: int = DEFAULT_SERVICE_PORT
    health_ttl_sec: float = DEFAULT_HEALTH_TTL_SEC
    health_timeout_sec: float = DEFAULT_HEALTH_TIMEOUT_SEC
    start_attempts: int = DEFAULT_START_ATTEMPTS
    start_interval_sec: float = DEFAULT_START_INTERVAL_SEC
    stop_attempts: int = DEFAULT_STOP_ATTEMPTS
    stop_interval_sec: float = DEFAULT_STOP_INTERVAL_SEC
    preload_timeout_sec: float = DEFAULT_PRELOAD_TIMEOUT_SEC
    dispatch_timeout_sec: float = DEFAULT_DISPATCH_TIMEOUT_SEC
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = DEFAULT_LOG_FILE
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT
    max_workers: int = DEFAULT_MAX_WORKERS


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "sidecar.yaml"

SECTION_MAP: Dict[str, Dict[str, str]] = dict(RUNTIME_SECTION_MAP)
SECTION_MAP.update(SERVER_SECTION_MAP)


def load_config(path: Optional[Path] = None) -> SidecarConfig:
    """Load sidecar configuration from YAML, falling back to defaults."""
    cfg = SidecarConfig()
    data = _read_yaml(path or DEFAULT_CONFIG_PATH)
    if data:
        _apply_sections(cfg, data)
    return cfg


def _read_yaml(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if not path or not path.exists():
        return None
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if isinstance(data, dict):
        return data
    return None


def _apply_sections(cfg: SidecarConfig, raw: Dict[str, Any]) -> None:
    field_names = {f.name for f in fields(SidecarConfig)}
    for section, mapping in SECTION_MAP.items():
        data = raw.get(section)
        if not isinstance(data, dict):
            continue
        for key, attr in mapping.items():
            if key in data and data[key] is not None:
                setattr(cfg, attr, data[key])

    # Flat top-level keys are accepted as a shorthand for section values.
    for key, value in raw.items():
        if key in SECTION_MAP:
            continue
        if key in field_names and value is not None:
            setattr(cfg, key, value)


__all__ = ["SidecarConfig", "DEFAULT_CONFIG_PATH", "load_config"]
