"""Default values for environment, transfer and worker configuration."""

from typing import Dict

DEFAULT_CONFIG_ROOT = "~/.config/vosub"
DEFAULT_MODELSCOPE_HUB = "~/.cache/modelscope/hub"
DEFAULT_HUGGINGFACE_HUB = "~/.cache/huggingface/hub"
DEFAULT_UV_PATH = None
DEFAULT_PYTHON_VERSION = "3.11"
DEFAULT_INSTALL_POLL_INTERVAL_SEC = 0.2
DEFAULT_VERIFY_TIMEOUT_SEC = 60.0
DEFAULT_DOWNLOAD_CHUNK_BYTES = 1024 * 1024
DEFAULT_DOWNLOAD_CONNECT_TIMEOUT_SEC = 30.0
DEFAULT_DOWNLOAD_READ_TIMEOUT_SEC = 60.0
DEFAULT_PROGRESS_POLL_INTERVAL_MS = 100
DEFAULT_SERVICE_HOST = "127.0.0.1"
DEFAULT_SERVICE_PORT = 18765
DEFAULT_HEALTH_TTL_SEC = 5.0
DEFAULT_HEALTH_TIMEOUT_SEC = 1.0
DEFAULT_START_ATTEMPTS = 20
DEFAULT_START_INTERVAL_SEC = 0.3
DEFAULT_STOP_ATTEMPTS = 10
DEFAULT_STOP_INTERVAL_SEC = 0.2
DEFAULT_PRELOAD_TIMEOUT_SEC = 120.0
DEFAULT_DISPATCH_TIMEOUT_SEC = 60.0

RUNTIME_SECTION_MAP: Dict[str, Dict[str, str]] = {
    "paths": {
        "config_root": "config_root",
        "modelscope_hub": "modelscope_hub",
        "huggingface_hub": "huggingface_hub",
    },
    "installer": {
        "uv_path": "uv_path",
        "python_version": "python_version",
        "poll_interval_sec": "install_poll_interval_sec",
        "verify_timeout_sec": "verify_timeout_sec",
    },
    "transfer": {
        "chunk_bytes": "download_chunk_bytes",
        "connect_timeout_sec": "download_connect_timeout_sec",
        "read_timeout_sec": "download_read_timeout_sec",
    },
    "bridge": {
        "poll_interval_ms": "progress_poll_interval_ms",
    },
    "service": {
        "host": "service_host",
        "port": "service_port",
        "health_ttl_sec": "health_ttl_sec",
        "health_timeout_sec": "health_timeout_sec",
        "start_attempts": "start_attempts",
        "start_interval_sec": "start_interval_sec",
        "stop_attempts": "stop_attempts",
        "stop_interval_sec": "stop_interval_sec",
        "preload_timeout_sec": "preload_timeout_sec",
        "dispatch_timeout_sec": "dispatch_timeout_sec",
    },
}

__all__ = [
    "DEFAULT_CONFIG_ROOT",
    "DEFAULT_MODELSCOPE_HUB",
    "DEFAULT_HUGGINGFACE_HUB",
    "DEFAULT_UV_PATH",
    "DEFAULT_PYTHON_VERSION",
    "DEFAULT_INSTALL_POLL_INTERVAL_SEC",
    "DEFAULT_VERIFY_TIMEOUT_SEC",
    "DEFAULT_DOWNLOAD_CHUNK_BYTES",
    "DEFAULT_DOWNLOAD_CONNECT_TIMEOUT_SEC",
    "DEFAULT_DOWNLOAD_READ_TIMEOUT_SEC",
    "DEFAULT_PROGRESS_POLL_INTERVAL_MS",
    "DEFAULT_SERVICE_HOST",
    "DEFAULT_SERVICE_PORT",
    "DEFAULT_HEALTH_TTL_SEC",
    "DEFAULT_HEALTH_TIMEOUT_SEC",
    "DEFAULT_START_ATTEMPTS",
    "DEFAULT_START_INTERVAL_SEC",
    "DEFAULT_STOP_ATTEMPTS",
    "DEFAULT_STOP_INTERVAL_SEC",
    "DEFAULT_PRELOAD_TIMEOUT_SEC",
    "DEFAULT_DISPATCH_TIMEOUT_SEC",
    "RUNTIME_SECTION_MAP",
]
