"""Default values for logging and the HTTP control API."""

from typing import Dict

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = None
DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8765
DEFAULT_MAX_WORKERS = 4

SERVER_SECTION_MAP: Dict[str, Dict[str, str]] = {
    "logging": {
        "level": "log_level",
        "file": "log_file",
    },
    "http": {
        "host": "http_host",
        "port": "http_port",
        "max_workers": "max_workers",
    },
}

__all__ = [
    "DEFAULT_LOG_LEVEL",
    "DEFAULT_LOG_FILE",
    "DEFAULT_HTTP_HOST",
    "DEFAULT_HTTP_PORT",
    "DEFAULT_MAX_WORKERS",
    "SERVER_SECTION_MAP",
]
