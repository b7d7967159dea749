"""Transport layer helpers for the sidecar."""

from .http_server import build_http_app, start_http_server

__all__ = ["build_http_app", "start_http_server"]
