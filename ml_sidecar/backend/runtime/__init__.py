"""Runtime wiring and configuration for the sidecar application layer."""

from .config import (
    BridgeRuntimeConfig,
    InstallerRuntimeConfig,
    PathsRuntimeConfig,
    RuntimeConfig,
    ServiceRuntimeConfig,
    TransferRuntimeConfig,
)
from .runtime import SidecarRuntime

__all__ = [
    "BridgeRuntimeConfig",
    "InstallerRuntimeConfig",
    "PathsRuntimeConfig",
    "RuntimeConfig",
    "ServiceRuntimeConfig",
    "SidecarRuntime",
    "TransferRuntimeConfig",
]
