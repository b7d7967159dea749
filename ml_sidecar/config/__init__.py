"""Configuration loader utilities."""

from .loader import DEFAULT_CONFIG_PATH, SidecarConfig, load_config

__all__ = ["SidecarConfig", "DEFAULT_CONFIG_PATH", "load_config"]
