"""
Configuration module for stacker.

Exports the main components for convenient imports.
"""

import structlog

from .loader import deep_merge, default_config_path, load_config
from .schema import AppConfig, InstallConfig, LoggingConfig, PackagesConfig, UpdateConfig

__all__ = [
    "AppConfig",
    "InstallConfig",
    "LoggingConfig",
    "PackagesConfig",
    "UpdateConfig",
    "deep_merge",
    "default_config_path",
    "init",
    "load_config",
]


def init() -> None:
    """Module init hook."""
    structlog.get_logger().debug("module.init", module="config")
