"""
Install module: installation targets, clean clones and install strategies.
"""

import structlog

from ..core.process import require_commands
from .clone import ensure_clean_clone
from .driver import InstallationDriver, InstallOptions, InstallReport, VerifyResult
from .sidecar import ProjectConfig
from .strategies import STRATEGIES, InstallContext, Strategy, select_strategy
from .target import InstallationTarget, resolve_install_dir

__all__ = [
    "STRATEGIES",
    "InstallContext",
    "InstallOptions",
    "InstallReport",
    "InstallationDriver",
    "InstallationTarget",
    "ProjectConfig",
    "Strategy",
    "VerifyResult",
    "ensure_clean_clone",
    "init",
    "resolve_install_dir",
    "select_strategy",
]


def init() -> None:
    """Module init hook: the installer cannot work without git."""
    require_commands("git")
    structlog.get_logger().debug("module.init", module="install")
