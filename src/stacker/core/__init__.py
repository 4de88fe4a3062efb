"""
Core module: processes, privileges, XDG paths, locking and version control.

Everything else in stacker builds on these primitives.
"""

import structlog

from .locking import exclusive_lock
from .paths import XdgPaths
from .privilege import (
    PrivilegeBroker,
    PrivilegeDecision,
    PrivilegedFS,
    effective_home,
    effective_user,
)
from .vcs import GitRepo, is_checkout

__all__ = [
    "GitRepo",
    "PrivilegeBroker",
    "PrivilegeDecision",
    "PrivilegedFS",
    "XdgPaths",
    "effective_home",
    "effective_user",
    "exclusive_lock",
    "init",
    "is_checkout",
]


def init() -> None:
    """Module init hook."""
    structlog.get_logger().debug("module.init", module="core", user=effective_user())
