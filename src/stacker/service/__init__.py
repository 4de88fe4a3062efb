"""
Service module: optional systemd units and cron entries.

Failures here are add-on failures: callers log them as warnings.
"""

import structlog

from .cron import CronScheduler
from .systemd import ServiceManager

__all__ = ["CronScheduler", "ServiceManager", "init"]


def init() -> None:
    """Module init hook."""
    structlog.get_logger().debug("module.init", module="service")
