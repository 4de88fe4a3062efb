"""
Update module: backups and the update/rollback state machine.
"""

import structlog

from .backups import Backup, BackupStore
from .orchestrator import (
    RollbackResult,
    UpdateCheck,
    UpdateOrchestrator,
    UpdateOutcome,
    UpdateReport,
    UpdateState,
)

__all__ = [
    "Backup",
    "BackupStore",
    "RollbackResult",
    "UpdateCheck",
    "UpdateOrchestrator",
    "UpdateOutcome",
    "UpdateReport",
    "UpdateState",
    "init",
]


def init() -> None:
    """Module init hook."""
    structlog.get_logger().debug("module.init", module="update")
