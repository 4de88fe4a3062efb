"""
Cross-process exclusive lock scoped to a technology's state directory.

Cron-triggered and manual updates run as separate processes against the
same clone, install path and backups. The orchestrator holds this lock for
the whole update/rollback critical section; release happens in the context
manager's exit, on every path.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

from ..errors import UpdateInProgressError

logger = structlog.get_logger()

LOCK_FILENAME = "update.lock"
_POLL_INTERVAL = 0.2


@contextmanager
def exclusive_lock(state_dir: Path, timeout: float = 0.0) -> Iterator[Path]:
    """Hold an fcntl advisory lock on state_dir/update.lock.

    Args:
        state_dir: Technology state directory (created if missing).
        timeout: Seconds to keep retrying while another process holds the
            lock. 0 fails immediately.

    Raises:
        UpdateInProgressError: The lock could not be acquired in time.
    """
    state_dir.mkdir(parents=True, exist_ok=True)
    lock_path = state_dir / LOCK_FILENAME
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    deadline = time.monotonic() + timeout
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise UpdateInProgressError(
                        "Another update or rollback is running for this technology",
                        operation="lock",
                        path=lock_path,
                    ) from None
                time.sleep(_POLL_INTERVAL)

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug("lock.acquired", path=str(lock_path), pid=os.getpid())
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("lock.released", path=str(lock_path))
    finally:
        os.close(fd)
