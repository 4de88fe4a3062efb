"""
Backups -- timestamped snapshots of a technology's clone directory.

Layout under the technology state directory:

    backups/20250114-030001/      full copy of the clone (including .git)
    backups/20250114-030001-1/    second backup within the same second
    last-backup                   absolute path of the most recent backup
"""

import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import structlog

from ..errors import BackupError, RollbackError

logger = structlog.get_logger()

__all__ = ["Backup", "BackupStore"]

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class Backup:
    """One snapshot of the clone directory."""

    timestamp: str
    path: Path
    source: Path

    @property
    def name(self) -> str:
        return self.path.name


class BackupStore:
    """Creates, lists, prunes and restores backups of one clone directory.

    Args:
        backups_dir: Directory holding the snapshots.
        last_backup_file: Pointer file to the most recent snapshot.
        source: The clone directory being snapshotted.
    """

    def __init__(self, backups_dir: Path, last_backup_file: Path, source: Path) -> None:
        self.backups_dir = Path(backups_dir)
        self.last_backup_file = Path(last_backup_file)
        self.source = Path(source)
        self.log = logger.bind(component="backups")

    def _new_path(self, now: datetime | None = None) -> tuple[str, Path]:
        stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        candidate = self.backups_dir / stamp
        n = 0
        while candidate.exists():
            n += 1
            candidate = self.backups_dir / f"{stamp}-{n}"
        return stamp, candidate

    def create(self, now: datetime | None = None) -> Backup:
        """Snapshot the source directory.

        Raises:
            BackupError: Nothing to back up, or the copy failed. A partial
                copy is removed before raising.
        """
        if not self.source.is_dir():
            raise BackupError(
                "Nothing to back up: clone directory is missing",
                operation="backup",
                path=self.source,
            )
        stamp, path = self._new_path(now)
        try:
            self.backups_dir.mkdir(parents=True, exist_ok=True)
            shutil.copytree(self.source, path, symlinks=True)
            self.last_backup_file.parent.mkdir(parents=True, exist_ok=True)
            self.last_backup_file.write_text(f"{path}\n", encoding="utf-8")
        except OSError as e:
            shutil.rmtree(path, ignore_errors=True)
            raise BackupError(
                f"Failed to create backup: {e}", operation="backup", path=path
            ) from e

        self.log.info("backup.created", path=str(path), source=str(self.source))
        return Backup(timestamp=stamp, path=path, source=self.source)

    def entries(self) -> list[Backup]:
        """Backups oldest first."""
        if not self.backups_dir.is_dir():
            return []
        entries = sorted(
            (p for p in self.backups_dir.iterdir() if p.is_dir()),
            key=_sort_key,
        )
        return [Backup(timestamp=p.name[:15], path=p, source=self.source) for p in entries]

    def latest(self) -> Backup | None:
        """The most recent backup: the last-backup pointer if it is valid,
        else the newest directory."""
        if self.last_backup_file.is_file():
            pointed = Path(self.last_backup_file.read_text(encoding="utf-8").strip())
            if pointed.is_dir():
                return Backup(timestamp=pointed.name[:15], path=pointed, source=self.source)
            self.log.warning("backup.stale_pointer", pointer=str(pointed))
        backups = self.entries()
        return backups[-1] if backups else None

    def prune(self, keep: int) -> list[Path]:
        """Delete the oldest backups beyond keep. Returns the removed paths."""
        backups = self.entries()
        excess = backups[: max(len(backups) - keep, 0)]
        removed = []
        for backup in excess:
            shutil.rmtree(backup.path, ignore_errors=True)
            removed.append(backup.path)
            self.log.debug("backup.pruned", path=str(backup.path))
        return removed

    def restore(self, backup: Backup | None = None) -> Backup:
        """Replace the source directory with a backup's contents.

        The current tree is moved aside first and put back if the copy
        fails, so a failed restore leaves the clone as it was.

        Raises:
            RollbackError: No backup available, or the copy failed.
        """
        backup = backup or self.latest()
        if backup is None or not backup.path.is_dir():
            raise RollbackError(
                "No backup available to roll back to",
                operation="rollback",
                path=self.backups_dir,
            )

        aside = self.source.with_name(f".{self.source.name}.rollback-{int(time.time())}")
        moved = False
        if self.source.exists():
            try:
                self.source.rename(aside)
            except OSError as e:
                raise RollbackError(
                    f"Failed to move the current clone aside: {e}",
                    operation="rollback",
                    path=self.source,
                ) from e
            moved = True
        try:
            shutil.copytree(backup.path, self.source, symlinks=True)
        except OSError as e:
            shutil.rmtree(self.source, ignore_errors=True)
            if moved:
                aside.rename(self.source)
            raise RollbackError(
                f"Failed to restore backup: {e}", operation="rollback", path=backup.path
            ) from e
        if moved:
            shutil.rmtree(aside, ignore_errors=True)

        self.log.info("backup.restored", backup=str(backup.path), target=str(self.source))
        return backup


def _sort_key(path: Path) -> tuple[str, int]:
    # "20250114-030001" or "20250114-030001-2"
    base, suffix = path.name[:15], path.name[16:]
    return base, int(suffix) if suffix.isdigit() else 0
