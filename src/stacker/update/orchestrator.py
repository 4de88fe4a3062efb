"""
Update/Rollback Orchestrator -- one state machine run per invocation.

    CHECK ─┬─ no change ──────────────────────────────────────────→ DONE
           └─ change → BACKUP → APPLY → VERIFY ─┬─ pass → RESTART → DONE
                                                └─ fail → ROLLBACK → DONE

The whole run holds the technology's update lock (state_dir/update.lock),
taken before CHECK and released on every exit path. BACKUP failing stops
the run before anything is mutated. A failure during APPLY is treated like
a failed VERIFY: the clone is restored from the backup and reinstalled.
OSError escaping a strategy counts as an APPLY failure too.
Backups beyond the retention count are pruned after a successful update.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ContextManager

import structlog

from ..config.schema import AppConfig
from ..core.locking import exclusive_lock
from ..core.vcs import GitRepo, is_checkout
from ..errors import CloneError, ExecError, RollbackError, StackerError
from ..install.driver import InstallationDriver
from ..install.target import InstallationTarget
from ..logging.human import HumanLog
from .backups import Backup, BackupStore

logger = structlog.get_logger()

__all__ = [
    "RollbackResult",
    "UpdateCheck",
    "UpdateOrchestrator",
    "UpdateOutcome",
    "UpdateReport",
    "UpdateState",
]


class UpdateState(Enum):
    CHECK = "check"
    BACKUP = "backup"
    APPLY = "apply"
    VERIFY = "verify"
    RESTART = "restart"
    ROLLBACK = "rollback"
    DONE = "done"


class UpdateOutcome(Enum):
    NO_UPDATE = "no_update"
    UPDATED = "updated"
    ROLLED_BACK = "rolled_back"


@dataclass
class UpdateCheck:
    local: str
    remote: str
    commits: int = 0

    @property
    def update_available(self) -> bool:
        return self.local != self.remote


@dataclass
class UpdateReport:
    tech_name: str
    outcome: UpdateOutcome | None = None
    check: UpdateCheck | None = None
    backup: Path | None = None
    states: list[UpdateState] = field(default_factory=list)
    error: str | None = None
    restarted: bool = False
    pruned: list[Path] = field(default_factory=list)


@dataclass
class RollbackResult:
    tech_name: str
    to: str
    backup: Path | None = None


class UpdateOrchestrator:
    """Runs update and rollback cycles for installed technologies.

    Args:
        driver: Installation driver used to reinstall and verify.
        services: Object with restart_if_registered(target) (ServiceManager),
            or None to skip RESTART.
        repo_cls: Git client class (injectable for tests).
        lock: Context manager factory lock(state_dir, timeout).
    """

    def __init__(
        self,
        driver: InstallationDriver,
        *,
        services: Any = None,
        repo_cls: type[GitRepo] = GitRepo,
        lock: Callable[..., ContextManager] = exclusive_lock,
    ) -> None:
        self.driver = driver
        self.config: AppConfig = driver.config
        self.services = services
        self.repo_cls = repo_cls
        self.lock = lock
        self.log = logger.bind(component="updater")
        self.hlog = HumanLog(self.log)

    def _repo(self, target: InstallationTarget) -> GitRepo:
        if not is_checkout(target.clone_dir):
            raise CloneError(
                f"{target.tech_name} has no git checkout to update; reinstall it",
                operation="update",
                path=target.clone_dir,
            )
        return self.repo_cls(
            target.clone_dir,
            timeout=self.config.install.git_timeout,
            retries=self.config.install.git_retries,
        )

    def _store(self, target: InstallationTarget) -> BackupStore:
        return BackupStore(target.backups_dir, target.last_backup_file, target.clone_dir)

    def _locked(self, target: InstallationTarget) -> ContextManager:
        return self.lock(target.state_dir, timeout=self.config.update.lock_timeout)

    def _check(self, repo: GitRepo) -> UpdateCheck:
        repo.fetch()
        local = repo.head()
        remote = repo.remote_head()
        commits = repo.count_between(local, remote) if local != remote else 0
        return UpdateCheck(local=local, remote=remote, commits=commits)

    # ── Public API ────────────────────────────────────────────────────────

    def check_for_updates(self, target: InstallationTarget) -> UpdateCheck:
        """Fetch and compare revisions without touching the working tree."""
        with self._locked(target):
            self.hlog.emit("update.checking", tech=target.tech_name)
            check = self._check(self._repo(target))
        if check.update_available:
            self.hlog.emit("update.available", local=check.local, remote=check.remote,
                           commits=check.commits)
        else:
            self.hlog.emit("update.none", revision=check.local)
        return check

    def update(self, target: InstallationTarget, force: bool = False) -> UpdateReport:
        """Run one CHECK → ... → DONE cycle.

        Args:
            force: Go through BACKUP/APPLY even when revisions match.

        Raises:
            UpdateInProgressError: Another process holds the lock.
            BackupError: The snapshot failed; nothing was changed.
            RollbackError: APPLY/VERIFY failed and restoring also failed.
            ExecError: CHECK could not fetch or resolve revisions.
        """
        report = UpdateReport(tech_name=target.tech_name)
        with self._locked(target):
            try:
                self._run(target, force, report)
            finally:
                report.states.append(UpdateState.DONE)
        return report

    def _run(self, target: InstallationTarget, force: bool, report: UpdateReport) -> None:
        store = self._store(target)

        # CHECK
        report.states.append(UpdateState.CHECK)
        self.hlog.emit("update.checking", tech=target.tech_name)
        repo = self._repo(target)
        check = report.check = self._check(repo)
        if not check.update_available and not force:
            self.hlog.emit("update.none", revision=check.local)
            report.outcome = UpdateOutcome.NO_UPDATE
            return
        if check.update_available:
            self.hlog.emit("update.available", local=check.local, remote=check.remote,
                           commits=check.commits)

        # BACKUP
        report.states.append(UpdateState.BACKUP)
        backup = store.create()
        report.backup = backup.path
        self.hlog.emit("update.backup", source=str(target.clone_dir), path=str(backup.path))

        # APPLY
        report.states.append(UpdateState.APPLY)
        self.hlog.emit("update.applying", remote=check.remote)
        failure: str | None = None
        try:
            repo.reset_hard(check.remote)
            self.driver.install_from_clone(target)
        except (StackerError, OSError) as e:
            failure = f"apply failed: {e}"
            self.log.error("update.apply_failed", error=str(e))

        # VERIFY
        if failure is None:
            report.states.append(UpdateState.VERIFY)
            result = self.driver.verify(target)
            if not result.ok:
                failure = str(result.warning) if result.warning else "verification failed"

        if failure is not None:
            report.states.append(UpdateState.ROLLBACK)
            self._restore(target, store, backup)
            report.outcome = UpdateOutcome.ROLLED_BACK
            report.error = failure
            self.hlog.emit("update.rolled_back", backup=str(backup.path))
            return

        # RESTART
        report.states.append(UpdateState.RESTART)
        report.restarted = self._restart(target)
        report.pruned = store.prune(self.config.update.backup_retention)
        report.outcome = UpdateOutcome.UPDATED
        self.hlog.emit("update.complete", tech=target.tech_name, revision=check.remote)

    def _restore(self, target: InstallationTarget, store: BackupStore, backup: Backup | None) -> Backup:
        restored = store.restore(backup)
        try:
            self.driver.install_from_clone(target)
        except (StackerError, OSError) as e:
            raise RollbackError(
                f"Restored {restored.path} but reinstalling from it failed: {e}",
                operation="rollback",
                path=target.clone_dir,
            ) from e
        return restored

    def _restart(self, target: InstallationTarget) -> bool:
        if self.services is None:
            return False
        try:
            unit = self.services.restart_if_registered(target)
        except StackerError as e:
            self.log.warning("service.restart_failed", tech=target.tech_name, error=str(e))
            return False
        if unit:
            self.hlog.emit("service.restarted", unit=unit)
        return bool(unit)

    def rollback(
        self,
        target: InstallationTarget,
        version: str | None = None,
        *,
        confirm: Callable[[str], bool] | None = None,
        assume_yes: bool = False,
    ) -> RollbackResult | None:
        """Explicit rollback to a git revision or to the latest backup.

        Args:
            version: Revision to check out. None restores the latest backup.
            confirm: Asked with a description of what will happen; a False
                answer cancels the rollback.
            assume_yes: Skip the confirmation.

        Returns:
            The result, or None when the user declined.

        Raises:
            RollbackError: No backup, unknown revision, or no checkout.
        """
        what = f"check out {version}" if version else "restore the most recent backup"
        if not assume_yes:
            if confirm is None or not confirm(
                f"This will {what} of {target.tech_name} and reinstall it. Continue?"
            ):
                self.log.info("rollback.cancelled", tech=target.tech_name)
                return None

        with self._locked(target):
            store = self._store(target)
            if version:
                result = self._rollback_to_version(target, store, version)
            else:
                restored = self._restore(target, store, None)
                result = RollbackResult(target.tech_name, to=restored.name, backup=restored.path)

            verified = self.driver.verify(target)
            if not verified.ok:
                self.log.warning("rollback.unverified", tech=target.tech_name)
            self._restart(target)

        self.hlog.emit("rollback.complete", tech=target.tech_name, to=result.to)
        return result

    def _rollback_to_version(
        self, target: InstallationTarget, store: BackupStore, version: str
    ) -> RollbackResult:
        if not is_checkout(target.clone_dir):
            raise RollbackError(
                "Version rollback requires a git checkout",
                operation="rollback",
                path=target.clone_dir,
            )
        repo = self._repo(target)
        if repo.rev_parse(version) is None:
            raise RollbackError(
                f"Unknown revision: {version}", operation="rollback", path=target.clone_dir
            )
        # Snapshot first so this rollback can itself be undone
        backup = store.create()
        try:
            repo.checkout(version)
        except ExecError as e:
            raise RollbackError(
                f"Failed to check out {version}: {e.message}",
                operation="rollback",
                path=target.clone_dir,
                command=e.command,
            ) from e
        self.driver.install_from_clone(target)
        return RollbackResult(target.tech_name, to=version, backup=backup.path)
