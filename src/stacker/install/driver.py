"""
Installation Driver -- clean clone, strategy dispatch, verification.

install() is the complete workflow used by `stacker install`:

    requirements → XDG directories → clean clone → install from clone
      → verification (warning only) → persist target → optional add-ons

Add-ons (service unit, cron job, weekly auto-update) never fail the
install; each failure is logged as a warning and collected in the report.
Service and cron objects are injected by the caller so this module only
depends on core and config.
"""

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog

from ..config.schema import AppConfig
from ..core import process
from ..core.privilege import PrivilegeBroker, PrivilegedFS
from ..core.vcs import GitRepo
from ..errors import ExecError, InstallError, StackerError, VerificationWarning
from ..logging.human import HumanLog
from .clone import ensure_clean_clone
from .sidecar import ProjectConfig
from .strategies import STRATEGIES, InstallContext, Strategy, select_strategy
from .target import InstallationTarget

logger = structlog.get_logger()

VERSION_PROBES = (("--version",), ("version",))


@dataclass
class VerifyResult:
    ok: bool
    version: str | None = None
    warning: VerificationWarning | None = None


@dataclass
class InstallOptions:
    """Optional add-ons of a fresh install."""

    service: Literal["user", "system"] | None = None
    cron: bool = False
    auto_update: bool = False


@dataclass
class InstallReport:
    tech_name: str
    artifact: Path
    strategy: str
    revision: str | None = None
    verified: bool = False
    warnings: list[str] = field(default_factory=list)


class InstallationDriver:
    """Installs, verifies and uninstalls technologies.

    Args:
        config: Application configuration.
        broker: Privilege broker for writes into the install directory.
        services: Object with setup/teardown (ServiceManager).
        scheduler: Object with add_update_job/add_auto_update/remove_jobs
            (CronScheduler).
        repo_cls: Git client class (injectable for tests).
        strategies: Strategy table probed in order.
        cwd: Working directory used for the in-place update check.
    """

    def __init__(
        self,
        config: AppConfig,
        broker: PrivilegeBroker,
        *,
        services: Any = None,
        scheduler: Any = None,
        repo_cls: type[GitRepo] = GitRepo,
        strategies: tuple[Strategy, ...] = STRATEGIES,
        cwd: Path | None = None,
    ) -> None:
        self.config = config
        self.broker = broker
        self.fs = PrivilegedFS(broker)
        self.services = services
        self.scheduler = scheduler
        self.repo_cls = repo_cls
        self.strategies = strategies
        self.cwd = cwd
        self.log = logger.bind(component="installer")
        self.hlog = HumanLog(self.log)

    # ── Core steps ────────────────────────────────────────────────────────

    def ensure_clean_clone(self, target: InstallationTarget) -> str | None:
        return ensure_clean_clone(
            target,
            cwd=self.cwd,
            git_timeout=self.config.install.git_timeout,
            git_retries=self.config.install.git_retries,
            repo_cls=self.repo_cls,
        )

    def install_from_clone(self, target: InstallationTarget) -> str:
        """Install the artifact from the existing clone.

        Returns:
            Name of the strategy that was used.

        Raises:
            InstallError: Missing clone, failed build or copy.
            UnknownProjectTypeError: No strategy matches the clone.
            InsufficientPrivilegeError: The install directory is denied.
        """
        clone_dir = target.clone_dir
        if not clone_dir.is_dir():
            raise InstallError(
                "Clean clone directory not found", operation="install", path=clone_dir
            )

        self.fs.mkdir(target.install_dir)
        ctx = InstallContext(
            tech_name=target.tech_name,
            main_script=target.main_script,
            install_dir=target.install_dir,
            fs=self.fs,
            project=ProjectConfig.load(clone_dir),
            command_timeout=self.config.install.command_timeout,
        )
        strategy = select_strategy(clone_dir, ctx, self.strategies)
        self.hlog.strategy(strategy.name, target.artifact)
        strategy.install(clone_dir, target.artifact, ctx)
        self.log.info("install.from_clone", strategy=strategy.name, dest=str(target.artifact))
        return strategy.name

    def verify(self, target: InstallationTarget) -> VerifyResult:
        """Probe the artifact with a version flag. Never raises."""
        artifact = target.artifact
        if not artifact.is_file():
            return self._verify_failed(artifact, "artifact not found")
        if not artifact.stat().st_mode & 0o111:
            return self._verify_failed(artifact, "artifact not executable")

        for args in VERSION_PROBES:
            try:
                proc = process.run(
                    [artifact, *args],
                    timeout=self.config.update.verify_timeout,
                    check=False,
                )
            except ExecError:
                continue
            if proc.returncode == 0:
                version = (proc.stdout or "").strip().splitlines()
                result = VerifyResult(ok=True, version=version[0] if version else None)
                self.hlog.emit("verify.ok", artifact=str(artifact), version=result.version or "")
                return result

        return self._verify_failed(artifact, "version probe failed")

    def _verify_failed(self, artifact: Path, reason: str) -> VerifyResult:
        self.log.warning("verify.failed", artifact=str(artifact), reason=reason)
        return VerifyResult(
            ok=False,
            warning=VerificationWarning(f"Could not verify {artifact}: {reason}"),
        )

    # ── Workflows ─────────────────────────────────────────────────────────

    def install(
        self,
        target: InstallationTarget,
        options: InstallOptions | None = None,
    ) -> InstallReport:
        """Full installation of a technology. Fatal errors propagate."""
        options = options or InstallOptions()
        self.hlog.emit("install.start", tech=target.tech_name)

        process.require_commands("git")
        for directory in target.xdg_dirs():
            directory.mkdir(parents=True, exist_ok=True)

        revision = self.ensure_clean_clone(target)
        strategy = self.install_from_clone(target)
        report = InstallReport(
            tech_name=target.tech_name,
            artifact=target.artifact,
            strategy=strategy,
            revision=revision,
        )

        result = self.verify(target)
        report.verified = result.ok
        if result.warning is not None:
            report.warnings.append(str(result.warning))

        target.save()
        self._install_addons(target, options, report)

        self.hlog.installed(target.tech_name, target.artifact)
        return report

    def _install_addons(
        self, target: InstallationTarget, options: InstallOptions, report: InstallReport
    ) -> None:
        addons = []
        if options.service and self.services is not None:
            addons.append(("service", lambda: self.services.setup(target, options.service)))
        if options.cron and self.scheduler is not None:
            addons.append(("cron", lambda: self.scheduler.add_update_job(
                target, self.config.update.cron_interval)))
        if options.auto_update and self.scheduler is not None:
            addons.append(("auto_update", lambda: self.scheduler.add_auto_update(
                target, self.config.update.auto_update_schedule)))

        for name, action in addons:
            try:
                action()
            except StackerError as e:
                self.log.warning("addon.failed", addon=name, error=str(e))
                report.warnings.append(f"{name}: {e}")

    def uninstall(
        self,
        target: InstallationTarget,
        *,
        keep_config: bool = False,
        keep_data: bool = False,
    ) -> list[str]:
        """Remove the artifact, clone, service, cron entries and directories.

        Returns:
            Warnings for add-ons that could not be removed.
        """
        warnings: list[str] = []
        if self.services is not None:
            try:
                self.services.teardown(target)
            except StackerError as e:
                self.log.warning("uninstall.service_failed", error=str(e))
                warnings.append(f"service: {e}")
        if self.scheduler is not None:
            try:
                self.scheduler.remove_jobs(target)
            except StackerError as e:
                self.log.warning("uninstall.cron_failed", error=str(e))
                warnings.append(f"cron: {e}")

        self.fs.remove(target.artifact)
        target.target_file.unlink(missing_ok=True)
        if target.clone_dir.exists():
            shutil.rmtree(target.clone_dir)

        removable = [target.state_dir, target.cache_dir]
        if not keep_data:
            removable.append(target.data_dir)
        if not keep_config:
            removable.append(target.config_dir)
        for directory in removable:
            if directory.is_dir():
                shutil.rmtree(directory)
                self.log.info("uninstall.removed", path=str(directory))

        self.hlog.emit("uninstall.complete", tech=target.tech_name)
        return warnings
