"""
Package Scope Manager -- packages in three independent scopes.

    scope   packages                              enabled links
    local   <project>/.stacker/packages/<name>    <project>/.stacker/enabled/<name>
    user    $XDG_DATA_HOME/stacker/packages/...   $XDG_CONFIG_HOME/stacker/enabled/...
    system  /usr/local/share/stacker/packages/... /etc/stacker/enabled/...

A package is installed when its root holds a stacker.yaml; it is enabled
when the enabled directory holds a symlink to its root. Both are read from
the filesystem on every call. Writes go through PrivilegedFS, so the
system scope uses sudo when needed.
"""

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from ..config.schema import PACKAGE_SCOPES, PackagesConfig, Scope
from ..core.paths import FRAMEWORK_NAME, XdgPaths
from ..core.privilege import PrivilegeBroker, PrivilegedFS
from ..core.vcs import GitRepo
from ..errors import (
    ExecError,
    PackageAlreadyInstalledError,
    PackageError,
    PackageHookError,
    PackageNotInstalledError,
    StackerError,
)
from ..logging.human import HumanLog
from .manifest import MANIFEST_FILENAME, PackageManifest
from .urls import PackageSource, parse_package_url

logger = structlog.get_logger()

SCOPES = PACKAGE_SCOPES
ORIGIN_FILENAME = ".stacker-origin"
HOOK_TIMEOUT = 300


@dataclass(frozen=True)
class ScopeLayout:
    scope: Scope
    packages_dir: Path
    enabled_dir: Path


@dataclass(frozen=True)
class PackageRecord:
    name: str
    scope: Scope
    path: Path
    installed: bool
    enabled: bool
    source_url: str | None = None
    ref: str | None = None
    version: str | None = None


class PackageScopeManager:
    """Install, remove, enable and disable packages per scope.

    Args:
        config: Package settings (system roots, default scope).
        broker: Privilege broker used for every write.
        xdg: XDG roots for the user scope.
        project_dir: Root of the local scope (current directory by default).
        repo_cls: Git client class (injectable for tests).
    """

    def __init__(
        self,
        config: PackagesConfig,
        broker: PrivilegeBroker,
        *,
        xdg: XdgPaths | None = None,
        project_dir: Path | None = None,
        repo_cls: type[GitRepo] = GitRepo,
        git_timeout: float = 120,
        git_retries: int = 2,
    ) -> None:
        self.config = config
        self.broker = broker
        self.fs = PrivilegedFS(broker)
        self.xdg = xdg or XdgPaths.from_env()
        self.project_dir = Path(project_dir) if project_dir else Path.cwd()
        self.repo_cls = repo_cls
        self.git_timeout = git_timeout
        self.git_retries = git_retries
        self.log = logger.bind(component="packages")
        self.hlog = HumanLog(self.log)

    # ── Layout / read side ────────────────────────────────────────────────

    def layout(self, scope: str | None = None) -> ScopeLayout:
        scope = scope or self.config.default_scope
        if scope == "local":
            base = self.project_dir / self.config.local_dirname
            return ScopeLayout("local", base / "packages", base / "enabled")
        if scope == "user":
            return ScopeLayout(
                "user",
                self.xdg.data_home / FRAMEWORK_NAME / "packages",
                self.xdg.config_home / FRAMEWORK_NAME / "enabled",
            )
        if scope == "system":
            return ScopeLayout("system", self.config.system_root, self.config.system_enabled_dir)
        raise PackageError(
            f"Invalid scope: {scope} (use: {', '.join(SCOPES)})", operation="scope"
        )

    def package_root(self, name: str, scope: str | None = None) -> Path:
        return self.layout(scope).packages_dir / name

    def is_installed(self, name: str, scope: str | None = None) -> bool:
        root = self.package_root(name, scope)
        return root.is_dir() and (root / MANIFEST_FILENAME).is_file()

    def _link_target(self, link: Path) -> Path:
        target = Path(os.readlink(link))
        if not target.is_absolute():
            target = link.parent / target
        return Path(os.path.normpath(target))

    def is_enabled(self, name: str, scope: str | None = None) -> bool:
        layout = self.layout(scope)
        link = layout.enabled_dir / name
        if not link.is_symlink():
            return False
        root = Path(os.path.normpath(layout.packages_dir / name))
        return self._link_target(link) == root

    def _require_installed(self, name: str, scope: str | None) -> ScopeLayout:
        layout = self.layout(scope)
        if not self.is_installed(name, layout.scope):
            raise PackageNotInstalledError(
                f"Package '{name}' is not installed in {layout.scope} scope",
                operation="package",
                path=layout.packages_dir / name,
            )
        return layout

    def _manifest(self, root: Path) -> PackageManifest | None:
        try:
            return PackageManifest.load(root / MANIFEST_FILENAME)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            self.log.warning("package.bad_manifest", path=str(root), error=str(e))
            return None

    def _origin(self, root: Path) -> dict:
        path = root / ORIGIN_FILENAME
        if not path.is_file():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError):
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, name: str, scope: str | None = None) -> PackageRecord:
        layout = self.layout(scope)
        root = layout.packages_dir / name
        installed = self.is_installed(name, layout.scope)
        manifest = self._manifest(root) if installed else None
        origin = self._origin(root) if installed else {}
        return PackageRecord(
            name=name,
            scope=layout.scope,
            path=root,
            installed=installed,
            enabled=self.is_enabled(name, layout.scope),
            source_url=origin.get("url") or (manifest.source if manifest else None) or None,
            ref=origin.get("ref"),
            version=manifest.version if manifest else None,
        )

    def info(self, name: str, scope: str | None = None) -> PackageManifest:
        """Parsed manifest of an installed package."""
        layout = self._require_installed(name, scope)
        manifest = self._manifest(layout.packages_dir / name)
        if manifest is None:
            raise PackageError(
                f"Package '{name}' has an unreadable manifest",
                operation="info",
                path=layout.packages_dir / name / MANIFEST_FILENAME,
            )
        return manifest

    def find_stale_links(self, scope: str | None = None) -> list[Path]:
        """Enabled links whose package is not installed (or points elsewhere)."""
        layout = self.layout(scope)
        if not layout.enabled_dir.is_dir():
            return []
        return [
            link
            for link in sorted(layout.enabled_dir.iterdir())
            if link.is_symlink()
            and not (
                self.is_installed(link.name, layout.scope)
                and self.is_enabled(link.name, layout.scope)
            )
        ]

    def list_packages(self, scope: str | None = None) -> list[PackageRecord]:
        """Installed packages of a scope, sorted by name.

        Stale enabled-links are logged as warnings.
        """
        layout = self.layout(scope)
        for link in self.find_stale_links(layout.scope):
            self.log.warning("package.stale_link", name=link.name, link=str(link),
                             scope=layout.scope)
        if not layout.packages_dir.is_dir():
            return []
        return [
            self.get(entry.name, layout.scope)
            for entry in sorted(layout.packages_dir.iterdir())
            if entry.is_dir() and (entry / MANIFEST_FILENAME).is_file()
        ]

    # ── Hooks ─────────────────────────────────────────────────────────────

    def hook_path(self, root: Path, hook: str) -> Path | None:
        """scripts.<hook> from the manifest, else <hook>.sh in the root."""
        manifest = self._manifest(root) if (root / MANIFEST_FILENAME).is_file() else None
        declared = manifest.hook_script(hook) if manifest else None
        if declared:
            path = root / declared
            if not path.is_file():
                raise PackageHookError(
                    f"Declared {hook} hook not found: {declared}",
                    operation=f"hook {hook}",
                    path=path,
                )
            return path
        fallback = root / f"{hook}.sh"
        return fallback if fallback.is_file() else None

    def run_hook(self, root: Path, hook: str) -> bool:
        """Run a package hook with sh inside the package root.

        Returns:
            True if a hook ran, False if the package has none.

        Raises:
            PackageHookError: The hook failed.
        """
        script = self.hook_path(root, hook)
        if script is None:
            return False
        self.log.info("package.hook", hook=hook, script=str(script))
        try:
            self.broker.exec_privileged(
                root, ["sh", str(script)], cwd=root, timeout=HOOK_TIMEOUT
            )
        except ExecError as e:
            raise PackageHookError(
                f"Package {hook} hook failed: {e.message}",
                operation=f"hook {hook}",
                path=script,
                command=e.command,
            ) from e
        return True

    def _run_hook_lenient(self, root: Path, hook: str) -> None:
        try:
            self.run_hook(root, hook)
        except PackageHookError as e:
            self.log.warning("package.hook_failed", hook=hook, error=str(e))

    # ── Write side ────────────────────────────────────────────────────────

    def _fetch(self, source: PackageSource, root: Path) -> None:
        if source.kind == "path":
            src = Path(source.source)
            if not src.is_dir():
                raise PackageError(
                    f"Local package source not found: {src}",
                    operation="install",
                    path=src,
                )
            self.fs.copy_tree(src, root)
            return

        # Clone as the invoking user, then copy into place with the
        # scope's privileges
        with tempfile.TemporaryDirectory(prefix="stacker-pkg-") as tmp:
            staging = Path(tmp) / source.name
            try:
                self.repo_cls.clone(
                    source.source,
                    staging,
                    ref=source.ref,
                    depth=1,
                    timeout=self.git_timeout,
                    retries=self.git_retries,
                )
            except ExecError as e:
                raise PackageError(
                    f"Failed to clone package repository {source.source}: {e.message}",
                    operation="install",
                    command=e.command,
                ) from e
            self.fs.copy_tree(staging, root)

    def install(self, url: str, scope: str | None = None) -> PackageRecord:
        """Install a package from url into scope and enable it.

        Raises:
            UnsupportedPackageUrlError: url cannot be parsed.
            PackageAlreadyInstalledError: Same name already installed in scope.
            PackageHookError: The install hook failed (root is removed).
        """
        source = parse_package_url(url)
        layout = self.layout(scope)
        root = layout.packages_dir / source.name

        if self.is_installed(source.name, layout.scope):
            raise PackageAlreadyInstalledError(
                f"Package '{source.name}' is already installed in {layout.scope} scope; "
                f"remove it first",
                operation="install",
                path=root,
            )
        if root.exists() or root.is_symlink():
            # Leftover of an interrupted install: no manifest, so not installed
            self.log.warning("package.leftover_removed", path=str(root))
            self.fs.remove(root)

        self.log.info("package.install", name=source.name, source=source.source,
                      ref=source.ref, scope=layout.scope)
        self.fs.mkdir(layout.packages_dir)
        try:
            self._fetch(source, root)
            if not (root / MANIFEST_FILENAME).is_file():
                self.log.warning("package.no_manifest", name=source.name)
                self.fs.write_text(
                    root / MANIFEST_FILENAME,
                    PackageManifest.synthesize(source.name, url).to_yaml(),
                )
            self.fs.write_text(
                root / ORIGIN_FILENAME,
                yaml.safe_dump(
                    {
                        "url": url,
                        "source": source.source,
                        "ref": source.ref,
                        "installed_at": datetime.now(timezone.utc).isoformat(),
                    },
                    sort_keys=False,
                ),
            )
            self.run_hook(root, "install")
        except StackerError:
            # Nothing half-installed stays behind
            self.fs.remove(root)
            raise

        self.hlog.package("installed", source.name, layout.scope)
        self.enable(source.name, layout.scope)
        return self.get(source.name, layout.scope)

    def remove(self, name: str, scope: str | None = None) -> None:
        """Run the uninstall hook, disable, then delete the package root.

        Raises:
            PackageNotInstalledError: Nothing to remove.
        """
        layout = self._require_installed(name, scope)
        root = layout.packages_dir / name
        self._run_hook_lenient(root, "uninstall")
        self.disable(name, layout.scope)
        self.fs.remove(root)
        self.hlog.package("removed", name, layout.scope)

    def enable(self, name: str, scope: str | None = None) -> bool:
        """Link the package into the enabled directory.

        Returns:
            True if the package was enabled, False if it already was.

        Raises:
            PackageNotInstalledError: The package is not installed.
            PackageHookError: The enable hook failed; nothing was linked.
        """
        layout = self._require_installed(name, scope)
        if self.is_enabled(name, layout.scope):
            self.log.info("package.already_enabled", name=name, scope=layout.scope)
            return False
        root = layout.packages_dir / name
        self.run_hook(root, "enable")
        self.fs.mkdir(layout.enabled_dir)
        self.fs.symlink(root, layout.enabled_dir / name)
        self.hlog.package("enabled", name, layout.scope)
        return True

    def disable(self, name: str, scope: str | None = None) -> bool:
        """Remove the enabled link. The package root is untouched.

        Returns:
            True if a link was removed, False if the package was not enabled.
        """
        layout = self.layout(scope)
        link = layout.enabled_dir / name
        if not link.is_symlink():
            self.log.info("package.already_disabled", name=name, scope=layout.scope)
            return False
        if self.is_installed(name, layout.scope):
            self._run_hook_lenient(layout.packages_dir / name, "disable")
        self.fs.remove(link)
        self.hlog.package("disabled", name, layout.scope)
        return True
