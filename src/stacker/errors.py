"""
Error taxonomy for stacker.

Every fatal condition raised by the core derives from StackerError and
carries enough context (operation, path, command) to diagnose the failure
without re-running in debug mode. Non-fatal conditions are logged as
warnings; VerificationWarning is the only one with its own type.
"""

from typing import Any, Sequence

__all__ = [
    "StackerError",
    "LoadError",
    "MissingModuleError",
    "CyclicDependencyError",
    "DependencyLoadError",
    "ModuleInitError",
    "InsufficientPrivilegeError",
    "ExecError",
    "FilesystemError",
    "CloneError",
    "InstallError",
    "UnknownProjectTypeError",
    "MissingToolError",
    "BackupError",
    "RollbackError",
    "UpdateInProgressError",
    "ServiceError",
    "TargetNotFoundError",
    "PackageError",
    "PackageAlreadyInstalledError",
    "PackageNotInstalledError",
    "UnsupportedPackageUrlError",
    "PackageHookError",
    "VerificationWarning",
]


class StackerError(Exception):
    """Base class for every fatal stacker error."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        path: Any = None,
        command: Sequence[str] | str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.path = str(path) if path is not None else None
        if command is not None and not isinstance(command, str):
            command = " ".join(str(part) for part in command)
        self.command = command

    def __str__(self) -> str:
        details = []
        if self.operation:
            details.append(f"operation={self.operation}")
        if self.path:
            details.append(f"path={self.path}")
        if self.command:
            details.append(f"command={self.command}")
        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


# ── Module loading ────────────────────────────────────────────────────────


class LoadError(StackerError):
    """A module could not be loaded."""

    def __init__(self, message: str, *, module: str, **kwargs: Any) -> None:
        kwargs.setdefault("operation", "load")
        super().__init__(message, **kwargs)
        self.module = module


class MissingModuleError(LoadError):
    """The module's source artifact cannot be located (not in the table or not importable)."""


class CyclicDependencyError(LoadError):
    """A module was requested again while it was still being resolved."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(
            f"Cyclic module dependency: {' -> '.join(self.cycle)}",
            module=self.cycle[0],
        )


class DependencyLoadError(LoadError):
    """A dependency failed to load; the inner error is chained as __cause__."""

    def __init__(self, module: str, dependency: str, inner: LoadError) -> None:
        super().__init__(
            f"Failed to load dependency '{dependency}' for module '{module}': {inner}",
            module=module,
        )
        self.dependency = dependency
        self.inner = inner


class ModuleInitError(LoadError):
    """The module's init hook failed; the module is not marked loaded."""


# ── Privileges and processes ─────────────────────────────────────────────


class InsufficientPrivilegeError(StackerError):
    """Target directory is neither writable nor reachable through elevation."""


class ExecError(StackerError):
    """An external command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.stderr = stderr


class FilesystemError(StackerError):
    """A direct filesystem mutation (copy, remove, link, chmod) failed."""


# ── Installation ─────────────────────────────────────────────────────────


class CloneError(StackerError):
    """The clean clone could not be created or refreshed."""


class InstallError(StackerError):
    """Installing from the clean clone failed."""


class UnknownProjectTypeError(InstallError):
    """No install strategy matches the project markers in the clone."""


class MissingToolError(InstallError):
    """A required runtime or toolchain binary is not on PATH."""


class TargetNotFoundError(StackerError):
    """No persisted installation target exists for a technology name."""


# ── Update / rollback ────────────────────────────────────────────────────


class BackupError(StackerError):
    """Backup creation failed; the update must not proceed to APPLY."""


class RollbackError(StackerError):
    """No usable backup or revision to roll back to."""


class UpdateInProgressError(StackerError):
    """Another process holds the technology's update lock."""


# ── Service add-ons ──────────────────────────────────────────────────────


class ServiceError(StackerError):
    """A systemd unit or cron entry could not be managed."""


# ── Packages ─────────────────────────────────────────────────────────────


class PackageError(StackerError):
    """Base class for package scope errors."""


class PackageAlreadyInstalledError(PackageError):
    """A package with the same name already has a manifest in the scope."""


class PackageNotInstalledError(PackageError):
    """The package has no manifest in the requested scope."""


class UnsupportedPackageUrlError(PackageError):
    """The package URL scheme is not one of gh:, gl:, https://, file://."""


class PackageHookError(PackageError):
    """A package-supplied hook script failed."""


# ── Non-fatal ────────────────────────────────────────────────────────────


class VerificationWarning(UserWarning):
    """The installed artifact did not answer a version probe."""
