"""
Privilege Broker - decides how writes to a directory may be performed.

For each target directory the broker answers one of three decisions:

    direct    the effective user can write the (nearest existing) directory
    elevated  not writable, but passwordless sudo is available
    denied    neither; callers surface InsufficientPrivilegeError

Decisions are recomputed on every call. Privileges can change between two
steps of the same run (another process creating a directory, a sudo
timestamp expiring), so nothing is cached.

PrivilegedFS wraps the filesystem mutations the installer and package
manager need: direct decisions use pathlib/shutil, elevated decisions run
the equivalent coreutils command through sudo.
"""

import os
import pwd
import shutil
import stat
import subprocess
import tempfile
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator, Mapping, Sequence

import structlog

from ..errors import FilesystemError, InsufficientPrivilegeError
from . import process

logger = structlog.get_logger()

__all__ = [
    "PrivilegeDecision",
    "PrivilegeBroker",
    "PrivilegedFS",
    "UNKNOWN_USER",
    "effective_user",
    "effective_home",
    "nearest_existing",
]

UNKNOWN_USER = "unknown"


class PrivilegeDecision(Enum):
    """How an operation on a directory must be executed."""

    DIRECT = "direct"
    ELEVATED = "elevated"
    DENIED = "denied"


def effective_user(env: Mapping[str, str] | None = None) -> str:
    """Name of the user on whose behalf stacker runs.

    Under sudo the invoking user (SUDO_USER) wins over root. Falls back
    through USER, LOGNAME and the password database, ending in
    UNKNOWN_USER instead of raising.
    """
    env = os.environ if env is None else env
    for var in ("SUDO_USER", "USER", "LOGNAME"):
        if value := env.get(var):
            return value
    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except (KeyError, OSError):
        return UNKNOWN_USER


def effective_home(env: Mapping[str, str] | None = None) -> Path:
    """Home directory of effective_user(), independent of an elevated HOME."""
    env = os.environ if env is None else env
    user = effective_user(env)
    if user == UNKNOWN_USER:
        return Path(env.get("HOME") or "/tmp")
    try:
        return Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        if user == "root":
            return Path("/root")
        return Path(env.get("HOME") or f"/home/{user}")


def nearest_existing(path: Path) -> Path:
    """Walk up from path to the closest ancestor that exists."""
    current = Path(path).absolute()
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


class PrivilegeBroker:
    """Computes privilege decisions and runs commands accordingly.

    Args:
        allow_elevation: If False, the elevation mechanism is never used
            (NO_SUDO). Non-writable directories are then denied.
        elevation_command: Prefix used for elevated commands.
    """

    def __init__(
        self,
        allow_elevation: bool = True,
        elevation_command: Sequence[str] = ("sudo", "-n"),
    ) -> None:
        self.allow_elevation = allow_elevation
        self.elevation_command = list(elevation_command)
        self.log = logger.bind(component="privilege_broker")

    def elevation_available(self) -> bool:
        """True if a non-interactive elevation (passwordless sudo) works right now."""
        if not self.allow_elevation:
            return False
        if os.geteuid() == 0:
            return True
        if process.which(self.elevation_command[0]) is None:
            return False
        try:
            proc = subprocess.run(
                [*self.elevation_command, "true"],
                capture_output=True,
                timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0

    def check_privilege(self, directory: str | os.PathLike) -> PrivilegeDecision:
        """Decide how to write into directory (or its nearest existing ancestor)."""
        resolved = nearest_existing(Path(directory))
        if os.access(resolved, os.W_OK):
            decision = PrivilegeDecision.DIRECT
        elif self.elevation_available():
            decision = PrivilegeDecision.ELEVATED
        else:
            decision = PrivilegeDecision.DENIED
        self.log.debug(
            "privilege.checked",
            directory=str(directory),
            resolved=str(resolved),
            decision=decision.value,
        )
        return decision

    def require(self, directory: str | os.PathLike, operation: str) -> PrivilegeDecision:
        """Like check_privilege, but raise InsufficientPrivilegeError when denied."""
        decision = self.check_privilege(directory)
        if decision is PrivilegeDecision.DENIED:
            raise InsufficientPrivilegeError(
                f"Insufficient privileges to write to {directory}",
                operation=operation,
                path=directory,
            )
        return decision

    def exec_privileged(
        self,
        directory: str | os.PathLike,
        argv: Sequence[str | os.PathLike],
        *,
        cwd: str | os.PathLike | None = None,
        timeout: float | None = process.DEFAULT_TIMEOUT,
        input: str | None = None,
    ) -> subprocess.CompletedProcess:
        """Run argv directly or through the elevation mechanism.

        The decision is re-derived for every call.

        Raises:
            InsufficientPrivilegeError: The directory is denied.
            ExecError: The command failed.
        """
        decision = self.require(directory, operation="exec_privileged")
        cmd = [str(part) for part in argv]
        if decision is PrivilegeDecision.ELEVATED and os.geteuid() != 0:
            cmd = [*self.elevation_command, *cmd]
            self.log.debug("privilege.exec_elevated", command=cmd)
        else:
            self.log.debug("privilege.exec_direct", command=cmd)
        return process.run(cmd, cwd=cwd, timeout=timeout, input=input)


class PrivilegedFS:
    """Filesystem mutations routed through a PrivilegeBroker.

    Each method takes the path it mutates; the decision is made against
    that path's parent (or the path itself for mkdir). OSError from a
    direct mutation is re-raised as FilesystemError with the operation
    and path attached.
    """

    def __init__(self, broker: PrivilegeBroker) -> None:
        self.broker = broker

    def _decide(self, directory: Path, operation: str) -> PrivilegeDecision:
        return self.broker.require(directory, operation=operation)

    def _elevated(self, directory: Path, argv: list[str]) -> None:
        self.broker.exec_privileged(directory, argv)

    def mkdir(self, path: Path) -> None:
        path = Path(path)
        if path.is_dir():
            return
        if self._decide(path, "mkdir") is PrivilegeDecision.DIRECT:
            with _direct("mkdir", path):
                path.mkdir(parents=True, exist_ok=True)
        else:
            self._elevated(path, ["mkdir", "-p", str(path)])

    def copy_file(self, source: Path, dest: Path, executable: bool = False) -> None:
        dest = Path(dest)
        if self._decide(dest.parent, "copy") is PrivilegeDecision.DIRECT:
            with _direct("copy", dest):
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
                if executable:
                    _make_executable(dest)
        else:
            self._elevated(dest.parent, ["cp", str(source), str(dest)])
            if executable:
                self._elevated(dest.parent, ["chmod", "+x", str(dest)])

    def copy_tree(self, source: Path, dest: Path) -> None:
        dest = Path(dest)
        if self._decide(dest.parent, "copy_tree") is PrivilegeDecision.DIRECT:
            with _direct("copy_tree", dest):
                shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
        else:
            self._elevated(dest.parent, ["mkdir", "-p", str(dest)])
            self._elevated(dest.parent, ["cp", "-R", f"{source}/.", str(dest)])

    def chmod_executable(self, path: Path) -> None:
        path = Path(path)
        if self._decide(path.parent, "chmod") is PrivilegeDecision.DIRECT:
            with _direct("chmod", path):
                _make_executable(path)
        else:
            self._elevated(path.parent, ["chmod", "+x", str(path)])

    def write_text(self, path: Path, content: str, executable: bool = False) -> None:
        path = Path(path)
        if self._decide(path.parent, "write") is PrivilegeDecision.DIRECT:
            with _direct("write", path):
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content, encoding="utf-8")
                if executable:
                    _make_executable(path)
            return
        with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8") as tmp:
            tmp.write(content)
        try:
            self.copy_file(Path(tmp.name), path, executable=executable)
        finally:
            os.unlink(tmp.name)

    def remove(self, path: Path) -> None:
        """Remove a file, symlink or directory tree. Missing paths are ignored."""
        path = Path(path)
        if not path.exists() and not path.is_symlink():
            return
        if self._decide(path.parent, "remove") is PrivilegeDecision.DIRECT:
            with _direct("remove", path):
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
        else:
            self._elevated(path.parent, ["rm", "-rf", str(path)])

    def symlink(self, target: Path, link: Path) -> None:
        """Create (or replace) link pointing at target."""
        link = Path(link)
        if self._decide(link.parent, "symlink") is PrivilegeDecision.DIRECT:
            with _direct("symlink", link):
                link.parent.mkdir(parents=True, exist_ok=True)
                if link.is_symlink() or link.exists():
                    link.unlink()
                link.symlink_to(target)
        else:
            self._elevated(link.parent, ["mkdir", "-p", str(link.parent)])
            self._elevated(link.parent, ["ln", "-sfn", str(target), str(link)])


@contextmanager
def _direct(operation: str, path: Path) -> Iterator[None]:
    try:
        yield
    except OSError as e:
        raise FilesystemError(
            f"Failed to {operation.replace('_', ' ')}: {e.strerror or e}",
            operation=operation,
            path=e.filename or path,
        ) from e


def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
