"""
Synchronous execution of external commands.

All version control, toolchain and service-manager calls go through run():
output is captured as text, a timeout is always applied, and failures are
turned into ExecError with the command line and a stderr excerpt attached.
"""

import os
import shutil
import subprocess
from typing import Mapping, Sequence

import structlog

from ..errors import ExecError, MissingToolError

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 120
_STDERR_EXCERPT = 500


def run(
    argv: Sequence[str | os.PathLike],
    *,
    cwd: str | os.PathLike | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    input: str | None = None,
) -> subprocess.CompletedProcess:
    """Run a command and return the completed process.

    Args:
        argv: Command and arguments (no shell involved).
        cwd: Working directory for the command.
        timeout: Seconds before the command is killed. None waits forever.
        env: Extra environment variables layered over os.environ.
        check: Raise ExecError on a non-zero exit status.
        input: Text passed on stdin.

    Raises:
        ExecError: The command is missing, timed out, or failed with check=True.
    """
    cmd = [str(part) for part in argv]
    full_env = None
    if env:
        full_env = {**os.environ, **env}

    logger.debug("process.run", command=cmd, cwd=str(cwd) if cwd else None)
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=full_env,
            input=input,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ExecError(
            f"Command not found: {cmd[0]}", command=cmd, path=cwd, returncode=127
        ) from e
    except subprocess.TimeoutExpired as e:
        raise ExecError(
            f"Command timed out after {timeout}s", command=cmd, path=cwd
        ) from e

    if check and proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        raise ExecError(
            f"Command failed with exit code {proc.returncode}: {stderr[:_STDERR_EXCERPT]}",
            command=cmd,
            path=cwd,
            returncode=proc.returncode,
            stderr=stderr,
        )
    return proc


def which(name: str) -> str | None:
    """Return the absolute path of an executable on PATH, or None."""
    return shutil.which(name)


def require_commands(*names: str) -> None:
    """Fail with MissingToolError if any of the named executables is absent."""
    missing = [name for name in names if which(name) is None]
    if missing:
        raise MissingToolError(
            f"Required tools not found on PATH: {', '.join(missing)}",
            operation="check_requirements",
        )

