"""
Thin wrapper around the external `git` client.

Only the operations the installer and the update orchestrator need:
clone, fetch, revision lookup, hard reset and checkout. Network-bound
operations (clone, fetch) are retried on failure with exponential backoff.
"""

import shutil
from pathlib import Path

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ExecError
from . import process

logger = structlog.get_logger()

__all__ = ["GitRepo", "is_checkout"]

REMOTE = "origin"
_FALLBACK_BRANCHES = ("main", "master")


def is_checkout(path: Path) -> bool:
    """True if path is the top of a git working tree."""
    return (Path(path) / ".git").exists()


def _on_retry_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "git.retry",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


class GitRepo:
    """Git operations on one working tree.

    Args:
        path: Working tree directory.
        timeout: Per-command timeout in seconds.
        retries: Extra attempts for clone/fetch on failure.
    """

    def __init__(self, path: Path, timeout: float = 120, retries: int = 2) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.retries = retries

    def _git(self, *args: str, check: bool = True):
        return process.run(
            ["git", *args], cwd=self.path, timeout=self.timeout, check=check
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(ExecError),
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            before_sleep=_on_retry_sleep,
            reraise=True,
        )

    @classmethod
    def clone(
        cls,
        url: str,
        dest: Path,
        *,
        ref: str | None = None,
        depth: int | None = None,
        timeout: float = 120,
        retries: int = 2,
    ) -> "GitRepo":
        """Clone url into dest. A partial dest left by a failed attempt is removed."""
        argv = ["git", "clone"]
        if depth:
            argv += ["--depth", str(depth)]
        if ref:
            argv += ["--branch", ref]
        argv += [url, str(dest)]

        repo = cls(dest, timeout=timeout, retries=retries)
        for attempt in repo._retrying():
            with attempt:
                if dest.exists():
                    shutil.rmtree(dest)
                process.run(argv, timeout=timeout)
        logger.debug("git.cloned", url=url, dest=str(dest), ref=ref)
        return repo

    def is_checkout(self) -> bool:
        return is_checkout(self.path)

    def fetch(self) -> None:
        for attempt in self._retrying():
            with attempt:
                self._git("fetch", REMOTE)

    def rev_parse(self, rev: str) -> str | None:
        proc = self._git("rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}", check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def head(self) -> str:
        rev = self.rev_parse("HEAD")
        if rev is None:
            raise ExecError("Cannot resolve HEAD", command="git rev-parse HEAD", path=self.path)
        return rev

    def remote_head(self) -> str:
        """Revision of the upstream branch, falling back to origin/main, origin/master."""
        for candidate in ("@{upstream}", *(f"{REMOTE}/{b}" for b in _FALLBACK_BRANCHES)):
            rev = self.rev_parse(candidate)
            if rev:
                return rev
        raise ExecError(
            "Cannot resolve the remote tracking revision",
            command="git rev-parse @{upstream}",
            path=self.path,
        )

    def count_between(self, old: str, new: str) -> int:
        proc = self._git("rev-list", "--count", f"{old}..{new}", check=False)
        try:
            return int(proc.stdout.strip())
        except ValueError:
            return 0

    def reset_hard(self, rev: str) -> None:
        self._git("reset", "--hard", rev)

    def checkout(self, rev: str) -> None:
        self._git("checkout", rev)
