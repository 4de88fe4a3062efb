"""
Clean clone management.

Two modes:

- In place: when stacker runs from inside the target's clone directory and
  it is a git checkout, fetch and hard-reset to the remote revision (only
  if it differs from HEAD).
- External: otherwise delete any existing clone and clone fresh, so no
  stale file survives a reinstall.
"""

import os
import shutil
from pathlib import Path

import structlog

from ..core.vcs import GitRepo, is_checkout
from ..errors import CloneError, ExecError
from ..logging.human import HumanLog
from .strategies import expects_script
from .target import InstallationTarget

logger = structlog.get_logger()


def _same_dir(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return False


def ensure_clean_clone(
    target: InstallationTarget,
    *,
    cwd: Path | None = None,
    git_timeout: float = 120,
    git_retries: int = 2,
    repo_cls: type[GitRepo] = GitRepo,
) -> str | None:
    """Make target.clone_dir a pristine checkout of target.repo_url.

    Returns:
        The checked-out revision, when it could be resolved.

    Raises:
        CloneError: Clone/fetch/reset failed, or a script-type clone lacks
            its main script.
    """
    hlog = HumanLog(logger)
    clone_dir = target.clone_dir
    cwd = Path(cwd) if cwd is not None else Path(os.getcwd())

    if _same_dir(cwd, clone_dir):
        if not is_checkout(clone_dir):
            raise CloneError(
                "Running from the clone directory, but it is not a git checkout",
                operation="update_in_place",
                path=clone_dir,
            )
        hlog.updating_in_place(clone_dir)
        repo = repo_cls(clone_dir, timeout=git_timeout, retries=git_retries)
        try:
            repo.fetch()
            local = repo.head()
            remote = repo.remote_head()
            if local == remote:
                hlog.up_to_date(local)
                return local
            repo.reset_hard(remote)
        except ExecError as e:
            raise CloneError(
                f"Failed to update {clone_dir} in place: {e.message}",
                operation="update_in_place",
                path=clone_dir,
                command=e.command,
            ) from e
        logger.info("clone.updated", path=str(clone_dir), old=local, new=remote)
        return remote

    if clone_dir.exists() or clone_dir.is_symlink():
        logger.info("clone.removing", path=str(clone_dir))
        if clone_dir.is_dir() and not clone_dir.is_symlink():
            shutil.rmtree(clone_dir)
        else:
            clone_dir.unlink()

    clone_dir.parent.mkdir(parents=True, exist_ok=True)
    hlog.cloning(target.repo_url, clone_dir)
    try:
        repo = repo_cls.clone(
            target.repo_url, clone_dir, timeout=git_timeout, retries=git_retries
        )
    except ExecError as e:
        raise CloneError(
            f"Failed to clone {target.repo_url}: {e.message}",
            operation="clone",
            path=clone_dir,
            command=e.command,
        ) from e

    if expects_script(clone_dir) and not (clone_dir / target.main_script).is_file():
        raise CloneError(
            f"Main script not found in clone: {target.main_script}",
            operation="clone",
            path=clone_dir / target.main_script,
        )

    revision = repo.rev_parse("HEAD")
    logger.info("clone.created", path=str(clone_dir), revision=revision)
    return revision
