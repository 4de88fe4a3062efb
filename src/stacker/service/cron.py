"""
Cron entries for periodic updates.

Every managed line ends with a tag comment so entries can be replaced and
removed without touching the rest of the user's crontab:

    */5 * * * * /home/me/.local/bin/mytool update >/dev/null 2>&1 # stacker:mytool:update
    0 3 * * 0 stacker update mytool >/dev/null 2>&1 # stacker:mytool:auto-update
"""

import shutil
from typing import TYPE_CHECKING

import structlog

from ..core import process
from ..errors import ServiceError

if TYPE_CHECKING:
    from ..install.target import InstallationTarget

logger = structlog.get_logger()

TAG_PREFIX = "# stacker:"


def _tag(tech_name: str, kind: str = "") -> str:
    return f"{TAG_PREFIX}{tech_name}:{kind}"


class CronScheduler:
    """Reads and rewrites the invoking user's crontab."""

    def __init__(self) -> None:
        self.log = logger.bind(component="cron")

    def read(self) -> list[str]:
        process.require_commands("crontab")
        proc = process.run(["crontab", "-l"], check=False)
        # crontab -l fails when the user has no crontab yet
        if proc.returncode != 0:
            return []
        return proc.stdout.splitlines()

    def write(self, lines: list[str]) -> None:
        content = "\n".join(lines) + "\n" if lines else ""
        process.run(["crontab", "-"], input=content)

    def _set_job(self, tech_name: str, kind: str, line: str) -> str:
        tag = _tag(tech_name, kind)
        entry = f"{line} {tag}"
        lines = [existing for existing in self.read() if not existing.rstrip().endswith(tag)]
        lines.append(entry)
        self.write(lines)
        self.log.info("cron.job_set", tech=tech_name, kind=kind, entry=entry)
        return entry

    def add_update_job(self, target: "InstallationTarget", interval: int = 5) -> str:
        """Run `<artifact> update` every interval minutes."""
        if not 1 <= interval <= 59:
            raise ServiceError(f"Invalid cron interval: {interval}", operation="cron")
        line = f"*/{interval} * * * * {target.artifact} update >/dev/null 2>&1"
        return self._set_job(target.tech_name, "update", line)

    def add_auto_update(self, target: "InstallationTarget", schedule: str = "0 3 * * 0") -> str:
        """Run `stacker update <tech>` on schedule (weekly by default)."""
        stacker_bin = shutil.which("stacker") or "stacker"
        line = f"{schedule} {stacker_bin} update {target.tech_name} >/dev/null 2>&1"
        return self._set_job(target.tech_name, "auto-update", line)

    def jobs(self, target: "InstallationTarget") -> list[str]:
        prefix = _tag(target.tech_name)
        return [line for line in self.read() if prefix in line]

    def remove_jobs(self, target: "InstallationTarget") -> int:
        """Delete every managed entry of the technology. Returns how many."""
        if process.which("crontab") is None:
            return 0
        prefix = _tag(target.tech_name)
        lines = self.read()
        kept = [line for line in lines if prefix not in line]
        removed = len(lines) - len(kept)
        if removed:
            self.write(kept)
            self.log.info("cron.jobs_removed", tech=target.tech_name, count=removed)
        return removed
