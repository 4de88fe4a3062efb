"""
InstallationTarget -- the resolved description of one technology.

A target is created once (init) from the technology name, its source URL
and its entry script. Every directory is derived deterministically from the
name and the XDG roots; only the install directory depends on the host
(privileges, overrides). After a successful install the target is written
to config_dir/target.yaml so later commands can reconstruct it by name.
"""

from dataclasses import dataclass
from pathlib import Path
import structlog
import yaml

from ..config.schema import InstallConfig
from ..core.paths import XdgPaths
from ..core.privilege import PrivilegeBroker, PrivilegeDecision, effective_home
from ..errors import InstallError, TargetNotFoundError

logger = structlog.get_logger()

TARGET_FILENAME = "target.yaml"
SYSTEM_BIN = Path("/usr/local/bin")


def resolve_install_dir(
    config: InstallConfig,
    broker: PrivilegeBroker,
    home: Path | None = None,
) -> Path:
    """Choose where the artifact goes.

    Explicit override, then ~/.local/bin when force_user, then
    /usr/local/bin when it is writable (directly or through sudo), then
    ~/.local/bin.
    """
    home = home or effective_home()
    user_bin = home / ".local" / "bin"

    if config.install_dir:
        return Path(config.install_dir).expanduser()
    if config.force_user:
        return user_bin
    if not config.no_sudo and broker.check_privilege(SYSTEM_BIN) is not PrivilegeDecision.DENIED:
        return SYSTEM_BIN
    return user_bin


@dataclass(frozen=True)
class InstallationTarget:
    """A technology to install, with all its derived directories."""

    tech_name: str
    repo_url: str
    main_script: str
    install_dir: Path
    config_dir: Path
    data_dir: Path
    state_dir: Path
    cache_dir: Path
    clone_dir: Path
    service_description: str = ""

    @classmethod
    def init(
        cls,
        tech_name: str,
        repo_url: str,
        main_script: str,
        service_description: str = "",
        *,
        install_dir: Path | None,
        xdg: XdgPaths | None = None,
    ) -> "InstallationTarget":
        """Build a target, validating the required fields.

        Raises:
            InstallError: A required field is empty or the name is not a
                plain file name.
        """
        xdg = xdg or XdgPaths.from_env()
        for label, value in (
            ("technology name", tech_name),
            ("repository URL", repo_url),
            ("main script", main_script),
            ("install directory", str(install_dir) if install_dir else ""),
        ):
            if not value or not str(value).strip():
                raise InstallError(f"Installation target is missing its {label}", operation="init")
        if "/" in tech_name or tech_name in (".", ".."):
            raise InstallError(f"Invalid technology name: '{tech_name}'", operation="init")

        data_dir = xdg.data_home / tech_name
        return cls(
            tech_name=tech_name,
            repo_url=repo_url,
            main_script=main_script,
            service_description=service_description or "",
            install_dir=Path(install_dir),
            config_dir=xdg.config_home / tech_name,
            data_dir=data_dir,
            state_dir=xdg.state_home / tech_name,
            cache_dir=xdg.cache_home / tech_name,
            clone_dir=data_dir / "source",
        )

    @property
    def artifact(self) -> Path:
        """Path of the installed executable."""
        return self.install_dir / self.tech_name

    @property
    def backups_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def last_backup_file(self) -> Path:
        return self.state_dir / "last-backup"

    @property
    def target_file(self) -> Path:
        return self.config_dir / TARGET_FILENAME

    def xdg_dirs(self) -> tuple[Path, ...]:
        return (self.config_dir, self.data_dir, self.state_dir, self.cache_dir)

    def to_dict(self) -> dict[str, str]:
        return {
            "tech_name": self.tech_name,
            "repo_url": self.repo_url,
            "main_script": self.main_script,
            "service_description": self.service_description,
            "install_dir": str(self.install_dir),
        }

    def save(self) -> Path:
        """Persist the target next to the technology's config."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.target_file, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        logger.debug("target.saved", path=str(self.target_file))
        return self.target_file

    @classmethod
    def load(cls, tech_name: str, xdg: XdgPaths | None = None) -> "InstallationTarget":
        """Reconstruct a previously installed target.

        Raises:
            TargetNotFoundError: The technology was never installed.
        """
        xdg = xdg or XdgPaths.from_env()
        path = xdg.config_home / tech_name / TARGET_FILENAME
        if not path.is_file():
            raise TargetNotFoundError(
                f"No installed technology named '{tech_name}'",
                operation="load_target",
                path=path,
            )
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.init(
            data.get("tech_name", tech_name),
            data.get("repo_url", ""),
            data.get("main_script", ""),
            data.get("service_description", ""),
            install_dir=Path(data["install_dir"]) if data.get("install_dir") else None,
            xdg=xdg,
        )
