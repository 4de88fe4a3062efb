"""
Pydantic models for stacker configuration.

Defines all configuration schemas using Pydantic v2 for validation,
defaults, and serialization.
"""

from pathlib import Path
from typing import Literal, get_args

from pydantic import BaseModel, Field, field_validator

Scope = Literal["local", "user", "system"]
PACKAGE_SCOPES: tuple[str, ...] = get_args(Scope)


class LoggingConfig(BaseModel):
    """Logging system configuration."""

    level: Literal["debug", "info", "human", "warn", "error"] = "human"
    file: Path | None = None
    verbose: int = Field(default=0, ge=0)
    color: Literal["auto", "always", "never"] = "auto"

    model_config = {"extra": "forbid"}


class InstallConfig(BaseModel):
    """Where artifacts go and how external commands are run."""

    install_dir: Path | None = Field(
        default=None,
        description="Explicit install directory. Overrides the automatic choice.",
    )
    force_user: bool = Field(
        default=False,
        description="Always install into ~/.local/bin, never into a shared directory.",
    )
    no_sudo: bool = Field(
        default=False,
        description="Disable the elevation mechanism entirely.",
    )
    command_timeout: int = Field(default=600, ge=1, description="Build/toolchain timeout (s)")
    git_timeout: int = Field(default=120, ge=1)
    git_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Extra attempts for clone/fetch on transient failures.",
    )

    model_config = {"extra": "forbid"}


class UpdateConfig(BaseModel):
    """Update/rollback orchestration settings."""

    backup_retention: int = Field(default=5, ge=1, description="Backups kept after an update")
    lock_timeout: float = Field(
        default=0.0,
        ge=0.0,
        description="Seconds to wait for the update lock. 0 = fail immediately.",
    )
    verify_timeout: int = Field(default=10, ge=1)
    cron_interval: int = Field(default=5, ge=1, le=59, description="Minutes between cron runs")
    auto_update_schedule: str = "0 3 * * 0"

    model_config = {"extra": "forbid"}

    @field_validator("auto_update_schedule")
    @classmethod
    def _five_fields(cls, v: str) -> str:
        if len(v.split()) != 5:
            raise ValueError(f"auto_update_schedule must have 5 cron fields, got: '{v}'")
        return v


class PackagesConfig(BaseModel):
    """Package scope roots."""

    default_scope: Scope = "user"
    system_root: Path = Path("/usr/local/share/stacker/packages")
    system_enabled_dir: Path = Path("/etc/stacker/enabled")
    local_dirname: str = ".stacker"

    model_config = {"extra": "forbid"}


class AppConfig(BaseModel):
    """Complete application configuration.

    This is the root of the configuration tree. It combines all sections
    and is the entry point for validation.
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)
    packages: PackagesConfig = Field(default_factory=PackagesConfig)

    model_config = {"extra": "forbid"}
