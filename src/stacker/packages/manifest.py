"""
Manifests: package manifests (stacker.yaml in a package root) and the
technology manifest written by `stacker init`.
"""

from pathlib import Path
from typing import Literal

import structlog
import yaml
from pydantic import BaseModel, Field

from ..logging.human import HumanLog

logger = structlog.get_logger()

MANIFEST_FILENAME = "stacker.yaml"
HOOKS = ("install", "uninstall", "enable", "disable", "test")
Template = Literal["service", "cli", "library"]


class PackageScripts(BaseModel):
    install: str | None = None
    uninstall: str | None = None
    enable: str | None = None
    disable: str | None = None
    test: str | None = None

    model_config = {"extra": "allow"}


class PackageXdg(BaseModel):
    config_dir: str | None = None
    data_dir: str | None = None
    cache_dir: str | None = None

    model_config = {"extra": "allow"}


class PackagePosix(BaseModel):
    shells: list[str] = Field(default_factory=list)
    required_commands: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class PackageScopes(BaseModel):
    supports: list[Literal["local", "user", "system"]] = Field(
        default_factory=lambda: ["local", "user", "system"]
    )
    default: Literal["local", "user", "system"] = "user"

    model_config = {"extra": "allow"}


class PackageManifest(BaseModel):
    """stacker.yaml of an installed package.

    Unknown keys are kept: manifests are written by package authors.
    """

    name: str
    version: str = "unknown"
    description: str = ""
    author: str = "unknown"
    license: str = "unknown"
    source: str = ""
    scripts: PackageScripts = Field(default_factory=PackageScripts)
    xdg: PackageXdg = Field(default_factory=PackageXdg)
    posix: PackagePosix = Field(default_factory=PackagePosix)
    scopes: PackageScopes = Field(default_factory=PackageScopes)
    dependencies: list[str] | dict[str, str] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @classmethod
    def synthesize(cls, name: str, url: str) -> "PackageManifest":
        """Minimal manifest for a source that ships none."""
        return cls(
            name=name,
            version="unknown",
            description=f"Package installed from {url}",
            source=url,
        )

    @classmethod
    def load(cls, path: Path) -> "PackageManifest":
        """Read a manifest file. A missing name falls back to the directory name."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            data = {}
        data.setdefault("name", Path(path).parent.name)
        # Numeric versions ("1.0") come back from YAML as floats
        if "version" in data:
            data["version"] = str(data["version"])
        return cls.model_validate(data)

    def to_yaml(self) -> str:
        data = self.model_dump(exclude_none=True)
        # Sections the author did not write stay out of the file
        for key in ("scripts", "xdg", "posix", "scopes", "dependencies"):
            if key not in self.model_fields_set:
                data.pop(key, None)
        return yaml.safe_dump(data, sort_keys=False)

    def hook_script(self, hook: str) -> str | None:
        return getattr(self.scripts, hook, None)


class TechnologyManifest(BaseModel):
    """stacker.yaml at the root of a technology project."""

    name: str
    version: str = "1.0.0"
    description: str = "Stacker-based project"
    template: Template = "service"
    repository: str = ""
    main_script: str
    dependencies: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @classmethod
    def load(cls, path: Path) -> "TechnologyManifest":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if isinstance(data, dict) and "version" in data:
            data["version"] = str(data["version"])
        return cls.model_validate(data)


MAIN_SCRIPT_TEMPLATE = """#!/bin/sh
# {name} - stacker managed {template}

VERSION="{version}"

case "$1" in
    --version|version)
        echo "{name} $VERSION"
        exit 0
        ;;
esac

main() {{
    echo "Starting {name}..."
    # Add your logic here
}}

main "$@"
"""


def init_project(
    project_dir: Path,
    name: str | None = None,
    template: Template = "service",
    repository: str = "",
    main_script: str | None = None,
) -> TechnologyManifest:
    """Scaffold a technology project.

    Writes stacker.yaml, creates modules/ and config/, and writes an
    executable main script unless one already exists. A missing name
    defaults to the directory name and a missing script to <name>.sh.
    """
    project_dir = Path(project_dir)
    name = name or project_dir.resolve().name
    manifest = TechnologyManifest(
        name=name,
        template=template,
        repository=repository,
        main_script=main_script or f"{name}.sh",
    )

    project_dir.mkdir(parents=True, exist_ok=True)
    for sub in ("modules", "config"):
        (project_dir / sub).mkdir(exist_ok=True)

    with open(project_dir / MANIFEST_FILENAME, "w", encoding="utf-8") as f:
        yaml.safe_dump(manifest.model_dump(), f, sort_keys=False)

    script = project_dir / manifest.main_script
    if not script.exists():
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(
            MAIN_SCRIPT_TEMPLATE.format(
                name=name, template=template, version=manifest.version
            ),
            encoding="utf-8",
        )
        script.chmod(0o755)

    logger.debug("project.init", name=name, template=template)
    HumanLog(logger).emit("project.initialized", name=name, path=str(project_dir))
    return manifest
