"""
Project sidecar config (.stacker-config) read from the clone root.

The file is a list of shell-style assignments:

    ADDITIONAL_FILES="helper.sh lib.sh"
    LEGACY_FILES="old-name"
    DIRECTORIES="lib share"
    NODE_ENTRY_POINT="bin/cli.js"
    PRE_INSTALL_HOOK="scripts/pre.sh"
    POST_INSTALL_HOOK="scripts/post.sh"

It is parsed, never executed. Unknown keys are ignored.
"""

import shlex
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()

SIDECAR_FILENAME = ".stacker-config"


@dataclass(frozen=True)
class ProjectConfig:
    additional_files: tuple[str, ...] = ()
    legacy_files: tuple[str, ...] = ()
    directories: tuple[str, ...] = ()
    node_entry_point: str | None = None
    pre_install_hook: str | None = None
    post_install_hook: str | None = None

    @classmethod
    def parse(cls, text: str) -> "ProjectConfig":
        values: dict[str, str] = {}
        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].lstrip()
            key, sep, rest = line.partition("=")
            if not sep or not key.isidentifier():
                logger.debug("sidecar.skip_line", line=lineno)
                continue
            try:
                words = shlex.split(rest, comments=True)
            except ValueError:
                logger.warning("sidecar.bad_quoting", line=lineno, key=key)
                continue
            values[key] = " ".join(words)

        def _list(key: str) -> tuple[str, ...]:
            return tuple(values.get(key, "").split())

        return cls(
            additional_files=_list("ADDITIONAL_FILES"),
            legacy_files=_list("LEGACY_FILES"),
            directories=_list("DIRECTORIES"),
            node_entry_point=values.get("NODE_ENTRY_POINT") or None,
            pre_install_hook=values.get("PRE_INSTALL_HOOK") or None,
            post_install_hook=values.get("POST_INSTALL_HOOK") or None,
        )

    @classmethod
    def load(cls, clone_dir: Path) -> "ProjectConfig":
        """Read clone_dir/.stacker-config, or return an empty config."""
        path = Path(clone_dir) / SIDECAR_FILENAME
        if not path.is_file():
            return cls()
        return cls.parse(path.read_text(encoding="utf-8"))
