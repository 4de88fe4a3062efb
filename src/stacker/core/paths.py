"""
XDG base directory resolution.

Roots come from the XDG_* environment variables with the POSIX defaults
relative to the effective home, so a run under sudo still resolves the
invoking user's directories.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .privilege import effective_home

FRAMEWORK_NAME = "stacker"


@dataclass(frozen=True)
class XdgPaths:
    """The four XDG roots used by stacker."""

    config_home: Path
    data_home: Path
    state_home: Path
    cache_home: Path

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "XdgPaths":
        env = os.environ if env is None else env
        home = effective_home(env)

        def _root(var: str, default: str) -> Path:
            value = env.get(var)
            return Path(value) if value else home / default

        return cls(
            config_home=_root("XDG_CONFIG_HOME", ".config"),
            data_home=_root("XDG_DATA_HOME", ".local/share"),
            state_home=_root("XDG_STATE_HOME", ".local/state"),
            cache_home=_root("XDG_CACHE_HOME", ".cache"),
        )

    def framework_config(self) -> Path:
        """Default location of stacker's own config file."""
        return self.config_home / FRAMEWORK_NAME / "config.yaml"

    def as_env(self) -> dict[str, str]:
        """XDG variables to export into wrappers and service units."""
        return {
            "XDG_CONFIG_HOME": str(self.config_home),
            "XDG_DATA_HOME": str(self.data_home),
            "XDG_STATE_HOME": str(self.state_home),
            "XDG_CACHE_HOME": str(self.cache_home),
        }
