"""
Configuration loader with deep merge.

Precedence (lowest to highest):
1. Defaults (declared on the Pydantic schemas)
2. YAML file
3. Environment variables
4. CLI arguments

The merge is recursive so every key is preserved at every level.
"""

import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from ..core.paths import XdgPaths
from .schema import AppConfig

_TRUTHY = {"1", "true", "yes", "on"}


def _truthy(value: str | None) -> bool:
    return bool(value) and value.strip().lower() in _TRUTHY


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dictionary merge.

    Args:
        base: Base dictionary
        override: Dictionary whose values win on leaf conflicts

    Returns:
        New merged dictionary.

    Example:
        >>> deep_merge({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"b": 99}, "e": 4})
        {'a': {'b': 99, 'c': 2}, 'd': 3, 'e': 4}
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def default_config_path(env: Mapping[str, str] | None = None) -> Path:
    """$XDG_CONFIG_HOME/stacker/config.yaml"""
    return XdgPaths.from_env(env).framework_config()


def load_yaml_config(config_path: Path | None) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML file, or None to skip

    Returns:
        The configuration mapping, or an empty dict when there is no file.

    Raises:
        FileNotFoundError: config_path was given but does not exist.
    """
    if not config_path:
        return {}

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
        return data if data else {}


def load_env_overrides(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect overrides from environment variables.

    Supported variables:
        STACKER_DEBUG: verbose 2 and level debug
        STACKER_LOG_LEVEL: logging.level
        STACKER_LOG_FILE: logging.file
        NO_COLOR / FORCE_COLOR: logging.color
        INSTALL_DIR: install.install_dir
        FORCE_USER_INSTALL: install.force_user
        NO_SUDO: install.no_sudo
        STACKER_BACKUP_RETENTION: update.backup_retention
    """
    env = os.environ if env is None else env
    overrides: dict[str, Any] = {}

    # Logging
    if log_level := env.get("STACKER_LOG_LEVEL"):
        overrides.setdefault("logging", {})["level"] = log_level.lower()

    if _truthy(env.get("STACKER_DEBUG")):
        overrides.setdefault("logging", {}).update({"level": "debug", "verbose": 2})

    if log_file := env.get("STACKER_LOG_FILE"):
        overrides.setdefault("logging", {})["file"] = log_file

    # NO_COLOR wins over FORCE_COLOR (no-color.org: any non-empty value)
    if env.get("NO_COLOR"):
        overrides.setdefault("logging", {})["color"] = "never"
    elif env.get("FORCE_COLOR") == "1":
        overrides.setdefault("logging", {})["color"] = "always"

    # Install
    if install_dir := env.get("INSTALL_DIR"):
        overrides.setdefault("install", {})["install_dir"] = install_dir

    if _truthy(env.get("FORCE_USER_INSTALL")):
        overrides.setdefault("install", {})["force_user"] = True

    if _truthy(env.get("NO_SUDO")):
        overrides.setdefault("install", {})["no_sudo"] = True

    # Update
    if retention := env.get("STACKER_BACKUP_RETENTION"):
        overrides.setdefault("update", {})["backup_retention"] = retention

    return overrides


def apply_cli_overrides(config_dict: dict[str, Any], cli_args: dict[str, Any]) -> dict[str, Any]:
    """Apply overrides coming from CLI flags.

    Args:
        config_dict: Base configuration (already merged with YAML and env)
        cli_args: Parsed CLI arguments

    Returns:
        Configuration with the CLI overrides applied.
    """
    overrides: dict[str, Any] = {}

    if cli_args.get("log_level"):
        overrides.setdefault("logging", {})["level"] = cli_args["log_level"]

    if cli_args.get("log_file"):
        overrides.setdefault("logging", {})["file"] = cli_args["log_file"]

    if cli_args.get("verbose"):
        overrides.setdefault("logging", {})["verbose"] = cli_args["verbose"]

    if cli_args.get("no_color"):
        overrides.setdefault("logging", {})["color"] = "never"

    if cli_args.get("install_dir"):
        overrides.setdefault("install", {})["install_dir"] = cli_args["install_dir"]

    if cli_args.get("force_user"):
        overrides.setdefault("install", {})["force_user"] = True

    if cli_args.get("no_sudo"):
        overrides.setdefault("install", {})["no_sudo"] = True

    return deep_merge(config_dict, overrides)


def load_config(
    config_path: Path | None = None,
    cli_args: dict[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load and validate the full application configuration.

    When no config_path is given, the default location under
    $XDG_CONFIG_HOME is used if it exists.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
        ValidationError: If the final configuration is invalid
    """
    cli_args = cli_args or {}

    if config_path is None:
        candidate = default_config_path(env)
        config_path = candidate if candidate.exists() else None

    yaml_config = load_yaml_config(config_path)
    merged = deep_merge(yaml_config, load_env_overrides(env))
    merged = apply_cli_overrides(merged, cli_args)

    # Pydantic fills in the defaults
    return AppConfig(**merged)
