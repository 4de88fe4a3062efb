"""
Install strategies: how a clone becomes an executable artifact.

Each strategy is a plain function install(clone_dir, dest, ctx) paired
with a probe(clone_dir, ctx). STRATEGIES is probed in order and the first
match wins:

    script  the entry script exists in the clone: copy it (+ sidecar extras)
    nodejs  package.json: npm install, then a wrapper that execs node
    rust    Cargo.toml: cargo build --release, copy target/release/<name>
    go      go.mod: go build, copy the binary
"""

import json
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, NamedTuple

import structlog

from ..core import process
from ..core.privilege import PrivilegedFS
from ..errors import ExecError, InstallError, UnknownProjectTypeError
from .sidecar import ProjectConfig

logger = structlog.get_logger()

NODE_MARKER = "package.json"
RUST_MARKER = "Cargo.toml"
GO_MARKER = "go.mod"
PROJECT_MARKERS = (NODE_MARKER, RUST_MARKER, GO_MARKER)

DEFAULT_NODE_ENTRY = "main.js"


@dataclass
class InstallContext:
    """What a strategy needs besides the clone and destination paths."""

    tech_name: str
    main_script: str
    install_dir: Path
    fs: PrivilegedFS
    project: ProjectConfig
    command_timeout: float = 600


def _build(argv: list[str], clone_dir: Path, ctx: InstallContext, what: str) -> None:
    try:
        process.run(argv, cwd=clone_dir, timeout=ctx.command_timeout)
    except ExecError as e:
        raise InstallError(
            f"Failed to {what}: {e.message}",
            operation="install",
            path=clone_dir,
            command=argv,
        ) from e


def _run_hook(hook: str | None, clone_dir: Path, ctx: InstallContext, phase: str) -> None:
    if not hook:
        return
    script = clone_dir / hook
    if not script.is_file():
        raise InstallError(f"{phase} hook not found: {hook}", operation="install", path=script)
    logger.info("install.hook", phase=phase, script=str(script))
    _build(["sh", str(script)], clone_dir, ctx, f"run {phase} hook")


# ── script ────────────────────────────────────────────────────────────────


def probe_script(clone_dir: Path, ctx: InstallContext) -> bool:
    return (clone_dir / ctx.main_script).is_file()


def install_script(clone_dir: Path, dest: Path, ctx: InstallContext) -> None:
    """Copy the entry script, then apply the sidecar's extras."""
    project = ctx.project
    _run_hook(project.pre_install_hook, clone_dir, ctx, "pre-install")

    ctx.fs.copy_file(clone_dir / ctx.main_script, dest, executable=True)

    for name in project.legacy_files:
        legacy = ctx.install_dir / name
        if legacy.exists() or legacy.is_symlink():
            ctx.fs.remove(legacy)
            logger.debug("install.legacy_removed", path=str(legacy))

    for name in project.additional_files:
        source = clone_dir / name
        if source.is_file():
            ctx.fs.copy_file(source, ctx.install_dir / name, executable=True)
            logger.debug("install.additional_file", file=name)
        else:
            logger.warning("install.additional_file_missing", file=name)

    for name in project.directories:
        source = clone_dir / name
        if not source.is_dir():
            logger.warning("install.directory_missing", directory=name)
            continue
        target = ctx.install_dir / name
        ctx.fs.copy_tree(source, target)
        for script in sorted(source.glob("*.sh")):
            ctx.fs.chmod_executable(target / script.name)
        logger.debug("install.directory", directory=name)

    _run_hook(project.post_install_hook, clone_dir, ctx, "post-install")


# ── nodejs ────────────────────────────────────────────────────────────────


def probe_nodejs(clone_dir: Path, ctx: InstallContext) -> bool:
    return (clone_dir / NODE_MARKER).is_file()


def node_entry_point(clone_dir: Path, project: ProjectConfig) -> str:
    """Sidecar override, else package.json "main", else main.js."""
    if project.node_entry_point:
        return project.node_entry_point
    try:
        with open(clone_dir / NODE_MARKER, "r", encoding="utf-8") as f:
            main = json.load(f).get("main")
    except (OSError, ValueError, AttributeError):
        main = None
    return main if isinstance(main, str) and main else DEFAULT_NODE_ENTRY


def node_wrapper(tech_name: str, clone_dir: Path, entry: str) -> str:
    """Launcher that exports the XDG roots and runs node from the clone."""
    clone = shlex.quote(str(clone_dir))
    return f"""#!/bin/sh
# {tech_name} launcher generated by stacker

CLEAN_CLONE_DIR={clone}
XDG_CONFIG_HOME="${{XDG_CONFIG_HOME:-$HOME/.config}}"
XDG_DATA_HOME="${{XDG_DATA_HOME:-$HOME/.local/share}}"
XDG_STATE_HOME="${{XDG_STATE_HOME:-$HOME/.local/state}}"
XDG_CACHE_HOME="${{XDG_CACHE_HOME:-$HOME/.cache}}"
export XDG_CONFIG_HOME XDG_DATA_HOME XDG_STATE_HOME XDG_CACHE_HOME

if [ ! -d "$CLEAN_CLONE_DIR" ]; then
    echo "Error: {tech_name} is not properly installed (missing $CLEAN_CLONE_DIR)" >&2
    exit 1
fi

cd "$CLEAN_CLONE_DIR" || exit 1
exec node {shlex.quote(entry)} "$@"
"""


def install_nodejs(clone_dir: Path, dest: Path, ctx: InstallContext) -> None:
    process.require_commands("node", "npm")
    _build(["npm", "install", "--production"], clone_dir, ctx, "install npm dependencies")
    entry = node_entry_point(clone_dir, ctx.project)
    ctx.fs.write_text(dest, node_wrapper(ctx.tech_name, clone_dir, entry), executable=True)


# ── rust ──────────────────────────────────────────────────────────────────


def probe_rust(clone_dir: Path, ctx: InstallContext) -> bool:
    return (clone_dir / RUST_MARKER).is_file()


def install_rust(clone_dir: Path, dest: Path, ctx: InstallContext) -> None:
    process.require_commands("cargo")
    _build(["cargo", "build", "--release"], clone_dir, ctx, "build Rust project")
    binary = clone_dir / "target" / "release" / ctx.tech_name
    if not binary.is_file():
        raise InstallError(f"Built binary not found: {binary}", operation="install", path=binary)
    ctx.fs.copy_file(binary, dest, executable=True)


# ── go ────────────────────────────────────────────────────────────────────


def probe_go(clone_dir: Path, ctx: InstallContext) -> bool:
    return (clone_dir / GO_MARKER).is_file()


def install_go(clone_dir: Path, dest: Path, ctx: InstallContext) -> None:
    process.require_commands("go")
    _build(["go", "build", "-o", ctx.tech_name, "."], clone_dir, ctx, "build Go project")
    binary = clone_dir / ctx.tech_name
    if not binary.is_file():
        raise InstallError(f"Built binary not found: {binary}", operation="install", path=binary)
    ctx.fs.copy_file(binary, dest, executable=True)


class Strategy(NamedTuple):
    name: str
    probe: Callable[[Path, InstallContext], bool]
    install: Callable[[Path, Path, InstallContext], None]


STRATEGIES: tuple[Strategy, ...] = (
    Strategy("script", probe_script, install_script),
    Strategy("nodejs", probe_nodejs, install_nodejs),
    Strategy("rust", probe_rust, install_rust),
    Strategy("go", probe_go, install_go),
)


def select_strategy(
    clone_dir: Path,
    ctx: InstallContext,
    strategies: tuple[Strategy, ...] = STRATEGIES,
) -> Strategy:
    """First strategy whose probe matches.

    Raises:
        UnknownProjectTypeError: No strategy applies.
    """
    for strategy in strategies:
        if strategy.probe(clone_dir, ctx):
            return strategy
    raise UnknownProjectTypeError(
        f"Unknown project type in {clone_dir}: no {ctx.main_script}, "
        f"{', '.join(PROJECT_MARKERS)} found",
        operation="install",
        path=clone_dir,
    )


def expects_script(clone_dir: Path) -> bool:
    """A clone with no Node/Rust/Go marker can only be a script install."""
    return not any((clone_dir / marker).is_file() for marker in PROJECT_MARKERS)
