"""
CLI entry point for stacker.

Every command resolves the modules it needs through the module loader
before doing any work, then imports and builds the objects for its
subsystem from the loaded configuration. Subsystems are only imported
inside command bodies, after the loader has resolved them. Library code
raises StackerError subclasses; this layer is the only place that turns
them into messages and exit codes.

Exit codes:
    0    success
    1    operation failed (includes an update that was rolled back)
    3    configuration error (missing file, invalid values)
    130  interrupted (Ctrl+C)
"""

import functools
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, NoReturn

import click
import structlog
import yaml
from pydantic import ValidationError

from .config import AppConfig, default_config_path, load_config
from .config.loader import load_yaml_config
from .config.schema import PACKAGE_SCOPES
from .core.paths import XdgPaths
from .core.privilege import PrivilegeBroker, effective_user
from .errors import FilesystemError, LoadError, StackerError
from .logging import configure_logging
from .modules import ModuleLoader

if TYPE_CHECKING:
    from .install import InstallationDriver
    from .packages import PackageScopeManager

logger = structlog.get_logger()

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 3
EXIT_INTERRUPTED = 130

_VERSION = "0.3.0"


@dataclass
class CliState:
    """Global options shared by every command (stored in ctx.obj)."""

    config_path: Path | None = None
    verbose: int = 0
    log_file: Path | None = None
    quiet: bool = False
    no_color: bool = False
    loader: ModuleLoader = field(default_factory=ModuleLoader)


def _color() -> bool | None:
    ctx = click.get_current_context(silent=True)
    if ctx is not None and isinstance(ctx.obj, CliState) and ctx.obj.no_color:
        return False
    return None


def _fail(message: str, code: int = EXIT_FAILED) -> NoReturn:
    click.echo(click.style("[Error]", fg="red") + f" {message}", err=True, color=_color())
    sys.exit(code)


def _boot(ctx: click.Context, command: str, **overrides: Any) -> AppConfig:
    """Load configuration, configure logging and resolve the command's modules.

    Args:
        ctx: Click context holding the CliState.
        command: CLI verb, used to look up the required modules.
        **overrides: Command-specific CLI overrides (install_dir, no_sudo...).
    """
    state: CliState = ctx.ensure_object(CliState)
    cli_args = {
        "verbose": state.verbose,
        "log_file": state.log_file,
        "no_color": state.no_color,
        **overrides,
    }
    try:
        config = load_config(config_path=state.config_path, cli_args=cli_args)
    except FileNotFoundError as e:
        _fail(str(e), EXIT_CONFIG_ERROR)
    except (ValidationError, yaml.YAMLError) as e:
        _fail(f"Invalid configuration:\n{e}", EXIT_CONFIG_ERROR)

    configure_logging(config.logging, quiet=state.quiet)

    try:
        state.loader.require_for(command)
    except LoadError as e:
        _fail(str(e))
    logger.debug("cli.dispatch", command=command, modules=list(state.loader.loaded))
    return config


def _handle_errors(func: Callable) -> Callable:
    """Map library errors to messages and exit codes."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except StackerError as e:
            logger.debug("cli.failed", error_type=type(e).__name__, error=str(e))
            _fail(str(e))
        except OSError as e:
            logger.debug("cli.failed", error_type=type(e).__name__, error=str(e))
            _fail(str(FilesystemError(e.strerror or str(e), path=e.filename)))
        except KeyboardInterrupt:
            click.echo("\nInterrupted.", err=True)
            sys.exit(EXIT_INTERRUPTED)

    return wrapper


def _broker(config: AppConfig) -> PrivilegeBroker:
    return PrivilegeBroker(allow_elevation=not config.install.no_sudo)


def _driver(config: AppConfig, broker: PrivilegeBroker) -> "InstallationDriver":
    from .install import InstallationDriver
    from .service import CronScheduler, ServiceManager

    return InstallationDriver(
        config,
        broker,
        services=ServiceManager(broker),
        scheduler=CronScheduler(),
    )


def _packages(config: AppConfig) -> "PackageScopeManager":
    from .packages import PackageScopeManager

    return PackageScopeManager(
        config.packages,
        _broker(config),
        git_timeout=config.install.git_timeout,
        git_retries=config.install.git_retries,
    )


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        click.echo(
            click.style("[Warning]", fg="yellow") + f" {warning}", err=True, color=_color()
        )


scope_option = click.option(
    "--scope",
    type=click.Choice(PACKAGE_SCOPES),
    default=None,
    help="Package scope (default: packages.default_scope)",
)


@click.group()
@click.version_option(version=_VERSION, prog_name="stacker")
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to the YAML configuration file",
)
@click.option("-v", "--verbose", count=True, help="Technical log detail (-v info, -vv debug)")
@click.option("--log-file", type=click.Path(path_type=Path), help="Write JSON logs to this file")
@click.option("--quiet", is_flag=True, help="Only errors on the console")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    verbose: int,
    log_file: Path | None,
    quiet: bool,
    no_color: bool,
) -> None:
    """stacker - install, update and roll back technologies from git.

    \b
    Examples:
      stacker install mytool https://github.com/me/mytool.git
      stacker update mytool
      stacker rollback mytool
      stacker add gh:me/my-package
    """
    # A caller may hand in its own loader (main(obj=CliState(loader=...)))
    loader = ctx.obj.loader if isinstance(ctx.obj, CliState) else ModuleLoader()
    ctx.obj = CliState(
        config_path=config_path,
        verbose=verbose,
        log_file=log_file,
        quiet=quiet,
        no_color=no_color,
        loader=loader,
    )


# ── Technology lifecycle ─────────────────────────────────────────────────


@main.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.option("--name", help="Technology name (default: directory name)")
@click.option(
    "--template",
    type=click.Choice(["service", "cli", "library"]),
    default="service",
    show_default=True,
)
@click.option("--repo", "repository", default="", help="Repository URL recorded in stacker.yaml")
@click.option("--script", "main_script", help="Main script name (default: <name>.sh)")
@click.pass_context
@_handle_errors
def init(
    ctx: click.Context,
    directory: Path,
    name: str | None,
    template: str,
    repository: str,
    main_script: str | None,
) -> None:
    """Scaffold a new technology project in DIRECTORY."""
    _boot(ctx, "init")
    from .packages import init_project

    directory.mkdir(parents=True, exist_ok=True)
    init_project(
        directory,
        name=name,
        template=template,
        repository=repository,
        main_script=main_script,
    )


@main.command()
@click.argument("tech")
@click.argument("repo_url")
@click.option("--script", "main_script", help="Main script in the repository (default: <tech>.sh)")
@click.option("--description", default="", help="Service description for the systemd unit")
@click.option(
    "--service",
    type=click.Choice(["user", "system"]),
    default=None,
    help="Register a systemd unit in this scope",
)
@click.option("--cron", is_flag=True, help="Add a cron job that runs '<tech> update'")
@click.option("--auto-update", is_flag=True, help="Add a weekly 'stacker update <tech>' job")
@click.option("--install-dir", type=click.Path(path_type=Path), help="Override the install directory")
@click.option("--user", "force_user", is_flag=True, help="Install into ~/.local/bin")
@click.option("--no-sudo", is_flag=True, help="Never use sudo")
@click.pass_context
@_handle_errors
def install(
    ctx: click.Context,
    tech: str,
    repo_url: str,
    main_script: str | None,
    description: str,
    service: str | None,
    cron: bool,
    auto_update: bool,
    install_dir: Path | None,
    force_user: bool,
    no_sudo: bool,
) -> None:
    """Install TECH from the git repository REPO_URL."""
    config = _boot(
        ctx,
        "install",
        install_dir=install_dir,
        force_user=force_user,
        no_sudo=no_sudo,
    )
    from .install import InstallationTarget, InstallOptions, resolve_install_dir

    broker = _broker(config)
    target = InstallationTarget.init(
        tech,
        repo_url,
        main_script or f"{tech}.sh",
        description,
        install_dir=resolve_install_dir(config.install, broker),
    )
    options = InstallOptions(service=service, cron=cron, auto_update=auto_update)
    report = _driver(config, broker).install(target, options)
    _print_warnings(report.warnings)


@main.command()
@click.argument("tech")
@click.option("--keep-config", is_flag=True, help="Keep ~/.config/<tech>")
@click.option("--keep-data", is_flag=True, help="Keep ~/.local/share/<tech>")
@click.option("--no-sudo", is_flag=True, help="Never use sudo")
@click.pass_context
@_handle_errors
def uninstall(
    ctx: click.Context, tech: str, keep_config: bool, keep_data: bool, no_sudo: bool
) -> None:
    """Remove TECH, its clone, service unit and cron jobs."""
    config = _boot(ctx, "uninstall", no_sudo=no_sudo)
    from .install import InstallationTarget

    target = InstallationTarget.load(tech)
    warnings = _driver(config, _broker(config)).uninstall(
        target, keep_config=keep_config, keep_data=keep_data
    )
    _print_warnings(warnings)


@main.command()
@click.argument("tech")
@click.option("--check", "check_only", is_flag=True, help="Only report whether an update exists")
@click.option("--force", is_flag=True, help="Reinstall even when already up to date")
@click.option("--no-sudo", is_flag=True, help="Never use sudo")
@click.pass_context
@_handle_errors
def update(ctx: click.Context, tech: str, check_only: bool, force: bool, no_sudo: bool) -> None:
    """Update TECH to the remote head, rolling back on failure."""
    config = _boot(ctx, "update", no_sudo=no_sudo)
    from .install import InstallationTarget
    from .service import ServiceManager
    from .update import UpdateOrchestrator, UpdateOutcome

    target = InstallationTarget.load(tech)
    broker = _broker(config)
    orchestrator = UpdateOrchestrator(_driver(config, broker), services=ServiceManager(broker))

    if check_only:
        check = orchestrator.check_for_updates(target)
        if check.update_available:
            click.echo(f"{tech}: {check.commits} new commit(s) ({check.local[:8]} -> {check.remote[:8]})")
        else:
            click.echo(f"{tech}: up to date ({check.local[:8]})")
        return

    report = orchestrator.update(target, force=force)
    if report.outcome is UpdateOutcome.ROLLED_BACK:
        _fail(f"Update of {tech} failed and was rolled back: {report.error}")


@main.command()
@click.argument("tech")
@click.argument("version", required=False)
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Do not ask for confirmation")
@click.option("--no-sudo", is_flag=True, help="Never use sudo")
@click.pass_context
@_handle_errors
def rollback(
    ctx: click.Context, tech: str, version: str | None, assume_yes: bool, no_sudo: bool
) -> None:
    """Roll TECH back to VERSION, or to the latest backup."""
    config = _boot(ctx, "rollback", no_sudo=no_sudo)
    from .install import InstallationTarget
    from .service import ServiceManager
    from .update import UpdateOrchestrator

    target = InstallationTarget.load(tech)
    broker = _broker(config)
    orchestrator = UpdateOrchestrator(_driver(config, broker), services=ServiceManager(broker))

    result = orchestrator.rollback(
        target,
        version,
        confirm=lambda question: click.confirm(question, default=False),
        assume_yes=assume_yes,
    )
    if result is None:
        click.echo("Rollback cancelled.")


@main.command("service")
@click.argument("tech")
@click.argument("action")
@click.pass_context
@_handle_errors
def service_cmd(ctx: click.Context, tech: str, action: str) -> None:
    """Control the systemd unit of TECH (start, stop, restart, status...)."""
    config = _boot(ctx, "service")
    from .install import InstallationTarget
    from .service import ServiceManager
    from .service.systemd import ACTIONS

    if action not in ACTIONS:
        raise click.BadParameter(
            f"'{action}' is not one of {', '.join(ACTIONS)}", param_hint="ACTION"
        )
    target = InstallationTarget.load(tech)
    output = ServiceManager(_broker(config)).control(target, action)
    if output:
        click.echo(output)


# ── Packages ─────────────────────────────────────────────────────────────


@main.command()
@click.argument("url")
@scope_option
@click.pass_context
@_handle_errors
def add(ctx: click.Context, url: str, scope: str | None) -> None:
    """Install a package from URL (gh:user/repo[@ref], gl:..., https://..., file://...)."""
    config = _boot(ctx, "add")
    _packages(config).install(url, scope)


@main.command()
@click.argument("name")
@scope_option
@click.pass_context
@_handle_errors
def remove(ctx: click.Context, name: str, scope: str | None) -> None:
    """Uninstall package NAME."""
    config = _boot(ctx, "remove")
    _packages(config).remove(name, scope)


@main.command()
@click.argument("name")
@scope_option
@click.pass_context
@_handle_errors
def enable(ctx: click.Context, name: str, scope: str | None) -> None:
    """Enable installed package NAME."""
    config = _boot(ctx, "enable")
    if not _packages(config).enable(name, scope):
        click.echo(f"{name} is already enabled")


@main.command()
@click.argument("name")
@scope_option
@click.pass_context
@_handle_errors
def disable(ctx: click.Context, name: str, scope: str | None) -> None:
    """Disable package NAME."""
    config = _boot(ctx, "disable")
    if not _packages(config).disable(name, scope):
        click.echo(f"{name} is not enabled")


@main.command("list")
@scope_option
@click.pass_context
@_handle_errors
def list_cmd(ctx: click.Context, scope: str | None) -> None:
    """List the packages of a scope."""
    config = _boot(ctx, "list")
    manager = _packages(config)
    records = manager.list_packages(scope)
    layout = manager.layout(scope)

    click.echo(f"\nPackages ({layout.scope}: {layout.packages_dir}):\n")
    if not records:
        click.echo("  (none)")
    for record in records:
        status = "enabled" if record.enabled else "disabled"
        version = record.version or "unknown"
        click.echo(f"  {record.name:<24} {version:<12} {status}")
        if record.source_url:
            click.echo(f"    source: {record.source_url}")
    click.echo()


@main.command()
@click.argument("name")
@scope_option
@click.pass_context
@_handle_errors
def info(ctx: click.Context, name: str, scope: str | None) -> None:
    """Show the manifest of package NAME."""
    config = _boot(ctx, "info")
    manager = _packages(config)
    record = manager.get(name, scope)
    manifest = manager.info(name, scope)
    click.echo(f"Name:        {manifest.name}")
    click.echo(f"Version:     {manifest.version}")
    click.echo(f"Description: {manifest.description}")
    click.echo(f"Author:      {manifest.author}")
    click.echo(f"License:     {manifest.license}")
    click.echo(f"Scope:       {record.scope}")
    click.echo(f"Path:        {record.path}")
    click.echo(f"Enabled:     {'yes' if record.enabled else 'no'}")
    if record.source_url:
        ref = f"@{record.ref}" if record.ref else ""
        click.echo(f"Source:      {record.source_url}{ref}")


# ── Introspection ────────────────────────────────────────────────────────


@main.command()
@click.pass_context
@_handle_errors
def modules(ctx: click.Context) -> None:
    """List the framework modules and whether they are loaded."""
    _boot(ctx, "modules")
    loader = ctx.obj.loader
    for name in loader.available():
        described = loader.describe(name)
        mark = "*" if described["loaded"] else " "
        deps = ", ".join(described["dependencies"]) or "-"
        click.echo(f" {mark} {name:<10} depends on: {deps}")


@main.command("module-info")
@click.argument("name")
@click.pass_context
@_handle_errors
def module_info(ctx: click.Context, name: str) -> None:
    """Show the dependencies of module NAME."""
    _boot(ctx, "module-info")
    described = ctx.obj.loader.describe(name)
    click.echo(f"Module:       {described['name']}")
    click.echo(f"Dependencies: {', '.join(described['dependencies']) or '-'}")
    click.echo(f"Loaded:       {'yes' if described['loaded'] else 'no'}")


@main.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the configuration file and print the effective values."""
    config = _boot(ctx, "validate-config")
    click.echo("Valid configuration")
    click.echo(f"  Log level:       {config.logging.level}")
    click.echo(f"  Install dir:     {config.install.install_dir or 'auto'}")
    click.echo(f"  Backup retention: {config.update.backup_retention}")
    click.echo(f"  Package scope:   {config.packages.default_scope}")
    click.echo(f"  XDG config:      {XdgPaths.from_env().config_home}")


@main.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.option("--verbose", "details", is_flag=True, help="Also print environment details")
@click.pass_context
@_handle_errors
def health(ctx: click.Context, directory: Path, details: bool) -> None:
    """Check git, write permission and the project files in DIRECTORY."""
    _boot(ctx, "health")
    from .core import process
    from .packages import MANIFEST_FILENAME, TechnologyManifest

    click.echo("System Health Check\n")
    issues: list[str] = []

    if process.which("git"):
        click.echo("  git:            found")
    else:
        issues.append("git is not installed")

    if os.access(directory, os.W_OK):
        click.echo(f"  write access:   {directory.resolve()}")
    else:
        issues.append(f"No write permission in {directory.resolve()}")

    manifest_path = directory / MANIFEST_FILENAME
    if not manifest_path.is_file():
        issues.append(f"{MANIFEST_FILENAME} not found in {directory.resolve()}")
    else:
        try:
            manifest = TechnologyManifest.load(manifest_path)
        except (ValidationError, yaml.YAMLError) as e:
            issues.append(f"Invalid {MANIFEST_FILENAME}: {e}")
        else:
            click.echo(f"  manifest:       {manifest.name} {manifest.version}")
            if (directory / manifest.main_script).is_file():
                click.echo(f"  main script:    {manifest.main_script}")
            else:
                issues.append(f"Main script not found: {manifest.main_script}")

    if details:
        click.echo()
        click.echo(f"  stacker:        {_VERSION}")
        click.echo(f"  working dir:    {Path.cwd()}")
        click.echo(f"  user:           {effective_user()}")
        click.echo(f"  XDG config:     {XdgPaths.from_env().config_home}")
        click.echo(f"  modules:        {', '.join(ctx.obj.loader.loaded)}")

    click.echo()
    if issues:
        _print_warnings(issues)
        _fail(f"System health: WARNING ({len(issues)} issue(s) found)")
    click.echo("System health: GOOD (no issues found)")


def _service_status(ctx: click.Context, tech: str, config: AppConfig) -> str:
    """One-line service state of tech; never raises."""
    try:
        ctx.obj.loader.load_many(("install", "service"))
    except LoadError as e:
        return f"unknown ({e})"
    from .errors import TargetNotFoundError
    from .install import InstallationTarget
    from .service import ServiceManager

    try:
        target = InstallationTarget.load(tech)
    except TargetNotFoundError:
        return "not installed"
    services = ServiceManager(_broker(config))
    if services.registered_scope(target) is None:
        return "no service registered"
    try:
        output = services.control(target, "status")
    except StackerError as e:
        return f"unknown ({e})"
    for line in output.splitlines():
        if line.strip().startswith("Active:"):
            return line.strip()[len("Active:"):].strip()
    return output.strip().splitlines()[0] if output.strip() else "unknown"


@main.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.pass_context
@_handle_errors
def status(ctx: click.Context, directory: Path) -> None:
    """Show the project in DIRECTORY, its service and the loaded modules."""
    config = _boot(ctx, "status")
    from .packages import MANIFEST_FILENAME, TechnologyManifest

    click.echo("Stacker Status\n")
    manifest_path = directory / MANIFEST_FILENAME
    if manifest_path.is_file():
        try:
            manifest = TechnologyManifest.load(manifest_path)
        except (ValidationError, yaml.YAMLError) as e:
            _fail(f"Invalid {MANIFEST_FILENAME}: {e}")
        click.echo(f"  Project:   {manifest.name}")
        click.echo(f"  Version:   {manifest.version}")
        click.echo(f"  Service:   {_service_status(ctx, manifest.name, config)}")
    else:
        click.echo(f"  Project:   not initialized ({directory.resolve()})")
    click.echo(f"  Framework: stacker {_VERSION}")
    click.echo(f"\nModules loaded: {', '.join(ctx.obj.loader.loaded)}")


# ── Configuration ────────────────────────────────────────────────────────


def _lookup(data: dict[str, Any], key: str) -> Any:
    node: Any = data
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(key)
        node = node[part]
    return node


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return yaml.safe_dump(value, sort_keys=False).rstrip()
    return str(value)


@main.group("config")
def config_group() -> None:
    """Show, read and change the configuration file."""


@config_group.command("show")
@click.pass_context
@_handle_errors
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration as YAML."""
    config = _boot(ctx, "config")
    click.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False), nl=False)


@config_group.command("get")
@click.argument("key")
@click.pass_context
@_handle_errors
def config_get(ctx: click.Context, key: str) -> None:
    """Print the effective value of KEY (dotted, e.g. update.backup_retention)."""
    config = _boot(ctx, "config")
    try:
        value = _lookup(config.model_dump(mode="json"), key)
    except KeyError:
        _fail(f"Unknown configuration key: {key}")
    click.echo(_format_value(value))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
@_handle_errors
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Write KEY=VALUE into the configuration file.

    VALUE is parsed as YAML, so 'true', '5' and 'null' keep their types.
    The whole file is validated before it is written.
    """
    config = _boot(ctx, "config")
    try:
        _lookup(config.model_dump(mode="json"), key)
    except KeyError:
        _fail(f"Unknown configuration key: {key}")

    path = ctx.obj.config_path or default_config_path()
    data = load_yaml_config(path) if path.is_file() else {}

    *parents, leaf = key.split(".")
    node = data
    for part in parents:
        node = node.setdefault(part, {})
    node[leaf] = yaml.safe_load(value)

    try:
        AppConfig.model_validate(data)
    except ValidationError as e:
        _fail(f"Invalid value for {key}:\n{e}", EXIT_CONFIG_ERROR)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    logger.info("config.set", key=key, path=str(path))
    click.echo(f"{key} = {_format_value(node[leaf])} ({path})")


if __name__ == "__main__":
    main()
