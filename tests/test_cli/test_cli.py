"""
Tests for the click command line.

Uses click's CliRunner with XDG roots redirected into tmp_path. Commands
that need a real repository are skipped without git.
"""

import logging
import shutil
import subprocess
from pathlib import Path

import pytest
import structlog
import yaml
from click.testing import CliRunner

from stacker.cli import EXIT_CONFIG_ERROR, EXIT_FAILED, EXIT_SUCCESS, CliState, main
from stacker.modules import ModuleLoader
from stacker.modules.loader import _default_finder

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture(autouse=True)
def xdg_env(tmp_path: Path, monkeypatch) -> Path:
    for var, sub in (
        ("XDG_CONFIG_HOME", "config"),
        ("XDG_DATA_HOME", "data"),
        ("XDG_STATE_HOME", "state"),
        ("XDG_CACHE_HOME", "cache"),
    ):
        monkeypatch.setenv(var, str(tmp_path / sub))
    for var in ("STACKER_LOG_LEVEL", "STACKER_DEBUG", "INSTALL_DIR", "NO_SUDO"):
        monkeypatch.delenv(var, raising=False)
    yield tmp_path
    logging.root.handlers.clear()
    structlog.reset_defaults()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestGlobal:
    def test_version(self, runner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == EXIT_SUCCESS
        assert "stacker" in result.output

    def test_help_lists_commands(self, runner) -> None:
        result = runner.invoke(main, ["--help"])
        for command in ("install", "update", "rollback", "add", "modules"):
            assert command in result.output


class TestValidateConfig:
    def test_defaults(self, runner) -> None:
        result = runner.invoke(main, ["validate-config"])
        assert result.exit_code == EXIT_SUCCESS
        assert "Valid configuration" in result.output
        assert "Backup retention: 5" in result.output

    def test_explicit_file(self, runner, tmp_path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text(yaml.safe_dump({"update": {"backup_retention": 7}}))
        result = runner.invoke(main, ["-c", str(path), "validate-config"])
        assert "Backup retention: 7" in result.output

    def test_invalid_config(self, runner, tmp_path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text(yaml.safe_dump({"update": {"backup_retention": 0}}))
        result = runner.invoke(main, ["-c", str(path), "validate-config"])
        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "Invalid configuration" in result.output

    def test_invalid_env(self, runner, monkeypatch) -> None:
        monkeypatch.setenv("STACKER_LOG_LEVEL", "loud")
        result = runner.invoke(main, ["validate-config"])
        assert result.exit_code == EXIT_CONFIG_ERROR


class TestModules:
    def test_modules(self, runner) -> None:
        result = runner.invoke(main, ["modules"])
        assert result.exit_code == EXIT_SUCCESS
        assert "* core" in result.output
        assert "update" in result.output

    def test_module_info(self, runner) -> None:
        result = runner.invoke(main, ["module-info", "update"])
        assert result.exit_code == EXIT_SUCCESS
        assert "Dependencies: core, config, install" in result.output

    def test_module_info_unknown(self, runner) -> None:
        result = runner.invoke(main, ["module-info", "ghost"])
        assert result.exit_code == EXIT_FAILED
        assert "[Error] Module not found: ghost" in result.output


class TestLifecycleErrors:
    @needs_git
    def test_unknown_technology(self, runner) -> None:
        result = runner.invoke(main, ["service", "ghost", "status"])
        assert result.exit_code == EXIT_FAILED
        assert "No installed technology named 'ghost'" in result.output

    @needs_git
    def test_service_bad_action(self, runner) -> None:
        result = runner.invoke(main, ["service", "tool", "explode"])
        assert result.exit_code == 2


class TestInit:
    def test_scaffold(self, runner, tmp_path) -> None:
        project = tmp_path / "proj"
        result = runner.invoke(main, ["init", str(project), "--name", "demo"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert (project / "stacker.yaml").is_file()
        assert (project / "demo.sh").is_file()
        assert "Initialized demo" in result.output


class TestPackages:
    @pytest.fixture
    def package_src(self, tmp_path: Path) -> Path:
        src = tmp_path / "src" / "hello-pkg"
        src.mkdir(parents=True)
        (src / "stacker.yaml").write_text(
            yaml.safe_dump({"name": "hello-pkg", "version": "0.2", "author": "Ada"})
        )
        return src

    def test_package_lifecycle(self, runner, package_src) -> None:
        url = f"file://{package_src}"
        result = runner.invoke(main, ["add", url])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "Installed package hello-pkg" in result.output

        result = runner.invoke(main, ["list"])
        assert "hello-pkg" in result.output
        assert "enabled" in result.output

        result = runner.invoke(main, ["info", "hello-pkg"])
        assert "Author:      Ada" in result.output
        assert "Enabled:     yes" in result.output

        assert runner.invoke(main, ["disable", "hello-pkg"]).exit_code == EXIT_SUCCESS
        result = runner.invoke(main, ["disable", "hello-pkg"])
        assert "not enabled" in result.output

        assert runner.invoke(main, ["remove", "hello-pkg"]).exit_code == EXIT_SUCCESS
        result = runner.invoke(main, ["info", "hello-pkg"])
        assert result.exit_code == EXIT_FAILED

    def test_add_twice(self, runner, package_src) -> None:
        url = f"file://{package_src}"
        runner.invoke(main, ["add", url])
        result = runner.invoke(main, ["add", url])
        assert result.exit_code == EXIT_FAILED
        assert "already installed" in result.output

    def test_bad_url(self, runner) -> None:
        result = runner.invoke(main, ["add", "svn://old/repo"])
        assert result.exit_code == EXIT_FAILED
        assert "Unsupported package URL" in result.output

    def test_local_scope(self, runner, package_src, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["add", f"file://{package_src}", "--scope", "local"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert (tmp_path / ".stacker" / "enabled" / "hello-pkg").is_symlink()


@needs_git
class TestInstallCommand:
    @pytest.fixture
    def origin(self, tmp_path: Path) -> Path:
        repo = tmp_path / "origin"
        repo.mkdir()

        def git(*args: str) -> None:
            subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)

        git("init", "-q", "-b", "main")
        git("config", "user.email", "test@example.com")
        git("config", "user.name", "Test")
        (repo / "tool.sh").write_text("#!/bin/sh\necho 'tool 1.0'\n")
        git("add", ".")
        git("commit", "-q", "-m", "first")
        return repo

    def test_install_check_uninstall(self, runner, origin, tmp_path) -> None:
        bin_dir = tmp_path / "bin"
        result = runner.invoke(
            main, ["install", "tool", str(origin), "--install-dir", str(bin_dir), "--no-sudo"]
        )
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert (bin_dir / "tool").is_file()
        assert "tool installed at" in result.output

        result = runner.invoke(main, ["update", "tool", "--check"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "up to date" in result.output

        result = runner.invoke(main, ["update", "tool"])
        assert result.exit_code == EXIT_SUCCESS, result.output

        result = runner.invoke(main, ["uninstall", "tool"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert not (bin_dir / "tool").exists()


class TestModuleGating:
    def test_missing_package_module_blocks_command(self, runner) -> None:
        def finder(import_path: str):
            return None if import_path == "stacker.packages" else _default_finder(import_path)

        state = CliState(loader=ModuleLoader(finder=finder))
        result = runner.invoke(main, ["list"], obj=state)
        assert result.exit_code == EXIT_FAILED
        assert "Module source not found: package" in result.output
        assert "package" not in state.loader.loaded

    def test_command_loads_only_its_modules(self, runner) -> None:
        state = CliState()
        result = runner.invoke(main, ["validate-config"], obj=state)
        assert result.exit_code == EXIT_SUCCESS
        assert state.loader.loaded == ("core", "config")


class TestHealth:
    @needs_git
    def test_initialized_project_is_healthy(self, runner, tmp_path) -> None:
        project = tmp_path / "proj"
        runner.invoke(main, ["init", str(project), "--name", "demo"])
        result = runner.invoke(main, ["health", str(project)])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "manifest:       demo 1.0.0" in result.output
        assert "System health: GOOD" in result.output

    def test_empty_directory_reports_issues(self, runner, tmp_path) -> None:
        result = runner.invoke(main, ["health", str(tmp_path)])
        assert result.exit_code == EXIT_FAILED
        assert "stacker.yaml not found" in result.output
        assert "System health: WARNING" in result.output

    def test_missing_main_script(self, runner, tmp_path) -> None:
        project = tmp_path / "proj"
        runner.invoke(main, ["init", str(project), "--name", "demo"])
        (project / "demo.sh").unlink()
        result = runner.invoke(main, ["health", str(project)])
        assert result.exit_code == EXIT_FAILED
        assert "Main script not found: demo.sh" in result.output

    def test_invalid_manifest(self, runner, tmp_path) -> None:
        (tmp_path / "stacker.yaml").write_text(yaml.safe_dump({"version": "1"}))
        result = runner.invoke(main, ["health", str(tmp_path)])
        assert result.exit_code == EXIT_FAILED
        assert "Invalid stacker.yaml" in result.output

    def test_verbose_prints_environment(self, runner, tmp_path) -> None:
        result = runner.invoke(main, ["health", str(tmp_path), "--verbose"])
        assert "working dir:" in result.output
        assert "modules:        core, config, package" in result.output


class TestStatus:
    def test_uninitialized(self, runner, tmp_path) -> None:
        result = runner.invoke(main, ["status", str(tmp_path)])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "Project:   not initialized" in result.output
        assert "Framework: stacker" in result.output
        assert "Modules loaded: core, config, package" in result.output

    @needs_git
    def test_initialized_but_not_installed(self, runner, tmp_path) -> None:
        project = tmp_path / "proj"
        runner.invoke(main, ["init", str(project), "--name", "demo"])
        result = runner.invoke(main, ["status", str(project)])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "Project:   demo" in result.output
        assert "Version:   1.0.0" in result.output
        assert "Service:   not installed" in result.output
        assert "install" in result.output.split("Modules loaded:")[1]


class TestConfigCommand:
    def test_show(self, runner) -> None:
        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == EXIT_SUCCESS
        assert yaml.safe_load(result.output)["update"]["backup_retention"] == 5

    def test_get(self, runner) -> None:
        result = runner.invoke(main, ["config", "get", "packages.default_scope"])
        assert result.exit_code == EXIT_SUCCESS
        assert result.output.strip() == "user"

    def test_get_bool(self, runner) -> None:
        result = runner.invoke(main, ["config", "get", "install.no_sudo"])
        assert result.output.strip() == "false"

    def test_get_unknown_key(self, runner) -> None:
        result = runner.invoke(main, ["config", "get", "update.nope"])
        assert result.exit_code == EXIT_FAILED
        assert "Unknown configuration key: update.nope" in result.output

    def test_set_then_get(self, runner, xdg_env) -> None:
        result = runner.invoke(main, ["config", "set", "update.backup_retention", "9"])
        assert result.exit_code == EXIT_SUCCESS, result.output

        written = yaml.safe_load((xdg_env / "config" / "stacker" / "config.yaml").read_text())
        assert written == {"update": {"backup_retention": 9}}
        result = runner.invoke(main, ["config", "get", "update.backup_retention"])
        assert result.output.strip() == "9"

    def test_set_keeps_other_keys(self, runner, tmp_path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text(yaml.safe_dump({"logging": {"color": "never"}}))
        result = runner.invoke(main, ["-c", str(path), "config", "set", "install.no_sudo", "true"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert yaml.safe_load(path.read_text()) == {
            "logging": {"color": "never"},
            "install": {"no_sudo": True},
        }

    def test_set_invalid_value_is_not_written(self, runner, xdg_env) -> None:
        result = runner.invoke(main, ["config", "set", "update.backup_retention", "0"])
        assert result.exit_code == EXIT_CONFIG_ERROR
        assert not (xdg_env / "config" / "stacker" / "config.yaml").exists()

    def test_set_unknown_key(self, runner) -> None:
        result = runner.invoke(main, ["config", "set", "update.nope", "1"])
        assert result.exit_code == EXIT_FAILED
