"""
Tests for the installation subsystem.

Covers:
- InstallationTarget (validation, derived paths, save/load)
- resolve_install_dir
- .stacker-config sidecar parsing
- Strategy selection and the script strategy
- ensure_clean_clone (fresh clone, stale clone, in-place update)
- InstallationDriver (install, verify, add-ons, uninstall)

git is replaced with a fake repository class that "clones" by copying a
local directory; toolchain builds are never run.
"""

import shutil
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from stacker.config import AppConfig
from stacker.config.schema import InstallConfig
from stacker.core import process
from stacker.core.paths import XdgPaths
from stacker.core.privilege import PrivilegeBroker, PrivilegeDecision, PrivilegedFS
from stacker.errors import (
    CloneError,
    InstallError,
    ServiceError,
    TargetNotFoundError,
    UnknownProjectTypeError,
)
from stacker.install import (
    InstallationDriver,
    InstallationTarget,
    InstallContext,
    InstallOptions,
    ProjectConfig,
    ensure_clean_clone,
    resolve_install_dir,
    select_strategy,
)
from stacker.install.strategies import node_entry_point, node_wrapper

SCRIPT = "#!/bin/sh\nif [ \"$1\" = \"--version\" ]; then echo 'tool 1.2.3'; exit 0; fi\necho run\n"


# ── Helpers ───────────────────────────────────────────────────────────────


def make_repo_cls(sources: dict[str, Path], revision: str = "a" * 40):
    """GitRepo stand-in whose clone() copies sources[url] into dest."""

    class FakeRepo:
        calls: list[str] = []

        def __init__(self, path, timeout=120, retries=2) -> None:
            self.path = Path(path)

        @classmethod
        def clone(cls, url, dest, *, ref=None, depth=None, timeout=120, retries=2):
            from stacker.errors import ExecError

            cls.calls.append(f"clone {url}")
            if url not in sources:
                raise ExecError("repository not found", command=["git", "clone", url])
            shutil.copytree(sources[url], dest)
            (Path(dest) / ".git").mkdir(exist_ok=True)
            return cls(dest)

        def rev_parse(self, rev):
            return revision

    return FakeRepo


@pytest.fixture
def xdg(tmp_path: Path) -> XdgPaths:
    home = tmp_path / "home"
    return XdgPaths(
        config_home=home / ".config",
        data_home=home / ".local" / "share",
        state_home=home / ".local" / "state",
        cache_home=home / ".cache",
    )


@pytest.fixture
def target(xdg: XdgPaths, tmp_path: Path) -> InstallationTarget:
    return InstallationTarget.init(
        "tool",
        "https://example.com/tool.git",
        "tool.sh",
        "Example tool",
        install_dir=tmp_path / "bin",
        xdg=xdg,
    )


@pytest.fixture
def upstream(tmp_path: Path) -> Path:
    """Source tree of a script project."""
    src = tmp_path / "upstream"
    src.mkdir()
    (src / "tool.sh").write_text(SCRIPT)
    return src


@pytest.fixture
def no_git_check(monkeypatch) -> None:
    monkeypatch.setattr(process, "require_commands", lambda *names: None)


def _ctx(tmp_path: Path, project: ProjectConfig | None = None) -> InstallContext:
    return InstallContext(
        tech_name="tool",
        main_script="tool.sh",
        install_dir=tmp_path / "bin",
        fs=PrivilegedFS(PrivilegeBroker(allow_elevation=False)),
        project=project or ProjectConfig(),
    )


# ── Tests: target ─────────────────────────────────────────────────────────


class TestInstallationTarget:
    def test_derived_paths(self, target: InstallationTarget, xdg: XdgPaths, tmp_path) -> None:
        assert target.config_dir == xdg.config_home / "tool"
        assert target.clone_dir == xdg.data_home / "tool" / "source"
        assert target.state_dir == xdg.state_home / "tool"
        assert target.artifact == tmp_path / "bin" / "tool"
        assert target.backups_dir == target.state_dir / "backups"

    @pytest.mark.parametrize(
        "name, url, script",
        [("", "u", "s"), ("t", "", "s"), ("t", "u", ""), ("a/b", "u", "s"), ("..", "u", "s")],
    )
    def test_invalid_fields(self, name, url, script, xdg, tmp_path) -> None:
        with pytest.raises(InstallError):
            InstallationTarget.init(name, url, script, install_dir=tmp_path, xdg=xdg)

    def test_missing_install_dir(self, xdg) -> None:
        with pytest.raises(InstallError, match="install directory"):
            InstallationTarget.init("t", "u", "s", install_dir=None, xdg=xdg)

    def test_save_and_load(self, target: InstallationTarget, xdg: XdgPaths) -> None:
        target.save()
        assert InstallationTarget.load("tool", xdg) == target

    def test_load_unknown(self, xdg: XdgPaths) -> None:
        with pytest.raises(TargetNotFoundError):
            InstallationTarget.load("ghost", xdg)


class TestResolveInstallDir:
    @pytest.fixture
    def broker(self, monkeypatch) -> PrivilegeBroker:
        broker = PrivilegeBroker()
        monkeypatch.setattr(broker, "check_privilege", lambda d: PrivilegeDecision.DIRECT)
        return broker

    def test_explicit_override(self, broker, tmp_path) -> None:
        config = InstallConfig(install_dir=tmp_path / "custom", force_user=True)
        assert resolve_install_dir(config, broker, home=tmp_path) == tmp_path / "custom"

    def test_force_user(self, broker, tmp_path) -> None:
        config = InstallConfig(force_user=True)
        assert resolve_install_dir(config, broker, home=tmp_path) == tmp_path / ".local" / "bin"

    def test_system_bin_when_writable(self, broker, tmp_path) -> None:
        assert resolve_install_dir(InstallConfig(), broker, home=tmp_path) == Path("/usr/local/bin")

    def test_user_bin_when_denied(self, broker, monkeypatch, tmp_path) -> None:
        monkeypatch.setattr(broker, "check_privilege", lambda d: PrivilegeDecision.DENIED)
        assert resolve_install_dir(InstallConfig(), broker, home=tmp_path) == tmp_path / ".local" / "bin"

    def test_no_sudo_skips_system_bin(self, broker, tmp_path) -> None:
        config = InstallConfig(no_sudo=True)
        assert resolve_install_dir(config, broker, home=tmp_path) == tmp_path / ".local" / "bin"


# ── Tests: sidecar ────────────────────────────────────────────────────────


class TestProjectConfig:
    def test_parse(self) -> None:
        text = """
# comment
ADDITIONAL_FILES="helper.sh lib.sh"
export DIRECTORIES='lib share'
LEGACY_FILES=old-tool
NODE_ENTRY_POINT="bin/cli.js"  # trailing comment
not a line
"""
        config = ProjectConfig.parse(text)
        assert config.additional_files == ("helper.sh", "lib.sh")
        assert config.directories == ("lib", "share")
        assert config.legacy_files == ("old-tool",)
        assert config.node_entry_point == "bin/cli.js"
        assert config.pre_install_hook is None

    def test_bad_quoting_skipped(self) -> None:
        config = ProjectConfig.parse('ADDITIONAL_FILES="unterminated\nLEGACY_FILES=x\n')
        assert config.additional_files == ()
        assert config.legacy_files == ("x",)

    def test_load_missing(self, tmp_path: Path) -> None:
        assert ProjectConfig.load(tmp_path) == ProjectConfig()


# ── Tests: strategies ─────────────────────────────────────────────────────


class TestStrategies:
    def test_script_wins_over_markers(self, upstream: Path, tmp_path) -> None:
        (upstream / "package.json").write_text("{}")
        assert select_strategy(upstream, _ctx(tmp_path)).name == "script"

    @pytest.mark.parametrize(
        "marker, expected", [("package.json", "nodejs"), ("Cargo.toml", "rust"), ("go.mod", "go")]
    )
    def test_markers(self, marker, expected, tmp_path) -> None:
        clone = tmp_path / "clone"
        clone.mkdir()
        (clone / marker).write_text("")
        assert select_strategy(clone, _ctx(tmp_path)).name == expected

    def test_unknown_project(self, tmp_path) -> None:
        with pytest.raises(UnknownProjectTypeError):
            select_strategy(tmp_path, _ctx(tmp_path))

    def test_script_install_with_extras(self, upstream: Path, tmp_path) -> None:
        (upstream / "helper.sh").write_text("#!/bin/sh\n")
        (upstream / "lib").mkdir()
        (upstream / "lib" / "util.sh").write_text("#!/bin/sh\n")
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        (bin_dir / "old-tool").write_text("legacy")

        ctx = _ctx(
            tmp_path,
            ProjectConfig(
                additional_files=("helper.sh", "missing.sh"),
                legacy_files=("old-tool",),
                directories=("lib",),
            ),
        )
        strategy = select_strategy(upstream, ctx)
        strategy.install(upstream, bin_dir / "tool", ctx)

        assert (bin_dir / "tool").read_text() == SCRIPT
        assert (bin_dir / "tool").stat().st_mode & 0o111
        assert (bin_dir / "helper.sh").exists()
        assert not (bin_dir / "old-tool").exists()
        assert (bin_dir / "lib" / "util.sh").stat().st_mode & 0o111

    def test_missing_hook_fails(self, upstream: Path, tmp_path) -> None:
        ctx = _ctx(tmp_path, ProjectConfig(pre_install_hook="scripts/pre.sh"))
        with pytest.raises(InstallError, match="pre-install hook not found"):
            select_strategy(upstream, ctx).install(upstream, tmp_path / "bin" / "tool", ctx)

    def test_failing_post_hook(self, upstream: Path, tmp_path) -> None:
        (upstream / "post.sh").write_text("exit 3\n")
        ctx = _ctx(tmp_path, ProjectConfig(post_install_hook="post.sh"))
        with pytest.raises(InstallError, match="post-install hook"):
            select_strategy(upstream, ctx).install(upstream, tmp_path / "bin" / "tool", ctx)

    def test_node_entry_point(self, tmp_path) -> None:
        (tmp_path / "package.json").write_text('{"main": "src/index.js"}')
        assert node_entry_point(tmp_path, ProjectConfig()) == "src/index.js"
        assert node_entry_point(tmp_path, ProjectConfig(node_entry_point="cli.js")) == "cli.js"
        (tmp_path / "package.json").write_text("not json")
        assert node_entry_point(tmp_path, ProjectConfig()) == "main.js"

    def test_node_wrapper(self, tmp_path) -> None:
        wrapper = node_wrapper("tool", tmp_path / "my clone", "index.js")
        assert wrapper.startswith("#!/bin/sh\n")
        assert f"CLEAN_CLONE_DIR='{tmp_path / 'my clone'}'" in wrapper
        assert 'exec node index.js "$@"' in wrapper


# ── Tests: clean clone ────────────────────────────────────────────────────


class TestEnsureCleanClone:
    def test_fresh_clone(self, target, upstream, tmp_path) -> None:
        repo_cls = make_repo_cls({target.repo_url: upstream})
        revision = ensure_clean_clone(target, cwd=tmp_path, repo_cls=repo_cls)
        assert revision == "a" * 40
        assert (target.clone_dir / "tool.sh").is_file()

    def test_stale_clone_is_replaced(self, target, upstream, tmp_path) -> None:
        target.clone_dir.mkdir(parents=True)
        (target.clone_dir / "stale.txt").write_text("old")
        ensure_clean_clone(target, cwd=tmp_path, repo_cls=make_repo_cls({target.repo_url: upstream}))
        assert not (target.clone_dir / "stale.txt").exists()

    def test_clone_failure(self, target, tmp_path) -> None:
        with pytest.raises(CloneError, match="Failed to clone"):
            ensure_clean_clone(target, cwd=tmp_path, repo_cls=make_repo_cls({}))

    def test_missing_main_script(self, target, upstream, tmp_path) -> None:
        (upstream / "tool.sh").unlink()
        (upstream / "README").write_text("no script")
        with pytest.raises(CloneError, match="Main script not found"):
            ensure_clean_clone(
                target, cwd=tmp_path, repo_cls=make_repo_cls({target.repo_url: upstream})
            )

    def test_marker_project_without_script_is_fine(self, target, upstream, tmp_path) -> None:
        (upstream / "tool.sh").unlink()
        (upstream / "go.mod").write_text("module tool\n")
        ensure_clean_clone(target, cwd=tmp_path, repo_cls=make_repo_cls({target.repo_url: upstream}))

    def test_in_place_resets_to_remote(self, target) -> None:
        (target.clone_dir / ".git").mkdir(parents=True)
        repo = MagicMock()
        repo.head.return_value = "old"
        repo.remote_head.return_value = "new"
        repo_cls = MagicMock(return_value=repo)

        assert ensure_clean_clone(target, cwd=target.clone_dir, repo_cls=repo_cls) == "new"
        repo.fetch.assert_called_once()
        repo.reset_hard.assert_called_once_with("new")
        repo_cls.clone.assert_not_called()

    def test_in_place_up_to_date(self, target) -> None:
        (target.clone_dir / ".git").mkdir(parents=True)
        repo = MagicMock()
        repo.head.return_value = repo.remote_head.return_value = "same"
        ensure_clean_clone(target, cwd=target.clone_dir, repo_cls=MagicMock(return_value=repo))
        repo.reset_hard.assert_not_called()

    def test_in_place_requires_checkout(self, target) -> None:
        target.clone_dir.mkdir(parents=True)
        with pytest.raises(CloneError, match="not a git checkout"):
            ensure_clean_clone(target, cwd=target.clone_dir, repo_cls=MagicMock())


# ── Tests: driver ─────────────────────────────────────────────────────────


class TestInstallationDriver:
    @pytest.fixture
    def driver_factory(self, target, upstream, tmp_path, no_git_check):
        def factory(**kwargs) -> InstallationDriver:
            return InstallationDriver(
                AppConfig(),
                PrivilegeBroker(allow_elevation=False),
                repo_cls=make_repo_cls({target.repo_url: upstream}),
                cwd=tmp_path,
                **kwargs,
            )

        return factory

    def test_install(self, driver_factory, target) -> None:
        report = driver_factory().install(target)
        assert report.strategy == "script"
        assert report.verified is True
        assert report.warnings == []
        assert target.artifact.is_file()
        assert target.target_file.is_file()
        for directory in target.xdg_dirs():
            assert directory.is_dir()

    def test_reinstall_is_idempotent(self, driver_factory, target) -> None:
        driver = driver_factory()
        driver.install(target)
        first = target.artifact.read_bytes()
        driver.install(target)
        assert target.artifact.read_bytes() == first

    def test_verify_failure_is_a_warning(self, driver_factory, target, upstream) -> None:
        (upstream / "tool.sh").write_text("#!/bin/sh\nexit 1\n")
        report = driver_factory().install(target)
        assert report.verified is False
        assert any("Could not verify" in w for w in report.warnings)
        assert target.artifact.is_file()

    def test_verify_version(self, driver_factory, target) -> None:
        driver = driver_factory()
        driver.install(target)
        result = driver.verify(target)
        assert result.ok
        assert result.version == "tool 1.2.3"

    def test_verify_missing_artifact(self, driver_factory, target) -> None:
        result = driver_factory().verify(target)
        assert result.ok is False
        assert "artifact not found" in str(result.warning)

    def test_addons_called(self, driver_factory, target) -> None:
        services, scheduler = MagicMock(), MagicMock()
        driver = driver_factory(services=services, scheduler=scheduler)
        driver.install(target, InstallOptions(service="user", cron=True, auto_update=True))
        services.setup.assert_called_once_with(target, "user")
        scheduler.add_update_job.assert_called_once_with(target, 5)
        scheduler.add_auto_update.assert_called_once_with(target, "0 3 * * 0")

    def test_addon_failure_does_not_fail_install(self, driver_factory, target) -> None:
        services = MagicMock()
        services.setup.side_effect = ServiceError("systemctl not available")
        report = driver_factory(services=services).install(target, InstallOptions(service="system"))
        assert target.artifact.is_file()
        assert report.warnings == ["service: systemctl not available"]

    def test_unknown_project_fails(self, driver_factory, target, upstream) -> None:
        (upstream / "tool.sh").unlink()
        (upstream / "go.mod").write_text("")
        driver = driver_factory(strategies=())
        with pytest.raises(UnknownProjectTypeError):
            driver.install(target)

    def test_uninstall(self, driver_factory, target) -> None:
        services, scheduler = MagicMock(), MagicMock()
        driver = driver_factory(services=services, scheduler=scheduler)
        driver.install(target)

        warnings = driver.uninstall(target, keep_config=True)
        assert warnings == []
        services.teardown.assert_called_once_with(target)
        scheduler.remove_jobs.assert_called_once_with(target)
        assert not target.artifact.exists()
        assert not target.data_dir.exists()
        assert not target.state_dir.exists()
        assert target.config_dir.is_dir()
        assert not target.target_file.exists()

    def test_uninstall_collects_addon_warnings(self, driver_factory, target) -> None:
        scheduler = MagicMock()
        scheduler.remove_jobs.side_effect = ServiceError("no crontab")
        driver = driver_factory(scheduler=scheduler)
        driver.install(target)
        assert driver.uninstall(target) == ["cron: no crontab"]
        assert not target.config_dir.exists()
