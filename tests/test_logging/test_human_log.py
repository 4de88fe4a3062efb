"""
Tests for the logging system.

Covers:
- HUMAN level registration
- use_color (NO_COLOR, FORCE_COLOR, TERM=dumb, explicit mode)
- HumanFormatter (per-event text, problem lines)
- HumanLogHandler ([Stacker] / [Warning] / [Error] tags)
- configure_logging (pipelines, quiet mode, JSON file)
"""

import io
import json
import logging
from pathlib import Path

import pytest
import structlog

from stacker.config.schema import LoggingConfig
from stacker.logging import (
    HUMAN,
    HumanFormatter,
    HumanLog,
    HumanLogHandler,
    configure_logging,
    use_color,
)
from stacker.logging.human import GREEN, RESET


class TtyStream(io.StringIO):
    def isatty(self) -> bool:
        return True


def _record(level: int, event_dict: dict) -> logging.LogRecord:
    record = logging.LogRecord("stacker", level, __file__, 1, event_dict, None, None)
    return record


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logging.root.handlers.clear()
    structlog.reset_defaults()


# ── Tests: level ──────────────────────────────────────────────────────────


class TestHumanLevel:
    def test_value_between_info_and_warning(self) -> None:
        assert logging.INFO < HUMAN < logging.WARNING
        assert logging.getLevelName(HUMAN) == "HUMAN"

    def test_structlog_knows_the_level(self) -> None:
        assert structlog.stdlib.LEVEL_TO_NAME[HUMAN] == "human"

    def test_unconfigured_structlog_accepts_human(self, capsys) -> None:
        structlog.reset_defaults()
        HumanLog(structlog.get_logger()).emit("install.start", tech="tool")
        assert "install.start" in capsys.readouterr().out


# ── Tests: colors ─────────────────────────────────────────────────────────


class TestUseColor:
    def test_explicit_modes_win(self) -> None:
        assert use_color("never", TtyStream(), env={"FORCE_COLOR": "1"}) is False
        assert use_color("always", io.StringIO(), env={"NO_COLOR": "1"}) is True

    def test_no_color(self) -> None:
        assert use_color("auto", TtyStream(), env={"NO_COLOR": "1"}) is False

    def test_force_color_without_tty(self) -> None:
        assert use_color("auto", io.StringIO(), env={"FORCE_COLOR": "1"}) is True

    def test_tty_detection(self) -> None:
        assert use_color("auto", TtyStream(), env={"TERM": "xterm"}) is True
        assert use_color("auto", io.StringIO(), env={"TERM": "xterm"}) is False

    def test_dumb_terminal(self) -> None:
        assert use_color("auto", TtyStream(), env={"TERM": "dumb"}) is False


# ── Tests: formatter ──────────────────────────────────────────────────────


class TestHumanFormatter:
    @pytest.fixture
    def fmt(self) -> HumanFormatter:
        return HumanFormatter()

    def test_cloning(self, fmt) -> None:
        text = fmt.format_event("clone.cloning", url="https://x/y.git", path="/tmp/src")
        assert text == "Cloning https://x/y.git into /tmp/src"

    def test_update_available_shortens_revisions(self, fmt) -> None:
        text = fmt.format_event(
            "update.available", local="a" * 40, remote="b" * 40, commits=3
        )
        assert "aaaaaaaa" in text
        assert "a" * 9 not in text
        assert "3 new commit(s)" in text

    def test_verify_without_version(self, fmt) -> None:
        assert fmt.format_event("verify.ok", artifact="/bin/tool", version="") == "Verified /bin/tool"

    def test_package_events(self, fmt) -> None:
        assert fmt.format_event("package.enabled", name="p", scope="user") == "Enabled p (user)"

    def test_unknown_event_uses_message(self, fmt) -> None:
        assert fmt.format_event("custom.thing", message="hello") == "hello"
        assert fmt.format_event("custom.thing") is None

    def test_problem_drops_internal_keys(self, fmt) -> None:
        text = fmt.format_problem(
            "addon.failed", addon="cron", error="no crontab", component="installer", level="warning"
        )
        assert text == "addon.failed (addon=cron, error=no crontab)"

    def test_verify_failed_problem(self, fmt) -> None:
        assert fmt.format_problem("verify.failed", artifact="/bin/t").startswith("Could not verify /bin/t")


# ── Tests: handler ────────────────────────────────────────────────────────


class TestHumanLogHandler:
    def test_human_record(self) -> None:
        stream = io.StringIO()
        handler = HumanLogHandler(stream)
        handler.emit(_record(HUMAN, {"event": "install.start", "tech": "tool"}))
        assert stream.getvalue() == "[Stacker] Installing tool\n"

    def test_warning_and_error_tags(self) -> None:
        stream = io.StringIO()
        handler = HumanLogHandler(stream)
        handler.emit(_record(logging.WARNING, {"event": "addon.failed", "addon": "cron"}))
        handler.emit(_record(logging.ERROR, {"event": "update.failed", "error": "boom"}))
        lines = stream.getvalue().splitlines()
        assert lines == ["[Warning] addon.failed (addon=cron)", "[Error] update.failed (error=boom)"]

    def test_below_human_ignored(self) -> None:
        stream = io.StringIO()
        HumanLogHandler(stream).emit(_record(logging.INFO, {"event": "install.start", "tech": "t"}))
        assert stream.getvalue() == ""

    def test_unformatted_human_event_skipped(self) -> None:
        stream = io.StringIO()
        HumanLogHandler(stream).emit(_record(HUMAN, {"event": "something.internal"}))
        assert stream.getvalue() == ""

    def test_color(self) -> None:
        stream = io.StringIO()
        HumanLogHandler(stream, color=True).emit(_record(HUMAN, {"event": "install.start", "tech": "t"}))
        assert stream.getvalue().startswith(f"{GREEN}[Stacker]{RESET}")


# ── Tests: configure_logging ──────────────────────────────────────────────


class TestConfigureLogging:
    def test_default_shows_human_only(self) -> None:
        stream = io.StringIO()
        configure_logging(LoggingConfig(color="never"), stream=stream)
        log = structlog.get_logger().bind(component="test")
        log.info("internal.detail", value=1)
        HumanLog(log).emit("install.start", tech="tool")
        log.warning("addon.failed", addon="service")

        output = stream.getvalue()
        assert "[Stacker] Installing tool" in output
        assert "[Warning] addon.failed (addon=service)" in output
        assert "internal.detail" not in output

    def test_verbose_adds_technical_console(self) -> None:
        stream = io.StringIO()
        configure_logging(LoggingConfig(verbose=2, color="never"), stream=stream)
        structlog.get_logger().debug("module.loaded", module="core")
        assert "module.loaded" in stream.getvalue()

    def test_human_events_not_duplicated_in_console(self) -> None:
        stream = io.StringIO()
        configure_logging(LoggingConfig(verbose=2, color="never"), stream=stream)
        HumanLog(structlog.get_logger()).emit("install.start", tech="tool")
        assert stream.getvalue().count("tool") == 1

    def test_quiet_silences_console(self) -> None:
        stream = io.StringIO()
        configure_logging(LoggingConfig(), quiet=True, stream=stream)
        HumanLog(structlog.get_logger()).emit("install.start", tech="tool")
        assert stream.getvalue() == ""

    def test_level_error_hides_human(self) -> None:
        stream = io.StringIO()
        configure_logging(LoggingConfig(level="error", color="never"), stream=stream)
        HumanLog(structlog.get_logger()).emit("install.start", tech="tool")
        structlog.get_logger().error("update.failed", error="x")
        assert stream.getvalue() == "[Error] update.failed (error=x)\n"

    def test_json_file_captures_debug(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "stacker.jsonl"
        configure_logging(LoggingConfig(file=log_file), quiet=True)
        structlog.get_logger().debug("lock.acquired", path="/x")
        for handler in logging.root.handlers:
            handler.flush()

        entries = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert any(e["event"] == "lock.acquired" and e["level"] == "debug" for e in entries)
