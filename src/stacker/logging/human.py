"""
Human Log -- formatter and helper for progress output.

Produces short tagged lines on stderr so a user can follow what stacker
does without technical noise:

    [Stacker] Cloning https://github.com/acme/mytool.git into ~/.local/share/mytool/source
    [Stacker] Installing script project to ~/.local/bin/mytool
    [Warning] Could not verify ~/.local/bin/mytool (it may not support --version)
    [Stacker] mytool installed at ~/.local/bin/mytool

HUMAN events get a per-event text. WARNING and ERROR records are rendered
with the [Warning] / [Error] tags so non-fatal conditions stand apart from
fatal ones.
"""

import logging
import os
import sys
from typing import Any, Mapping, TextIO

from .levels import HUMAN

GREEN = "\033[0;32m"
YELLOW = "\033[0;33m"
RED = "\033[0;31m"
RESET = "\033[0m"

_STDLIB_RECORD_KEYS = frozenset({
    "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName", "processName",
    "process", "message", "taskName", "name", "event",
})

# Added by the structlog pipeline, never shown to the user
_INTERNAL_KEYS = frozenset({"level", "logger", "timestamp", "component"})


def use_color(mode: str, stream: TextIO | None = None, env: Mapping[str, str] | None = None) -> bool:
    """Decide whether to emit ANSI colors.

    NO_COLOR disables, FORCE_COLOR=1 forces, otherwise colors are used only
    on a TTY whose TERM is not "dumb". An explicit mode of "always" or
    "never" wins over the environment.
    """
    if mode == "never":
        return False
    if mode == "always":
        return True
    env = os.environ if env is None else env
    if env.get("NO_COLOR"):
        return False
    if env.get("FORCE_COLOR") == "1":
        return True
    stream = stream or sys.stderr
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty()) and env.get("TERM", "") != "dumb"


def _short(rev: Any) -> str:
    return str(rev)[:8] if rev else "?"


class HumanFormatter:
    """Turns structured events into readable text.

    Each event type has its own format. Unknown HUMAN events fall back to
    their "message" field, or are skipped.
    """

    def format_event(self, event: str, **kw: Any) -> str | None:
        match event:

            # ── Install ──────────────────────────────────────────────────
            case "install.start":
                return f"Installing {kw.get('tech', '?')}"

            case "clone.cloning":
                return f"Cloning {kw.get('url', '?')} into {kw.get('path', '?')}"

            case "clone.updating":
                return f"Updating existing checkout in {kw.get('path', '?')}"

            case "clone.up_to_date":
                return f"Already up to date ({_short(kw.get('revision'))})"

            case "install.strategy":
                return f"Installing {kw.get('strategy', '?')} project to {kw.get('dest', '?')}"

            case "install.complete":
                return f"✓ {kw.get('tech', '?')} installed at {kw.get('dest', '?')}"

            case "verify.ok":
                return f"Verified {kw.get('artifact', '?')}: {kw.get('version', '')}".rstrip(": ")

            case "uninstall.complete":
                return f"✓ {kw.get('tech', '?')} uninstalled"

            # ── Update / rollback ────────────────────────────────────────
            case "update.checking":
                return f"Checking for updates to {kw.get('tech', '?')}"

            case "update.none":
                return f"No update needed ({_short(kw.get('revision'))})"

            case "update.available":
                commits = kw.get("commits")
                pending = f", {commits} new commit(s)" if commits is not None else ""
                return f"Update available: {_short(kw.get('local'))} → {_short(kw.get('remote'))}{pending}"

            case "update.backup":
                return f"Backed up {kw.get('source', '?')} to {kw.get('path', '?')}"

            case "update.applying":
                return f"Applying {_short(kw.get('remote'))}"

            case "update.complete":
                return f"✓ {kw.get('tech', '?')} updated to {_short(kw.get('revision'))}"

            case "update.rolled_back":
                return f"✗ Update failed, restored {kw.get('backup', 'previous state')}"

            case "rollback.complete":
                return f"✓ Rolled back {kw.get('tech', '?')} to {kw.get('to', '?')}"

            case "service.restarted":
                return f"Restarted {kw.get('unit', '?')}"

            # ── Packages ─────────────────────────────────────────────────
            case "package.installed":
                return f"✓ Installed package {kw.get('name', '?')} ({kw.get('scope', '?')})"

            case "package.removed":
                return f"✓ Removed package {kw.get('name', '?')} ({kw.get('scope', '?')})"

            case "package.enabled":
                return f"Enabled {kw.get('name', '?')} ({kw.get('scope', '?')})"

            case "package.disabled":
                return f"Disabled {kw.get('name', '?')} ({kw.get('scope', '?')})"

            case "project.initialized":
                return f"✓ Initialized {kw.get('name', '?')} in {kw.get('path', '?')}"

            case _:
                message = kw.get("message")
                return str(message) if message else None

    def format_problem(self, event: str, **kw: Any) -> str:
        """Text for a WARNING/ERROR record: the event plus its context."""
        match event:
            case "verify.failed":
                return f"Could not verify {kw.get('artifact', '?')} (it may not support --version)"
            case "package.stale_link":
                return f"Enabled link for '{kw.get('name', '?')}' points at a package that is not installed: {kw.get('link', '?')}"

        context = ", ".join(
            f"{k}={v}" for k, v in kw.items() if k not in _INTERNAL_KEYS and v is not None
        )
        return f"{event} ({context})" if context else event


class HumanLogHandler(logging.Handler):
    """Logging handler for the user-facing pipeline.

    HUMAN records become "[Stacker] ..." lines; WARNING and above become
    "[Warning] ..." / "[Error] ...". Everything below HUMAN is ignored.
    Writes to stderr so stdout stays clean for command output.
    """

    def __init__(self, stream: TextIO | None = None, color: bool = False) -> None:
        super().__init__(level=HUMAN)
        self.stream = stream or sys.stderr
        self.color = color
        self.formatter_inst = HumanFormatter()

    def _tag(self, text: str, color: str) -> str:
        return f"{color}{text}{RESET}" if self.color else text

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if record.levelno < HUMAN:
                return

            event, kw = _extract_event(record)

            if record.levelno == HUMAN:
                formatted = self.formatter_inst.format_event(event, **kw)
                if formatted is None:
                    return
                line = f"{self._tag('[Stacker]', GREEN)} {formatted}"
            elif record.levelno < logging.ERROR:
                line = f"{self._tag('[Warning]', YELLOW)} {self.formatter_inst.format_problem(event, **kw)}"
            else:
                line = f"{self._tag('[Error]', RED)} {self.formatter_inst.format_problem(event, **kw)}"

            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def _extract_event(record: logging.LogRecord) -> tuple[str, dict[str, Any]]:
    """Pull the event name and its key/value context out of a record.

    structlog's wrap_for_formatter leaves the event dict in record.msg;
    plain stdlib records only have the message.
    """
    if isinstance(record.msg, dict):
        kw = {k: v for k, v in record.msg.items() if not k.startswith("_")}
        event = str(kw.pop("event", ""))
        return event, kw

    kw = {
        k: v for k, v in record.__dict__.items()
        if not k.startswith("_") and k not in _STDLIB_RECORD_KEYS
    }
    event = getattr(record, "event", None) or record.getMessage()
    return str(event), kw


class HumanLog:
    """Typed helper to emit HUMAN events.

    Instead of calling log.log(HUMAN, "event", ...) directly, use methods
    with clear names.

    Usage:
        hlog = HumanLog(structlog.get_logger())
        hlog.cloning("https://github.com/acme/mytool.git", clone_dir)
    """

    def __init__(self, logger) -> None:
        self._log = logger

    def emit(self, event: str, **kw: Any) -> None:
        self._log.log(HUMAN, event, **kw)

    def cloning(self, url: str, path) -> None:
        self.emit("clone.cloning", url=url, path=str(path))

    def updating_in_place(self, path) -> None:
        self.emit("clone.updating", path=str(path))

    def up_to_date(self, revision: str | None) -> None:
        self.emit("clone.up_to_date", revision=revision)

    def strategy(self, name: str, dest) -> None:
        self.emit("install.strategy", strategy=name, dest=str(dest))

    def installed(self, tech: str, dest) -> None:
        self.emit("install.complete", tech=tech, dest=str(dest))

    def package(self, action: str, name: str, scope: str) -> None:
        self.emit(f"package.{action}", name=name, scope=scope)
