"""
Full configuration of the structured logging system.

Three independent pipelines:
1. File (JSON) -- when config.file is set. Captures everything (DEBUG+).
2. Human handler (stderr) -- HUMAN events plus [Warning]/[Error] lines.
3. Technical console (stderr) -- INFO/DEBUG, controlled by -v. Excludes
   HUMAN and above, which the human handler already shows.

Default behaviour (no -v): the user sees only the human pipeline.
With -v: adds INFO. With -vv: adds DEBUG. With --quiet: only the file.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from ..config.schema import LoggingConfig
from .human import HumanLogHandler, use_color
from .levels import HUMAN

_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "human": HUMAN,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(
    config: LoggingConfig,
    quiet: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Configure the logging system with its three pipelines.

    Args:
        config: Logging configuration (level, file, verbose, color)
        quiet: If True, disables the human and console handlers
        stream: Destination of the human and console pipelines (stderr)
    """
    stream = stream or sys.stderr

    logging.root.handlers.clear()
    structlog.reset_defaults()

    # Root captures everything; handlers filter by level
    logging.basicConfig(level=logging.DEBUG, format="%(message)s", handlers=[])

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    # ── Pipeline 1: JSON file ─────────────────────────────────────────────
    if config.file:
        file_path = Path(config.file).expanduser()
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(str(file_path), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(default=str),
                foreign_pre_chain=shared_processors,
            )
        )
        logging.root.addHandler(file_handler)

    if not quiet:
        # ── Pipeline 2: human ─────────────────────────────────────────────
        human_handler = HumanLogHandler(
            stream=stream,
            color=use_color(config.color, stream),
        )
        human_handler.setLevel(max(HUMAN, _LEVEL_NAMES[config.level]))
        logging.root.addHandler(human_handler)

        # ── Pipeline 3: technical console ─────────────────────────────────
        console_level = _verbose_to_level(config.verbose)
        if config.level in ("debug", "info"):
            console_level = min(console_level, _LEVEL_NAMES[config.level])
        if console_level < HUMAN:
            console_handler = logging.StreamHandler(stream)
            console_handler.setLevel(console_level)
            console_handler.addFilter(lambda record: record.levelno < HUMAN)
            console_handler.setFormatter(
                structlog.stdlib.ProcessorFormatter(
                    processor=structlog.dev.ConsoleRenderer(
                        colors=use_color(config.color, stream),
                    ),
                    foreign_pre_chain=shared_processors,
                )
            )
            logging.root.addHandler(console_handler)

    structlog.configure(
        processors=shared_processors + [
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _verbose_to_level(verbose: int) -> int:
    """Map the -v count to the technical console level.

    No -v  -> WARNING (human pipeline covers the rest; console stays off)
    -v     -> INFO
    -vv+   -> DEBUG
    """
    levels = {
        0: logging.WARNING,
        1: logging.INFO,
        2: logging.DEBUG,
    }
    return levels.get(verbose, logging.DEBUG)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structured logger."""
    return structlog.get_logger(name)
