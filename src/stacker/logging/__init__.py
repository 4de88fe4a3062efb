"""
Logging module - structured logging with a HUMAN progress level.
"""

from .human import HumanFormatter, HumanLog, HumanLogHandler, use_color
from .levels import HUMAN
from .setup import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
    "HUMAN",
    "HumanFormatter",
    "HumanLog",
    "HumanLogHandler",
    "use_color",
]
