"""
HUMAN logging level -- readable progress output.

Custom level between INFO (20) and WARNING (30). It does not indicate
severity: it marks the handful of events a user wants to follow
(cloning, installing, updating) without the technical noise.

Hierarchy:
    debug  (10) -> module loads, command lines, revisions
    info   (20) -> system operations (config loaded, directories created)
    human  (25) -> * what stacker is doing: clone, install, update, enable
    warn   (30) -> non-fatal problems (verification, optional add-ons)
    error  (40) -> errors
"""

import logging

import structlog

HUMAN = 25
logging.addLevelName(HUMAN, "HUMAN")


def _human_method(self, message, *args, **kwargs):
    if self.isEnabledFor(HUMAN):
        self._log(HUMAN, message, args, **kwargs)


# Lets stdlib loggers call .human() directly
logging.Logger.human = _human_method

# Without this structlog raises KeyError: 25 when rendering the level
structlog.stdlib.LEVEL_TO_NAME[HUMAN] = "human"
structlog.stdlib.NAME_TO_LEVEL["human"] = HUMAN

# structlog's default (unconfigured) loggers only know the stdlib method
# names; give them .human() too so HUMAN events never raise AttributeError
for _cls in (structlog.PrintLogger, structlog.WriteLogger):
    if not hasattr(_cls, "human"):
        _cls.human = _cls.msg
