"""Logging for agentcore.

Everything logs under the ``agentcore`` logger. Output goes to a file when
``logging.file`` (or ``AGENTCORE_LOG``) names one, otherwise to stderr, but
only when stderr is a terminal: an embedding host usually owns the pipe.

Verbosity runs 0..4: error, warning, info, verbose, trace.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentcore.config.schema import LoggingConfig

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

logger = logging.getLogger("agentcore")

_configured = False

_LEVELS_BY_NAME = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_LEVELS_BY_VERBOSITY = (logging.ERROR, logging.WARNING, logging.INFO, VERBOSE, TRACE)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class _LowercaseLevelFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def resolve_level(config: LoggingConfig | None) -> int:
    """Effective level for ``config``; ``verbose`` wins over ``level``.

    Verbosity above 4 means trace, below 0 means errors only.
    """
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        index = min(max(config.verbose, 0), len(_LEVELS_BY_VERBOSITY) - 1)
        return _LEVELS_BY_VERBOSITY[index]
    if config.level:
        return _LEVELS_BY_NAME.get(config.level.upper(), logging.INFO)
    return logging.INFO


def _attach(handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(_LowercaseLevelFormatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    logger.addHandler(handler)


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Attach handlers to the ``agentcore`` logger. Only the first call counts."""
    global _configured
    if _configured:
        return
    _configured = True

    level = resolve_level(config)
    logger.setLevel(level)

    path = config.file if config and config.file else os.environ.get("AGENTCORE_LOG")
    if path:
        try:
            _attach(logging.FileHandler(os.path.expanduser(path), encoding="utf-8"), level)
            return
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[agentcore] cannot open log file {path}: {e}", file=sys.stderr)
    if sys.stderr.isatty():
        _attach(logging.StreamHandler(sys.stderr), level)


def reset_logging() -> None:
    """Detach every handler so ``setup_logging`` can run again."""
    global _configured
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    _configured = False


def get_logger(name: str | None = None) -> logging.Logger:
    """The ``agentcore`` logger, or its child ``name`` (e.g. "session.retry")."""
    return logger.getChild(name) if name else logger
