"""
Logging configuration for the ``kc-radius`` entrypoint.

Called once by ``cli.main``. Modules log through
``logger = logging.getLogger(__name__)`` and inherit this setup.

Level precedence:
    --log-level flag  >  KC_RADIUS_LOG_LEVEL env var  >  caller default
"""

from __future__ import annotations

import logging
import os
import sys

# WARNING and above: bare message, the CLI already prefixes errors
_FMT_MINIMAL = "%(message)s"

# INFO: timestamped phase log
_FMT_VERBOSE = "%(asctime)s [%(levelname)s] %(message)s"
_DATEFMT_VERBOSE = "%H:%M:%S"

# DEBUG: full diagnostic with file:line
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d - %(message)s"
_DATEFMT_DEBUG = "%H:%M:%S"

_FMT_FILE = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d - %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(
    level: str | None = None,
    log_file: str | None = None,
    *,
    default_level: str = "WARNING",
) -> None:
    """Configure the root logger for the whole process.

    Args:
        level: Level name from the CLI flag, or None.
        log_file: Optional log file path; falls back to ``KC_RADIUS_LOG_FILE``.
            The file always records at DEBUG or the console level, whichever is lower.
        default_level: Level used when neither the flag nor the env var is set.
    """
    numeric_level = _parse_level(level or os.getenv("KC_RADIUS_LOG_LEVEL") or default_level)

    if numeric_level <= logging.DEBUG:
        fmt, datefmt = _FMT_DEBUG, _DATEFMT_DEBUG
    elif numeric_level <= logging.INFO:
        fmt, datefmt = _FMT_VERBOSE, _DATEFMT_VERBOSE
    else:
        fmt, datefmt = _FMT_MINIMAL, None

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    effective_level = numeric_level

    log_file = log_file or os.getenv("KC_RADIUS_LOG_FILE")
    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)
        effective_level = logging.DEBUG

    root.setLevel(effective_level)

    if numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
