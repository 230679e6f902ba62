"""Logging setup for the quiz backend.

Console output always; a rotating ``pubquiz.log`` file as well when
``LOG_DIR`` is configured.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .db import settings

_VERBOSE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_CONSOLE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S",
)

_CONFIGURED = False


def _rotating_handler(
    log_dir: Path,
    filename: str,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
) -> RotatingFileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_VERBOSE_FMT)
    return handler


def setup_logging(*, level: str | None = None, log_dir: str | None = None) -> None:
    """Initialise the package logger. Safe to call more than once."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    console_level = logging.getLevelName((level or settings.LOG_LEVEL).upper())
    if not isinstance(console_level, int):
        console_level = logging.INFO

    logger = logging.getLogger("backend.pubquiz")
    logger.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(_CONSOLE_FMT)
    logger.addHandler(console)

    directory = log_dir or settings.LOG_DIR
    if directory:
        logger.addHandler(_rotating_handler(Path(directory), "pubquiz.log"))
        logger.info("Logging initialised, log directory: %s", Path(directory).resolve())
