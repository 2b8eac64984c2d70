"""
Logging configuration for Cowork.

The API backend logs to a colored console (colorlog) and a rotating file
under LOGS_DIR. Orchestrator modules only call ``logging.getLogger(__name__)``;
handlers are installed once, here, at application start.

Usage:
    from .logging_config import setup_backend_logging

    setup_backend_logging(log_level="DEBUG")
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import colorlog

from ..config import LOGS_DIR
from .constants import (
    COLORLOG_COLORS,
    LOG_BACKUP_COUNT,
    LOG_FILE_BACKEND,
    LOG_FORMAT_COLORED,
    LOG_FORMAT_FILE,
    LOG_MAX_BYTES,
)

# Loggers the backend owns; anything else keeps its own configuration
BACKEND_LOGGERS: tuple[str, ...] = (
    "cowork",
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
)


def _level(log_level: str) -> int:
    return getattr(logging, log_level.upper(), logging.INFO)


def _file_handler(log_file: Path, level: int) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(log_file),
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT_FILE))
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setFormatter(
        colorlog.ColoredFormatter(LOG_FORMAT_COLORED, log_colors=COLORLOG_COLORS)
    )
    handler.setLevel(level)
    return handler


def setup_dual_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    loggers: Optional[list[str]] = None,
) -> None:
    """
    Configure colored console + rotating file logging.

    Each named logger gets both handlers and stops propagating, so
    records are not written twice through the root logger. With no
    names the root logger is configured instead.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR).
        log_file: Log file path. Defaults to LOGS_DIR / backend.log.
        loggers: Logger names to configure.
    """
    level = _level(log_level)
    file_handler = _file_handler(log_file or LOGS_DIR / LOG_FILE_BACKEND, level)
    console_handler = _console_handler(level)

    targets = [logging.getLogger(name) for name in loggers] if loggers else [logging.getLogger()]
    for target in targets:
        target.handlers.clear()
        target.setLevel(level)
        target.addHandler(file_handler)
        target.addHandler(console_handler)
        if loggers:
            target.propagate = False


def setup_backend_logging(log_level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure logging for the API backend (cowork/api/main.py)."""
    setup_dual_logging(log_level=log_level, log_file=log_file, loggers=list(BACKEND_LOGGERS))

    # Access logs stay at INFO even when debugging the orchestrator
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
