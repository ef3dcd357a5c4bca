"""Lightweight logging helpers with UTC timestamps."""

from __future__ import annotations

import logging
import os
import time
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_HANDLER_NAME = "engine-root-handler"
_FILE_HANDLER_NAME = "engine-file-handler"


def _resolve_level(level: str | int | None) -> int:
    if level is None:
        env_level = os.getenv("LOG_LEVEL", "INFO").upper()
        return getattr(logging, env_level, logging.INFO)
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _formatter() -> logging.Formatter:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    formatter.converter = time.gmtime  # Force UTC timestamps
    return formatter


def setup_logging(level: str | int | None = None, log_file: str | None = None) -> logging.Logger:
    """Configure the shared console handler (and optional file handler) once."""
    root = logging.getLogger()
    resolved_level = _resolve_level(level)

    has_handler = any(getattr(h, "name", "") == _HANDLER_NAME for h in root.handlers)
    if not has_handler:
        handler = logging.StreamHandler()
        handler.name = _HANDLER_NAME
        handler.setFormatter(_formatter())
        root.addHandler(handler)

    log_file = log_file or os.getenv("LOG_FILE")
    has_file = any(getattr(h, "name", "") == _FILE_HANDLER_NAME for h in root.handlers)
    if log_file and not has_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=10_000_000, backupCount=5)
        file_handler.name = _FILE_HANDLER_NAME
        file_handler.setFormatter(_formatter())
        root.addHandler(file_handler)

    root.setLevel(resolved_level)
    for handler in root.handlers:
        if getattr(handler, "name", "") in (_HANDLER_NAME, _FILE_HANDLER_NAME):
            handler.setLevel(resolved_level)

    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger configured with the shared format."""
    setup_logging()
    return logging.getLogger(name)
