"""Logging setup shared by the server and the maintenance commands."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "lecture_audio.log"

# Set on every handler installed here so a second call can replace them.
_HANDLER_MARKER = "_lecture_audio_handler"

_NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def get_log_file_path(data_root: Path) -> Path:
    """Return the log file kept next to the lecture database."""

    return data_root / LOG_FILE_NAME


def build_log_handlers(
    data_root: Optional[Path] = None, *, console: bool = True
) -> List[logging.Handler]:
    """Return formatted handlers for the data-directory log file and the console."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    handlers: List[logging.Handler] = []
    if data_root is not None:
        file_handler = logging.FileHandler(get_log_file_path(data_root), encoding="utf-8")
        handlers.append(file_handler)
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(
    level: int = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> logging.Logger:
    """Install *handlers* on the root logger, replacing ones from an earlier call.

    Per-request access lines and HTTP client chatter are held at WARNING unless
    *level* is DEBUG.
    """

    root = logging.getLogger()
    root.setLevel(level)

    for existing in list(root.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            root.removeHandler(existing)
            existing.close()

    for handler in handlers if handlers is not None else build_log_handlers():
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)

    for name, quiet_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(logging.NOTSET if level <= logging.DEBUG else quiet_level)

    return root


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_FILE_NAME",
    "build_log_handlers",
    "configure_logging",
    "get_log_file_path",
]
