"""Configuration loading utilities for the lecture audio service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".lecture_audio_write_check"
UPLOAD_DIR_ENV = "LECTURE_AUDIO_UPLOAD_DIR"

DEFAULT_STREAM_CHUNK_SIZE = 64 * 1024
DEFAULT_CACHE_MAX_AGE = 31536000


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _ensure_readable_directory(path: Path) -> bool:
    """Return ``True`` if *path* is an existing directory whose entries can be read.

    A missing directory is created when possible. Nothing is written into it.
    """

    if not path.exists():
        with contextlib.suppress(OSError):
            path.mkdir(parents=True, exist_ok=True)
    return path.is_dir() and os.access(path, os.R_OK | os.X_OK)


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate is returned along with a flag telling whether a
    fallback was used. When nothing can be prepared the original ``preferred``
    path is returned so that bootstrap can report the problem.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _coerce_positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    if value is not None:
        LOGGER.warning("Ignoring invalid boolean setting %r; using %s", value, default)
    return default


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and streaming options for the application."""

    upload_root: Path
    database_file: Path
    stream_chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE
    cache_max_age: int = DEFAULT_CACHE_MAX_AGE
    count_range_requests: bool = True

    @property
    def data_root(self) -> Path:
        """Directory holding the database and the log file."""

        return self.database_file.parent

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        upload_root = (base_path / mapping["upload_root"]).resolve()
        if not _ensure_readable_directory(upload_root):
            LOGGER.warning("Upload directory '%s' is missing or not readable.", upload_root)

        # The upload directory is only read from; the database directory must be writable.
        preferred_database = (base_path / mapping["database_file"]).resolve()
        database_dir, _ = _select_writable_directory(
            preferred_database.parent,
            label="database",
            fallbacks=(Path.home() / ".lecture_audio" / "data",),
        )
        database_file = database_dir / preferred_database.name

        return cls(
            upload_root=upload_root,
            database_file=database_file,
            stream_chunk_size=_coerce_positive_int(
                mapping.get("stream_chunk_size"), DEFAULT_STREAM_CHUNK_SIZE
            ),
            cache_max_age=_coerce_positive_int(
                mapping.get("cache_max_age"), DEFAULT_CACHE_MAX_AGE
            ),
            count_range_requests=_coerce_bool(mapping.get("count_range_requests"), True),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default.

    ``LECTURE_AUDIO_UPLOAD_DIR`` overrides the configured upload directory.
    """

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    override = (os.environ.get(UPLOAD_DIR_ENV) or "").strip()
    if override:
        raw_config["upload_root"] = override

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "UPLOAD_DIR_ENV", "load_config"]
