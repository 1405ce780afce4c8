"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        upload_root = self._config.upload_root
        if not config_module._ensure_readable_directory(upload_root):
            raise BootstrapError(f"The upload directory '{upload_root}' is not readable")
        LOGGER.debug("Serving audio files from %s", upload_root)

        data_root = self._config.data_root
        if not config_module._ensure_writable_directory(data_root):
            raise BootstrapError(f"The data directory '{data_root}' is not writable")
        LOGGER.debug("Ensured directory exists: %s", data_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        connection = sqlite3.connect(self._config.database_file)
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                PRAGMA foreign_keys = ON;
                CREATE TABLE IF NOT EXISTS sheikhs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name_arabic TEXT NOT NULL,
                    name_english TEXT,
                    slug TEXT UNIQUE
                );

                CREATE TABLE IF NOT EXISTS series (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sheikh_id INTEGER NOT NULL,
                    title_arabic TEXT NOT NULL,
                    title_english TEXT,
                    slug TEXT UNIQUE,
                    FOREIGN KEY(sheikh_id) REFERENCES sheikhs(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS lectures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sheikh_id INTEGER NOT NULL,
                    series_id INTEGER,
                    lecture_number INTEGER,
                    title_arabic TEXT NOT NULL,
                    title_english TEXT,
                    slug TEXT UNIQUE,
                    audio_file_name TEXT,
                    audio_url TEXT,
                    file_size INTEGER NOT NULL DEFAULT 0,
                    duration INTEGER NOT NULL DEFAULT 0,
                    play_count INTEGER NOT NULL DEFAULT 0,
                    download_count INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(sheikh_id) REFERENCES sheikhs(id) ON DELETE CASCADE,
                    FOREIGN KEY(series_id) REFERENCES series(id) ON DELETE SET NULL
                );

                CREATE INDEX IF NOT EXISTS idx_lectures_series
                    ON lectures(series_id, lecture_number);
                """
            )
            connection.commit()
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
