"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from ..config import AppConfig


@dataclass(frozen=True)
class LectureRecord:
    id: int
    slug: Optional[str]
    title_arabic: str
    title_english: Optional[str]
    audio_file_name: Optional[str]
    audio_url: Optional[str]
    file_size: int
    duration: int
    lecture_number: Optional[int]
    play_count: int
    download_count: int
    sheikh_id: int
    sheikh_name_arabic: Optional[str]
    sheikh_name_english: Optional[str]
    series_id: Optional[int]
    series_title_arabic: Optional[str]
    series_title_english: Optional[str]

    @property
    def display_title(self) -> str:
        """English title when present, otherwise the Arabic one."""

        return (self.title_english or "").strip() or self.title_arabic

    @property
    def has_audio(self) -> bool:
        return bool((self.audio_file_name or "").strip())


LOGGER = logging.getLogger(__name__)


_LECTURE_SELECT = """
    SELECT
        l.id,
        l.slug,
        l.title_arabic,
        l.title_english,
        l.audio_file_name,
        l.audio_url,
        l.file_size,
        l.duration,
        l.lecture_number,
        l.play_count,
        l.download_count,
        l.sheikh_id,
        s.name_arabic AS sheikh_name_arabic,
        s.name_english AS sheikh_name_english,
        l.series_id,
        se.title_arabic AS series_title_arabic,
        se.title_english AS series_title_english
    FROM lectures AS l
    JOIN sheikhs AS s ON s.id = l.sheikh_id
    LEFT JOIN series AS se ON se.id = l.series_id
"""


class LectureRepository:
    """Lecture lookup and usage counters on top of SQLite."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting database events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        return connection.execute(statement, params)

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @contextlib.contextmanager
    def _session(self):
        connection = self._connect()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    # ---------------------------------------------------------------------
    # Creation helpers
    # ---------------------------------------------------------------------
    def add_sheikh(
        self,
        name_arabic: str,
        name_english: Optional[str] = None,
        *,
        slug: Optional[str] = None,
    ) -> int:
        with self._track_db_event("add_sheikh", table="sheikhs") as event:
            with self._session() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO sheikhs(name_arabic, name_english, slug) VALUES (?, ?, ?)",
                    (name_arabic, name_english, slug),
                )
                event["sheikh_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def add_series(
        self,
        sheikh_id: int,
        title_arabic: str,
        title_english: Optional[str] = None,
        *,
        slug: Optional[str] = None,
    ) -> int:
        with self._track_db_event("add_series", table="series", sheikh_id=sheikh_id) as event:
            with self._session() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO series(sheikh_id, title_arabic, title_english, slug) VALUES (?, ?, ?, ?)",
                    (sheikh_id, title_arabic, title_english, slug),
                )
                event["series_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def add_lecture(
        self,
        sheikh_id: int,
        title_arabic: str,
        title_english: Optional[str] = None,
        *,
        slug: Optional[str] = None,
        series_id: Optional[int] = None,
        lecture_number: Optional[int] = None,
        audio_file_name: Optional[str] = None,
        audio_url: Optional[str] = None,
        file_size: int = 0,
        duration: int = 0,
    ) -> int:
        LOGGER.debug(
            "Adding lecture '%s' for sheikh_id=%s (series_id=%s, number=%s)",
            title_arabic,
            sheikh_id,
            series_id,
            lecture_number,
        )
        with self._track_db_event(
            "add_lecture",
            table="lectures",
            sheikh_id=sheikh_id,
            series_id=series_id,
            has_audio=bool(audio_file_name),
            has_remote_audio=bool(audio_url),
        ) as event:
            with self._session() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO lectures(
                        sheikh_id,
                        series_id,
                        lecture_number,
                        title_arabic,
                        title_english,
                        slug,
                        audio_file_name,
                        audio_url,
                        file_size,
                        duration
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sheikh_id,
                        series_id,
                        lecture_number,
                        title_arabic,
                        title_english,
                        slug,
                        audio_file_name,
                        audio_url,
                        int(file_size),
                        int(duration),
                    ),
                )
                event["lecture_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def update_lecture_audio(
        self,
        lecture_id: int,
        *,
        audio_file_name: Optional[str],
        file_size: int = 0,
    ) -> None:
        with self._track_db_event("update_lecture_audio", table="lectures", lecture_id=lecture_id):
            with self._session() as connection:
                self._execute(
                    connection,
                    "UPDATE lectures SET audio_file_name = ?, file_size = ? WHERE id = ?",
                    (audio_file_name, int(file_size), lecture_id),
                )

    # ---------------------------------------------------------------------
    # Lookup helpers
    # ---------------------------------------------------------------------
    def find_lecture(self, identifier: Any) -> Optional[LectureRecord]:
        """Return the lecture addressed by a numeric id or a slug."""

        key = str(identifier).strip() if identifier is not None else ""
        if not key:
            return None

        if key.isascii() and key.isdigit():
            # Numeric ids win over slugs that happen to look numeric.
            query = f"{_LECTURE_SELECT} WHERE l.id = ? OR l.slug = ? ORDER BY (l.id = ?) DESC LIMIT 1"
            params: Tuple[Any, ...] = (int(key), key, int(key))
        else:
            query = f"{_LECTURE_SELECT} WHERE l.slug = ? LIMIT 1"
            params = (key,)

        with self._track_db_event("find_lecture", table="lectures", identifier=key) as event:
            with self._session() as connection:
                row = self._execute(connection, query, params).fetchone()
            event["found"] = row is not None
        if row is None:
            LOGGER.debug("Lecture '%s' not found", key)
            return None
        return LectureRecord(**dict(row))

    def get_lecture(self, lecture_id: int) -> Optional[LectureRecord]:
        with self._session() as connection:
            row = self._execute(
                connection, f"{_LECTURE_SELECT} WHERE l.id = ?", (int(lecture_id),)
            ).fetchone()
        return LectureRecord(**dict(row)) if row else None

    def iter_lectures(self) -> Iterable[LectureRecord]:
        with self._session() as connection:
            rows = self._execute(connection, f"{_LECTURE_SELECT} ORDER BY l.id").fetchall()
        for row in rows:
            yield LectureRecord(**dict(row))

    # ---------------------------------------------------------------------
    # Usage counters
    # ---------------------------------------------------------------------
    def _increment(self, column: str, lecture_id: int) -> bool:
        with self._track_db_event(
            f"increment_{column}", table="lectures", lecture_id=lecture_id
        ) as event:
            with self._session() as connection:
                cursor = self._execute(
                    connection,
                    f"UPDATE lectures SET {column} = {column} + 1 WHERE id = ?",
                    (int(lecture_id),),
                )
            updated = cursor.rowcount > 0
            event["rowcount"] = cursor.rowcount
        if not updated:
            LOGGER.warning("Cannot increment %s: lecture %s does not exist", column, lecture_id)
        return updated

    def increment_play_count(self, lecture_id: int) -> bool:
        return self._increment("play_count", lecture_id)

    def increment_download_count(self, lecture_id: int) -> bool:
        return self._increment("download_count", lecture_id)


__all__ = ["LectureRecord", "LectureRepository"]
