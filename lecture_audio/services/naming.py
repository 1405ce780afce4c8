"""Helpers for human readable audio file names and dispositions."""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Literal, Optional
from urllib.parse import quote

from .storage import LectureRecord

__all__ = [
    "Disposition",
    "build_content_disposition",
    "build_download_filename",
    "build_inline_filename",
    "file_extension",
    "format_duration",
    "format_megabytes",
    "prefer_text",
    "sanitize_filename",
]

Disposition = Literal["inline", "attachment"]

_ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_FALLBACK_STEM = "lecture"


def prefer_text(*candidates: Optional[str], default: str = "") -> str:
    """Return the first non-blank candidate, stripped."""

    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return default


def sanitize_filename(value: str) -> str:
    """Return *value* without characters that are illegal in file names.

    Structural characters become ``-``, whitespace runs collapse to a single
    space. Letters from any script (Arabic included) are kept as they are.
    """

    cleaned = _ILLEGAL_FILENAME_CHARS.sub("-", value or "")
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def file_extension(file_name: Optional[str]) -> str:
    if not file_name:
        return ""
    return PurePosixPath(file_name.replace("\\", "/")).suffix


def _finalize(stem: str, extension: str) -> str:
    cleaned = sanitize_filename(stem) or _FALLBACK_STEM
    return cleaned + sanitize_filename(extension)


def build_inline_filename(lecture: LectureRecord) -> str:
    """File name suggested while streaming: the lecture title plus extension."""

    return _finalize(lecture.display_title, file_extension(lecture.audio_file_name))


def build_download_filename(lecture: LectureRecord, extension: Optional[str] = None) -> str:
    """Descriptive name for a downloaded lecture.

    Series lectures become ``"<Series> - Part <N> - <Title>"``; everything else
    ``"<Sheikh> - <Title>"``. English text is used when present, Arabic otherwise.
    """

    if extension is None:
        extension = file_extension(lecture.audio_file_name)
    title = lecture.display_title
    if lecture.series_id is not None and lecture.lecture_number:
        series_title = prefer_text(lecture.series_title_english, lecture.series_title_arabic)
        stem = f"{series_title} - Part {lecture.lecture_number} - {title}"
    else:
        sheikh_name = prefer_text(
            lecture.sheikh_name_english, lecture.sheikh_name_arabic, default="Unknown"
        )
        stem = f"{sheikh_name} - {title}"
    return _finalize(stem, extension)


def build_content_disposition(disposition: Disposition, filename: str) -> str:
    """Return a ``Content-Disposition`` value that is safe for latin-1 headers.

    Plain ASCII names are quoted directly. Other names are percent-encoded in
    ``filename`` and repeated as an RFC 5987 ``filename*`` parameter.
    """

    name = sanitize_filename(filename) or _FALLBACK_STEM
    if name.isascii():
        return f'{disposition}; filename="{name}"'
    encoded = quote(name, safe="")
    return f"{disposition}; filename=\"{encoded}\"; filename*=UTF-8''{encoded}"


def format_duration(seconds: Optional[int]) -> str:
    """Format *seconds* as ``H:MM:SS`` or ``M:SS``."""

    total = int(seconds or 0)
    if total <= 0:
        return "0:00"
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_megabytes(size: Optional[int]) -> str:
    return f"{(size or 0) / (1024 * 1024):.2f} MB"
