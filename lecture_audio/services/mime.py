"""Map audio file names to response content types."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Dict

__all__ = ["AUDIO_MIME_TYPES", "DEFAULT_AUDIO_MIME_TYPE", "resolve_mime_type"]


DEFAULT_AUDIO_MIME_TYPE = "audio/mpeg"

AUDIO_MIME_TYPES: Dict[str, str] = {
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".webm": "audio/webm",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
}


def resolve_mime_type(filename: str | None) -> str:
    """Return the audio content type for *filename*.

    Matching is case-insensitive on the final extension; unknown or missing
    extensions resolve to ``audio/mpeg``.
    """

    if not filename:
        return DEFAULT_AUDIO_MIME_TYPE
    suffix = PurePosixPath(str(filename).replace("\\", "/")).suffix.lower()
    return AUDIO_MIME_TYPES.get(suffix, DEFAULT_AUDIO_MIME_TYPE)
