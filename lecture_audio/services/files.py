"""Read access to audio files kept in the upload directory."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import anyio

from .ranges import ByteRange

__all__ = [
    "AudioFileStore",
    "AudioReadStream",
    "AudioStorageError",
    "FileStat",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class AudioStorageError(RuntimeError):
    """Raised when an audio file cannot deliver the bytes it promised."""


@dataclass(frozen=True)
class FileStat:
    size: int
    modified: Optional[datetime] = None


class AudioReadStream:
    """Async iterator yielding at most ``length`` bytes from an open file."""

    def __init__(self, handle: anyio.AsyncFile, length: int, chunk_size: int) -> None:
        self._handle = handle
        self._remaining = length
        self._chunk_size = max(1, int(chunk_size))

    @property
    def remaining(self) -> int:
        return self._remaining

    def __aiter__(self) -> "AudioReadStream":
        return self

    async def __anext__(self) -> bytes:
        if self._remaining <= 0:
            raise StopAsyncIteration
        chunk = await self._handle.read(min(self._chunk_size, self._remaining))
        if not chunk:
            raise AudioStorageError(
                f"Audio file ended with {self._remaining} byte(s) still expected"
            )
        self._remaining -= len(chunk)
        return chunk


class AudioFileStore:
    """File storage rooted at a single upload directory.

    File references are the names stored on lecture records. They are resolved
    relative to ``root`` and never allowed to escape it.
    """

    def __init__(self, root: Path, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._root = Path(root).resolve()
        self._chunk_size = chunk_size

    @property
    def root(self) -> Path:
        return self._root

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def resolve_path(self, file_ref: str) -> Path:
        """Return the absolute path for *file_ref*.

        Raises ``ValueError`` when the reference is empty or points outside the
        upload directory.
        """

        reference = (file_ref or "").strip()
        if not reference:
            raise ValueError("Empty file reference")
        candidate = (self._root / reference).resolve()
        candidate.relative_to(self._root)
        return candidate

    def exists(self, file_ref: Optional[str]) -> bool:
        if not file_ref:
            return False
        try:
            path = self.resolve_path(file_ref)
        except ValueError:
            LOGGER.warning("Rejected file reference outside the upload directory: %r", file_ref)
            return False
        return path.is_file()

    def stat(self, path: Path) -> FileStat:
        info = path.stat()
        modified = datetime.fromtimestamp(info.st_mtime, tz=timezone.utc)
        return FileStat(size=int(info.st_size), modified=modified)

    @contextlib.asynccontextmanager
    async def open_read_stream(
        self,
        path: Path,
        byte_range: Optional[ByteRange] = None,
        *,
        length: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ) -> AsyncIterator[AudioReadStream]:
        """Open *path* and yield a chunk iterator over the requested bytes.

        The file is opened before the context is entered, so a vanished or
        unreadable file raises ``OSError`` here rather than during iteration.
        Without *byte_range* the iterator covers ``length`` bytes from the start
        of the file (the whole file when *length* is omitted).
        """

        handle = await anyio.open_file(path, "rb")
        try:
            if byte_range is not None:
                await handle.seek(byte_range.start)
                total = byte_range.length
            elif length is not None:
                total = length
            else:
                total = (await anyio.Path(path).stat()).st_size
            yield AudioReadStream(handle, total, chunk_size or self._chunk_size)
        finally:
            with anyio.CancelScope(shield=True):
                await handle.aclose()
