"""Parsing of single-range HTTP ``Range`` headers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

__all__ = [
    "ByteRange",
    "NoRange",
    "RangeOutcome",
    "Unsatisfiable",
    "parse_range_header",
]

LOGGER = logging.getLogger(__name__)

_BYTES_UNIT = "bytes"


@dataclass(frozen=True)
class NoRange:
    """No usable range was requested; the whole file is served."""


@dataclass(frozen=True)
class ByteRange:
    """Inclusive ``[start, end]`` byte interval that fits inside the file."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, file_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{file_size}"


@dataclass(frozen=True)
class Unsatisfiable:
    """A range was requested but cannot be served against ``file_size``."""

    file_size: int

    @property
    def content_range(self) -> str:
        return f"bytes */{self.file_size}"


RangeOutcome = Union[NoRange, ByteRange, Unsatisfiable]


def _parse_offset(value: str) -> Optional[int]:
    value = value.strip()
    if not (value.isascii() and value.isdigit()):
        return None
    return int(value)


def parse_range_header(header: Optional[str], file_size: int) -> RangeOutcome:
    """Classify the ``Range`` header *header* against a file of *file_size* bytes.

    Only ``bytes=<start>-[<end>]`` is honoured. A missing end means the last
    byte of the file. Headers using another unit or asking for several ranges
    are ignored and the whole file is served. Anything else that cannot be
    turned into ``0 <= start <= end < file_size`` is unsatisfiable.
    """

    if header is None or not header.strip():
        return NoRange()

    unit, separator, requested = header.strip().partition("=")
    if not separator or unit.strip().lower() != _BYTES_UNIT:
        LOGGER.debug("Ignoring Range header with unsupported unit: %r", header)
        return NoRange()

    if "," in requested:
        LOGGER.debug("Ignoring multi-range request: %r", header)
        return NoRange()

    start_text, dash, end_text = requested.partition("-")
    if not dash:
        return Unsatisfiable(file_size)

    start = _parse_offset(start_text)
    if start is None:
        return Unsatisfiable(file_size)

    if end_text.strip():
        end = _parse_offset(end_text)
        if end is None:
            return Unsatisfiable(file_size)
    else:
        end = file_size - 1

    if start >= file_size or end >= file_size or start > end:
        return Unsatisfiable(file_size)

    return ByteRange(start, end)
