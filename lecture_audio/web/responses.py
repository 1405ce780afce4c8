"""ASGI responses that stream audio files from storage."""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from email.utils import format_datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import anyio
from fastapi.responses import JSONResponse
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from ..services.events import emit_file_event
from ..services.files import AudioFileStore, AudioReadStream, AudioStorageError
from ..services.naming import Disposition, build_content_disposition
from ..services.ranges import ByteRange, NoRange, RangeOutcome, Unsatisfiable
from .context import get_logger

__all__ = [
    "AudioFileResponse",
    "ContentDescriptor",
    "build_content_response",
    "error_response",
]

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class ContentDescriptor:
    """Everything needed to serve one file, resolved once per request."""

    path: Path
    size: int
    mime_type: str
    modified: Optional[datetime] = None


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code)


class AudioFileResponse(Response):
    """Stream a whole file (200) or one byte range of it (206).

    The file is opened before the status line goes out, so a file that vanished
    after the existence check still produces a JSON error. Once headers are
    sent, read failures are logged and re-raised so the server drops the
    connection; a client disconnect simply stops the copy.
    """

    def __init__(
        self,
        descriptor: ContentDescriptor,
        *,
        file_store: AudioFileStore,
        byte_range: Optional[ByteRange] = None,
        headers: Optional[Dict[str, str]] = None,
        chunk_size: Optional[int] = None,
        log_context: Optional[Dict[str, Any]] = None,
        on_start: Optional[Callable[[], None]] = None,
    ) -> None:
        self.descriptor = descriptor
        self.file_store = file_store
        self.byte_range = byte_range
        self.chunk_size = chunk_size
        self.log_context: Dict[str, Any] = dict(log_context or {})
        self.on_start = on_start
        self.status_code = 206 if byte_range is not None else 200
        self.media_type = descriptor.mime_type
        self.background = None
        self.init_headers(headers)

        if byte_range is not None:
            self.headers["content-range"] = byte_range.content_range(descriptor.size)
            self.headers["content-length"] = str(byte_range.length)
        else:
            self.headers["content-length"] = str(descriptor.size)
        if descriptor.modified is not None:
            self.headers.setdefault("last-modified", format_datetime(descriptor.modified, usegmt=True))

        self._bytes_sent = 0
        self._read_error: Optional[BaseException] = None
        self._client_gone = False

    @property
    def content_length(self) -> int:
        return self.byte_range.length if self.byte_range is not None else self.descriptor.size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        send_body = str(scope.get("method", "GET")).upper() != "HEAD"
        started = time.perf_counter()
        stack = contextlib.AsyncExitStack()
        try:
            chunks = await stack.enter_async_context(
                self.file_store.open_read_stream(
                    self.descriptor.path,
                    self.byte_range,
                    length=self.descriptor.size,
                    chunk_size=self.chunk_size,
                )
            )
        except FileNotFoundError:
            LOGGER.warning(
                "Audio file disappeared before streaming could start (%s)", self.log_context
            )
            await error_response(404, "Audio file not found on server")(scope, receive, send)
            return
        except OSError as error:
            LOGGER.error(
                "Audio file could not be opened (%s): %s",
                self.log_context,
                error.__class__.__name__,
            )
            await error_response(500, "Failed to read audio file")(scope, receive, send)
            return

        async with stack:
            try:
                await send(
                    {
                        "type": "http.response.start",
                        "status": self.status_code,
                        "headers": self.raw_headers,
                    }
                )
            except OSError:
                LOGGER.debug("Client went away before the audio response started")
                return

            if self.on_start is not None:
                self.on_start()
            if not send_body:
                with contextlib.suppress(OSError):
                    await send({"type": "http.response.body", "body": b"", "more_body": False})
                return

            async with anyio.create_task_group() as task_group:

                async def _copy_then_cancel() -> None:
                    await self._copy(chunks, send)
                    task_group.cancel_scope.cancel()

                task_group.start_soon(_copy_then_cancel)
                await self._listen_for_disconnect(receive)
                task_group.cancel_scope.cancel()

        self._report(started)

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
        if self._bytes_sent < self.content_length and self._read_error is None:
            self._client_gone = True

    async def _copy(self, chunks: AudioReadStream, send: Send) -> None:
        while True:
            try:
                chunk = await chunks.__anext__()
            except StopAsyncIteration:
                break
            except (OSError, AudioStorageError) as error:
                self._read_error = error
                return
            try:
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
            except OSError:
                self._client_gone = True
                return
            self._bytes_sent += len(chunk)
        with contextlib.suppress(OSError):
            await send({"type": "http.response.body", "body": b"", "more_body": False})

    def _report(self, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000.0
        payload = {
            **self.log_context,
            "status": self.status_code,
            "bytes_sent": self._bytes_sent,
            "content_length": self.content_length,
        }
        if self._read_error is not None:
            LOGGER.error(
                "Audio stream failed after %s of %s byte(s) (%s): %s",
                self._bytes_sent,
                self.content_length,
                self.log_context,
                self._read_error,
            )
            emit_file_event(
                "stream_failed",
                payload=payload,
                duration_ms=duration_ms,
                level=logging.ERROR,
            )
            raise AudioStorageError("Audio stream aborted after headers were sent") from self._read_error
        if self._client_gone:
            LOGGER.debug(
                "Client disconnected after %s of %s byte(s)", self._bytes_sent, self.content_length
            )
            emit_file_event(
                "stream_cancelled", payload=payload, duration_ms=duration_ms, level=logging.DEBUG
            )
            return
        emit_file_event(
            "stream_completed", payload=payload, duration_ms=duration_ms, level=logging.DEBUG
        )


def build_content_response(
    descriptor: ContentDescriptor,
    outcome: RangeOutcome,
    *,
    file_store: AudioFileStore,
    disposition: Disposition,
    filename: str,
    cache_control: str,
    accept_ranges: str = "bytes",
    nosniff: bool = False,
    chunk_size: Optional[int] = None,
    log_context: Optional[Dict[str, Any]] = None,
    on_start: Optional[Callable[[], None]] = None,
) -> Response:
    """Return the single response for *descriptor* under the range *outcome*.

    *on_start* runs once the status line has been sent, never for a 416 or for
    a file that could not be opened.
    """

    if isinstance(outcome, Unsatisfiable):
        return Response(status_code=416, headers={"Content-Range": outcome.content_range})

    headers = {
        "Accept-Ranges": accept_ranges,
        "Cache-Control": cache_control,
        "Content-Disposition": build_content_disposition(disposition, filename),
    }
    if nosniff:
        headers["X-Content-Type-Options"] = "nosniff"

    byte_range = outcome if isinstance(outcome, ByteRange) else None
    if byte_range is None and not isinstance(outcome, NoRange):
        raise TypeError(f"Unexpected range outcome: {outcome!r}")

    return AudioFileResponse(
        descriptor,
        file_store=file_store,
        byte_range=byte_range,
        headers=headers,
        chunk_size=chunk_size,
        log_context=log_context,
        on_start=on_start,
    )
