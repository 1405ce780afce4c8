"""Request handlers for streaming, downloading and describing lecture audio."""

from __future__ import annotations

import functools
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlsplit

import httpx
from fastapi.responses import RedirectResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.background import BackgroundTask
from starlette.responses import Response

from ..services.counters import UsageCounters
from ..services.files import AudioFileStore, AudioStorageError
from ..services.mime import resolve_mime_type
from ..services.naming import (
    build_content_disposition,
    build_download_filename,
    build_inline_filename,
    file_extension,
    format_duration,
    format_megabytes,
)
from ..services.ranges import ByteRange, NoRange, RangeOutcome, Unsatisfiable, parse_range_header
from ..services.storage import LectureRecord, LectureRepository
from .context import get_logger
from .responses import ContentDescriptor, build_content_response

__all__ = [
    "AudioDelivery",
    "AudioFileMissingError",
    "DeliveryError",
    "ErrorResponse",
    "LectureNotFoundError",
    "RemoteDownloadError",
    "StreamFailedError",
    "StreamInfo",
]

LOGGER = get_logger(__name__)


class DeliveryError(Exception):
    """Error rendered as ``{"success": false, "message": ...}``."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class LectureNotFoundError(DeliveryError):
    status_code = 404
    default_message = "Lecture not found"


class AudioFileMissingError(DeliveryError):
    status_code = 404
    default_message = "Audio file not found on server"


class StreamFailedError(DeliveryError):
    status_code = 500
    default_message = "Failed to stream audio"


class RemoteDownloadError(DeliveryError):
    status_code = 500
    default_message = "Download failed from cloud storage"


class ErrorResponse(BaseModel):
    success: bool = False
    message: str


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LectureInfo(_CamelModel):
    id: int
    title_arabic: str
    title_english: Optional[str] = None
    sheikh: str
    series: Optional[str] = None
    duration: str
    file_size: str
    play_count: int
    download_count: int


class FileInfo(_CamelModel):
    file_name: Optional[str] = None
    exists: bool
    size: Optional[int] = None
    mime_type: str


class StreamUrls(_CamelModel):
    stream: str
    download: str


class StreamInfo(_CamelModel):
    success: bool = True
    lecture: LectureInfo
    file: FileInfo
    urls: StreamUrls


def _remote_audio_url(lecture: LectureRecord) -> Optional[str]:
    url = (lecture.audio_url or "").strip()
    if not url:
        return None
    parts = urlsplit(url)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        return None
    return url


class AudioDelivery:
    """Resolve lectures to audio files and build the HTTP responses for them.

    The lecture lookup, file storage and counter sink are injected so the
    handlers can run against any implementation of those collaborators.
    """

    def __init__(
        self,
        lookup: LectureRepository,
        file_store: AudioFileStore,
        counters: UsageCounters,
        *,
        cache_max_age: int = 31536000,
        count_range_requests: bool = True,
        chunk_size: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._lookup = lookup
        self._files = file_store
        self._counters = counters
        self._cache_control = f"public, max-age={int(cache_max_age)}"
        self._count_range_requests = count_range_requests
        self._chunk_size = chunk_size
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(follow_redirects=True)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Shared resolution steps
    # ------------------------------------------------------------------
    def _resolve_lecture(self, identifier: Any) -> LectureRecord:
        lecture = self._lookup.find_lecture(identifier)
        if lecture is None:
            LOGGER.info("Lecture '%s' not found", identifier)
            raise LectureNotFoundError()
        return lecture

    def _resolve_content(self, lecture: LectureRecord) -> ContentDescriptor:
        if not lecture.has_audio:
            LOGGER.info("Lecture %s has no audio file attached", lecture.id)
            raise AudioFileMissingError()
        file_ref = lecture.audio_file_name or ""
        if not self._files.exists(file_ref):
            LOGGER.warning(
                "Lecture %s references audio file %r which is missing from storage",
                lecture.id,
                file_ref,
            )
            raise AudioFileMissingError()
        path = self._files.resolve_path(file_ref)
        try:
            stat = self._files.stat(path)
        except FileNotFoundError as error:
            LOGGER.warning("Audio file %r for lecture %s vanished during lookup", file_ref, lecture.id)
            raise AudioFileMissingError() from error
        return ContentDescriptor(
            path=path,
            size=stat.size,
            mime_type=resolve_mime_type(file_ref),
            modified=stat.modified,
        )

    def _counts_as_play(self, outcome: RangeOutcome) -> bool:
        if isinstance(outcome, Unsatisfiable):
            return False
        if self._count_range_requests or isinstance(outcome, NoRange):
            return True
        return isinstance(outcome, ByteRange) and outcome.start == 0

    async def _proxy_download(self, lecture: LectureRecord, url: str) -> Response:
        """Relay a cloud-hosted file under the same attachment name as a local one."""

        try:
            upstream = await self._http.send(self._http.build_request("GET", url), stream=True)
        except httpx.HTTPError as error:
            LOGGER.error(
                "Cloud download for lecture %s failed: %s", lecture.id, error.__class__.__name__
            )
            raise RemoteDownloadError() from error
        if not upstream.is_success:
            await upstream.aclose()
            LOGGER.error(
                "Cloud storage answered %s for lecture %s", upstream.status_code, lecture.id
            )
            raise RemoteDownloadError()

        remote_path = urlsplit(url).path
        headers = {
            "Accept-Ranges": "none",
            "Cache-Control": "no-store",
            "Content-Disposition": build_content_disposition(
                "attachment",
                build_download_filename(lecture, file_extension(remote_path)),
            ),
        }
        length = upstream.headers.get("content-length")
        if length and "content-encoding" not in upstream.headers:
            headers["Content-Length"] = length
        media_type = upstream.headers.get("content-type", "")
        if not media_type.startswith("audio/"):
            media_type = resolve_mime_type(remote_path)

        self._counters.record_download(lecture.id)

        async def _relay() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as error:
                LOGGER.error("Cloud download for lecture %s aborted: %s", lecture.id, error)
                raise AudioStorageError("Cloud download aborted after headers were sent") from error
            finally:
                await upstream.aclose()

        return StreamingResponse(
            _relay(),
            media_type=media_type,
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def stream(self, identifier: Any, range_header: Optional[str] = None) -> Response:
        """Serve lecture audio inline, honouring a single byte range."""

        try:
            lecture = self._resolve_lecture(identifier)
            remote_url = _remote_audio_url(lecture)
            if remote_url is not None:
                self._counters.record_play(lecture.id)
                return RedirectResponse(remote_url, status_code=302)

            descriptor = self._resolve_content(lecture)
            outcome = parse_range_header(range_header, descriptor.size)
            if isinstance(outcome, Unsatisfiable):
                LOGGER.debug(
                    "Unsatisfiable range %r for lecture %s (%s bytes)",
                    range_header,
                    lecture.id,
                    descriptor.size,
                )
            on_start = None
            if self._counts_as_play(outcome):
                on_start = functools.partial(self._counters.record_play, lecture.id)

            return build_content_response(
                descriptor,
                outcome,
                file_store=self._files,
                disposition="inline",
                filename=build_inline_filename(lecture),
                cache_control=self._cache_control,
                nosniff=True,
                chunk_size=self._chunk_size,
                log_context={"lecture_id": lecture.id, "endpoint": "stream"},
                on_start=on_start,
            )
        except DeliveryError:
            raise
        except Exception as error:
            LOGGER.exception("Stream error for lecture '%s'", identifier)
            raise StreamFailedError("Failed to stream audio") from error

    async def download(self, identifier: Any) -> Response:
        """Serve the whole lecture file as an attachment with a descriptive name."""

        try:
            lecture = self._resolve_lecture(identifier)
            remote_url = _remote_audio_url(lecture)
            if remote_url is not None:
                return await self._proxy_download(lecture, remote_url)

            descriptor = self._resolve_content(lecture)
            if lecture.file_size and lecture.file_size != descriptor.size:
                LOGGER.warning(
                    "Stored size %s for lecture %s differs from the file on disk (%s bytes)",
                    lecture.file_size,
                    lecture.id,
                    descriptor.size,
                )
            return build_content_response(
                descriptor,
                NoRange(),
                file_store=self._files,
                disposition="attachment",
                filename=build_download_filename(lecture),
                cache_control="no-store",
                accept_ranges="none",
                chunk_size=self._chunk_size,
                log_context={"lecture_id": lecture.id, "endpoint": "download"},
                on_start=functools.partial(self._counters.record_download, lecture.id),
            )
        except DeliveryError:
            raise
        except Exception as error:
            LOGGER.exception("Download error for lecture '%s'", identifier)
            raise StreamFailedError("Failed to download audio") from error

    async def describe(self, identifier: Any) -> Dict[str, Any]:
        """Return diagnostic metadata about a lecture and its audio file."""

        try:
            lecture = self._resolve_lecture(identifier)
            file_ref = lecture.audio_file_name
            exists = self._files.exists(file_ref)
            size: Optional[int] = None
            if exists and file_ref:
                size = self._files.stat(self._files.resolve_path(file_ref)).size

            info = StreamInfo(
                lecture=LectureInfo(
                    id=lecture.id,
                    title_arabic=lecture.title_arabic,
                    title_english=lecture.title_english,
                    sheikh=lecture.sheikh_name_arabic or "Unknown",
                    series=lecture.series_title_arabic,
                    duration=format_duration(lecture.duration),
                    file_size=format_megabytes(lecture.file_size),
                    play_count=lecture.play_count,
                    download_count=lecture.download_count,
                ),
                file=FileInfo(
                    file_name=file_ref,
                    exists=exists,
                    size=size,
                    mime_type=resolve_mime_type(file_ref),
                ),
                urls=StreamUrls(
                    stream=f"/stream/{identifier}",
                    download=f"/download/{identifier}",
                ),
            )
            return info.model_dump(by_alias=True)
        except DeliveryError:
            raise
        except Exception as error:
            LOGGER.exception("Stream info error for lecture '%s'", identifier)
            raise StreamFailedError("Failed to get stream info") from error
