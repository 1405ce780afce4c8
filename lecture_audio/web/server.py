"""FastAPI application serving lecture audio over HTTP."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

from ..config import AppConfig
from ..services.counters import UsageCounters
from ..services.events import emit_db_event
from ..services.files import AudioFileStore
from ..services.storage import LectureRepository
from .context import RequestContextMiddleware, collect_correlation_context, get_logger
from .delivery import AudioDelivery, DeliveryError, ErrorResponse
from .responses import error_response

LOGGER = get_logger(__name__)
EVENT_LOGGER = get_logger("lecture_audio.events")

_DB_SLOW_WARNING_MS = 450.0
_EXPOSED_HEADERS = ["Accept-Ranges", "Content-Length", "Content-Range", "Content-Disposition"]
_ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized or normalized == "/":
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _emit_repository_event(event_type: str, message: str, **kwargs: Any) -> None:
    duration_ms = kwargs.get("duration_ms")
    payload = kwargs.get("payload") or {}
    level = logging.DEBUG
    if payload.get("status") == "error" or (
        duration_ms is not None and duration_ms >= _DB_SLOW_WARNING_MS
    ):
        level = logging.WARNING
    emit_db_event(
        message,
        payload=payload,
        correlation=collect_correlation_context(),
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def create_app(
    repository: LectureRepository,
    *,
    config: AppConfig,
    file_store: Optional[AudioFileStore] = None,
    counters: Optional[UsageCounters] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    ``file_store`` defaults to an :class:`AudioFileStore` rooted at the
    configured upload directory and ``counters`` to a :class:`UsageCounters`
    feeding ``repository``. ``http_client`` fetches cloud-hosted audio for
    downloads; one is created (and closed on shutdown) when omitted.
    """

    if file_store is None:
        file_store = AudioFileStore(config.upload_root, chunk_size=config.stream_chunk_size)
    if counters is None:
        counters = UsageCounters(repository)

    configure_emitter = getattr(repository, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(_emit_repository_event)

    delivery = AudioDelivery(
        repository,
        file_store,
        counters,
        cache_max_age=config.cache_max_age,
        count_range_requests=config.count_range_requests,
        chunk_size=config.stream_chunk_size,
        http_client=http_client,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await counters.start()
        LOGGER.info("Serving audio from %s", file_store.root)
        try:
            yield
        finally:
            await counters.stop()
            await delivery.aclose()

    app = FastAPI(
        title="Lecture Audio",
        description="Stream and download lecture recordings",
        root_path=_normalize_root_path(root_path),
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.repository = repository
    app.state.file_store = file_store
    app.state.counters = counters
    app.state.delivery = delivery

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=_EXPOSED_HEADERS,
    )

    @app.exception_handler(DeliveryError)
    async def handle_delivery_error(_request: Request, error: DeliveryError) -> JSONResponse:
        return error_response(error.status_code, error.message)

    @app.api_route("/stream/{lecture_id}", methods=["GET", "HEAD"], responses=_ERROR_RESPONSES)
    async def stream_audio(lecture_id: str, request: Request) -> Response:
        return await delivery.stream(lecture_id, request.headers.get("range"))

    @app.get("/stream/{lecture_id}/info", responses=_ERROR_RESPONSES)
    async def get_stream_info(lecture_id: str) -> Dict[str, Any]:
        return await delivery.describe(lecture_id)

    @app.api_route("/download/{lecture_id}", methods=["GET", "HEAD"], responses=_ERROR_RESPONSES)
    async def download_audio(lecture_id: str) -> Response:
        return await delivery.download(lecture_id)

    return app


__all__ = ["create_app"]
