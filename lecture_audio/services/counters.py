"""Detached play/download counter updates."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

__all__ = ["CounterEvent", "CounterKind", "UsageCounters"]

LOGGER = logging.getLogger(__name__)

CounterKind = Literal["play", "download"]

_COUNTER_METHODS = {
    "play": "increment_play_count",
    "download": "increment_download_count",
}


@dataclass
class CounterEvent:
    lecture_id: Any
    kind: CounterKind
    created_at: float = field(default_factory=time.time)


class UsageCounters:
    """Queue counter increments and apply them off the request path.

    ``record_play`` and ``record_download`` only enqueue an event and return
    immediately. A single worker task drains the queue and calls the
    repository's ``increment_play_count`` / ``increment_download_count``;
    failures are logged and otherwise ignored.
    """

    def __init__(self, repository: Any, *, shutdown_timeout: float = 5.0) -> None:
        self._repository = repository
        self._shutdown_timeout = shutdown_timeout
        self._queue: Optional[asyncio.Queue[CounterEvent]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self.processed = 0
        self.failed = 0

    def record_play(self, lecture_id: Any) -> None:
        self._emit(CounterEvent(lecture_id=lecture_id, kind="play"))

    def record_download(self, lecture_id: Any) -> None:
        self._emit(CounterEvent(lecture_id=lecture_id, kind="download"))

    def _emit(self, event: CounterEvent) -> None:
        try:
            self._ensure_worker().put_nowait(event)
        except Exception:  # noqa: BLE001 - counters never affect the response
            LOGGER.exception(
                "Could not queue %s count update for lecture %s", event.kind, event.lecture_id
            )

    def _ensure_worker(self) -> asyncio.Queue[CounterEvent]:
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            if self._queue is not None and not self._queue.empty():
                LOGGER.warning(
                    "Dropping %s queued counter update(s) from a stopped event loop",
                    self._queue.qsize(),
                )
            self._queue = asyncio.Queue()
            self._loop = loop
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(self._queue), name="usage-counter-worker")
        return self._queue

    async def start(self) -> None:
        self._ensure_worker()

    async def join(self) -> None:
        """Wait until every queued update has been applied or has failed."""

        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def stop(self) -> None:
        worker = self._worker
        queue = self._queue
        if worker is None or self._loop is not asyncio.get_running_loop():
            self._worker = None
            return
        if queue is not None:
            try:
                await asyncio.wait_for(queue.join(), timeout=self._shutdown_timeout)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "Stopping counter worker with %s update(s) still pending", queue.qsize()
                )
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
        self._worker = None

    async def _apply(self, event: CounterEvent) -> None:
        method = getattr(self._repository, _COUNTER_METHODS[event.kind])
        if inspect.iscoroutinefunction(method):
            await method(event.lecture_id)
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, method, event.lecture_id)

    async def _run(self, queue: asyncio.Queue[CounterEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._apply(event)
            except Exception:  # noqa: BLE001 - logged only
                self.failed += 1
                LOGGER.exception(
                    "Error incrementing %s count for lecture %s", event.kind, event.lecture_id
                )
            else:
                self.processed += 1
            finally:
                queue.task_done()
