"""Bounded, priority-ordered, deduplicating request scheduler.

One long-lived task owns the queue and the in-flight set and is the only code
that mutates them; everything else talks to it through its inbox. Each admitted
request runs in its own worker task that performs exactly one daemon call,
signals completion and publishes an ``ApiResponse``. There is no retry, no
timeout and no cancellation at this level: a failure is reported once and
recovery is left to periodic polling or the user.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stui.exceptions import DaemonError, classify_error
from stui.schemas.requests import (
    ApiResponse,
    BrowseFolder,
    DedupKey,
    GetFileInfo,
    GetFolderStatus,
    GetIgnorePatterns,
    GetLocalChangedFiles,
    GetNeededFiles,
    Request,
    RescanFolder,
    RevertFolder,
    SetIgnorePatterns,
    dedup_key,
    request_priority,
)

if TYPE_CHECKING:
    from stui.daemon.client import DaemonClient
    from stui.schemas.state import Priority

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Completed:
    key: DedupKey


@dataclass
class _Queued:
    key: DedupKey
    priority: Priority
    request: Request


_STOP = object()


async def execute_request(client: DaemonClient, request: Request) -> ApiResponse:
    """Perform the single daemon call behind ``request``.

    Never raises: every failure becomes the response's ``error`` string.
    """
    try:
        value: object = None
        if isinstance(request, BrowseFolder):
            value = await client.browse_folder(request.folder_id, request.prefix or None)
        elif isinstance(request, GetFileInfo):
            value = await client.get_file_info(request.folder_id, request.file_path)
        elif isinstance(request, GetFolderStatus):
            value = await client.get_folder_status(request.folder_id)
        elif isinstance(request, GetLocalChangedFiles):
            value = await client.get_local_changed_files(request.folder_id)
        elif isinstance(request, GetNeededFiles):
            value = await client.get_needed_files(request.folder_id)
        elif isinstance(request, GetIgnorePatterns):
            value = await client.get_ignore_patterns(request.folder_id)
        elif isinstance(request, RescanFolder):
            await client.rescan_folder(request.folder_id)
        elif isinstance(request, RevertFolder):
            await client.revert_folder(request.folder_id)
        elif isinstance(request, SetIgnorePatterns):
            await client.set_ignore_patterns(request.folder_id, list(request.patterns))
        else:
            msg = f"Unsupported request type: {type(request).__name__}"
            raise DaemonError(msg)
    except DaemonError as exc:
        logger.debug("Request %r failed: %s", request, exc)
        return ApiResponse(request=request, error=str(exc), error_kind=exc.error_type.value)
    except Exception as exc:
        logger.exception("Unexpected failure executing %r", request)
        return ApiResponse(
            request=request, error=f"Unexpected error: {exc}", error_kind=classify_error(exc).value
        )
    return ApiResponse(request=request, value=value)


class RequestScheduler:
    """Turn "fetch X" intents into at most ``max_concurrent`` outbound calls.

    Args:
        client: daemon client shared by all workers.
        max_concurrent: worker budget.
        drain_interval: period of the admission tick (seconds).
        max_admissions_per_tick: requests admitted per wake-up at most.
    """

    def __init__(
        self,
        client: DaemonClient,
        max_concurrent: int = 10,
        drain_interval: float = 0.01,
        max_admissions_per_tick: int = 5,
    ) -> None:
        if max_concurrent < 1:
            msg = f"max_concurrent must be >= 1, got {max_concurrent}"
            raise ValueError(msg)
        self._client = client
        self._max_concurrent = max_concurrent
        self._drain_interval = drain_interval
        self._max_admissions_per_tick = max_admissions_per_tick

        self.responses: asyncio.Queue[ApiResponse] = asyncio.Queue()
        self._inbox: asyncio.Queue[object] = asyncio.Queue()

        # Owned by the scheduler task.
        self._queue: deque[_Queued] = deque()
        self._in_flight: set[DedupKey] = set()
        self._workers: set[asyncio.Task[None]] = set()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def enqueue(self, request: Request) -> None:
        """Fire-and-forget: the result arrives later on ``responses``."""
        self._inbox.put_nowait(request)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self.run(), name="stui-request-scheduler")

    async def stop(self) -> None:
        """Stop admitting and wait for already dispatched workers to finish."""
        if self._task is None:
            return
        self._inbox.put_nowait(_STOP)
        await self._task
        self._task = None

    async def run(self) -> None:
        logger.info("Request scheduler started (max_concurrent=%d)", self._max_concurrent)
        stopping = False
        while not stopping:
            try:
                message = await asyncio.wait_for(self._inbox.get(), timeout=self._drain_interval)
            except TimeoutError:
                message = None

            # Take everything already waiting so one burst is ordered as a whole.
            while message is not None:
                if message is _STOP:
                    stopping = True
                else:
                    self._handle(message)
                try:
                    message = self._inbox.get_nowait()
                except asyncio.QueueEmpty:
                    message = None

            if not stopping:
                self._admit()

        if self._workers:
            await asyncio.gather(*self._workers)
        logger.info("Request scheduler stopped (%d request(s) left queued)", len(self._queue))

    def _handle(self, message: object) -> None:
        if isinstance(message, _Completed):
            self._in_flight.discard(message.key)
            if self._in_flight:
                logger.debug("Request completed, %d still in flight", len(self._in_flight))
            return
        self._insert(message)  # type: ignore[arg-type]

    def _insert(self, request: Request) -> None:
        key = dedup_key(request)
        priority = request_priority(request)

        if key in self._in_flight:
            logger.debug("Dropping duplicate of in-flight request %s", key)
            return

        for index, queued in enumerate(self._queue):
            if queued.key != key:
                continue
            if priority >= queued.priority:
                logger.debug("Dropping duplicate of queued request %s", key)
                return
            # Same request asked for more urgently: move it up.
            del self._queue[index]
            break

        position = next(
            (i for i, queued in enumerate(self._queue) if queued.priority > priority),
            len(self._queue),
        )
        self._queue.insert(position, _Queued(key=key, priority=priority, request=request))

    def _admit(self) -> None:
        admitted = 0
        while (
            self._queue
            and len(self._in_flight) < self._max_concurrent
            and admitted < self._max_admissions_per_tick
        ):
            queued = self._queue.popleft()
            self._in_flight.add(queued.key)
            worker = asyncio.create_task(self._run_worker(queued.key, queued.request))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
            admitted += 1

    async def _run_worker(self, key: DedupKey, request: Request) -> None:
        response = await execute_request(self._client, request)
        # Completion first, so a consumer re-requesting after the result is never deduplicated.
        self._inbox.put_nowait(_Completed(key))
        self.responses.put_nowait(response)
