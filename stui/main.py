"""Core runtime: wires cache, daemon client, scheduler, event listener and reconciler."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING

from stui.config import Settings
from stui.daemon.client import DaemonClient
from stui.database import create_engine, ensure_tables
from stui.schemas.requests import ApiResponse, request_target
from stui.services.aggregation_service import DirectoryAggregator
from stui.services.cache_service import SyncCache
from stui.services.event_service import CacheInvalidation, EventListener
from stui.services.reconcile_service import ResponseReconciler
from stui.services.scheduler_service import RequestScheduler

if TYPE_CHECKING:
    from collections.abc import Iterable

    import httpx
    from sqlalchemy.ext.asyncio import AsyncEngine

    from stui.schemas.requests import Request
    from stui.services.reconcile_service import Update

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stderr,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


class SyncCore:
    """Running instance of the sync client core.

    Use as an async context manager. ``listen_events=False`` skips the event
    listener, for one-shot commands.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        listen_events: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._listen_events = listen_events
        self._transport = transport
        self._engine: AsyncEngine | None = None
        self._tasks: list[asyncio.Task[None]] = []

    async def __aenter__(self) -> SyncCore:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    async def start(self) -> None:
        settings = self.settings
        settings.validate_runtime()
        logger.info("Starting stui core (daemon=%s, debug=%s)", settings.base_url, settings.debug)

        try:
            engine, session_factory = create_engine(settings)
            await ensure_tables(engine)
        except Exception as exc:
            logger.critical(
                "Failed to initialize cache database: %s. Check database path and permissions.",
                exc,
            )
            raise
        self._engine = engine
        self.cache = SyncCache(session_factory)
        self.aggregator = DirectoryAggregator(self.cache, settings.directory_update_interval)

        self.client = DaemonClient(
            settings.base_url,
            settings.api_key,
            timeout=settings.request_timeout,
            transport=self._transport,
        )
        self.scheduler = RequestScheduler(
            self.client,
            max_concurrent=settings.max_concurrent_requests,
            drain_interval=settings.drain_interval,
            max_admissions_per_tick=settings.max_admissions_per_tick,
        )
        self.invalidations: asyncio.Queue[CacheInvalidation] = asyncio.Queue()
        self.reconciler = ResponseReconciler(
            self.cache,
            self.scheduler.enqueue,
            self.scheduler.responses,
            self.invalidations,
            aggregator=self.aggregator,
        )
        self.listener = EventListener(
            self.client,
            self.cache,
            self.invalidations,
            self.scheduler.enqueue,
            poll_timeout=settings.event_poll_timeout,
            retry_delay=settings.event_retry_delay,
            reset_threshold=settings.event_reset_threshold,
        )

        self.scheduler.start()
        self._tasks.append(asyncio.create_task(self.reconciler.run(), name="stui-reconciler"))
        if self._listen_events:
            self._tasks.append(asyncio.create_task(self.listener.run(), name="stui-events"))

    async def stop(self) -> None:
        """Stop the listener, let dispatched requests finish and apply their results."""
        if self._engine is None:
            return
        if self._listen_events and self._tasks:
            listener_task = self._tasks.pop()
            listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener_task

        await self.scheduler.stop()
        await self.scheduler.responses.join()
        await self.invalidations.join()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        try:
            await self.client.aclose()
        except Exception as exc:
            logger.error("Error closing daemon client: %s", exc, exc_info=True)
        await self._engine.dispose()
        self._engine = None
        logger.info("stui core stopped")

    @property
    def updates(self) -> asyncio.Queue[Update]:
        return self.reconciler.updates

    def enqueue(self, request: Request) -> None:
        self.scheduler.enqueue(request)

    async def fetch(self, request: Request) -> ApiResponse:
        """Enqueue ``request`` and wait until its response has been applied to the cache.

        Other updates consumed while waiting are dropped, so only one caller
        should read ``updates`` this way at a time.
        """
        target = request_target(request)
        self.enqueue(request)
        while True:
            update = await self.updates.get()
            if isinstance(update, ApiResponse) and request_target(update.request) == target:
                return update

    async def fetch_all(self, requests: Iterable[Request]) -> list[ApiResponse]:
        """Enqueue every request and wait for one applied response per distinct target."""
        pending = {request_target(request): request for request in requests}
        for request in pending.values():
            self.enqueue(request)
        responses: list[ApiResponse] = []
        while pending:
            update = await self.updates.get()
            if not isinstance(update, ApiResponse):
                continue
            target = request_target(update.request)
            if target in pending:
                del pending[target]
                responses.append(update)
        return responses
