"""Translation of the daemon event stream into cache invalidations.

The listener long-polls ``/rest/events`` from a persisted cursor. Each event
of interest becomes one or more ``CacheInvalidation`` values pushed onto a
queue; folders whose index changed locally also get a status refresh
enqueued. Transport failures are retried forever with a fixed delay.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stui.exceptions import CacheStorageError, DaemonError
from stui.schemas.requests import GetFolderStatus
from stui.services.datetime_service import parse_event_time

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from stui.daemon.client import DaemonClient
    from stui.schemas.daemon import DaemonEvent
    from stui.schemas.requests import Request
    from stui.services.cache_service import SyncCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileInvalidation:
    folder_id: str
    file_path: str
    timestamp: datetime


@dataclass(frozen=True)
class DirectoryInvalidation:
    """An empty ``dir_path`` means the whole folder."""

    folder_id: str
    dir_path: str
    timestamp: datetime


@dataclass(frozen=True)
class ItemSyncStarted:
    folder_id: str
    file_path: str
    timestamp: datetime


@dataclass(frozen=True)
class ItemSyncFinished:
    folder_id: str
    file_path: str
    timestamp: datetime


CacheInvalidation = FileInvalidation | DirectoryInvalidation | ItemSyncStarted | ItemSyncFinished


@dataclass
class TranslatedEvent:
    invalidations: list[CacheInvalidation] = field(default_factory=list)
    status_folders: list[str] = field(default_factory=list)


def _item_path(event: DaemonEvent) -> str | None:
    # Change-detected events name the item "path" on some daemon versions.
    return event.data_str("item") or event.data_str("path")


def _item_invalidation(
    event: DaemonEvent, folder_id: str, path: str, timestamp: datetime
) -> CacheInvalidation:
    if event.data_str("type") == "dir" or path.endswith("/"):
        return DirectoryInvalidation(folder_id=folder_id, dir_path=path, timestamp=timestamp)
    return FileInvalidation(folder_id=folder_id, file_path=path, timestamp=timestamp)


def translate_event(event: DaemonEvent) -> TranslatedEvent:
    """Map one daemon event to invalidations and folders needing a status refresh.

    Events of unknown type, or missing the fields they need, translate to
    nothing.
    """
    result = TranslatedEvent()
    folder_id = event.data_str("folder")
    if folder_id is None:
        logger.debug("Ignoring event id=%d type=%s without folder", event.id, event.type)
        return result

    timestamp = parse_event_time(event.time)

    if event.type == "LocalIndexUpdated":
        filenames = event.data.get("filenames") if isinstance(event.data, dict) else None
        for name in filenames or []:
            if isinstance(name, str):
                result.invalidations.append(
                    FileInvalidation(folder_id=folder_id, file_path=name, timestamp=timestamp)
                )
        result.status_folders.append(folder_id)

    elif event.type == "ItemStarted":
        path = _item_path(event)
        if path is not None:
            result.invalidations.append(
                ItemSyncStarted(folder_id=folder_id, file_path=path, timestamp=timestamp)
            )

    elif event.type == "ItemFinished":
        path = _item_path(event)
        if path is not None:
            result.invalidations.append(
                ItemSyncFinished(folder_id=folder_id, file_path=path, timestamp=timestamp)
            )
            result.invalidations.append(_item_invalidation(event, folder_id, path, timestamp))

    elif event.type in ("LocalChangeDetected", "RemoteChangeDetected"):
        path = _item_path(event)
        if path is not None:
            result.invalidations.append(_item_invalidation(event, folder_id, path, timestamp))

    elif event.type == "RemoteIndexUpdated":
        result.invalidations.append(
            DirectoryInvalidation(folder_id=folder_id, dir_path="", timestamp=timestamp)
        )

    else:
        logger.debug("Ignoring event id=%d type=%s", event.id, event.type)

    return result


class EventListener:
    """Long-poll the daemon event stream and publish cache invalidations.

    Args:
        client: daemon client used for ``get_events``.
        cache: holds the persisted event cursor.
        invalidations: queue receiving every ``CacheInvalidation``.
        enqueue: scheduler entry point for follow-up status requests.
        poll_timeout: server-side long-poll wait (seconds).
        retry_delay: pause after a failed poll (seconds).
        reset_threshold: a cursor above this that yields no events is reset
            to zero once, in case the daemon restarted and renumbered.
    """

    def __init__(
        self,
        client: DaemonClient,
        cache: SyncCache,
        invalidations: asyncio.Queue[CacheInvalidation],
        enqueue: Callable[[Request], None],
        poll_timeout: int = 60,
        retry_delay: float = 5.0,
        reset_threshold: int = 1000,
    ) -> None:
        self._client = client
        self._cache = cache
        self._invalidations = invalidations
        self._enqueue = enqueue
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._reset_threshold = reset_threshold
        self.cursor = 0
        self._tried_reset = False

    async def load_cursor(self) -> int:
        try:
            self.cursor = await self._cache.get_last_event_id()
        except CacheStorageError as exc:
            logger.warning("Could not load event cursor, starting from 0: %s", exc)
            self.cursor = 0
        return self.cursor

    async def _save_cursor(self, event_id: int) -> None:
        try:
            await self._cache.put_last_event_id(event_id)
        except CacheStorageError as exc:
            logger.warning("Could not persist event cursor %d: %s", event_id, exc)

    async def poll_once(self) -> int:
        """Run one long-poll and process its batch. Returns the number of events.

        Raises ``DaemonError`` when the poll itself fails.
        """
        events = await self._client.get_events(self.cursor, timeout=self._poll_timeout)

        if not events:
            if self.cursor > self._reset_threshold and not self._tried_reset:
                logger.info(
                    "No events after id %d, resetting event cursor to 0 (daemon restart?)",
                    self.cursor,
                )
                self._tried_reset = True
                self.cursor = 0
                await self._save_cursor(0)
            return 0

        for event in events:
            if self.cursor > 0 and event.id != self.cursor + 1:
                logger.warning("Missed events: last id %d, received id %d", self.cursor, event.id)

            translated = translate_event(event)
            for invalidation in translated.invalidations:
                logger.debug("Event id=%d -> %s", event.id, invalidation)
                self._invalidations.put_nowait(invalidation)
            for folder_id in translated.status_folders:
                self._enqueue(GetFolderStatus(folder_id=folder_id))
            self.cursor = event.id

        await self._save_cursor(self.cursor)
        return len(events)

    async def run(self) -> None:
        """Poll forever; cancel the task to stop."""
        await self.load_cursor()
        logger.info("Event listener started at event id %d", self.cursor)
        while True:
            try:
                await self.poll_once()
            except DaemonError as exc:
                logger.warning(
                    "Event poll failed (%s), retrying in %.0fs: %s",
                    exc.error_type.value,
                    self._retry_delay,
                    exc,
                )
                await asyncio.sleep(self._retry_delay)
