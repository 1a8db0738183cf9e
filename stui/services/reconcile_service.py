"""Apply scheduler responses and event invalidations to the cache.

This is the only writer of daemon data into ``SyncCache``. Every processed
item is re-published on ``updates`` after its cache write so that a
presentation layer can redraw from the cache.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from stui.exceptions import CacheStorageError
from stui.schemas.requests import (
    ApiResponse,
    BrowseFolder,
    GetFileInfo,
    GetFolderStatus,
    GetLocalChangedFiles,
    GetNeededFiles,
)
from stui.schemas.state import Priority
from stui.services.event_service import (
    CacheInvalidation,
    DirectoryInvalidation,
    FileInvalidation,
    ItemSyncFinished,
    ItemSyncStarted,
)
from stui.services.path_service import normalize_prefix, parent_prefix
from stui.services.sync_state_service import derive_file_state

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from stui.schemas.daemon import BrowseItem, FileDetails, FolderStatus
    from stui.schemas.requests import Request
    from stui.services.aggregation_service import DirectoryAggregator
    from stui.services.cache_service import SyncCache

logger = logging.getLogger(__name__)

Update = ApiResponse | CacheInvalidation


class ResponseReconciler:
    """Write results into the cache and keep watched listings fresh.

    Watched prefixes are the directory levels currently on screen; after an
    invalidation touching one of them a High priority re-browse is enqueued.
    """

    def __init__(
        self,
        cache: SyncCache,
        enqueue: Callable[[Request], None],
        responses: asyncio.Queue[ApiResponse],
        invalidations: asyncio.Queue[CacheInvalidation],
        aggregator: DirectoryAggregator | None = None,
    ) -> None:
        self._cache = cache
        self._enqueue = enqueue
        self._responses = responses
        self._invalidations = invalidations
        self._aggregator = aggregator
        self.updates: asyncio.Queue[Update] = asyncio.Queue()
        self._watched: dict[str, set[str]] = {}
        self._syncing: dict[str, set[str]] = {}

    # Watched prefixes

    def watch(self, folder_id: str, prefix: str | None = None) -> None:
        self._watched.setdefault(folder_id, set()).add(normalize_prefix(prefix))

    def unwatch(self, folder_id: str, prefix: str | None = None) -> None:
        watched = self._watched.get(folder_id)
        if watched is not None:
            watched.discard(normalize_prefix(prefix))

    def set_watched(self, folder_id: str, prefixes: Iterable[str | None]) -> None:
        """Replace the folder's watched prefixes, e.g. with the visible breadcrumb levels."""
        self._watched[folder_id] = {normalize_prefix(prefix) for prefix in prefixes}

    def watched(self, folder_id: str) -> set[str]:
        return set(self._watched.get(folder_id, ()))

    def syncing_items(self, folder_id: str) -> set[str]:
        """Paths with an ItemStarted not yet followed by ItemFinished."""
        return set(self._syncing.get(folder_id, ()))

    def _refresh(self, folder_id: str, prefixes: Iterable[str]) -> None:
        for prefix in sorted(prefixes):
            self._enqueue(BrowseFolder(folder_id=folder_id, prefix=prefix, priority=Priority.HIGH))

    def _reset_aggregation(self, folder_id: str) -> None:
        if self._aggregator is not None:
            self._aggregator.reset(folder_id)

    # Responses

    async def handle_response(self, response: ApiResponse) -> None:
        request = response.request
        if not response.ok:
            logger.warning(
                "%s for folder=%s failed (%s): %s",
                request.kind,
                response.folder_id,
                response.error_kind,
                response.error,
            )
        else:
            try:
                if isinstance(request, GetFolderStatus):
                    await self._apply_folder_status(request.folder_id, response.value)
                elif isinstance(request, BrowseFolder):
                    await self._apply_listing(request, response.value)
                elif isinstance(request, GetFileInfo):
                    await self._apply_file_info(request, response.value)
                elif isinstance(request, GetLocalChangedFiles):
                    await self._cache.put_local_changed(request.folder_id, response.value or [])
                elif isinstance(request, GetNeededFiles):
                    await self._cache.put_needed_files(request.folder_id, response.value)
            except CacheStorageError as exc:
                logger.error(
                    "Cache write for %s folder=%s failed: %s", request.kind, request.folder_id, exc
                )
        self.updates.put_nowait(response)

    async def _apply_folder_status(self, folder_id: str, status: FolderStatus) -> None:
        previous = await self._cache.get_folder_sequence(folder_id)
        if previous is not None and previous != status.sequence:
            logger.info(
                "Folder %s sequence changed %d -> %d, dropping cached data",
                folder_id,
                previous,
                status.sequence,
            )
            await self._cache.invalidate_folder(folder_id)
            self._reset_aggregation(folder_id)
            self._refresh(folder_id, self._watched.get(folder_id, ()))
        await self._cache.put_folder_status(folder_id, status)

    async def _known_sequence(self, folder_id: str) -> int | None:
        sequence = await self._cache.get_folder_sequence(folder_id)
        if sequence is None:
            logger.debug("No known sequence for folder=%s, requesting status", folder_id)
            self._enqueue(GetFolderStatus(folder_id=folder_id))
        return sequence

    async def _apply_listing(self, request: BrowseFolder, items: list[BrowseItem]) -> None:
        sequence = await self._known_sequence(request.folder_id)
        if sequence is None:
            return
        await self._cache.put_listing(request.folder_id, request.prefix, items, sequence)

    async def _apply_file_info(self, request: GetFileInfo, details: FileDetails) -> None:
        sequence = await self._known_sequence(request.folder_id)
        if sequence is None:
            return
        state = derive_file_state(details)
        await self._cache.put_state(request.folder_id, request.file_path, state, sequence)

    # Invalidations

    async def handle_invalidation(self, invalidation: CacheInvalidation) -> None:
        folder_id = invalidation.folder_id
        try:
            if isinstance(invalidation, FileInvalidation):
                await self._cache.invalidate_file(folder_id, invalidation.file_path)
                parent = parent_prefix(invalidation.file_path)
                self._refresh(folder_id, self._watched.get(folder_id, set()) & {parent})
            elif isinstance(invalidation, DirectoryInvalidation):
                await self._cache.invalidate(folder_id, invalidation.dir_path)
                if not normalize_prefix(invalidation.dir_path):
                    self._reset_aggregation(folder_id)
                self._refresh(folder_id, self._affected_prefixes(folder_id, invalidation.dir_path))
            elif isinstance(invalidation, ItemSyncStarted):
                self._syncing.setdefault(folder_id, set()).add(invalidation.file_path)
            elif isinstance(invalidation, ItemSyncFinished):
                self._syncing.get(folder_id, set()).discard(invalidation.file_path)
        except CacheStorageError as exc:
            logger.error("Cache invalidation for folder=%s failed: %s", folder_id, exc)
        self.updates.put_nowait(invalidation)

    def _affected_prefixes(self, folder_id: str, dir_path: str) -> set[str]:
        watched = self._watched.get(folder_id, set())
        directory = normalize_prefix(dir_path)
        if not directory:
            return set(watched)
        return {
            prefix
            for prefix in watched
            if prefix.startswith(directory) or prefix == parent_prefix(directory)
        }

    # Task loops

    async def _consume_responses(self) -> None:
        while True:
            response = await self._responses.get()
            try:
                await self.handle_response(response)
            except Exception:
                logger.exception("Failed to apply response for %r", response.request)
            finally:
                self._responses.task_done()

    async def _consume_invalidations(self) -> None:
        while True:
            invalidation = await self._invalidations.get()
            try:
                await self.handle_invalidation(invalidation)
            except Exception:
                logger.exception("Failed to apply %r", invalidation)
            finally:
                self._invalidations.task_done()

    async def run(self) -> None:
        """Process both input queues until cancelled."""
        await asyncio.gather(self._consume_responses(), self._consume_invalidations())
