"""Sequence-validated cache of directory listings, sync states and folder status.

Every listing and state row is tagged with the folder sequence observed when
it was captured. A row is only returned when its tag equals the caller's
current sequence, so a missed or reordered daemon event can never surface
stale data: the next sequence check routes around it.

Needed items, local changes and the folder list are not sequence-tagged;
the first two expire after a short TTL instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from stui.exceptions import CacheStorageError
from stui.models import (
    BrowseCacheEntry,
    EventCursor,
    FolderListCache,
    FolderStatusCache,
    LocalChangedCache,
    NeededFileCache,
    SyncStateCache,
)
from stui.schemas.daemon import BrowseItem, Folder, FolderStatus
from stui.schemas.state import FolderSyncBreakdown, NeedCategory, SyncState
from stui.services.path_service import normalize_item_path, normalize_prefix, parent_prefix

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from stui.schemas.daemon import NeedResponse

logger = logging.getLogger(__name__)

# Marker row stored with every listing so that an empty directory is still a hit.
_LISTING_MARKER = ""
_MARKER_TYPE = "LISTING_MARKER"

_TRANSIENT_FOLDER_STATES = frozenset({"scanning", "syncing"})
LOCAL_CHANGED_TTL_SECONDS = 30.0
NEEDED_FILES_TTL_SECONDS = 30.0
_IN_CLAUSE_CHUNK = 500
# Four bound parameters per upserted row.
_UPSERT_CHUNK = 200

_FOLDERS = TypeAdapter(list[Folder])


def serialize_sync_state(state: SyncState) -> str:
    return state.value


def parse_sync_state(raw: str) -> SyncState:
    """Parse a stored state. ``Syncing`` never survives a restart."""
    if raw == SyncState.SYNCING.value:
        logger.debug("Found stale 'Syncing' state in cache, reading it as Unknown")
        return SyncState.UNKNOWN
    try:
        return SyncState(raw)
    except ValueError:
        return SyncState.UNKNOWN


class SyncCache:
    """Durable store shared by result writers and the event invalidator.

    All access goes through one ``asyncio.Lock`` and every write runs in a
    single transaction, so readers never observe a half-replaced listing.
    Storage failures surface as ``CacheStorageError``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            try:
                async with self._session_factory() as session, session.begin():
                    yield session
            except (SQLAlchemyError, OSError) as exc:
                raise CacheStorageError(f"Cache database error: {exc}") from exc

    # Directory listings

    async def get_listing(
        self, folder_id: str, prefix: str | None, current_sequence: int
    ) -> list[BrowseItem] | None:
        """Return the listing for ``(folder_id, prefix)`` if captured at ``current_sequence``."""
        key = normalize_prefix(prefix)
        async with self._transaction() as session:
            result = await session.execute(
                select(BrowseCacheEntry)
                .where(BrowseCacheEntry.folder_id == folder_id, BrowseCacheEntry.prefix == key)
                .order_by(BrowseCacheEntry.position)
            )
            rows = list(result.scalars())

        if not rows:
            logger.debug("Listing miss folder=%s prefix=%r (absent)", folder_id, key)
            return None
        if any(row.folder_sequence != current_sequence for row in rows):
            logger.debug(
                "Listing miss folder=%s prefix=%r (cached seq=%d, current=%d)",
                folder_id,
                key,
                rows[0].folder_sequence,
                current_sequence,
            )
            return None
        return [
            BrowseItem(name=row.name, item_type=row.item_type, size=row.size, mod_time=row.mod_time)
            for row in rows
            if row.item_type != _MARKER_TYPE
        ]

    async def put_listing(
        self, folder_id: str, prefix: str | None, items: Iterable[BrowseItem], sequence: int
    ) -> None:
        """Replace the listing for ``(folder_id, prefix)`` with ``items`` captured at ``sequence``.

        If the folder holds listings captured at another sequence, all of them
        are dropped first.
        """
        key = normalize_prefix(prefix)
        unique: dict[str, BrowseItem] = {}
        for item in items:
            if item.name and item.name not in unique:
                unique[item.name] = item

        async with self._transaction() as session:
            stale = await session.execute(
                select(BrowseCacheEntry.folder_sequence)
                .where(
                    BrowseCacheEntry.folder_id == folder_id,
                    BrowseCacheEntry.folder_sequence != sequence,
                )
                .limit(1)
            )
            old_sequence = stale.scalar_one_or_none()
            if old_sequence is not None:
                cleared = await session.execute(
                    delete(BrowseCacheEntry).where(BrowseCacheEntry.folder_id == folder_id)
                )
                logger.debug(
                    "Sequence changed (%d -> %d), cleared %d listing rows for folder=%s",
                    old_sequence,
                    sequence,
                    cleared.rowcount,
                    folder_id,
                )

            await session.execute(
                delete(BrowseCacheEntry).where(
                    BrowseCacheEntry.folder_id == folder_id, BrowseCacheEntry.prefix == key
                )
            )
            session.add(
                BrowseCacheEntry(
                    folder_id=folder_id,
                    prefix=key,
                    name=_LISTING_MARKER,
                    folder_sequence=sequence,
                    position=-1,
                    item_type=_MARKER_TYPE,
                )
            )
            session.add_all(
                BrowseCacheEntry(
                    folder_id=folder_id,
                    prefix=key,
                    name=item.name,
                    folder_sequence=sequence,
                    position=position,
                    item_type=item.item_type,
                    mod_time=item.mod_time,
                    size=item.size,
                )
                for position, item in enumerate(unique.values())
            )
        logger.debug(
            "Saved listing folder=%s prefix=%r seq=%d items=%d",
            folder_id,
            key,
            sequence,
            len(unique),
        )

    async def get_all_listings(
        self, folder_id: str, current_sequence: int
    ) -> list[tuple[str, BrowseItem]]:
        """Every cached ``(full_path, item)`` of the folder valid at ``current_sequence``."""
        async with self._transaction() as session:
            result = await session.execute(
                select(BrowseCacheEntry)
                .where(
                    BrowseCacheEntry.folder_id == folder_id,
                    BrowseCacheEntry.folder_sequence == current_sequence,
                    BrowseCacheEntry.item_type != _MARKER_TYPE,
                )
                .order_by(BrowseCacheEntry.prefix, BrowseCacheEntry.position)
            )
            rows = list(result.scalars())
        return [
            (
                f"{row.prefix}{row.name}",
                BrowseItem(
                    name=row.name, item_type=row.item_type, size=row.size, mod_time=row.mod_time
                ),
            )
            for row in rows
        ]

    # Sync states

    async def get_state(
        self, folder_id: str, file_path: str, current_sequence: int
    ) -> SyncState | None:
        async with self._transaction() as session:
            row = await session.get(SyncStateCache, (folder_id, file_path))
            if row is None or row.file_sequence != current_sequence:
                return None
            return parse_sync_state(row.sync_state)

    async def get_state_unvalidated(self, folder_id: str, file_path: str) -> SyncState | None:
        """Return the stored state regardless of sequence.

        Only for low-confidence instant display while a validated fetch is in
        flight.
        """
        async with self._transaction() as session:
            row = await session.get(SyncStateCache, (folder_id, file_path))
            return None if row is None else parse_sync_state(row.sync_state)

    async def get_states_unvalidated(
        self, folder_id: str, file_paths: Iterable[str]
    ) -> dict[str, SyncState]:
        """Batch form of ``get_state_unvalidated``; missing paths are omitted."""
        paths = list(dict.fromkeys(file_paths))
        states: dict[str, SyncState] = {}
        async with self._transaction() as session:
            for start in range(0, len(paths), _IN_CLAUSE_CHUNK):
                chunk = paths[start : start + _IN_CLAUSE_CHUNK]
                result = await session.execute(
                    select(SyncStateCache.file_path, SyncStateCache.sync_state).where(
                        SyncStateCache.folder_id == folder_id,
                        SyncStateCache.file_path.in_(chunk),
                    )
                )
                for path, raw in result:
                    states[path] = parse_sync_state(raw)
        return states

    async def put_state(
        self, folder_id: str, file_path: str, state: SyncState, sequence: int
    ) -> None:
        await self.put_states(folder_id, {file_path: state}, sequence)

    async def put_states(
        self, folder_id: str, states: Mapping[str, SyncState], sequence: int
    ) -> None:
        """Upsert several states captured at ``sequence`` in one transaction."""
        if not states:
            return
        rows = [
            {
                "folder_id": folder_id,
                "file_path": path,
                "file_sequence": sequence,
                "sync_state": serialize_sync_state(state),
            }
            for path, state in states.items()
        ]
        async with self._transaction() as session:
            for start in range(0, len(rows), _UPSERT_CHUNK):
                stmt = sqlite_insert(SyncStateCache).values(rows[start : start + _UPSERT_CHUNK])
                stmt = stmt.on_conflict_do_update(
                    index_elements=[SyncStateCache.folder_id, SyncStateCache.file_path],
                    set_={
                        "file_sequence": stmt.excluded.file_sequence,
                        "sync_state": stmt.excluded.sync_state,
                    },
                )
                await session.execute(stmt)

    # Invalidation

    async def invalidate(self, folder_id: str, path: str) -> None:
        """Drop every listing and state at or under ``path``.

        An empty path means the whole folder: every prefix is dropped, not only
        the root listing.
        """
        directory = normalize_prefix(path)
        if not directory:
            await self.invalidate_folder(folder_id)
            return

        exact = directory.rstrip("/")
        # Case-sensitive prefix match.
        width = len(directory)
        async with self._transaction() as session:
            browse_deleted = await session.execute(
                delete(BrowseCacheEntry).where(
                    BrowseCacheEntry.folder_id == folder_id,
                    func.substr(BrowseCacheEntry.prefix, 1, width) == directory,
                )
            )
            sync_deleted = await session.execute(
                delete(SyncStateCache).where(
                    SyncStateCache.folder_id == folder_id,
                    or_(
                        SyncStateCache.file_path == exact,
                        func.substr(SyncStateCache.file_path, 1, width) == directory,
                    ),
                )
            )
        logger.debug(
            "Invalidated directory folder=%s dir=%r: %d listing rows, %d states",
            folder_id,
            directory,
            browse_deleted.rowcount,
            sync_deleted.rowcount,
        )

    async def invalidate_file(self, folder_id: str, file_path: str) -> None:
        """Drop one item's state and the listing of its parent directory."""
        parent = parent_prefix(file_path)
        async with self._transaction() as session:
            await session.execute(
                delete(SyncStateCache).where(
                    SyncStateCache.folder_id == folder_id,
                    SyncStateCache.file_path == normalize_item_path(file_path),
                )
            )
            await session.execute(
                delete(BrowseCacheEntry).where(
                    BrowseCacheEntry.folder_id == folder_id, BrowseCacheEntry.prefix == parent
                )
            )
        logger.debug("Invalidated file folder=%s path=%r parent=%r", folder_id, file_path, parent)

    async def invalidate_folder(self, folder_id: str) -> None:
        """Drop all listings, states and needed items of the folder."""
        async with self._transaction() as session:
            browse_deleted = await session.execute(
                delete(BrowseCacheEntry).where(BrowseCacheEntry.folder_id == folder_id)
            )
            sync_deleted = await session.execute(
                delete(SyncStateCache).where(SyncStateCache.folder_id == folder_id)
            )
            await session.execute(
                delete(NeededFileCache).where(NeededFileCache.folder_id == folder_id)
            )
        logger.debug(
            "Invalidated folder=%s: %d listing rows, %d states",
            folder_id,
            browse_deleted.rowcount,
            sync_deleted.rowcount,
        )

    # Folder status

    async def get_folder_sequence(self, folder_id: str) -> int | None:
        async with self._transaction() as session:
            row = await session.get(FolderStatusCache, folder_id)
            return None if row is None else row.sequence

    async def get_folder_status(self, folder_id: str) -> FolderStatus | None:
        """Return the stored status; transient states are reported as ``idle``."""
        async with self._transaction() as session:
            row = await session.get(FolderStatusCache, folder_id)
            if row is None:
                return None
            state = "idle" if row.state in _TRANSIENT_FOLDER_STATES else row.state
            return FolderStatus(
                state=state,
                sequence=row.sequence,
                need_total_items=row.need_total_items,
                receive_only_total_items=row.receive_only_total_items,
                global_bytes=row.global_bytes,
                local_bytes=row.local_bytes,
                need_bytes=row.need_bytes,
                receive_only_changed_bytes=row.receive_only_changed_bytes,
                global_total_items=row.global_total_items,
                local_files=row.local_files,
                local_directories=row.local_directories,
                global_files=row.global_files,
                global_directories=row.global_directories,
            )

    async def put_folder_status(self, folder_id: str, status: FolderStatus) -> None:
        async with self._transaction() as session:
            await session.merge(
                FolderStatusCache(
                    folder_id=folder_id,
                    sequence=status.sequence,
                    state=status.state,
                    need_total_items=status.need_total_items,
                    receive_only_total_items=status.receive_only_total_items,
                    global_bytes=status.global_bytes,
                    local_bytes=status.local_bytes,
                    need_bytes=status.need_bytes,
                    receive_only_changed_bytes=status.receive_only_changed_bytes,
                    global_total_items=status.global_total_items,
                    local_files=status.local_files,
                    local_directories=status.local_directories,
                    global_files=status.global_files,
                    global_directories=status.global_directories,
                )
            )

    # Event cursor

    async def get_last_event_id(self) -> int:
        async with self._transaction() as session:
            row = await session.get(EventCursor, 1)
            return 0 if row is None else row.last_event_id

    async def put_last_event_id(self, event_id: int) -> None:
        async with self._transaction() as session:
            await session.merge(EventCursor(id=1, last_event_id=event_id))

    # Locally changed files (receive-only folders)

    async def put_local_changed(self, folder_id: str, file_paths: Iterable[str]) -> None:
        """Replace the folder's locally-changed set."""
        now = time.time()
        async with self._transaction() as session:
            await session.execute(
                delete(LocalChangedCache).where(LocalChangedCache.folder_id == folder_id)
            )
            session.add_all(
                LocalChangedCache(folder_id=folder_id, file_path=path, cached_at=now)
                for path in dict.fromkeys(file_paths)
            )

    async def get_local_changed(self, folder_id: str) -> list[str]:
        """Locally-changed paths captured within the last ``LOCAL_CHANGED_TTL_SECONDS``."""
        cutoff = time.time() - LOCAL_CHANGED_TTL_SECONDS
        async with self._transaction() as session:
            result = await session.execute(
                select(LocalChangedCache.file_path)
                .where(
                    LocalChangedCache.folder_id == folder_id,
                    LocalChangedCache.cached_at > cutoff,
                )
                .order_by(LocalChangedCache.file_path)
            )
            return list(result.scalars())

    # Needed files (out-of-sync items)

    async def put_needed_files(self, folder_id: str, need: NeedResponse) -> None:
        """Replace the folder's needed items with ``need``, tagged by transfer stage.

        An item listed in several stages keeps the most advanced one.
        """
        categories: dict[str, NeedCategory] = {}
        for category, entries in (
            (NeedCategory.REMOTE_ONLY, need.rest),
            (NeedCategory.QUEUED, need.queued),
            (NeedCategory.DOWNLOADING, need.progress),
        ):
            for entry in entries:
                categories[entry.name] = category

        now = time.time()
        async with self._transaction() as session:
            await session.execute(
                delete(NeededFileCache).where(NeededFileCache.folder_id == folder_id)
            )
            session.add_all(
                NeededFileCache(
                    folder_id=folder_id, file_path=path, category=category.value, cached_at=now
                )
                for path, category in categories.items()
            )
        logger.debug("Cached %d needed items for folder=%s", len(categories), folder_id)

    async def get_out_of_sync_items(self, folder_id: str) -> dict[str, NeedCategory]:
        """Needed items captured within the last ``NEEDED_FILES_TTL_SECONDS``, by path."""
        cutoff = time.time() - NEEDED_FILES_TTL_SECONDS
        async with self._transaction() as session:
            result = await session.execute(
                select(NeededFileCache.file_path, NeededFileCache.category).where(
                    NeededFileCache.folder_id == folder_id,
                    NeededFileCache.cached_at > cutoff,
                )
            )
            return {path: NeedCategory(category) for path, category in result}

    async def get_folder_sync_breakdown(self, folder_id: str) -> FolderSyncBreakdown:
        """Count fresh needed items by category, plus fresh local changes as ``local_only``."""
        need_cutoff = time.time() - NEEDED_FILES_TTL_SECONDS
        local_cutoff = time.time() - LOCAL_CHANGED_TTL_SECONDS
        breakdown = FolderSyncBreakdown()
        async with self._transaction() as session:
            result = await session.execute(
                select(NeededFileCache.category, func.count())
                .where(
                    NeededFileCache.folder_id == folder_id,
                    NeededFileCache.cached_at > need_cutoff,
                )
                .group_by(NeededFileCache.category)
            )
            for category, count in result:
                setattr(breakdown, NeedCategory(category).value, count)
            local = await session.execute(
                select(func.count())
                .select_from(LocalChangedCache)
                .where(
                    LocalChangedCache.folder_id == folder_id,
                    LocalChangedCache.cached_at > local_cutoff,
                )
            )
            breakdown.local_only += local.scalar_one()
        return breakdown

    # Folder list

    async def put_folders(self, folders: Iterable[Folder]) -> None:
        """Remember the last folder list so it can be shown while the daemon is down."""
        folder_list = list(folders)
        data = _FOLDERS.dump_json(folder_list, by_alias=True).decode()
        async with self._transaction() as session:
            await session.merge(FolderListCache(id=1, data=data, cached_at=time.time()))
        logger.debug("Cached %d folders", len(folder_list))

    async def get_folders(self) -> list[Folder] | None:
        """The last stored folder list, or None if there is none or it can't be read."""
        async with self._transaction() as session:
            row = await session.get(FolderListCache, 1)
            if row is None:
                return None
            data = row.data
        try:
            return _FOLDERS.validate_json(data)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable cached folder list: %s", exc)
            return None
