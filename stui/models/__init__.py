"""SQLAlchemy ORM models for the stui cache database."""

from stui.models.base import Base
from stui.models.browse import BrowseCacheEntry
from stui.models.folder import EventCursor, FolderListCache, FolderStatusCache
from stui.models.sync_state import LocalChangedCache, NeededFileCache, SyncStateCache

__all__ = [
    "Base",
    "BrowseCacheEntry",
    "EventCursor",
    "FolderListCache",
    "FolderStatusCache",
    "LocalChangedCache",
    "NeededFileCache",
    "SyncStateCache",
]
