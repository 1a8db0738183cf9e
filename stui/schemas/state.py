"""Sync state, request priority and out-of-sync breakdown types."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class SyncState(enum.StrEnum):
    """Sync state of a single file or directory."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    LOCAL_ONLY = "LocalOnly"
    REMOTE_ONLY = "RemoteOnly"
    IGNORED = "Ignored"
    SYNCING = "Syncing"
    UNKNOWN = "Unknown"


class Priority(enum.IntEnum):
    """Request priority. Lower value is served first."""

    HIGH = 0
    MEDIUM = 1
    LOW = 2


class NeedCategory(enum.StrEnum):
    """Why an item is out of sync with the cluster."""

    DOWNLOADING = "downloading"
    QUEUED = "queued"
    REMOTE_ONLY = "remote_only"
    MODIFIED = "modified"
    LOCAL_ONLY = "local_only"


@dataclass
class FolderSyncBreakdown:
    """Counts of out-of-sync items in a folder, by category."""

    downloading: int = 0
    queued: int = 0
    remote_only: int = 0
    modified: int = 0
    local_only: int = 0

    @property
    def total(self) -> int:
        return self.downloading + self.queued + self.remote_only + self.modified + self.local_only
