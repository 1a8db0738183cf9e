"""Sync state derivation and directory aggregation. Pure functions, no I/O."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, TypeVar

from stui.schemas.state import SyncState

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from stui.schemas.daemon import FileDetails, FolderStatus

T = TypeVar("T")

# Most attention-worthy first.
DISPLAY_PRIORITY: tuple[SyncState, ...] = (
    SyncState.OUT_OF_SYNC,
    SyncState.SYNCING,
    SyncState.REMOTE_ONLY,
    SyncState.LOCAL_ONLY,
    SyncState.IGNORED,
    SyncState.UNKNOWN,
    SyncState.SYNCED,
)
_PRIORITY_INDEX = {state: index for index, state in enumerate(DISPLAY_PRIORITY)}

# Child states that bubble up to a directory, checked in this order.
_BUBBLING_STATES: tuple[SyncState, ...] = (
    SyncState.SYNCING,
    SyncState.REMOTE_ONLY,
    SyncState.OUT_OF_SYNC,
    SyncState.LOCAL_ONLY,
)


def derive_file_state(details: FileDetails) -> SyncState:
    """Derive one item's sync state from its local and global metadata.

    ``local`` is what this device has, ``global_`` is the cluster consensus and
    ``availability`` lists devices holding the global version.
    """
    local = details.local
    global_ = details.global_

    if local is not None and global_ is not None:
        if local.ignored:
            return SyncState.IGNORED
        if local.deleted and global_.deleted:
            return SyncState.SYNCED
        if local.deleted:
            return SyncState.REMOTE_ONLY
        if global_.deleted:
            return SyncState.LOCAL_ONLY
        if local.version != global_.version or local.content_hash != global_.content_hash:
            return SyncState.OUT_OF_SYNC
        return SyncState.SYNCED

    if local is not None:
        if local.ignored:
            return SyncState.IGNORED
        if not details.availability:
            return SyncState.LOCAL_ONLY
        return SyncState.OUT_OF_SYNC

    if global_ is not None:
        return SyncState.REMOTE_ONLY

    return SyncState.UNKNOWN


def aggregate_directory_state(
    direct_state: SyncState | None, child_states: Iterable[SyncState]
) -> SyncState:
    """Combine a directory's own state with the states of its cached children.

    A RemoteOnly or Ignored directory keeps its own state. Otherwise the first
    of Syncing, RemoteOnly, OutOfSync, LocalOnly found among the children wins.
    A directory that was never fetched counts as Synced.
    """
    direct = direct_state if direct_state is not None else SyncState.SYNCED
    if direct in (SyncState.REMOTE_ONLY, SyncState.IGNORED):
        return direct

    present = set(child_states)
    for state in _BUBBLING_STATES:
        if state in present:
            return state
    return direct


def sync_state_priority(state: SyncState) -> int:
    """Sort key: lower is more attention-worthy."""
    return _PRIORITY_INDEX[state]


def sort_by_sync_state(
    items: Iterable[T],
    state_of: Callable[[T], SyncState | None],
    name_of: Callable[[T], str] = str,
) -> list[T]:
    """Order items by display priority, then by name. Missing states sort as Unknown."""
    return sorted(
        items,
        key=lambda item: (
            sync_state_priority(state_of(item) or SyncState.UNKNOWN),
            name_of(item).lower(),
        ),
    )


def has_local_changes(status: FolderStatus | None) -> bool:
    """A receive-only folder has revertable local changes."""
    return status is not None and status.receive_only_total_items > 0


class AggregationThrottle:
    """Allow directory re-aggregation at most once per interval per directory."""

    def __init__(
        self, interval_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._interval = interval_seconds
        self._clock = clock
        self._last_run: dict[tuple[str, str], float] = {}

    def should_run(self, folder_id: str, directory: str) -> bool:
        """Return True and record the run if the directory's interval has elapsed."""
        key = (folder_id, directory)
        now = self._clock()
        last = self._last_run.get(key)
        if last is not None and now - last < self._interval:
            return False
        self._last_run[key] = now
        return True

    def reset(self, folder_id: str) -> None:
        """Forget all runs for a folder so the next aggregation happens immediately."""
        for key in [k for k in self._last_run if k[0] == folder_id]:
            del self._last_run[key]
