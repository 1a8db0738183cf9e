"""Throttled roll-up of directory sync states from the cache."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from stui.services.path_service import normalize_prefix
from stui.services.sync_state_service import AggregationThrottle, aggregate_directory_state

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from stui.schemas.state import SyncState
    from stui.services.cache_service import SyncCache

logger = logging.getLogger(__name__)


class DirectoryAggregator:
    """Compute directory states from the states of their cached descendants.

    The descendant scan for a directory runs at most once per interval; in
    between, the last scanned child states are combined with the caller's
    direct state. ``reset`` forces a fresh scan for a whole folder.
    """

    def __init__(
        self,
        cache: SyncCache,
        interval_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache = cache
        self._throttle = AggregationThrottle(interval_seconds, clock)
        self._child_states: dict[tuple[str, str], frozenset[SyncState]] = {}

    async def directory_states(
        self,
        folder_id: str,
        directories: Mapping[str, SyncState | None],
        sequence: int,
    ) -> dict[str, SyncState]:
        """Aggregate state of each directory, keyed as given.

        ``directories`` maps a directory path to its own (direct) state, or
        None when it was never fetched.
        """
        due: list[str] = []
        for path in directories:
            key = normalize_prefix(path)
            ran = self._throttle.should_run(folder_id, key)
            if ran or (folder_id, key) not in self._child_states:
                due.append(key)

        if due:
            all_cached = await self._cache.get_all_listings(folder_id, sequence)
            for key in due:
                descendants = [
                    path for path, _ in all_cached if path.startswith(key) and path != key
                ]
                states = await self._cache.get_states_unvalidated(folder_id, descendants)
                self._child_states[(folder_id, key)] = frozenset(states.values())
            logger.debug("Aggregated %d directories in folder=%s", len(due), folder_id)

        return {
            path: aggregate_directory_state(
                direct, self._child_states[(folder_id, normalize_prefix(path))]
            )
            for path, direct in directories.items()
        }

    def reset(self, folder_id: str) -> None:
        """Drop the folder's scanned child states so the next call rescans."""
        self._throttle.reset(folder_id)
        for key in [k for k in self._child_states if k[0] == folder_id]:
            del self._child_states[key]
