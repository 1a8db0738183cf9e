"""Command-line client for the stui sync core."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TYPE_CHECKING, Any

from stui.config import Settings
from stui.exceptions import DaemonError
from stui.main import SyncCore, _configure_logging
from stui.schemas.requests import (
    BrowseFolder,
    GetFileInfo,
    GetFolderStatus,
    GetIgnorePatterns,
    GetLocalChangedFiles,
    GetNeededFiles,
    RescanFolder,
    RevertFolder,
    SetIgnorePatterns,
)
from stui.schemas.state import Priority, SyncState
from stui.services.datetime_service import format_datetime, parse_mod_time
from stui.services.event_service import (
    DirectoryInvalidation,
    FileInvalidation,
    ItemSyncFinished,
    ItemSyncStarted,
)
from stui.services.path_service import normalize_prefix
from stui.services.sync_state_service import has_local_changes, sort_by_sync_state

if TYPE_CHECKING:
    from stui.schemas.daemon import BrowseItem, Folder, FolderStatus
    from stui.schemas.requests import ApiResponse
    from stui.schemas.state import FolderSyncBreakdown

STATE_ICONS = {
    SyncState.SYNCED: "ok",
    SyncState.OUT_OF_SYNC: "!!",
    SyncState.LOCAL_ONLY: "L",
    SyncState.REMOTE_ONLY: "R",
    SyncState.IGNORED: "ig",
    SyncState.SYNCING: "..",
    SyncState.UNKNOWN: "?",
}


class CommandError(Exception):
    """A command failed; the message is shown to the user."""


def format_size(size: int) -> str:
    """Human readable byte count."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _unwrap(response: ApiResponse) -> Any:
    if not response.ok:
        raise CommandError(f"{response.request.kind} failed: {response.error}")
    return response.value


async def _ensure_sequence(core: SyncCore, folder_id: str) -> int:
    status: FolderStatus = _unwrap(await core.fetch(GetFolderStatus(folder_id=folder_id)))
    return status.sequence


async def _folder_list(core: SyncCore) -> list[Folder]:
    """Folders from the daemon, or the last cached list when it is unreachable."""
    try:
        folders = await core.client.get_folders()
    except DaemonError as exc:
        cached = await core.cache.get_folders()
        if cached is None:
            raise CommandError(f"Could not list folders: {exc}") from exc
        print(f"Daemon unreachable ({exc}), showing cached folder list.")
        return cached
    await core.cache.put_folders(folders)
    return folders


async def cmd_folders(core: SyncCore) -> None:
    folders = await _folder_list(core)
    if not folders:
        print("No folders configured.")
        return
    for folder in folders:
        paused = " (paused)" if folder.paused else ""
        print(
            f"{folder.id:<20} {folder.display_name:<24} {folder.folder_type:<18} "
            f"{folder.path}{paused}"
        )


async def cmd_status(core: SyncCore, folder_id: str) -> None:
    status: FolderStatus = _unwrap(await core.fetch(GetFolderStatus(folder_id=folder_id)))
    print(f"Folder:    {folder_id}")
    print(f"State:     {status.state}")
    print(f"Sequence:  {status.sequence}")
    print(f"Files:     {status.local_files} local / {status.global_files} global")
    print(f"Dirs:      {status.local_directories} local / {status.global_directories} global")
    print(f"Size:      {format_size(status.local_bytes)} / {format_size(status.global_bytes)}")
    print(f"Needed:    {status.need_total_items} item(s), {format_size(status.need_bytes)}")

    if has_local_changes(status):
        changed: list[str] = _unwrap(
            await core.fetch(GetLocalChangedFiles(folder_id=folder_id))
        )
        print(f"Local changes ({len(changed)}):")
        for path in changed:
            print(f"    * {path}")


async def _item_states(
    core: SyncCore, folder_id: str, prefix: str, items: list[BrowseItem], sequence: int
) -> dict[str, SyncState]:
    """Validated state of every item, fetching what the cache cannot answer."""
    states: dict[str, SyncState] = {}
    missing: list[GetFileInfo] = []
    for item in items:
        path = f"{prefix}{item.name}"
        state = await core.cache.get_state(folder_id, path, sequence)
        if state is None:
            missing.append(GetFileInfo(folder_id=folder_id, file_path=path, priority=Priority.LOW))
        else:
            states[item.name] = state

    for response in await core.fetch_all(missing):
        request = response.request
        if response.ok and isinstance(request, GetFileInfo):
            state = await core.cache.get_state(folder_id, request.file_path, sequence)
            if state is not None:
                states[request.file_path.rsplit("/", 1)[-1]] = state

    # Directories also reflect what is known about their cached descendants.
    directories = {f"{prefix}{item.name}/": states.get(item.name) for item in items if item.is_dir}
    aggregated = await core.aggregator.directory_states(folder_id, directories, sequence)
    for path, state in aggregated.items():
        states[path[len(prefix) : -1]] = state
    return states


async def cmd_browse(core: SyncCore, folder_id: str, prefix: str | None) -> None:
    key = normalize_prefix(prefix)
    sequence = await _ensure_sequence(core, folder_id)

    items = await core.cache.get_listing(folder_id, key, sequence)
    source = "cache"
    if items is None:
        items = _unwrap(
            await core.fetch(BrowseFolder(folder_id=folder_id, prefix=key, priority=Priority.HIGH))
        )
        source = "daemon"

    states = await _item_states(core, folder_id, key, items, sequence)
    print(f"{folder_id}:/{key}  ({len(items)} item(s), seq {sequence}, from {source})")
    for item in sort_by_sync_state(items, lambda i: states.get(i.name), lambda i: i.name):
        state = states.get(item.name, SyncState.UNKNOWN)
        name = f"{item.name}/" if item.is_dir else item.name
        size = "" if item.is_dir else format_size(item.size)
        modified = format_datetime(parse_mod_time(item.mod_time))
        print(f"  {STATE_ICONS[state]:<3} {state.value:<11} {size:>10}  {modified}  {name}")


async def cmd_file(core: SyncCore, folder_id: str, file_path: str) -> None:
    sequence = await _ensure_sequence(core, folder_id)
    details = _unwrap(await core.fetch(GetFileInfo(folder_id=folder_id, file_path=file_path)))
    state = await core.cache.get_state(folder_id, file_path, sequence)
    print(f"Path:         {file_path}")
    print(f"State:        {(state or SyncState.UNKNOWN).value}")
    for label, meta in (("Local", details.local), ("Global", details.global_)):
        if meta is None:
            print(f"{label + ':':<13} -")
            continue
        flags = [flag for flag, on in (("deleted", meta.deleted), ("ignored", meta.ignored)) if on]
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{label + ':':<13} {format_size(meta.size)}, seq {meta.sequence}{suffix}")
        print(f"{'':<13} modified {format_datetime(parse_mod_time(meta.modified))}")
        print(f"{'':<13} version {', '.join(meta.version) or '-'}")
    devices = ", ".join(device.device_id[:7] for device in details.availability) or "none"
    print(f"Available on: {devices}")


async def cmd_write(
    core: SyncCore, request: RescanFolder | RevertFolder | SetIgnorePatterns
) -> None:
    _unwrap(await core.fetch(request))
    print(f"{request.kind} requested for {request.folder_id}")


async def cmd_ignores(core: SyncCore, folder_id: str) -> None:
    patterns: list[str] = _unwrap(await core.fetch(GetIgnorePatterns(folder_id=folder_id)))
    if not patterns:
        print(f"No ignore patterns for {folder_id}.")
        return
    for pattern in patterns:
        print(pattern)


async def cmd_ignore(
    core: SyncCore, folder_id: str, patterns: list[str], *, replace: bool = False
) -> None:
    """Add patterns to the folder's ignore list, or replace the list outright."""
    if replace:
        combined = list(dict.fromkeys(patterns))
    else:
        current: list[str] = _unwrap(await core.fetch(GetIgnorePatterns(folder_id=folder_id)))
        combined = list(dict.fromkeys([*current, *patterns]))
    await cmd_write(core, SetIgnorePatterns(folder_id=folder_id, patterns=tuple(combined)))


def _print_breakdown(breakdown: FolderSyncBreakdown) -> None:
    print(f"Out of sync: {breakdown.total} item(s)")
    for label, count in (
        ("downloading", breakdown.downloading),
        ("queued", breakdown.queued),
        ("remote only", breakdown.remote_only),
        ("modified", breakdown.modified),
        ("local only", breakdown.local_only),
    ):
        if count:
            print(f"    {label + ':':<13} {count}")


async def cmd_need(core: SyncCore, folder_id: str) -> None:
    status: FolderStatus = _unwrap(await core.fetch(GetFolderStatus(folder_id=folder_id)))
    requests: list[GetNeededFiles | GetLocalChangedFiles] = [GetNeededFiles(folder_id=folder_id)]
    if has_local_changes(status):
        requests.append(GetLocalChangedFiles(folder_id=folder_id))
    for response in await core.fetch_all(requests):
        _unwrap(response)

    _print_breakdown(await core.cache.get_folder_sync_breakdown(folder_id))
    items = await core.cache.get_out_of_sync_items(folder_id)
    for path in sorted(items):
        print(f"  {items[path].value:<12} {path}")
    for path in await core.cache.get_local_changed(folder_id):
        print(f"  {'local_only':<12} {path}")


def _describe(update: object) -> str | None:
    if isinstance(update, ItemSyncStarted):
        return f"syncing   {update.folder_id}:{update.file_path}"
    if isinstance(update, ItemSyncFinished):
        return f"finished  {update.folder_id}:{update.file_path}"
    if isinstance(update, FileInvalidation):
        return f"changed   {update.folder_id}:{update.file_path}"
    if isinstance(update, DirectoryInvalidation):
        return f"changed   {update.folder_id}:{update.dir_path or '/'}"
    return None


async def cmd_watch(core: SyncCore, folder_ids: list[str]) -> None:
    for folder_id in folder_ids:
        core.reconciler.watch(folder_id)
        core.enqueue(GetFolderStatus(folder_id=folder_id))
    print("Watching for changes (Ctrl-C to stop)...")
    while True:
        update = await core.updates.get()
        line = _describe(update)
        if line is not None:
            print(line, flush=True)


async def run_command(args: argparse.Namespace, settings: Settings) -> None:
    listen = args.command == "watch"
    async with SyncCore(settings, listen_events=listen) as core:
        if args.command == "folders":
            await cmd_folders(core)
        elif args.command == "status":
            await cmd_status(core, args.folder)
        elif args.command == "browse":
            await cmd_browse(core, args.folder, args.prefix)
        elif args.command == "file":
            await cmd_file(core, args.folder, args.path)
        elif args.command == "rescan":
            await cmd_write(core, RescanFolder(folder_id=args.folder))
        elif args.command == "revert":
            await cmd_write(core, RevertFolder(folder_id=args.folder))
        elif args.command == "need":
            await cmd_need(core, args.folder)
        elif args.command == "ignores":
            await cmd_ignores(core, args.folder)
        elif args.command == "ignore":
            await cmd_ignore(core, args.folder, args.patterns, replace=args.replace)
        elif args.command == "watch":
            await cmd_watch(core, args.folders)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stui",
        description="Inspect Syncthing folders through the stui cache",
    )
    parser.add_argument("--url", help="Daemon URL (default: $STUI_BASE_URL)")
    parser.add_argument("--api-key", help="Daemon API key (default: $STUI_API_KEY)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("folders", help="List configured folders")

    status = subparsers.add_parser("status", help="Show folder status")
    status.add_argument("folder")

    browse = subparsers.add_parser("browse", help="List a directory with sync states")
    browse.add_argument("folder")
    browse.add_argument("prefix", nargs="?", default=None)

    file_parser = subparsers.add_parser("file", help="Show one item's sync details")
    file_parser.add_argument("folder")
    file_parser.add_argument("path")

    rescan = subparsers.add_parser("rescan", help="Ask the daemon to rescan a folder")
    rescan.add_argument("folder")

    revert = subparsers.add_parser("revert", help="Revert local changes of a receive-only folder")
    revert.add_argument("folder")

    need = subparsers.add_parser("need", help="Show what a folder still needs, by category")
    need.add_argument("folder")

    ignores = subparsers.add_parser("ignores", help="List a folder's ignore patterns")
    ignores.add_argument("folder")

    ignore = subparsers.add_parser("ignore", help="Add ignore patterns to a folder")
    ignore.add_argument("folder")
    ignore.add_argument("patterns", nargs="+")
    ignore.add_argument(
        "--replace", action="store_true", help="Replace the existing patterns instead"
    )

    watch = subparsers.add_parser("watch", help="Print changes as the daemon reports them")
    watch.add_argument("folders", nargs="*", metavar="folder")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    overrides: dict[str, Any] = {}
    if args.url:
        overrides["base_url"] = args.url
    if args.api_key:
        overrides["api_key"] = args.api_key
    if args.debug:
        overrides["debug"] = True
    settings = Settings(**overrides)
    _configure_logging(settings.debug)
    if not settings.debug:
        logging.getLogger("stui").setLevel(logging.WARNING)

    try:
        asyncio.run(run_command(args, settings))
    except (CommandError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        print()


if __name__ == "__main__":
    main()
