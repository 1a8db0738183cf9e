"""Requests accepted by the scheduler and the responses it publishes."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, ClassVar

from stui.schemas.state import Priority
from stui.services.path_service import normalize_item_path, normalize_prefix

_write_ids = itertools.count(1)


@dataclass(frozen=True)
class BrowseFolder:
    """List the direct children of ``prefix`` (None or "" for the folder root)."""

    kind: ClassVar[str] = "browse"

    folder_id: str
    prefix: str | None = None
    priority: Priority = Priority.MEDIUM


@dataclass(frozen=True)
class GetFileInfo:
    """Fetch local/global metadata of one item."""

    kind: ClassVar[str] = "file_info"

    folder_id: str
    file_path: str
    priority: Priority = Priority.MEDIUM


@dataclass(frozen=True)
class GetFolderStatus:
    kind: ClassVar[str] = "folder_status"

    folder_id: str


@dataclass(frozen=True)
class GetNeededFiles:
    """Fetch the items the folder still needs from remote devices."""

    kind: ClassVar[str] = "needed"

    folder_id: str


@dataclass(frozen=True)
class GetIgnorePatterns:
    kind: ClassVar[str] = "ignores"

    folder_id: str


@dataclass(frozen=True)
class GetLocalChangedFiles:
    kind: ClassVar[str] = "local_changed"

    folder_id: str


@dataclass(frozen=True)
class RescanFolder:
    kind: ClassVar[str] = "rescan"

    folder_id: str


@dataclass(frozen=True)
class RevertFolder:
    kind: ClassVar[str] = "revert"

    folder_id: str


@dataclass(frozen=True)
class SetIgnorePatterns:
    kind: ClassVar[str] = "set_ignores"

    folder_id: str
    patterns: tuple[str, ...] = ()


Request = (
    BrowseFolder
    | GetFileInfo
    | GetFolderStatus
    | GetLocalChangedFiles
    | GetNeededFiles
    | GetIgnorePatterns
    | RescanFolder
    | RevertFolder
    | SetIgnorePatterns
)

WRITE_REQUESTS = (RescanFolder, RevertFolder, SetIgnorePatterns)

DedupKey = tuple[str, str, str]


def request_priority(request: Request) -> Priority:
    """Browse and file-info requests carry their own priority.

    Folder status and needed-file polling are background work; every other request is
    user-initiated.
    """
    if isinstance(request, (BrowseFolder, GetFileInfo)):
        return request.priority
    if isinstance(request, (GetFolderStatus, GetNeededFiles)):
        return Priority.MEDIUM
    return Priority.HIGH


def request_target(request: Request) -> DedupKey:
    """What a request is about: (kind, folder, path or prefix), ignoring priority.

    Spellings of the same prefix or path ("docs", "docs/") share one target.
    """
    if isinstance(request, BrowseFolder):
        return (request.kind, request.folder_id, normalize_prefix(request.prefix))
    if isinstance(request, GetFileInfo):
        return (request.kind, request.folder_id, normalize_item_path(request.file_path))
    return (request.kind, request.folder_id, "")


def dedup_key(request: Request) -> DedupKey:
    """Identity used to collapse duplicate in-flight requests.

    Write requests never collapse: each gets a fresh key.
    """
    if isinstance(request, WRITE_REQUESTS):
        return (request.kind, request.folder_id, f"#write-{next(_write_ids)}")
    return request_target(request)


@dataclass
class ApiResponse:
    """Result of one dispatched request: either ``value`` or ``error``.

    Write requests succeed with ``value=None``.
    """

    request: Request
    value: Any = None
    error: str | None = None
    error_kind: str | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def folder_id(self) -> str:
        return self.request.folder_id
