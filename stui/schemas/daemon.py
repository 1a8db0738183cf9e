"""Response shapes consumed from the Syncthing REST API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DIRECTORY_TYPES = frozenset({"FILE_INFO_TYPE_DIRECTORY", "directory", "dir"})


class DaemonModel(BaseModel):
    """Base for daemon payloads: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Folder(DaemonModel):
    """Folder entry from the daemon configuration."""

    id: str
    label: str | None = None
    path: str = ""
    folder_type: str = Field(default="sendreceive", alias="type")
    paused: bool = False

    @property
    def display_name(self) -> str:
        return self.label or self.id


class FolderStatus(DaemonModel):
    """Folder status from ``/rest/db/status``."""

    state: str = ""
    sequence: int = Field(default=0, ge=0)
    need_total_items: int = 0
    receive_only_total_items: int = 0
    global_bytes: int = 0
    local_bytes: int = 0
    need_bytes: int = 0
    receive_only_changed_bytes: int = 0
    global_total_items: int = 0
    local_files: int = 0
    local_directories: int = 0
    global_files: int = 0
    global_directories: int = 0


class BrowseItem(DaemonModel):
    """One child entry from ``/rest/db/browse``."""

    name: str
    item_type: str = Field(default="FILE_INFO_TYPE_FILE", alias="type")
    size: int = 0
    mod_time: str = ""

    @property
    def is_dir(self) -> bool:
        return self.item_type in DIRECTORY_TYPES

    @property
    def kind(self) -> str:
        return "dir" if self.is_dir else "file"


class FileMeta(DaemonModel):
    """Local or global metadata of one file."""

    deleted: bool = False
    ignored: bool = False
    version: list[str] = Field(default_factory=list)
    sequence: int = 0
    size: int = 0
    modified: str | None = None
    content_hash: str | None = Field(default=None, alias="blocksHash")

    @field_validator("version", mode="before")
    @classmethod
    def null_version_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class Availability(DaemonModel):
    """A device that has the global version of a file."""

    device_id: str = Field(alias="id")


class FileDetails(DaemonModel):
    """Response of ``/rest/db/file``."""

    local: FileMeta | None = None
    global_: FileMeta | None = Field(default=None, alias="global")
    availability: list[Availability] = Field(default_factory=list)


class DaemonEvent(DaemonModel):
    """One entry of the ``/rest/events`` stream."""

    id: int
    global_id: int = Field(default=0, alias="globalID")
    time: str = ""
    type: str
    data: Any = None

    def data_str(self, key: str) -> str | None:
        """Return a string field from ``data``, or None if absent or not a string."""
        if not isinstance(self.data, dict):
            return None
        value = self.data.get(key)
        return value if isinstance(value, str) else None


class NeededFile(DaemonModel):
    """One entry of a ``/rest/db/need`` category."""

    name: str
    size: int = 0
    modified: str | None = None


class NeedResponse(DaemonModel):
    """Response of ``/rest/db/need``: items still needed, by transfer stage."""

    progress: list[NeededFile] = Field(default_factory=list)
    queued: list[NeededFile] = Field(default_factory=list)
    rest: list[NeededFile] = Field(default_factory=list)

    @field_validator("progress", "queued", "rest", mode="before")
    @classmethod
    def null_list_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class IgnorePatterns(DaemonModel):
    """Response of ``GET /rest/db/ignores``."""

    ignore: list[str] = Field(default_factory=list)
    expanded: list[str] = Field(default_factory=list)

    @field_validator("ignore", "expanded", mode="before")
    @classmethod
    def null_list_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v
