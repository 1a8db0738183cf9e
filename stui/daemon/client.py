"""Async REST client for the Syncthing daemon."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from stui.exceptions import DaemonError
from stui.schemas.daemon import (
    BrowseItem,
    DaemonEvent,
    FileDetails,
    Folder,
    FolderStatus,
    IgnorePatterns,
    NeedResponse,
)

logger = logging.getLogger(__name__)

_FOLDERS = TypeAdapter(list[Folder])
_BROWSE_ITEMS = TypeAdapter(list[BrowseItem])
_EVENTS = TypeAdapter(list[DaemonEvent])
_FOLDER_STATUS = TypeAdapter(FolderStatus)
_FILE_DETAILS = TypeAdapter(FileDetails)
_NEED = TypeAdapter(NeedResponse)
_IGNORES = TypeAdapter(IgnorePatterns)

# Textual browse errors that mean "nothing to show" rather than failure.
_EMPTY_BROWSE_MARKERS = ("no such folder", "paused")
_LOCAL_CHANGED_PAGE_SIZE = 1000
# Extra client-side time on top of the server-side long-poll wait.
_LONG_POLL_GRACE_SECONDS = 10.0


def _is_empty_browse_error(body: str) -> bool:
    """Plain-text browse errors for paused or unknown folders."""
    if body.lstrip().startswith(("[", "{")):
        return False
    lowered = body.lower()
    return any(marker in lowered for marker in _EMPTY_BROWSE_MARKERS)


class DaemonClient:
    """Client for the daemon's REST API.

    Every method performs exactly one logical call and raises ``DaemonError``
    on transport failure, HTTP error status or an unusable body.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-API-Key": api_key},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> DaemonClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise DaemonError(f"{method} {url} failed: {exc!s} ({type(exc).__name__})") from exc

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if response.is_success:
            return
        detail = response.text.strip()[:200] or response.reason_phrase
        raise DaemonError(
            f"API error {response.status_code}: {detail}", status_code=response.status_code
        )

    @staticmethod
    def _parse(response: httpx.Response, adapter: TypeAdapter[Any], what: str) -> Any:
        try:
            return adapter.validate_json(response.content)
        except ValidationError as exc:
            raise DaemonError(f"Failed to parse {what}: {exc.error_count()} invalid field(s)") from exc

    async def get_folders(self) -> list[Folder]:
        response = await self._send("GET", "/rest/config/folders")
        self._check(response)
        folders: list[Folder] = self._parse(response, _FOLDERS, "folder list")
        return folders

    async def get_folder_status(self, folder_id: str) -> FolderStatus:
        response = await self._send("GET", "/rest/db/status", params={"folder": folder_id})
        self._check(response)
        status: FolderStatus = self._parse(response, _FOLDER_STATUS, "folder status")
        return status

    async def browse_folder(self, folder_id: str, prefix: str | None = None) -> list[BrowseItem]:
        """List the direct children of ``prefix``.

        A paused or unknown folder yields an empty listing instead of an error.
        """
        params: dict[str, str | int] = {"folder": folder_id, "levels": 0}
        if prefix:
            params["prefix"] = prefix
        response = await self._send("GET", "/rest/db/browse", params=params)

        body = response.text
        if _is_empty_browse_error(body):
            logger.debug("Browse of folder=%s treated as empty: %s", folder_id, body.strip())
            return []
        self._check(response)
        if body.strip() in ("", "null", "{}"):
            return []
        items: list[BrowseItem] = self._parse(response, _BROWSE_ITEMS, "browse response")
        return items

    async def get_file_info(self, folder_id: str, file_path: str) -> FileDetails:
        response = await self._send(
            "GET", "/rest/db/file", params={"folder": folder_id, "file": file_path}
        )
        self._check(response)
        details: FileDetails = self._parse(response, _FILE_DETAILS, "file info")
        return details

    async def get_ignore_patterns(self, folder_id: str) -> list[str]:
        response = await self._send("GET", "/rest/db/ignores", params={"folder": folder_id})
        self._check(response)
        ignores: IgnorePatterns = self._parse(response, _IGNORES, "ignore patterns")
        return ignores.ignore

    async def set_ignore_patterns(self, folder_id: str, patterns: list[str]) -> None:
        response = await self._send(
            "POST", "/rest/db/ignores", params={"folder": folder_id}, json={"ignore": patterns}
        )
        self._check(response)

    async def get_needed_files(self, folder_id: str) -> NeedResponse:
        """Items the folder still needs from peers, grouped by transfer stage."""
        response = await self._send("GET", "/rest/db/need", params={"folder": folder_id})
        self._check(response)
        need: NeedResponse = self._parse(response, _NEED, "needed files")
        return need

    async def rescan_folder(self, folder_id: str) -> None:
        response = await self._send("POST", "/rest/db/scan", params={"folder": folder_id})
        self._check(response)

    async def revert_folder(self, folder_id: str) -> None:
        response = await self._send("POST", "/rest/db/revert", params={"folder": folder_id})
        self._check(response)

    async def get_local_changed_files(self, folder_id: str) -> list[str]:
        """Paths changed locally in a receive-only folder, across all pages."""
        files: list[str] = []
        page = 1
        while True:
            response = await self._send(
                "GET",
                "/rest/db/localchanged",
                params={"folder": folder_id, "page": page, "perpage": _LOCAL_CHANGED_PAGE_SIZE},
            )
            self._check(response)
            try:
                payload = response.json()
                names = [entry["name"] for entry in payload.get("files") or []]
            except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as exc:
                raise DaemonError(f"Failed to parse local changes: {exc}") from exc
            files.extend(names)
            if len(names) < _LOCAL_CHANGED_PAGE_SIZE:
                return files
            page += 1

    async def get_events(self, since: int, timeout: int = 60) -> list[DaemonEvent]:
        """Long-poll for events with id greater than ``since``."""
        response = await self._send(
            "GET",
            "/rest/events",
            params={"since": since, "timeout": timeout},
            timeout=timeout + _LONG_POLL_GRACE_SECONDS,
        )
        self._check(response)
        if not response.content.strip() or response.content.strip() == b"null":
            return []
        events: list[DaemonEvent] = self._parse(response, _EVENTS, "events")
        return events
