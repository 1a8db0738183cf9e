"""Folder-relative path helpers shared by the cache, scheduler and reconciler."""

from __future__ import annotations


def normalize_prefix(prefix: str | None) -> str:
    """Canonical listing key: "" for the folder root, otherwise ``"dir/sub/"``."""
    if not prefix:
        return ""
    stripped = prefix.strip("/")
    return f"{stripped}/" if stripped else ""


def parent_prefix(path: str) -> str:
    """Listing key of the directory containing ``path``."""
    trimmed = path.rstrip("/")
    slash = trimmed.rfind("/")
    return trimmed[: slash + 1] if slash >= 0 else ""


def normalize_item_path(path: str) -> str:
    """Canonical form of an item path: no trailing slash."""
    return path.rstrip("/")
